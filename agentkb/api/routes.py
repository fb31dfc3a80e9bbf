"""
Agent / knowledge-base endpoints.

GET    /api/users/{user_id}/reconcile validate references against the platform
POST   /api/users/{user_id}/provision start provisioning (one-time token)
GET    /api/users/{user_id}/provision/status provisioning progress and log
POST   /api/users/{user_id}/knowledge-base/index start a KB update
GET    /api/users/{user_id}/knowledge-base/status indexing progress (live + persisted)
POST   /api/users/{user_id}/knowledge-base/cancel cancel indexing and undo file moves
DELETE /api/users/{user_id} delete the user and all resources
GET    /api/users/{user_id}/storage-usage bytes stored for the user
GET    /api/health

Authentication is handled in front of this router.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from botocore.exceptions import BotoCoreError, ClientError

from agentkb.container import Services
from agentkb.errors import (
    DocumentStoreError,
    IndexingError,
    ProvisioningAuthError,
    ProvisioningError,
    StorageError,
)
from agentkb.orchestration.registry import StatusEntry
from agentkb.orchestration.workflow import root_prefix
from agentkb.schemas import (
    CancelRequest,
    CancelResponse,
    DestroyResponse,
    HealthResponse,
    KnowledgeBaseStatusResponse,
    ProvisionRequest,
    ReconcileResponse,
    RunStatusResponse,
    StorageUsageResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Agents & Knowledge Bases"])


def get_services(request: Request) -> Services:
    return request.app.state.services


def _run_status(user_id: str, entry: Optional[StatusEntry]) -> RunStatusResponse:
    if entry is None:
        return RunStatusResponse(user_id=user_id, status="none")
    return RunStatusResponse(
        user_id=user_id,
        status=entry.status,
        steps=entry.steps,
        completed_steps=entry.completed_steps,
        current_step=entry.current_step,
        result=entry.result,
        error=entry.error,
        log=entry.log,
        details=entry.details,
    )


async def _require_user(services: Services, user_id: str) -> dict:
    doc = await services.users.get(user_id)
    if doc is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"User {user_id} not found")
    return doc


# ── Endpoints ─────────────────────────────────────────────────────────────────

@router.get("/users/{user_id}/reconcile", response_model=ReconcileResponse)
async def reconcile_user(user_id: str, services: Services = Depends(get_services)):
    """Check the user's agent and KB against the platform and repair stale references."""
    result = await services.reconciler.reconcile(user_id)
    if result.user_doc is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"User {user_id} not found")
    doc = result.user_doc
    return ReconcileResponse(
        user_id=user_id,
        has_agent=result.has_agent,
        kb_status=result.kb_status.value,
        cleaned=result.cleaned,
        agent_id=doc.get("assignedAgentId"),
        agent_name=doc.get("assignedAgentName"),
        agent_endpoint=doc.get("agentEndpoint"),
        kb_id=doc.get("kbId"),
        kb_name=doc.get("kbName"),
        workflow_stage=doc.get("workflowStage"),
    )


@router.post(
    "/users/{user_id}/provision",
    response_model=RunStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def provision_user(
    user_id: str,
    body: ProvisionRequest,
    services: Services = Depends(get_services),
):
    """
    Start provisioning the user's agent in the background.
    Poll /provision/status for progress.
    """
    try:
        entry = await services.provisioner.provision(user_id, body.token)
    except ProvisioningAuthError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except ProvisioningError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return _run_status(user_id, entry)


@router.get("/users/{user_id}/provision/status", response_model=RunStatusResponse)
async def provision_status(user_id: str, services: Services = Depends(get_services)):
    return _run_status(user_id, services.provision_registry.get(user_id))


@router.post(
    "/users/{user_id}/knowledge-base/index",
    response_model=RunStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def index_knowledge_base(user_id: str, services: Services = Depends(get_services)):
    """Move files into place and (re)index the user's knowledge base in the background."""
    await _require_user(services, user_id)
    entry = services.indexer.start_update(user_id)
    return _run_status(user_id, entry)


@router.get("/users/{user_id}/knowledge-base/status", response_model=KnowledgeBaseStatusResponse)
async def knowledge_base_status(user_id: str, services: Services = Depends(get_services)):
    entry = services.index_registry.get(user_id)
    doc = await services.users.get(user_id)
    if doc is None and entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"User {user_id} not found")
    return KnowledgeBaseStatusResponse(
        user_id=user_id,
        run=_run_status(user_id, entry) if entry else None,
        kb_indexing_status=(doc or {}).get("kbIndexingStatus"),
    )


@router.post("/users/{user_id}/knowledge-base/cancel", response_model=CancelResponse)
async def cancel_knowledge_base_indexing(
    user_id: str,
    body: CancelRequest | None = None,
    services: Services = Depends(get_services),
):
    await _require_user(services, user_id)
    try:
        outcome = await services.indexer.cancel_indexing(user_id, body.job_id if body else None)
    except IndexingError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return CancelResponse(
        cancelled=outcome["cancelled"],
        job_id=outcome.get("jobId"),
        remote=outcome.get("remote"),
        restored_files=outcome.get("restoredFiles", 0),
        reason=outcome.get("reason"),
    )


@router.delete("/users/{user_id}", response_model=DestroyResponse)
async def delete_user(user_id: str, services: Services = Depends(get_services)):
    """Delete the user's agent, KB, stored files and user document."""
    try:
        report = await services.destroyer.delete_user_and_resources(user_id)
    except DocumentStoreError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return DestroyResponse(
        user_id=user_id,
        agent_deleted=report["agentDeleted"],
        kb_deleted=report["kbDeleted"],
        objects_deleted=report["objectsDeleted"],
        document_deleted=report["documentDeleted"],
        errors=report["errors"],
    )


@router.get("/users/{user_id}/storage-usage", response_model=StorageUsageResponse)
async def storage_usage(user_id: str, services: Services = Depends(get_services)):
    try:
        total = await services.storage.prefix_size(root_prefix(user_id))
    except (StorageError, BotoCoreError, ClientError) as e:
        logger.error("Storage usage for %s failed: %s", user_id, e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Storage unavailable")
    return StorageUsageResponse(user_id=user_id, total_bytes=total, total_mb=round(total / (1024 * 1024), 2))


@router.get("/health", response_model=HealthResponse)
async def health(services: Services = Depends(get_services)):
    return HealthResponse(
        status="ok",
        app=services.settings.app_name,
        provisioning=services.provision_registry.stats(),
        indexing=services.index_registry.stats(),
    )
