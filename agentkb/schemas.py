"""
Request/response schemas for the HTTP surface.
"""

from typing import Any

from pydantic import BaseModel, Field


class ReconcileResponse(BaseModel):
    user_id: str
    has_agent: bool
    kb_status: str  # none | not_attached | attached
    cleaned: bool = False
    agent_id: str | None = None
    agent_name: str | None = None
    agent_endpoint: str | None = None
    kb_id: str | None = None
    kb_name: str | None = None
    workflow_stage: str | None = None


class ProvisionRequest(BaseModel):
    token: str = Field(..., min_length=1)


class RunStatusResponse(BaseModel):
    user_id: str
    status: str  # in_progress | completed | failed | none
    steps: list[str] = []
    completed_steps: list[str] = []
    current_step: str | None = None
    result: Any = None
    error: str | None = None
    log: list[str] = []
    details: dict[str, Any] = {}


class KnowledgeBaseStatusResponse(BaseModel):
    user_id: str
    run: RunStatusResponse | None = None
    kb_indexing_status: dict[str, Any] | None = None  # Durable copy from the user document


class CancelRequest(BaseModel):
    job_id: str | None = None


class CancelResponse(BaseModel):
    cancelled: bool
    job_id: str | None = None
    remote: str | None = None  # cancelled | already_terminal | none
    restored_files: int = 0
    reason: str | None = None


class DestroyResponse(BaseModel):
    user_id: str
    agent_deleted: bool
    kb_deleted: bool
    objects_deleted: int
    document_deleted: bool
    errors: list[str] = []


class StorageUsageResponse(BaseModel):
    user_id: str
    total_bytes: int
    total_mb: float


class HealthResponse(BaseModel):
    status: str
    app: str
    provisioning: dict[str, Any]
    indexing: dict[str, Any]
