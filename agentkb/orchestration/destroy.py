"""
Delete a user together with every remote and stored resource they own.

Safe to run again after a partial failure: anything already gone (404) is
skipped, and the user document is only removed once the remote resources
are, so a retry can still find them.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from agentkb.errors import RemoteAPIError, StorageError
from agentkb.orchestration.reconciler import agent_name_pattern
from agentkb.orchestration.resources import find_user_agent
from agentkb.orchestration.workflow import root_prefix
from agentkb.services.genai_client import resource_id

logger = logging.getLogger(__name__)


class ResourceDestroyer:
    def __init__(self, genai, users, storage, reconciler, registries: Iterable = ()):
        self.genai = genai
        self.users = users
        self.storage = storage
        self.reconciler = reconciler
        self.registries = list(registries)

    async def _stop_background_work(self, user_id: str) -> None:
        tasks = []
        for registry in self.registries:
            task = registry.active_task(user_id)
            if task is not None:
                task.cancel()
                tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _agent_to_delete(self, user_id: str, doc: Dict[str, Any]) -> Optional[str]:
        agent_id = doc.get("assignedAgentId")
        if agent_id:
            try:
                agent = await self.genai.agent.get(agent_id)
            except RemoteAPIError as e:
                if e.is_not_found:
                    return None
                raise
            if agent_name_pattern(user_id).match(agent.get("name") or ""):
                return agent_id
            logger.warning("[DESTROY] Agent %s is not named for %s; leaving it alone", agent_id, user_id)
            return None
        agent = await find_user_agent(self.genai, user_id)
        return resource_id(agent)

    async def _kb_to_delete(self, doc: Dict[str, Any]) -> Optional[str]:
        if doc.get("kbId"):
            return doc["kbId"]
        kb_name = doc.get("kbName")
        if not kb_name:
            return None
        for kb in await self.genai.kb.list():
            if kb.get("name") == kb_name:
                return resource_id(kb)
        return None

    async def delete_user_and_resources(self, user_id: str) -> Dict[str, Any]:
        """Cancel indexing, detach and delete the agent and KB, remove stored files and the user document."""
        report: Dict[str, Any] = {
            "userId": user_id,
            "agentDeleted": False,
            "kbDeleted": False,
            "objectsDeleted": 0,
            "documentDeleted": False,
            "errors": [],
        }
        errors: List[str] = report["errors"]

        await self._stop_background_work(user_id)
        doc = await self.users.get(user_id) or {"_id": user_id}

        status = doc.get("kbIndexingStatus") or {}
        if status.get("jobId") and status.get("backendCompleted") is not True:
            try:
                await self.genai.indexing.cancel(status["jobId"])
            except RemoteAPIError as e:
                if e.status_code not in (404, 405):
                    logger.warning("[DESTROY] Cancelling job %s failed: %s", status["jobId"], e)

        try:
            agent_id = await self._agent_to_delete(user_id, doc)
        except RemoteAPIError as e:
            errors.append(f"agent lookup: {e}")
            agent_id = None
        try:
            kb_id = await self._kb_to_delete(doc)
        except RemoteAPIError as e:
            errors.append(f"kb lookup: {e}")
            kb_id = None

        if agent_id and kb_id:
            try:
                await self.genai.agent.detach_kb(agent_id, kb_id)
            except RemoteAPIError as e:
                if not e.is_not_found:
                    logger.warning("[DESTROY] Detaching KB %s from agent %s failed: %s", kb_id, agent_id, e)

        if agent_id:
            try:
                await self.genai.agent.delete(agent_id)
                report["agentDeleted"] = True
                logger.info("[DESTROY] Deleted agent %s for %s", agent_id, user_id)
            except RemoteAPIError as e:
                if not e.is_not_found:
                    errors.append(f"agent delete: {e}")

        if kb_id:
            try:
                await self.genai.kb.delete(kb_id)
                report["kbDeleted"] = True
                logger.info("[DESTROY] Deleted KB %s for %s", kb_id, user_id)
            except RemoteAPIError as e:
                if not e.is_not_found:
                    errors.append(f"kb delete: {e}")

        try:
            report["objectsDeleted"] = await self.storage.delete_prefix(root_prefix(user_id))
        except (StorageError, BotoCoreError, ClientError) as e:
            errors.append(f"storage: {e}")

        if errors:
            logger.error("[DESTROY] Partial deletion for %s: %s", user_id, "; ".join(errors))
        else:
            report["documentDeleted"] = await self.users.delete(user_id)

        self.reconciler.forget(user_id)
        self.reconciler.invalidate(user_id, agent_id=agent_id, kb_id=kb_id)
        for registry in self.registries:
            registry.remove(user_id)
        return report
