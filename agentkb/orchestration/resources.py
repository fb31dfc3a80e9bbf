"""
Lookups shared by the provisioning and indexing orchestrators: model,
project, database and embedding-model identifiers, the user's agent by name
pattern, and agent API keys.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from agentkb.config import is_valid_uuid
from agentkb.errors import RemoteAPIError
from agentkb.orchestration.clock import SystemClock, utc_iso
from agentkb.orchestration.reconciler import agent_name_pattern, default_profile_key, merge_agent_profile
from agentkb.services.genai_client import resource_id

logger = logging.getLogger(__name__)

KB_MODEL_USECASE = "MODEL_USECASE_KNOWLEDGEBASE"


def _model_uuid(agent: Dict[str, Any]) -> Optional[str]:
    model = agent.get("model")
    if isinstance(model, dict) and is_valid_uuid(model.get("uuid")):
        return model["uuid"]
    value = agent.get("model_uuid")
    return value if is_valid_uuid(value) else None


class IdentifierResolver:
    """Resolves the ids needed to create agents and knowledge bases.

    Configured values always win; discovered ids are cached for the life of
    the process.
    """

    def __init__(self, genai, settings):
        self.genai = genai
        self.settings = settings
        self._project_id: Optional[str] = None
        self._embedding_model_id: Optional[str] = None
        self._embedding_resolved = False

    async def resolve_model_and_project(self) -> Tuple[Optional[str], Optional[str]]:
        model_id = self.settings.resolved_model_id()
        project_id = self.settings.resolved_project_id() or self._project_id

        if not model_id or not project_id:
            try:
                agents = await self.genai.agent.list()
            except RemoteAPIError as e:
                logger.warning("[IDS] Listing agents for id discovery failed: %s", e)
                agents = []
            for agent in agents:
                if not model_id:
                    model_id = _model_uuid(agent)
                if not project_id and is_valid_uuid(agent.get("project_id")):
                    project_id = agent["project_id"]
                if model_id and project_id:
                    break

        if not model_id:
            model_id = await self._pick_model()
        if not project_id:
            project_id = await self.resolve_project_id()

        if project_id:
            self._project_id = project_id
        return model_id, project_id

    async def _pick_model(self) -> Optional[str]:
        try:
            models = await self.genai.list_models()
        except RemoteAPIError as e:
            logger.warning("[IDS] Listing models failed: %s", e)
            return None
        preferred = (self.settings.preferred_model_name or "").lower()
        candidates = [m for m in models if is_valid_uuid(m.get("uuid"))]
        for model in candidates:
            names = {str(model.get(k) or "").lower() for k in ("name", "inference_name", "id")}
            if preferred and preferred in names:
                logger.info("[IDS] Using preferred model %s", model["uuid"])
                return model["uuid"]
        if candidates:
            logger.info("[IDS] Preferred model not found, using %s", candidates[0]["uuid"])
            return candidates[0]["uuid"]
        return None

    async def resolve_project_id(self) -> Optional[str]:
        configured = self.settings.resolved_project_id()
        if configured:
            return configured
        if self._project_id:
            return self._project_id

        try:
            project = await self.genai.get_default_project()
            if is_valid_uuid(project.get("id")):
                self._project_id = project["id"]
                return self._project_id
        except RemoteAPIError as e:
            logger.warning("[IDS] Default project lookup failed: %s", e)

        try:
            projects = await self.genai.list_projects()
        except RemoteAPIError as e:
            logger.warning("[IDS] Project list failed: %s", e)
            return None
        for project in projects:
            if is_valid_uuid(project.get("id")):
                self._project_id = project["id"]
                return self._project_id
        return None

    async def resolve_database_id(self) -> Optional[str]:
        configured = self.settings.resolved_database_id()
        if configured:
            return configured
        try:
            kbs = await self.genai.kb.list()
        except RemoteAPIError as e:
            logger.warning("[IDS] KB list for database id failed: %s", e)
            return None
        for kb in kbs:
            if is_valid_uuid(kb.get("database_id")):
                return kb["database_id"]
        return None

    async def resolve_embedding_model_id(self) -> Optional[str]:
        """Configured UUID, else a name match in the KB model list, else None (platform default)."""
        if is_valid_uuid(self.settings.do_embedding_model_id):
            return self.settings.do_embedding_model_id
        if self._embedding_resolved:
            return self._embedding_model_id

        wanted = (self.settings.do_embedding_model_name or "").lower()
        if wanted:
            try:
                models = await self.genai.list_models(usecases=KB_MODEL_USECASE)
            except RemoteAPIError as e:
                logger.warning("[IDS] Embedding model list failed: %s", e)
                return None
            for model in models:
                names = {str(model.get(k) or "").lower() for k in ("name", "inference_name", "id")}
                if wanted in names and is_valid_uuid(model.get("uuid")):
                    self._embedding_model_id = model["uuid"]
                    break
            else:
                logger.warning("[IDS] Embedding model %s not found, using platform default", wanted)
        self._embedding_resolved = True
        return self._embedding_model_id


async def find_user_agent(genai, user_id: str) -> Optional[Dict[str, Any]]:
    """The user's agent located by name (``<userId>-agent-*``), with full details."""
    pattern = agent_name_pattern(user_id)
    for agent in await genai.agent.list():
        if pattern.match(agent.get("name") or "") and resource_id(agent):
            try:
                return await genai.agent.get(resource_id(agent))
            except RemoteAPIError as e:
                if e.is_not_found:
                    continue
                raise
    return None


def stored_api_key(doc: Dict[str, Any], agent_id: str) -> Optional[str]:
    profile = (doc.get("agentProfiles") or {}).get(default_profile_key(doc)) or {}
    if profile.get("apiKey") and profile.get("agentId") in (None, agent_id):
        return profile["apiKey"]
    if doc.get("agentApiKey") and doc.get("assignedAgentId") in (None, agent_id):
        return doc["agentApiKey"]
    return None


async def get_or_create_agent_api_key(genai, users, user_id: str, agent_id: str, clock=None) -> Optional[str]:
    """Stored key for ``agent_id`` (profile first, then top level), else a new one."""
    doc = await users.get(user_id) or {}
    existing = stored_api_key(doc, agent_id)
    if existing:
        return existing
    return await recreate_agent_api_key(genai, users, user_id, agent_id, clock)


async def recreate_agent_api_key(genai, users, user_id: str, agent_id: str, clock=None) -> Optional[str]:
    """Issue a fresh key (e.g. after the endpoint rejected the stored one) and persist it."""
    api_key = await genai.agent.create_api_key(agent_id, f"{user_id}-agent-key")
    if not api_key:
        return None

    stamp = utc_iso((clock or SystemClock()).now())

    def transform(latest):
        if latest.get("assignedAgentId") not in (None, agent_id):
            return None
        return merge_agent_profile(latest, {"agentId": agent_id, "apiKey": api_key}, stamp)

    if await users.get(user_id) is not None:
        await users.update(user_id, transform)
    return api_key


async def connect_knowledge_base(genai, users, reconciler, user_id: str, kb_id: str) -> Dict[str, Any]:
    """Record ``kb_id`` for the user and attach it to their agent, if they have one.

    Raises ``RemoteAPIError`` when the KB does not exist.
    """
    kb = await genai.kb.get(kb_id)
    kb_name = kb.get("name")

    def record(latest):
        patch: Dict[str, Any] = {"kbId": kb_id}
        connected = list(latest.get("connectedKBs") or [])
        if kb_name and kb_name not in connected:
            patch["connectedKBs"] = connected + [kb_name]
        return patch

    doc = await users.update(user_id, record)
    agent_id = doc.get("assignedAgentId")
    attached = False
    if agent_id:
        try:
            await genai.agent.attach_kb(agent_id, kb_id)
        except RemoteAPIError as e:
            if not e.is_already_attached:
                raise
        attached = True
        logger.info("[KB] Knowledge base %s connected to agent %s", kb_id, agent_id)
    reconciler.invalidate(user_id, agent_id=agent_id, kb_id=kb_id)
    return {"kbId": kb_id, "kbName": kb_name, "agentId": agent_id, "attached": attached}
