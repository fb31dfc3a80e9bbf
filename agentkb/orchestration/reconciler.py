"""
Resource Reconciler - keep user documents honest about remote resources.

The remote platform is the source of truth. ``reconcile`` checks the agent
and knowledge base a user document points at, clears references to resources
that no longer exist, adopts a KB found by its permanent name, and attaches
the KB to the agent once indexing has finished. It always returns a usable
result: rate limiting falls back to the last known answer and any other
remote error marks that one resource as unknown.
"""

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from agentkb.errors import RemoteAPIError
from agentkb.orchestration.clock import SystemClock, utc_iso
from agentkb.orchestration.normalize import agent_endpoint, agent_model_name, attached_kb_ids
from agentkb.services.genai_client import resource_id

logger = logging.getLogger(__name__)

AGENT_FIELDS = ("assignedAgentId", "assignedAgentName", "agentEndpoint", "agentModelName", "agentApiKey")
DEFAULT_PROFILE_KEY = "default"


class KbStatus(str, Enum):
    NONE = "none"
    NOT_ATTACHED = "not_attached"
    ATTACHED = "attached"


@dataclass
class ReconcileResult:
    has_agent: bool
    kb_status: KbStatus
    user_doc: Optional[Dict[str, Any]]
    cleaned: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasAgent": self.has_agent,
            "kbStatus": self.kb_status.value,
            "userDoc": self.user_doc,
            "cleaned": self.cleaned,
        }


class _RateLimited(Exception):
    pass


class TTLCache:
    """Small time-boxed cache; entries expire ``ttl`` seconds after being set."""

    def __init__(self, ttl: float, time_fn: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._time = time_fn
        self._data: Dict[Any, Tuple[float, Any]] = {}

    def get(self, key):
        hit = self._data.get(key)
        if hit is None:
            return None
        stored_at, value = hit
        if self._time() - stored_at >= self.ttl:
            self._data.pop(key, None)
            return None
        return value

    def set(self, key, value) -> None:
        self._data[key] = (self._time(), value)

    def pop(self, key) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()


def agent_name_pattern(user_id: str) -> "re.Pattern[str]":
    return re.compile(rf"^{re.escape(user_id)}-agent-")


def default_profile_key(doc: Dict[str, Any]) -> str:
    return doc.get("agentProfileDefaultKey") or DEFAULT_PROFILE_KEY


def clear_agent_fields(latest: Dict[str, Any]) -> Dict[str, Any]:
    """Partial update removing every agent-derived field from ``latest``."""
    patch: Dict[str, Any] = {name: None for name in AGENT_FIELDS if latest.get(name) is not None}
    profiles = latest.get("agentProfiles") or {}
    key = default_profile_key(latest)
    if key in profiles:
        remaining = {k: v for k, v in profiles.items() if k != key}
        patch["agentProfiles"] = remaining
        patch["agentProfileDefaultKey"] = next(iter(remaining), None)
    return patch


def merge_agent_profile(latest: Dict[str, Any], values: Dict[str, Any], stamp: str) -> Dict[str, Any]:
    """Partial update writing ``values`` into the default profile and top-level fields.

    Only keys whose value actually differs are included, so an in-sync
    document produces an empty patch.
    """
    top_level = {
        "assignedAgentId": values.get("agentId"),
        "assignedAgentName": values.get("agentName"),
        "agentEndpoint": values.get("endpoint"),
        "agentModelName": values.get("modelName"),
        "agentApiKey": values.get("apiKey"),
    }
    patch: Dict[str, Any] = {
        name: value for name, value in top_level.items() if value is not None and latest.get(name) != value
    }

    key = default_profile_key(latest)
    profiles = dict(latest.get("agentProfiles") or {})
    profile = dict(profiles.get(key) or {})
    changed = {k: v for k, v in values.items() if v is not None and profile.get(k) != v}
    if changed:
        if not profile:
            profile["createdAt"] = stamp
        profile.update(changed)
        profile["updatedAt"] = stamp
        profile["lastSyncedAt"] = stamp
        profiles[key] = profile
        patch["agentProfiles"] = profiles
    if latest.get("agentProfileDefaultKey") != key:
        patch["agentProfileDefaultKey"] = key
    return patch


class ResourceReconciler:
    def __init__(
        self,
        genai,
        users,
        cache_ttl: float = 30.0,
        resource_cache_ttl: float = 30.0,
        time_fn: Callable[[], float] = time.monotonic,
        clock=None,
    ):
        self.genai = genai
        self.users = users
        self.clock = clock or SystemClock()
        self._results = TTLCache(cache_ttl, time_fn)
        self._resources = TTLCache(resource_cache_ttl, time_fn)
        self._last: Dict[str, ReconcileResult] = {}

    def invalidate(self, user_id: str, agent_id: Optional[str] = None, kb_id: Optional[str] = None) -> None:
        """Forget cached answers after a caller changed remote or local state."""
        self._results.pop(user_id)
        if agent_id:
            self._resources.pop(("agent", agent_id))
        if kb_id:
            self._resources.pop(("kb", kb_id))

    def forget(self, user_id: str) -> None:
        self._results.pop(user_id)
        self._last.pop(user_id, None)

    async def reconcile(self, user_id: str) -> ReconcileResult:
        cached = self._results.get(user_id)
        if cached is not None:
            return cached

        doc = await self.users.get(user_id)
        if doc is None:
            return ReconcileResult(False, KbStatus.NONE, None, False)

        try:
            result = await self._reconcile(user_id, doc)
        except _RateLimited:
            last = self._last.get(user_id)
            if last is not None:
                logger.warning("[RECONCILE] Rate limited for %s, returning last known result", user_id)
                return last
            logger.warning("[RECONCILE] Rate limited for %s, returning local state", user_id)
            return self._local_result(doc)

        self._results.set(user_id, result)
        self._last[user_id] = result
        return result

    @staticmethod
    def _local_result(doc: Dict[str, Any]) -> ReconcileResult:
        has_kb = bool(doc.get("kbId"))
        return ReconcileResult(
            has_agent=bool(doc.get("assignedAgentId")),
            kb_status=KbStatus.NOT_ATTACHED if has_kb else KbStatus.NONE,
            user_doc=doc,
        )

    async def _reconcile(self, user_id: str, doc: Dict[str, Any]) -> ReconcileResult:
        agent_state, agent = await self._check_agent(user_id, doc)
        kb_state, kb_id = await self._check_kb(doc)

        kb_status = KbStatus.NONE
        attached_now = False
        if kb_id:
            kb_status = KbStatus.NOT_ATTACHED
            if agent is not None:
                if kb_id in attached_kb_ids(agent):
                    kb_status = KbStatus.ATTACHED
                elif self._attachable(doc):
                    attached_now = await self._attach(agent, kb_id)
                    if attached_now:
                        kb_status = KbStatus.ATTACHED

        stamp = utc_iso(self.clock.now())

        def transform(latest: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            patch: Dict[str, Any] = {}
            if agent_state == "missing" and latest.get("assignedAgentId") == doc.get("assignedAgentId"):
                patch.update(clear_agent_fields(latest))
            elif agent_state == "present":
                patch.update(merge_agent_profile(latest, _live_agent_values(agent), stamp))
            if kb_state == "missing" and latest.get("kbId") == doc.get("kbId"):
                patch.update({"kbId": None, "connectedKBs": [], "connectedKB": None})
            elif kb_state == "adopted" and not latest.get("kbId"):
                patch["kbId"] = kb_id
            if attached_now and doc.get("kbName"):
                connected = list(latest.get("connectedKBs") or [])
                if doc["kbName"] not in connected:
                    patch["connectedKBs"] = connected + [doc["kbName"]]
            return {k: v for k, v in patch.items() if latest.get(k) != v or k not in latest} or None

        saved = await self.users.update(user_id, transform)
        cleaned = agent_state == "missing" or kb_state == "missing"
        if cleaned:
            logger.info(
                "[RECONCILE] Cleared stale references for %s (agent=%s kb=%s)", user_id, agent_state, kb_state
            )

        has_agent = agent_state == "present" or (agent_state == "unknown" and bool(saved.get("assignedAgentId")))
        return ReconcileResult(has_agent=has_agent, kb_status=kb_status, user_doc=saved, cleaned=cleaned)

    @staticmethod
    def _attachable(doc: Dict[str, Any]) -> bool:
        status = doc.get("kbIndexingStatus") or {}
        return bool(doc.get("agentEndpoint")) and status.get("backendCompleted") is True

    async def _attach(self, agent: Dict[str, Any], kb_id: str) -> bool:
        agent_id = resource_id(agent)
        try:
            await self.genai.agent.attach_kb(agent_id, kb_id)
            logger.info("[RECONCILE] Attached KB %s to agent %s", kb_id, agent_id)
        except RemoteAPIError as e:
            if e.is_already_attached:
                logger.info("[RECONCILE] KB %s already attached to agent %s", kb_id, agent_id)
            elif e.is_rate_limited:
                raise _RateLimited() from e
            else:
                logger.error("[RECONCILE] Attaching KB %s to agent %s failed: %s", kb_id, agent_id, e)
                return False
        self._resources.pop(("agent", agent_id))
        return True

    async def _cached(self, kind: str, rid: str, fetch):
        hit = self._resources.get((kind, rid))
        if hit is not None:
            return hit
        value = await fetch(rid)
        self._resources.set((kind, rid), value)
        return value

    async def _check_agent(self, user_id: str, doc: Dict[str, Any]) -> Tuple[str, Optional[dict]]:
        """Returns ``(state, agent)`` with state in none/missing/present/unknown."""
        agent_id = doc.get("assignedAgentId")
        if not agent_id:
            return "none", None
        try:
            agent = await self._cached("agent", agent_id, self.genai.agent.get)
        except RemoteAPIError as e:
            if e.is_rate_limited:
                raise _RateLimited() from e
            if e.is_not_found:
                logger.warning("[RECONCILE] Agent %s for %s no longer exists", agent_id, user_id)
                return "missing", None
            logger.error("[RECONCILE] Agent check for %s failed: %s", user_id, e)
            return "unknown", None

        name = (agent or {}).get("name") or ""
        if not agent or not agent_name_pattern(user_id).match(name):
            logger.warning(
                "[RECONCILE] Agent %s does not belong to %s (name=%r)", agent_id, user_id, name
            )
            return "missing", None
        return "present", agent

    async def _check_kb(self, doc: Dict[str, Any]) -> Tuple[str, Optional[str]]:
        """Returns ``(state, kb_id)`` with state in none/missing/present/adopted/unknown."""
        kb_id = doc.get("kbId")
        if kb_id:
            try:
                await self._cached("kb", kb_id, self.genai.kb.get)
            except RemoteAPIError as e:
                if e.is_rate_limited:
                    raise _RateLimited() from e
                if e.is_not_found:
                    logger.warning("[RECONCILE] KB %s no longer exists", kb_id)
                    return "missing", None
                logger.error("[RECONCILE] KB check for %s failed: %s", kb_id, e)
                return "unknown", None
            return "present", kb_id

        kb_name = doc.get("kbName")
        if not kb_name:
            return "none", None
        try:
            kbs = await self.genai.kb.list()
        except RemoteAPIError as e:
            if e.is_rate_limited:
                raise _RateLimited() from e
            logger.error("[RECONCILE] KB lookup by name %s failed: %s", kb_name, e)
            return "unknown", None
        for kb in kbs:
            if kb.get("name") == kb_name and resource_id(kb):
                logger.info("[RECONCILE] Adopted KB %s by name %s", resource_id(kb), kb_name)
                return "adopted", resource_id(kb)
        return "none", None


def _live_agent_values(agent: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "agentId": resource_id(agent),
        "agentName": agent.get("name"),
        "endpoint": agent_endpoint(agent),
        "modelName": agent_model_name(agent),
    }
