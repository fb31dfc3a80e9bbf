"""
Conflict-safe updates for user documents.

Every writer (HTTP handlers, the reconciler, both background orchestrators)
goes through ``update_document``: re-read the latest revision, apply the
update, save, and on a stale-revision conflict start over. The update is
either a replacement dict or a pure function ``latest -> partial | None``.
"""

import asyncio
import copy
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from agentkb.errors import DocumentConflictError, DocumentNotFoundError

logger = logging.getLogger(__name__)

Transform = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]
Update = Union[Dict[str, Any], Transform]


def _unchanged(latest: Dict[str, Any], partial: Dict[str, Any]) -> bool:
    return all(key in latest and latest[key] == value for key, value in partial.items())


async def update_document(
    store,
    db: str,
    doc_id: str,
    update: Update,
    max_attempts: int = 3,
    base_delay: float = 0.15,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Dict[str, Any]:
    """Apply ``update`` to the latest revision of ``doc_id`` and save it.

    A transform returning ``None`` (or a partial identical to what is stored)
    performs no write. Raises ``DocumentConflictError`` once ``max_attempts``
    saves have all hit a conflict, and ``DocumentNotFoundError`` when a
    transform is given for a document that does not exist.
    """
    last_error: Optional[DocumentConflictError] = None
    delay = base_delay

    for attempt in range(1, max_attempts + 1):
        latest = await store.get(db, doc_id)

        if callable(update):
            if latest is None:
                raise DocumentNotFoundError(f"{db}/{doc_id} not found", 404, "not_found")
            partial = update(copy.deepcopy(latest))
            if not partial or _unchanged(latest, partial):
                return latest
            candidate = {**latest, **partial}
        else:
            candidate = {**update, "_id": doc_id}
            if latest is not None:
                candidate["_rev"] = latest["_rev"]
            else:
                candidate.pop("_rev", None)

        try:
            return await store.save(db, candidate)
        except DocumentConflictError as e:
            last_error = e
            logger.warning(
                "[DOCSTORE] Conflict saving %s/%s (attempt %d/%d)", db, doc_id, attempt, max_attempts
            )
            if attempt < max_attempts:
                await sleep(delay)
                delay *= 2

    raise DocumentConflictError(
        f"Gave up saving {db}/{doc_id} after {max_attempts} conflicting attempts",
        409,
        "conflict",
    ) from last_error


class UserStore:
    """User documents in the users database, keyed by user id."""

    def __init__(
        self,
        store,
        db: str = "maia_users",
        max_attempts: int = 3,
        base_delay: float = 0.15,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.db = db
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep

    async def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.store.get(self.db, user_id)

    async def update(self, user_id: str, update: Update) -> Dict[str, Any]:
        return await update_document(
            self.store,
            self.db,
            user_id,
            update,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            sleep=self._sleep,
        )

    async def delete(self, user_id: str) -> bool:
        return await self.store.delete_document(self.db, user_id)

    async def find(self, selector: Dict[str, Any]) -> List[dict]:
        return await self.store.find_documents(self.db, selector)

    async def all(self) -> List[dict]:
        return await self.store.get_all_documents(self.db)
