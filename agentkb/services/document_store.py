"""
CouchDB / Cloudant document store over its HTTP API.

Each document carries a ``_rev`` token; a save with a stale ``_rev`` is
rejected with 409 and surfaces as ``DocumentConflictError``. Rate limiting
(429, common on Cloudant's lite plan) is retried here with exponential
backoff, and a missing database is created on first use.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx

from agentkb.errors import DocumentConflictError, DocumentStoreError

logger = logging.getLogger(__name__)

RATE_LIMIT_RETRIES = 3
RATE_LIMIT_BASE_DELAY = 1.0
RATE_LIMIT_MAX_DELAY = 30.0


class DocumentStore:
    def __init__(
        self,
        url: str,
        username: str = "",
        password: str = "",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        auth = httpx.BasicAuth(username, password) if username else None
        self._http = httpx.AsyncClient(
            base_url=url.rstrip("/"),
            auth=auth,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings) -> "DocumentStore":
        return cls(
            settings.couchdb_url,
            settings.couchdb_username,
            settings.couchdb_password,
            settings.couchdb_timeout,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        delay = RATE_LIMIT_BASE_DELAY
        for attempt in range(RATE_LIMIT_RETRIES + 1):
            try:
                resp = await self._http.request(method, path, **kwargs)
            except httpx.HTTPError as e:
                raise DocumentStoreError(f"{method} {path} failed: {e}") from e
            if resp.status_code != 429 or attempt == RATE_LIMIT_RETRIES:
                return resp
            logger.warning("[DOCSTORE] Rate limited on %s %s, retrying in %.1fs", method, path, delay)
            await self._sleep(delay)
            delay = min(delay * 2, RATE_LIMIT_MAX_DELAY)
        return resp

    @staticmethod
    def _raise_for(resp: httpx.Response, action: str) -> None:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        error = body.get("error") if isinstance(body, dict) else None
        reason = body.get("reason") if isinstance(body, dict) else None
        message = f"{action}: {resp.status_code} {error or ''} {reason or ''}".strip()
        if resp.status_code == 409 or error == "conflict":
            raise DocumentConflictError(message, resp.status_code, error)
        raise DocumentStoreError(message, resp.status_code, error)

    @staticmethod
    def _db_missing(resp: httpx.Response) -> bool:
        if resp.status_code != 404:
            return False
        try:
            body = resp.json()
        except ValueError:
            return False
        return isinstance(body, dict) and "does not exist" in str(body.get("reason", "")).lower()

    async def create_database(self, db: str) -> None:
        resp = await self._request("PUT", f"/{quote(db, safe='')}")
        if resp.status_code in (201, 202, 412):
            if resp.status_code != 412:
                logger.info("[DOCSTORE] Created database %s", db)
            return
        self._raise_for(resp, f"create database {db}")

    async def get(self, db: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a document; ``None`` when it (or its database) does not exist."""
        resp = await self._request("GET", f"/{quote(db, safe='')}/{quote(doc_id, safe='')}")
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            self._raise_for(resp, f"get {db}/{doc_id}")
        return resp.json()

    async def save(self, db: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        """Create or update ``doc`` (must carry ``_id``; ``_rev`` for updates).

        On success the new revision is written back into ``doc`` and the
        document is returned.
        """
        doc_id = doc.get("_id")
        if not doc_id:
            raise DocumentStoreError("Document must have an _id")
        path = f"/{quote(db, safe='')}/{quote(doc_id, safe='')}"

        resp = await self._request("PUT", path, json=doc)
        if self._db_missing(resp):
            await self.create_database(db)
            resp = await self._request("PUT", path, json=doc)
        if resp.status_code >= 400:
            self._raise_for(resp, f"save {db}/{doc_id}")

        body = resp.json()
        if isinstance(body, dict) and body.get("rev"):
            doc["_rev"] = body["rev"]
        return doc

    async def delete_document(self, db: str, doc_id: str) -> bool:
        """Delete the current revision. Returns False if the document was already gone."""
        doc = await self.get(db, doc_id)
        if doc is None:
            return False
        resp = await self._request(
            "DELETE",
            f"/{quote(db, safe='')}/{quote(doc_id, safe='')}",
            params={"rev": doc["_rev"]},
        )
        if resp.status_code == 404:
            return False
        if resp.status_code >= 400:
            self._raise_for(resp, f"delete {db}/{doc_id}")
        return True

    async def find_documents(self, db: str, selector: Dict[str, Any], limit: int = 1000) -> List[dict]:
        """Mango query."""
        resp = await self._request(
            "POST", f"/{quote(db, safe='')}/_find", json={"selector": selector, "limit": limit}
        )
        if resp.status_code == 404:
            return []
        if resp.status_code >= 400:
            self._raise_for(resp, f"find in {db}")
        return resp.json().get("docs", [])

    async def get_all_documents(self, db: str) -> List[dict]:
        """Every non-design document in ``db``."""
        resp = await self._request(
            "GET", f"/{quote(db, safe='')}/_all_docs", params={"include_docs": "true"}
        )
        if resp.status_code == 404:
            return []
        if resp.status_code >= 400:
            self._raise_for(resp, f"list {db}")
        rows = resp.json().get("rows", [])
        return [
            row["doc"]
            for row in rows
            if row.get("doc") and not str(row.get("id", "")).startswith("_design/")
        ]
