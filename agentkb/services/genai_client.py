"""
DigitalOcean GenAI API client.

Thin async wrappers around the agent, knowledge-base and indexing-job
endpoints. Every call is a plain request/response; polling and retries live
in the orchestrators. Response envelopes vary between endpoints (and between
API revisions), so each wrapper unwraps the few shapes seen in practice.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from agentkb.errors import RemoteAPIError

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 200


def _first_list(response: Any, *paths: Sequence[str]) -> List[dict]:
    """Return the first list found along ``paths`` (each a tuple of keys)."""
    if isinstance(response, list):
        return response
    if not isinstance(response, dict):
        return []
    for path in paths:
        node: Any = response
        for key in path:
            node = node.get(key) if isinstance(node, dict) else None
            if node is None:
                break
        if isinstance(node, list):
            return node
    return []


def _first_obj(response: Any, *keys: str) -> dict:
    if not isinstance(response, dict):
        return {}
    for key in keys:
        value = response.get(key)
        if isinstance(value, dict):
            return value
    return response


def resource_id(resource: Optional[dict]) -> Optional[str]:
    """UUID of an agent / KB / job / data source regardless of field naming."""
    if not isinstance(resource, dict):
        return None
    for key in ("uuid", "id", "agent_uuid", "agent_id", "knowledge_base_uuid", "job_uuid"):
        value = resource.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class GenAIClient:
    """Authenticated client for ``/v2/gen-ai`` (plus the project endpoints)."""

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.digitalocean.com",
        region: str = "tor1",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.region = region
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
        )
        self.agent = AgentAPI(self)
        self.kb = KnowledgeBaseAPI(self)
        self.indexing = IndexingAPI(self)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def request(
        self,
        path: str,
        method: str = "GET",
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Any:
        try:
            resp = await self._http.request(method, path, json=json, params=params)
        except httpx.TimeoutException as e:
            raise RemoteAPIError(None, f"{method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise RemoteAPIError(None, f"{method} {path} failed: {e}") from e

        if resp.status_code >= 400:
            body: Any
            try:
                body = resp.json()
            except ValueError:
                body = resp.text
            message = body.get("message") if isinstance(body, dict) else None
            raise RemoteAPIError(
                resp.status_code,
                message or (body if isinstance(body, str) and body else resp.reason_phrase),
                body,
            )

        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {}

    # ── Models & projects ────────────────────────────────────

    async def list_models(self, usecases: Optional[str] = None) -> List[dict]:
        params = {"per_page": LIST_PAGE_SIZE}
        if usecases:
            params["usecases"] = usecases
        response = await self.request("/v2/gen-ai/models", params=params)
        return _first_list(response, ("models",), ("data", "models"))

    async def get_default_project(self) -> dict:
        response = await self.request("/v2/projects/default")
        return _first_obj(response, "project")

    async def list_projects(self) -> List[dict]:
        response = await self.request("/v2/projects")
        return _first_list(response, ("projects",), ("data", "projects"))


class AgentAPI:
    def __init__(self, client: GenAIClient):
        self.client = client

    async def list(self) -> List[dict]:
        response = await self.client.request("/v2/gen-ai/agents", params={"per_page": LIST_PAGE_SIZE})
        return _first_list(response, ("agents",), ("data", "agents"))

    async def get(self, agent_id: str) -> dict:
        response = await self.client.request(f"/v2/gen-ai/agents/{agent_id}")
        if isinstance(response, dict) and isinstance(response.get("data"), dict):
            return _first_obj(response["data"], "agent")
        return _first_obj(response, "agent")

    async def create(
        self,
        *,
        name: str,
        model_id: str,
        project_id: str,
        instruction: str = "",
        region: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        k: Optional[int] = None,
        retrieval_method: Optional[str] = None,
    ) -> dict:
        if not name or not model_id or not project_id:
            raise ValueError("name, model_id and project_id are required")

        body: Dict[str, Any] = {
            "name": name,
            "instruction": instruction or "",
            "model_uuid": model_id,
            "project_id": project_id,
            "region": region or self.client.region,
        }
        for key, value in (
            ("max_tokens", max_tokens),
            ("temperature", temperature),
            ("top_p", top_p),
            ("k", k),
            ("retrieval_method", retrieval_method),
        ):
            if value is not None:
                body[key] = value

        response = await self.client.request("/v2/gen-ai/agents", method="POST", json=body)
        return _first_obj(response, "agent", "data")

    async def update(self, agent_id: str, updates: dict) -> dict:
        body = {"uuid": agent_id, **updates}
        response = await self.client.request(f"/v2/gen-ai/agents/{agent_id}", method="PUT", json=body)
        return _first_obj(response, "agent", "data")

    async def delete(self, agent_id: str) -> dict:
        await self.client.request(f"/v2/gen-ai/agents/{agent_id}", method="DELETE")
        return {"deleted": True}

    async def attach_kb(self, agent_id: str, kb_id: str) -> dict:
        response = await self.client.request(
            f"/v2/gen-ai/agents/{agent_id}/knowledge_bases/{kb_id}", method="POST"
        )
        return _first_obj(response, "data")

    async def detach_kb(self, agent_id: str, kb_id: str) -> dict:
        await self.client.request(
            f"/v2/gen-ai/agents/{agent_id}/knowledge_bases/{kb_id}", method="DELETE"
        )
        return {"detached": True}

    async def create_api_key(self, agent_id: str, name: Optional[str] = None) -> Optional[str]:
        """Create an API key for the agent and return the secret (or None)."""
        key_name = name or f"agent-{agent_id}-api-key"
        response = await self.client.request(
            f"/v2/gen-ai/agents/{agent_id}/api_keys",
            method="POST",
            json={"agent_uuid": agent_id, "name": key_name},
        )
        if not isinstance(response, dict):
            return None
        info = response.get("api_key_info") or {}
        legacy = response.get("api_key") or {}
        data = response.get("data") or {}
        api_key = (
            (info.get("secret_key") if isinstance(info, dict) else None)
            or (legacy.get("key") if isinstance(legacy, dict) else None)
            or response.get("key")
            or (data.get("key") if isinstance(data, dict) else None)
        )
        if api_key:
            logger.info("[API KEY] Created API key for agent %s", agent_id)
        else:
            logger.warning("[API KEY] No API key in response for agent %s", agent_id)
        return api_key


class KnowledgeBaseAPI:
    def __init__(self, client: GenAIClient):
        self.client = client

    async def list(self) -> List[dict]:
        response = await self.client.request(
            "/v2/gen-ai/knowledge_bases", params={"per_page": LIST_PAGE_SIZE}
        )
        return _first_list(response, ("knowledge_bases",), ("data", "knowledge_bases"))

    async def get(self, kb_id: str) -> dict:
        response = await self.client.request(f"/v2/gen-ai/knowledge_bases/{kb_id}")
        return _first_obj(response, "knowledge_base", "data")

    async def create(
        self,
        *,
        name: str,
        project_id: str,
        database_id: Optional[str],
        bucket_name: str,
        item_path: str,
        embedding_model_id: Optional[str] = None,
        region: Optional[str] = None,
        description: Optional[str] = None,
    ) -> dict:
        if not name or not project_id:
            raise ValueError("name and project_id are required")

        region = region or self.client.region
        body: Dict[str, Any] = {
            "name": name,
            "description": description or f"{name} description",
            "project_id": project_id,
            "region": region,
            "datasources": [
                {
                    "spaces_data_source": {
                        "bucket_name": bucket_name,
                        "item_path": item_path,
                        "region": region,
                    }
                }
            ],
        }
        if database_id:
            body["database_id"] = database_id
        if embedding_model_id:
            body["embedding_model_uuid"] = embedding_model_id

        response = await self.client.request("/v2/gen-ai/knowledge_bases", method="POST", json=body)
        return _first_obj(response, "knowledge_base", "data")

    async def delete(self, kb_id: str) -> dict:
        await self.client.request(f"/v2/gen-ai/knowledge_bases/{kb_id}", method="DELETE")
        return {"deleted": True}

    async def list_data_sources(self, kb_id: str) -> List[dict]:
        response = await self.client.request(f"/v2/gen-ai/knowledge_bases/{kb_id}/data_sources")
        return _first_list(
            response,
            ("knowledge_base_data_sources",),
            ("data_sources",),
            ("datasources",),
            ("data",),
            ("data", "knowledge_base_data_sources"),
            ("data", "data_sources"),
        )

    async def add_data_source(
        self, kb_id: str, *, bucket_name: str, item_path: str, region: Optional[str] = None
    ) -> dict:
        if not item_path:
            raise ValueError("item_path is required for a data source")
        body = {
            "knowledge_base_uuid": kb_id,
            "spaces_data_source": {
                "bucket_name": bucket_name,
                "item_path": item_path,
                "region": region or self.client.region,
            },
        }
        response = await self.client.request(
            f"/v2/gen-ai/knowledge_bases/{kb_id}/data_sources", method="POST", json=body
        )
        return _first_obj(response, "knowledge_base_data_source", "data_source", "data")

    async def delete_data_source(self, kb_id: str, data_source_id: str) -> dict:
        await self.client.request(
            f"/v2/gen-ai/knowledge_bases/{kb_id}/data_sources/{data_source_id}", method="DELETE"
        )
        return {"deleted": True}


class IndexingAPI:
    def __init__(self, client: GenAIClient):
        self.client = client

    async def start_global(self, kb_id: str, data_source_ids: Sequence[str]) -> dict:
        if isinstance(data_source_ids, str):
            data_source_ids = [data_source_ids]
        response = await self.client.request(
            "/v2/gen-ai/indexing_jobs",
            method="POST",
            json={"knowledge_base_uuid": kb_id, "data_source_uuids": list(data_source_ids)},
        )
        return _first_obj(response, "job", "indexing_job", "data")

    async def get_status(self, job_id: str) -> dict:
        response = await self.client.request(f"/v2/gen-ai/indexing_jobs/{job_id}")
        return _first_obj(response, "job", "indexing_job", "data")

    async def list_for_kb(self, kb_id: str) -> List[dict]:
        """Latest indexing jobs for a KB (the API returns the most recent ~15)."""
        response = await self.client.request(f"/v2/gen-ai/knowledge_bases/{kb_id}/indexing_jobs")
        return _first_list(
            response,
            ("jobs",),
            ("indexing_jobs",),
            ("data",),
            ("data", "jobs"),
            ("data", "indexing_jobs"),
        )

    async def cancel(self, job_id: str) -> dict:
        response = await self.client.request(
            f"/v2/gen-ai/indexing_jobs/{job_id}/cancel", method="PUT", json={"uuid": job_id}
        )
        return _first_obj(response, "job", "data")
