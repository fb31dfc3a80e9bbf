"""
HTTP clients exercised against ``httpx.MockTransport``.
"""

import json

import httpx
import pytest

from agentkb.errors import DocumentConflictError, DocumentStoreError, RemoteAPIError
from agentkb.services.document_store import DocumentStore
from agentkb.services.genai_client import GenAIClient, resource_id


class Recorder:
    """Route handler that records requests and answers from a table."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        answer = self.routes.get(key)
        if answer is None:
            return httpx.Response(404, json={"id": "not_found", "message": "resource not found"})
        if callable(answer):
            return answer(request)
        if isinstance(answer, list):
            answer = answer.pop(0) if len(answer) > 1 else answer[0]
        status, body = answer
        return httpx.Response(status, json=body)

    def body(self, index=-1):
        return json.loads(self.requests[index].content)


def genai_with(routes):
    recorder = Recorder(routes)
    client = GenAIClient("do-token", transport=httpx.MockTransport(recorder))
    return client, recorder


class TestGenAIClient:
    @pytest.mark.asyncio
    async def test_create_agent_body(self):
        client, rec = genai_with({("POST", "/v2/gen-ai/agents"): (200, {"agent": {"uuid": "a-1", "name": "x"}})})

        agent = await client.agent.create(
            name="alice-agent-20260301-093000",
            model_id="m-1",
            project_id="p-1",
            instruction="Be precise.",
            temperature=0.0,
            retrieval_method="RETRIEVAL_METHOD_NONE",
        )

        assert agent["uuid"] == "a-1"
        body = rec.body()
        assert body["model_uuid"] == "m-1"
        assert body["region"] == "tor1"
        assert body["temperature"] == 0.0
        assert "top_p" not in body
        assert rec.requests[0].headers["Authorization"] == "Bearer do-token"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_not_found_is_classified(self):
        client, _ = genai_with({})
        with pytest.raises(RemoteAPIError) as exc_info:
            await client.agent.get("missing")
        assert exc_info.value.is_not_found
        assert exc_info.value.message == "resource not found"

    @pytest.mark.asyncio
    async def test_plain_text_error_body(self):
        client, _ = genai_with({
            ("GET", "/v2/gen-ai/agents"): lambda r: httpx.Response(429, text="Too Many Requests"),
        })
        with pytest.raises(RemoteAPIError) as exc_info:
            await client.agent.list()
        assert exc_info.value.is_rate_limited

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        def boom(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = GenAIClient("t", transport=httpx.MockTransport(boom))
        with pytest.raises(RemoteAPIError) as exc_info:
            await client.kb.list()
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"data": {"agent": {"uuid": "a-1"}}},
            {"agent": {"uuid": "a-1"}},
            {"uuid": "a-1"},
        ],
    )
    async def test_agent_envelopes(self, payload):
        client, _ = genai_with({("GET", "/v2/gen-ai/agents/a-1"): (200, payload)})
        assert resource_id(await client.agent.get("a-1")) == "a-1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"knowledge_base_data_sources": [{"uuid": "ds-1"}]},
            {"data": {"data_sources": [{"uuid": "ds-1"}]}},
            {"datasources": [{"uuid": "ds-1"}]},
        ],
    )
    async def test_data_source_envelopes(self, payload):
        client, _ = genai_with({("GET", "/v2/gen-ai/knowledge_bases/kb-1/data_sources"): (200, payload)})
        assert [resource_id(ds) for ds in await client.kb.list_data_sources("kb-1")] == ["ds-1"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"api_key_info": {"secret_key": "sk-1"}},
            {"api_key": {"key": "sk-1"}},
            {"key": "sk-1"},
            {"data": {"key": "sk-1"}},
        ],
    )
    async def test_api_key_variants(self, payload):
        client, _ = genai_with({("POST", "/v2/gen-ai/agents/a-1/api_keys"): (200, payload)})
        assert await client.agent.create_api_key("a-1") == "sk-1"

    @pytest.mark.asyncio
    async def test_api_key_missing(self):
        client, _ = genai_with({("POST", "/v2/gen-ai/agents/a-1/api_keys"): (200, {"api_key_info": {}})})
        assert await client.agent.create_api_key("a-1") is None

    @pytest.mark.asyncio
    async def test_start_indexing_body(self):
        client, rec = genai_with({("POST", "/v2/gen-ai/indexing_jobs"): (200, {"job": {"uuid": "j-1"}})})

        job = await client.indexing.start_global("kb-1", "ds-1")

        assert job["uuid"] == "j-1"
        assert rec.body() == {"knowledge_base_uuid": "kb-1", "data_source_uuids": ["ds-1"]}

    @pytest.mark.asyncio
    async def test_empty_delete_response(self):
        client, _ = genai_with({
            ("DELETE", "/v2/gen-ai/agents/a-1"): lambda r: httpx.Response(204),
        })
        assert await client.agent.delete("a-1") == {"deleted": True}


class _Sleeps:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def store_with(routes, sleep=None):
    recorder = Recorder(routes)
    store = DocumentStore(
        "http://couch.test", "admin", "secret",
        transport=httpx.MockTransport(recorder),
        sleep=sleep or _Sleeps(),
    )
    return store, recorder


class TestDocumentStore:
    @pytest.mark.asyncio
    async def test_missing_document(self):
        store, _ = store_with({("GET", "/maia_users/alice"): (404, {"error": "not_found", "reason": "missing"})})
        assert await store.get("maia_users", "alice") is None

    @pytest.mark.asyncio
    async def test_save_writes_back_revision(self):
        store, rec = store_with({("PUT", "/maia_users/alice"): (201, {"ok": True, "id": "alice", "rev": "2-b"})})

        doc = await store.save("maia_users", {"_id": "alice", "_rev": "1-a", "kbName": "k"})

        assert doc["_rev"] == "2-b"
        assert rec.body()["_rev"] == "1-a"

    @pytest.mark.asyncio
    async def test_conflict(self):
        store, _ = store_with({
            ("PUT", "/maia_users/alice"): (409, {"error": "conflict", "reason": "Document update conflict."}),
        })
        with pytest.raises(DocumentConflictError):
            await store.save("maia_users", {"_id": "alice", "_rev": "1-a"})

    @pytest.mark.asyncio
    async def test_rate_limit_backoff(self):
        sleeps = _Sleeps()
        store, rec = store_with(
            {("GET", "/maia_users/alice"): [
                (429, {"error": "too_many_requests"}),
                (429, {"error": "too_many_requests"}),
                (200, {"_id": "alice", "_rev": "1-a"}),
            ]},
            sleep=sleeps,
        )

        doc = await store.get("maia_users", "alice")

        assert doc["_id"] == "alice"
        assert sleeps.delays == [1.0, 2.0]
        assert len(rec.requests) == 3

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted(self):
        store, rec = store_with({("GET", "/maia_users/alice"): (429, {"error": "too_many_requests"})})
        with pytest.raises(DocumentStoreError) as exc_info:
            await store.get("maia_users", "alice")
        assert exc_info.value.status_code == 429
        assert len(rec.requests) == 4

    @pytest.mark.asyncio
    async def test_database_created_on_first_save(self):
        store, rec = store_with({
            ("PUT", "/maia_users/alice"): [
                (404, {"error": "not_found", "reason": "Database does not exist."}),
                (201, {"ok": True, "rev": "1-a"}),
            ],
            ("PUT", "/maia_users"): (201, {"ok": True}),
        })

        doc = await store.save("maia_users", {"_id": "alice"})

        assert doc["_rev"] == "1-a"
        assert [(r.method, r.url.path) for r in rec.requests] == [
            ("PUT", "/maia_users/alice"),
            ("PUT", "/maia_users"),
            ("PUT", "/maia_users/alice"),
        ]

    @pytest.mark.asyncio
    async def test_all_documents_skips_design_docs(self):
        store, _ = store_with({("GET", "/maia_users/_all_docs"): (200, {"rows": [
            {"id": "_design/users", "doc": {"_id": "_design/users"}},
            {"id": "alice", "doc": {"_id": "alice"}},
            {"id": "deleted"},
        ]})})

        docs = await store.get_all_documents("maia_users")

        assert [d["_id"] for d in docs] == ["alice"]

    @pytest.mark.asyncio
    async def test_delete_uses_current_revision(self):
        store, rec = store_with({
            ("GET", "/maia_users/alice"): (200, {"_id": "alice", "_rev": "3-c"}),
            ("DELETE", "/maia_users/alice"): (200, {"ok": True}),
        })

        assert await store.delete_document("maia_users", "alice") is True
        assert rec.requests[-1].url.params["rev"] == "3-c"

    @pytest.mark.asyncio
    async def test_find(self):
        store, rec = store_with({("POST", "/maia_users/_find"): (200, {"docs": [{"_id": "alice"}]})})

        docs = await store.find_documents("maia_users", {"provisioned": True})

        assert docs == [{"_id": "alice"}]
        assert rec.body()["selector"] == {"provisioned": True}
