"""
HTTP surface tests, driven through httpx against the ASGI app.
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from agentkb.errors import RemoteAPIError
from agentkb.main import create_app

from tests.test_indexing import KB_NAME, KB_PREFIX, seed_bob


@pytest_asyncio.fixture
async def client(services):
    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await services.provision_registry.shutdown()
    await services.index_registry.shutdown()


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["provisioning"]["name"] == "provisioning"
        assert data["indexing"]["total_entries"] == 0


class TestReconcileEndpoint:
    @pytest.mark.asyncio
    async def test_unknown_user(self, client):
        resp = await client.get("/api/users/nobody/reconcile")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_reports_agent_and_kb(self, client, genai, documents, s3):
        agent = seed_bob(genai, documents, s3)

        resp = await client.get("/api/users/bob/reconcile")

        assert resp.status_code == 200
        data = resp.json()
        assert data["has_agent"] is True
        assert data["agent_id"] == agent["uuid"]
        assert data["kb_status"] == "none"
        assert data["kb_name"] == KB_NAME


class TestProvisionEndpoints:
    @pytest.mark.asyncio
    async def test_wrong_token_is_forbidden(self, client, documents):
        documents.seed({"_id": "alice", "provisionToken": "tok-alice-1"})
        resp = await client.post("/api/users/alice/provision", json={"token": "guess"})
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_user(self, client):
        resp = await client.post("/api/users/nobody/provision", json={"token": "x"})
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_empty_token_is_rejected(self, client):
        resp = await client.post("/api/users/alice/provision", json={"token": ""})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_accepted_then_completed(self, client, services, documents):
        documents.seed({"_id": "alice", "provisionToken": "tok-alice-1", "workflowStage": "approved"})

        resp = await client.post("/api/users/alice/provision", json={"token": "tok-alice-1"})
        assert resp.status_code == 202
        assert resp.json()["status"] == "in_progress"

        await services.provision_registry.active_task("alice")
        status = (await client.get("/api/users/alice/provision/status")).json()
        assert status["status"] == "completed"
        assert status["result"]["agentName"].startswith("alice-agent-")
        assert status["log"]

    @pytest.mark.asyncio
    async def test_failed_status_reports_retryable(self, client, services, genai, documents):
        documents.seed({"_id": "alice", "provisionToken": "tok-alice-1", "workflowStage": "approved"})
        genai.errors["agent.create"] = RemoteAPIError(429, "Too many requests")

        await client.post("/api/users/alice/provision", json={"token": "tok-alice-1"})
        await services.provision_registry.active_task("alice")

        status = (await client.get("/api/users/alice/provision/status")).json()
        assert status["status"] == "failed"
        assert status["details"] == {"retryable": True}

    @pytest.mark.asyncio
    async def test_status_without_run(self, client):
        resp = await client.get("/api/users/alice/provision/status")
        assert resp.json()["status"] == "none"


class TestKnowledgeBaseEndpoints:
    @pytest.mark.asyncio
    async def test_index_unknown_user(self, client):
        resp = await client.post("/api/users/nobody/knowledge-base/index")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_index_and_status(self, client, services, genai, documents, s3):
        seed_bob(genai, documents, s3)

        resp = await client.post("/api/users/bob/knowledge-base/index")
        assert resp.status_code == 202

        await services.index_registry.active_task("bob")
        data = (await client.get("/api/users/bob/knowledge-base/status")).json()
        assert data["run"]["status"] == "completed"
        assert data["kb_indexing_status"]["backendCompleted"] is True

    @pytest.mark.asyncio
    async def test_status_unknown_user(self, client):
        resp = await client.get("/api/users/nobody/knowledge-base/status")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_cancel(self, client, genai, documents, s3):
        kb = genai.add_kb(KB_NAME, item_path=KB_PREFIX)
        job = genai.add_job(kb["uuid"])
        documents.seed({"_id": "bob", "kbName": KB_NAME, "kbId": kb["uuid"],
                        "kbIndexingStatus": {"jobId": job["uuid"], "backendCompleted": False}})

        resp = await client.post("/api/users/bob/knowledge-base/cancel")

        assert resp.status_code == 200
        data = resp.json()
        assert data["cancelled"] is True
        assert data["job_id"] == job["uuid"]
        assert data["remote"] == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_remote_error(self, client, genai, documents):
        documents.seed({"_id": "bob", "kbIndexingStatus": {"jobId": "job-1", "backendCompleted": False}})
        genai.errors["indexing.cancel"] = RemoteAPIError(500, "internal error")

        resp = await client.post("/api/users/bob/knowledge-base/cancel", json={"job_id": "job-1"})

        assert resp.status_code == 502


class TestUserEndpoints:
    @pytest.mark.asyncio
    async def test_storage_usage(self, client, s3):
        s3.put("bob/.keep", b"")
        s3.put("bob/a.pdf", b"x" * 1024 * 1024)
        s3.put("bob/archived/b.pdf", b"y" * 512)

        resp = await client.get("/api/users/bob/storage-usage")

        assert resp.status_code == 200
        assert resp.json() == {"user_id": "bob", "total_bytes": 1024 * 1024 + 512, "total_mb": 1.0}

    @pytest.mark.asyncio
    async def test_delete(self, client, genai, documents, s3):
        agent = seed_bob(genai, documents, s3)

        resp = await client.delete("/api/users/bob")

        assert resp.status_code == 200
        data = resp.json()
        assert data["agent_deleted"] is True
        assert data["document_deleted"] is True
        assert agent["uuid"] not in genai.agents
        assert documents.doc("bob") is None
