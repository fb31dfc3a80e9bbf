"""
Provisioning scenarios run against the in-memory platform with virtual time.
"""

import re

import httpx
import pytest
from openai import AuthenticationError

from agentkb.errors import ProvisioningAuthError, ProvisioningError, RemoteAPIError
from agentkb.orchestration.provisioning import generate_editor_token

from tests.fakes import FakeChatFactory


def seed_alice(documents, **fields):
    doc = {"_id": "alice", "provisionToken": "tok-alice-1", "workflowStage": "approved", "files": []}
    doc.update(fields)
    documents.seed(doc)


async def provision_and_wait(services, user_id="alice", token="tok-alice-1"):
    entry = await services.provisioner.provision(user_id, token)
    task = services.provision_registry.active_task(user_id)
    if task is not None:
        await task
    return services.provision_registry.get(user_id) or entry


class TestProvisionHappyPath:
    @pytest.mark.asyncio
    async def test_completes_and_records_agent(self, services, genai, documents, s3, clock):
        seed_alice(documents)

        entry = await provision_and_wait(services)

        assert entry.status == "completed", entry.error
        doc = documents.doc("alice")
        assert re.match(r"^alice-agent-\d{8}-\d{6}$", doc["assignedAgentName"])
        assert doc["assignedAgentId"] in genai.agents
        assert doc["agentEndpoint"].endswith("/api/v1")
        assert doc["agentApiKey"] == "sk-agent-1"
        assert doc["provisioned"] is True
        assert doc["provisionToken"] is None
        assert doc["pendingAgentName"] is None
        assert doc["workflowStage"] == "agent_deployed"
        assert doc["agentProfiles"]["default"]["apiKey"] == "sk-agent-1"
        assert re.fullmatch(r"[0-9a-f]{32}", doc["currentMedicationsToken"])
        assert doc["currentMedicationsTokenExpiresAt"].startswith("2026-03-08T")

        agent = genai.agents[doc["assignedAgentId"]]
        assert agent["temperature"] == pytest.approx(0.0)
        assert agent["retrieval_method"] == "RETRIEVAL_METHOD_NONE"
        assert clock.sleeps == [30.0]

        kb_name = doc["kbName"]
        assert re.match(r"^alice-kb-\d{14}$", kb_name)
        assert {"alice/.keep", "alice/archived/.keep", f"alice/{kb_name}/.keep"} <= set(s3.keys())

    @pytest.mark.asyncio
    async def test_steps_are_reported(self, services, documents):
        seed_alice(documents)

        entry = await provision_and_wait(services)

        assert entry.current_step == "extras"
        assert "deployment" in entry.completed_steps
        assert entry.result["kbName"] == documents.doc("alice")["kbName"]

    @pytest.mark.asyncio
    async def test_token_is_single_use(self, services, documents):
        seed_alice(documents)
        await provision_and_wait(services)

        with pytest.raises(ProvisioningAuthError):
            await services.provisioner.provision("alice", "tok-alice-1")

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_run(self, services, genai, documents):
        seed_alice(documents)

        first = await services.provisioner.provision("alice", "tok-alice-1")
        second = await services.provisioner.provision("alice", "tok-alice-1")
        await services.provision_registry.active_task("alice")

        assert first is second
        assert len(genai.agent.created) == 1

    @pytest.mark.asyncio
    async def test_adopts_agent_found_by_name(self, services, genai, documents):
        existing = genai.add_agent("alice-agent-20260228-101500")
        seed_alice(documents)

        entry = await provision_and_wait(services)

        assert entry.status == "completed"
        assert genai.agent.created == []
        assert documents.doc("alice")["assignedAgentId"] == existing["uuid"]


class TestProvisionValidation:
    @pytest.mark.asyncio
    async def test_wrong_token(self, services, documents):
        seed_alice(documents)
        with pytest.raises(ProvisioningAuthError):
            await services.provisioner.provision("alice", "not-the-token")
        assert services.provision_registry.get("alice") is None

    @pytest.mark.asyncio
    async def test_unknown_user(self, services):
        with pytest.raises(ProvisioningError):
            await services.provisioner.provision("nobody", "anything")

    @pytest.mark.asyncio
    async def test_no_model_available(self, services, genai, documents, settings):
        settings.do_model_id = None
        genai.models = []
        seed_alice(documents)

        entry = await provision_and_wait(services)

        assert entry.status == "failed"
        assert "model" in entry.error
        assert entry.details["retryable"] is False

    @pytest.mark.asyncio
    async def test_rate_limited_creation_is_retryable(self, services, genai, documents):
        genai.errors["agent.create"] = RemoteAPIError(429, "Too many requests")
        seed_alice(documents)

        entry = await provision_and_wait(services)

        assert entry.status == "failed"
        assert "Agent creation failed" in entry.error
        assert entry.details["retryable"] is True

    @pytest.mark.asyncio
    async def test_unexpected_error_is_classified(self, services, documents, monkeypatch):
        async def throttled():
            raise RuntimeError("upstream said: rate limit exceeded")

        monkeypatch.setattr(services.resolver, "resolve_model_and_project", throttled)
        seed_alice(documents)

        entry = await provision_and_wait(services)

        assert entry.status == "failed"
        assert entry.details["retryable"] is True


class TestDeployment:
    @pytest.mark.asyncio
    async def test_early_failure_is_rechecked(self, services, genai, documents, clock):
        genai.agent.deployment_statuses = ["STATUS_FAILED", "STATUS_RUNNING"]
        seed_alice(documents)

        entry = await provision_and_wait(services)

        assert entry.status == "completed", entry.error
        assert clock.sleeps == [120.0]

    @pytest.mark.asyncio
    async def test_failure_after_window_is_final(self, services, genai, documents, clock):
        genai.agent.deployment_statuses = ["STATUS_WAITING_FOR_DEPLOYMENT"] * 5 + ["STATUS_FAILED"]
        seed_alice(documents)

        entry = await provision_and_wait(services)

        assert entry.status == "failed"
        assert "STATUS_FAILED" in entry.error
        assert clock.sleeps == [30.0] * 5
        doc = documents.doc("alice")
        assert not doc.get("provisioned")
        assert doc["provisionToken"] == "tok-alice-1"

    @pytest.mark.asyncio
    async def test_failure_persisting_after_recheck(self, services, genai, documents):
        genai.agent.deployment_statuses = ["STATUS_FAILED"]
        seed_alice(documents)

        entry = await provision_and_wait(services)

        assert entry.status == "failed"
        assert "deployment failed" in entry.error

    @pytest.mark.asyncio
    async def test_missing_api_key_fails(self, services, genai, documents):
        genai.agent.api_key_available = False
        seed_alice(documents)

        entry = await provision_and_wait(services)

        assert entry.status == "failed"
        assert "API key" in entry.error
        assert documents.doc("alice").get("provisioned") is not True

    @pytest.mark.asyncio
    async def test_temperature_is_reasserted(self, services, genai, documents):
        genai.agent.temperature_on_create = 0.7
        seed_alice(documents)

        entry = await provision_and_wait(services)

        agent = genai.agents[documents.doc("alice")["assignedAgentId"]]
        assert entry.status == "completed"
        assert agent["temperature"] == pytest.approx(0.0)
        assert genai.agent.updates[0]["temperature"] == 0.0

    @pytest.mark.asyncio
    async def test_unapplied_temperature_is_a_warning(self, services, genai, documents):
        genai.agent.temperature_on_create = 0.7
        genai.agent.sticky_temperature_updates = 2
        seed_alice(documents)

        entry = await provision_and_wait(services)

        assert entry.status == "completed"
        assert len(genai.agent.updates) == 2
        assert any("did not fully apply" in line for line in entry.log)


class TestInitialDocument:
    @pytest.mark.asyncio
    async def test_current_medications_prefilled(self, services, documents, s3, chat_factory):
        s3.put("alice/intake.txt", b"Patient takes aspirin 81 mg every morning.")
        seed_alice(documents, initialFile={"fileName": "intake.txt", "bucketKey": "alice/intake.txt"})

        entry = await provision_and_wait(services)

        assert entry.status == "completed"
        assert documents.doc("alice")["currentMedications"] == "Aspirin 81 mg daily"
        chat = chat_factory.instances[0]
        assert chat.api_key == "sk-agent-1"
        assert "aspirin" in chat.prompts[0]
        assert chat.closed

    @pytest.mark.asyncio
    async def test_rejected_key_is_replaced(self, settings, genai, documents, storage, clock, s3):
        from agentkb.container import Services

        rejected = AuthenticationError(
            "Invalid API key",
            response=httpx.Response(401, request=httpx.Request("POST", "https://agent.test/api/v1/chat/completions")),
            body=None,
        )
        factory = FakeChatFactory([rejected, "Metformin 500 mg twice daily"])
        services = Services.create(settings, genai, documents, storage, clock=clock, chat_factory=factory)
        s3.put("alice/intake.txt", b"Metformin 500 mg BID")
        seed_alice(documents, initialFile={"fileName": "intake.txt", "bucketKey": "alice/intake.txt"})

        entry = await provision_and_wait(services)

        doc = documents.doc("alice")
        assert entry.status == "completed"
        assert [c.api_key for c in factory.instances] == ["sk-agent-1", "sk-agent-2"]
        assert doc["agentApiKey"] == "sk-agent-2"
        assert doc["currentMedications"] == "Metformin 500 mg twice daily"

    @pytest.mark.asyncio
    async def test_summary_failure_does_not_fail_provisioning(self, services, documents, chat_factory):
        chat_factory.replies = [RuntimeError("endpoint unavailable")]
        seed_alice(documents, initialFile={"fileName": "intake.txt", "bucketKey": "alice/missing.txt"})

        entry = await provision_and_wait(services)

        assert entry.status == "completed"
        assert "currentMedications" not in documents.doc("alice")


class TestEditorToken:
    def test_expiry(self, clock):
        fields = generate_editor_token(7, clock.now())
        assert len(fields["currentMedicationsToken"]) == 32
        assert fields["currentMedicationsTokenExpiresAt"] == "2026-03-08T09:30:00Z"
