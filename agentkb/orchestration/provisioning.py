"""
Agent Provisioning - first-time creation of a user's agent, end to end.

``provision`` validates the one-time token and starts ``run`` as a detached
task. Phases run strictly in order and each one is skipped when its outcome
already exists (an assigned agent, a stored API key, a KB name), so a failed
run can simply be started again. Progress goes to the provisioning
``StatusRegistry``; the task itself never raises.
"""

import asyncio
import logging
import secrets
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from agentkb.errors import (
    DocumentStoreError,
    ProvisioningAuthError,
    ProvisioningError,
    RemoteAPIError,
    StorageError,
    is_rate_limit_error,
)
from agentkb.logging_config import bind_run_context
from agentkb.orchestration.clock import SystemClock, utc_iso
from agentkb.orchestration.normalize import (
    DeploymentState,
    agent_endpoint,
    agent_model_name,
    deployment_status,
    normalize_deployment_status,
)
from agentkb.orchestration.reconciler import agent_name_pattern, merge_agent_profile
from agentkb.orchestration.resources import (
    find_user_agent,
    get_or_create_agent_api_key,
    recreate_agent_api_key,
)
from agentkb.orchestration.workflow import (
    archived_prefix,
    generate_agent_name,
    generate_kb_name,
    kb_prefix,
    root_prefix,
    stage_advance,
)
from agentkb.services.agent_chat import AgentChatService, AuthenticationError
from agentkb.services.genai_client import resource_id
from agentkb.services.text_extract import extract_text

logger = logging.getLogger(__name__)

PROVISION_STEPS = [
    "resolve_ids",
    "storage",
    "create_agent",
    "deployment",
    "endpoint",
    "configure",
    "api_key",
    "finalize",
    "extras",
]

RETRIEVAL_DISABLED = "RETRIEVAL_METHOD_NONE"
TEMPERATURE_TOLERANCE = 0.01


def generate_editor_token(ttl_days: int, now) -> Dict[str, str]:
    """User-document fields for the scoped current-medications editor token."""
    return {
        "currentMedicationsToken": secrets.token_hex(16),
        "currentMedicationsTokenExpiresAt": utc_iso(now + timedelta(days=ttl_days)),
    }


def _temperature_ok(agent: Optional[Dict[str, Any]], desired: float) -> bool:
    try:
        actual = float((agent or {}).get("temperature"))
    except (TypeError, ValueError):
        return False
    return abs(actual - desired) <= TEMPERATURE_TOLERANCE


class AgentProvisioner:
    def __init__(
        self,
        genai,
        users,
        storage,
        registry,
        reconciler,
        resolver,
        settings,
        clock=None,
        chat_factory: Callable[..., Any] = AgentChatService,
        text_extractor: Callable[[bytes, str], str] = extract_text,
    ):
        self.genai = genai
        self.users = users
        self.storage = storage
        self.registry = registry
        self.reconciler = reconciler
        self.resolver = resolver
        self.settings = settings
        self.clock = clock or SystemClock()
        self.chat_factory = chat_factory
        self.text_extractor = text_extractor

    async def provision(self, user_id: str, token: str):
        """Validate ``token`` and start provisioning in the background.

        Returns the registry entry to poll. A run already in progress for
        the user is returned instead of starting a second one.
        """
        doc = await self.users.get(user_id)
        if doc is None:
            raise ProvisioningError(f"User {user_id} not found")
        expected = doc.get("provisionToken")
        if not token or not expected or not secrets.compare_digest(str(token), str(expected)):
            raise ProvisioningAuthError("Invalid or already used provisioning token")

        if self.registry.active_task(user_id) is not None:
            logger.info("[PROVISION] Run already in progress for %s", user_id)
            return self.registry.get(user_id)

        entry = self.registry.start(user_id, PROVISION_STEPS)
        self.registry.spawn(user_id, self.run(user_id))
        return entry

    async def run(self, user_id: str) -> Optional[Dict[str, Any]]:
        bind_run_context(user_id)
        entry = self.registry.get(user_id)
        if entry is None or entry.is_finished:
            self.registry.start(user_id, PROVISION_STEPS)

        try:
            result = await self._provision(user_id)
        except ProvisioningError as e:
            logger.error("[PROVISION] Failed for %s: %s", user_id, e)
            self.registry.update(user_id, retryable=e.retryable)
            self.registry.fail(user_id, str(e))
            return None
        except asyncio.CancelledError:
            self.registry.fail(user_id, "Provisioning cancelled")
            raise
        except Exception as e:
            logger.exception("[PROVISION] Unexpected error for %s", user_id)
            self.registry.update(user_id, retryable=is_rate_limit_error(e))
            self.registry.fail(user_id, str(e) or e.__class__.__name__)
            return None

        self.registry.complete(user_id, result)
        logger.info("[PROVISION] Completed for %s (agent %s)", user_id, result["agentId"])
        return result

    def _step(self, user_id: str, step: str, message: str) -> None:
        logger.info("[PROVISION] %s: %s", user_id, message)
        self.registry.step(user_id, step, message)

    def _log(self, user_id: str, message: str, level: int = logging.INFO) -> None:
        logger.log(level, "[PROVISION] %s: %s", user_id, message)
        self.registry.log(user_id, message)

    async def _provision(self, user_id: str) -> Dict[str, Any]:
        self._step(user_id, "resolve_ids", "Resolving model and project identifiers")
        model_id, project_id = await self.resolver.resolve_model_and_project()
        if not model_id or not project_id:
            raise ProvisioningError("No valid model or project identifier available", retryable=False)

        self._step(user_id, "storage", "Preparing storage folders")
        kb_name = await self._ensure_storage(user_id)

        self._step(user_id, "create_agent", "Creating agent")
        agent = await self._ensure_agent(user_id, model_id, project_id)
        agent_id = resource_id(agent)
        agent_name = agent.get("name")

        self._step(user_id, "deployment", "Waiting for agent deployment")
        agent = await self._wait_for_deployment(user_id, agent_id)

        self._step(user_id, "endpoint", "Waiting for agent endpoint")
        agent = await self._wait_for_endpoint(user_id, agent_id, agent)
        endpoint = agent_endpoint(agent)

        self._step(user_id, "configure", "Applying agent configuration")
        agent = await self._reassert_config(user_id, agent_id, agent_name, agent)
        model_name = agent_model_name(agent)

        self._step(user_id, "api_key", "Issuing agent API key")
        api_key = await self._issue_api_key(user_id, agent_id)

        self._step(user_id, "finalize", "Saving agent details")
        values = {
            "agentId": agent_id,
            "agentName": agent_name,
            "endpoint": endpoint,
            "modelName": model_name,
            "apiKey": api_key,
        }
        await self._finalize(user_id, values)

        self._step(user_id, "extras", "Preparing optional features")
        await self._side_effects(user_id, values)

        return {
            "agentId": agent_id,
            "agentName": agent_name,
            "endpoint": endpoint,
            "modelName": model_name,
            "kbName": kb_name,
        }

    async def _ensure_storage(self, user_id: str) -> str:
        stamp = self.clock.now()

        def assign_kb_name(latest):
            if latest.get("kbName"):
                return None
            return {"kbName": generate_kb_name(user_id, stamp)}

        try:
            doc = await self.users.update(user_id, assign_kb_name)
        except DocumentStoreError as e:
            raise ProvisioningError(f"Could not assign KB name: {e}", retryable=True) from e
        kb_name = doc["kbName"]

        try:
            for prefix in (root_prefix(user_id), archived_prefix(user_id), kb_prefix(user_id, kb_name)):
                if await self.storage.ensure_placeholder(prefix):
                    self._log(user_id, f"Created folder {prefix}")
        except (StorageError, BotoCoreError, ClientError) as e:
            raise ProvisioningError(f"Storage setup failed: {e}", retryable=True) from e
        return kb_name

    async def _ensure_agent(self, user_id: str, model_id: str, project_id: str) -> Dict[str, Any]:
        doc = await self.users.get(user_id) or {}
        pattern = agent_name_pattern(user_id)

        existing_id = doc.get("assignedAgentId")
        if existing_id:
            try:
                agent = await self.genai.agent.get(existing_id)
            except RemoteAPIError as e:
                if not e.is_not_found:
                    raise ProvisioningError(f"Could not check existing agent: {e}", retryable=True) from e
                agent = None
            if agent and pattern.match(agent.get("name") or ""):
                self._log(user_id, f"Reusing assigned agent {existing_id}")
                return agent

        try:
            adopted = await find_user_agent(self.genai, user_id)
        except RemoteAPIError as e:
            self._log(user_id, f"Agent lookup by name failed: {e}", logging.WARNING)
            adopted = None
        if adopted:
            self._log(user_id, f"Adopting existing agent {adopted.get('name')}")
            await self._record_agent(user_id, resource_id(adopted), adopted.get("name"))
            return adopted

        name = doc.get("pendingAgentName") or generate_agent_name(user_id, self.clock.now())
        if not doc.get("pendingAgentName"):
            await self.users.update(
                user_id, lambda latest: None if latest.get("pendingAgentName") else {"pendingAgentName": name}
            )

        try:
            agent = await self.genai.agent.create(
                name=name,
                model_id=model_id,
                project_id=project_id,
                instruction=self.settings.load_instruction(),
                region=self.settings.do_region,
                max_tokens=self.settings.agent_max_tokens,
                temperature=self.settings.agent_temperature,
                top_p=self.settings.agent_top_p,
                k=self.settings.agent_k,
                retrieval_method=RETRIEVAL_DISABLED,
            )
        except RemoteAPIError as e:
            raise ProvisioningError(f"Agent creation failed: {e}", retryable=e.is_rate_limited) from e

        agent_id = resource_id(agent)
        if not agent_id:
            raise ProvisioningError("Agent creation returned no identifier")
        agent.setdefault("name", name)
        self._log(user_id, f"Created agent {name} ({agent_id})")
        await self._record_agent(user_id, agent_id, agent["name"])
        return agent

    async def _record_agent(self, user_id: str, agent_id: str, name: Optional[str]) -> None:
        await self.users.update(
            user_id, lambda latest: {"assignedAgentId": agent_id, "assignedAgentName": name}
        )
        self.reconciler.invalidate(user_id, agent_id=agent_id)

    async def _poll_agent(self, agent_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.genai.agent.get(agent_id)
        except RemoteAPIError as e:
            if e.is_not_found:
                raise ProvisioningError(f"Agent {agent_id} disappeared during provisioning") from e
            logger.warning("[PROVISION] Status check for agent %s failed: %s", agent_id, e)
            return None

    async def _wait_for_deployment(self, user_id: str, agent_id: str) -> Dict[str, Any]:
        interval = self.settings.deployment_poll_interval
        attempts = self.settings.deployment_poll_attempts
        window = self.settings.deployment_early_failure_window
        started = self.clock.now()
        rechecked = False
        last_status = None

        for attempt in range(1, attempts + 1):
            agent = await self._poll_agent(agent_id)
            state = normalize_deployment_status(agent)
            last_status = deployment_status(agent) or last_status
            self.registry.update(user_id, deploymentStatus=last_status, deploymentAttempt=attempt)

            if state is DeploymentState.FAILURE:
                elapsed = (self.clock.now() - started).total_seconds()
                if rechecked or elapsed >= window:
                    raise ProvisioningError(f"Agent deployment failed ({last_status})")
                rechecked = True
                self._log(
                    user_id,
                    f"Deployment reported {last_status} after {elapsed:.0f}s; rechecking in {window:.0f}s",
                    logging.WARNING,
                )
                await self.clock.sleep(window)
                agent = await self._poll_agent(agent_id)
                state = normalize_deployment_status(agent)
                last_status = deployment_status(agent) or last_status
                if state is DeploymentState.FAILURE:
                    raise ProvisioningError(f"Agent deployment failed ({last_status})")

            if state is DeploymentState.SUCCESS:
                self._log(user_id, f"Agent deployed ({last_status}) after {attempt} checks")
                return agent

            if attempt < attempts:
                await self.clock.sleep(interval)

        self._log(user_id, "Deployment polling exhausted, cross-checking agent list", logging.WARNING)
        try:
            for listed in await self.genai.agent.list():
                if resource_id(listed) == agent_id and normalize_deployment_status(listed) is DeploymentState.SUCCESS:
                    self._log(user_id, "Agent list reports the deployment as running")
                    return await self._poll_agent(agent_id) or listed
        except RemoteAPIError as e:
            logger.warning("[PROVISION] Agent list cross-check failed: %s", e)

        raise ProvisioningError(
            f"Agent deployment timed out after {attempts} checks (last status {last_status})",
            retryable=True,
        )

    async def _wait_for_endpoint(self, user_id: str, agent_id: str, agent: Dict[str, Any]) -> Dict[str, Any]:
        interval = self.settings.endpoint_poll_interval
        attempts = self.settings.endpoint_poll_attempts
        for attempt in range(1, attempts + 1):
            if agent_endpoint(agent):
                return agent
            if attempt == attempts:
                break
            await self.clock.sleep(interval)
            agent = await self._poll_agent(agent_id) or {}
        raise ProvisioningError(f"Agent endpoint not available after {attempts} checks", retryable=True)

    async def _reassert_config(
        self, user_id: str, agent_id: str, agent_name: Optional[str], agent: Dict[str, Any]
    ) -> Dict[str, Any]:
        desired_temperature = self.settings.agent_temperature
        desired = {
            "instruction": self.settings.load_instruction(),
            "max_tokens": self.settings.agent_max_tokens,
            "temperature": desired_temperature,
            "top_p": self.settings.agent_top_p,
            "k": self.settings.agent_k,
        }
        if agent_name:
            desired["name"] = agent_name

        latest = agent
        for attempt in (1, 2):
            try:
                await self.genai.agent.update(agent_id, desired)
                latest = await self.genai.agent.get(agent_id)
            except RemoteAPIError as e:
                self._log(user_id, f"Configuration update failed (attempt {attempt}): {e}", logging.WARNING)
                continue
            if _temperature_ok(latest, desired_temperature):
                return latest
            self._log(
                user_id,
                f"Temperature reads back as {latest.get('temperature')} (attempt {attempt})",
                logging.WARNING,
            )

        self._log(user_id, "Agent configuration did not fully apply; continuing", logging.WARNING)
        return latest if agent_endpoint(latest) else agent

    async def _issue_api_key(self, user_id: str, agent_id: str) -> str:
        try:
            api_key = await get_or_create_agent_api_key(self.genai, self.users, user_id, agent_id, self.clock)
        except RemoteAPIError as e:
            raise ProvisioningError(f"API key creation failed: {e}", retryable=True) from e
        if not api_key:
            raise ProvisioningError("No API key returned for the agent")
        return api_key

    async def _finalize(self, user_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        stamp = utc_iso(self.clock.now())

        def finalize(latest):
            patch = merge_agent_profile(latest, values, stamp)
            patch.update(
                {"provisioned": True, "provisionedAt": stamp, "provisionToken": None, "pendingAgentName": None}
            )
            stage = stage_advance(latest.get("workflowStage"), "agent_deployed")
            if stage:
                patch["workflowStage"] = stage
            return patch

        try:
            doc = await self.users.update(user_id, finalize)
        except DocumentStoreError as e:
            raise ProvisioningError(f"Could not save agent details: {e}", retryable=True) from e
        self.reconciler.invalidate(user_id, agent_id=values["agentId"])
        return doc

    async def _side_effects(self, user_id: str, values: Dict[str, Any]) -> None:
        try:
            fields = generate_editor_token(self.settings.editor_token_ttl_days, self.clock.now())
            await self.users.update(user_id, lambda latest: fields)
            self._log(user_id, "Editor token issued")
        except Exception as e:
            self._log(user_id, f"Editor token unavailable: {e}", logging.WARNING)

        try:
            await self._summarize_initial_file(user_id, values)
        except Exception as e:
            self._log(user_id, f"Initial document summary unavailable: {e}", logging.WARNING)

    async def _summarize_initial_file(self, user_id: str, values: Dict[str, Any]) -> None:
        doc = await self.users.get(user_id) or {}
        initial = doc.get("initialFile") or {}
        if not initial.get("bucketKey"):
            return

        content = await self.storage.get_object(initial["bucketKey"])
        text = self.text_extractor(content, initial.get("fileName") or initial["bucketKey"])
        if not text:
            self._log(user_id, "Initial document has no extractable text")
            return

        api_key = values["apiKey"]
        chat = self.chat_factory(values["endpoint"], api_key, values.get("modelName") or "n/a")
        try:
            try:
                summary = await chat.summarize_document(text)
            except AuthenticationError:
                self._log(user_id, "Agent rejected the API key, issuing a new one", logging.WARNING)
                await chat.close()
                api_key = await recreate_agent_api_key(self.genai, self.users, user_id, values["agentId"], self.clock)
                if not api_key:
                    raise
                chat = self.chat_factory(values["endpoint"], api_key, values.get("modelName") or "n/a")
                summary = await chat.summarize_document(text)
        finally:
            await chat.close()

        if not summary:
            return
        await self.users.update(
            user_id, lambda latest: None if latest.get("currentMedications") else {"currentMedications": summary}
        )
        self._log(user_id, "Current medications pre-populated from the initial document")
