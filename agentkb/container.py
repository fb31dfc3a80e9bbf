"""
Wiring for the clients, registries and orchestrators.

One ``Services`` instance is built at startup (``build_services``) and shared
by the routes, the scheduler and the CLI. Tests build one from in-memory
fakes with ``Services.create``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from agentkb.config import Settings, get_settings
from agentkb.orchestration.clock import SystemClock
from agentkb.orchestration.destroy import ResourceDestroyer
from agentkb.orchestration.indexing import KnowledgeBaseIndexer
from agentkb.orchestration.provisioning import AgentProvisioner
from agentkb.orchestration.reconciler import ResourceReconciler
from agentkb.orchestration.registry import StatusRegistry
from agentkb.orchestration.resources import IdentifierResolver
from agentkb.services.agent_chat import AgentChatService
from agentkb.services.document_store import DocumentStore
from agentkb.services.genai_client import GenAIClient
from agentkb.services.object_storage import ObjectStorage
from agentkb.services.text_extract import extract_text
from agentkb.services.user_store import UserStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    genai: object
    documents: object
    storage: object
    users: UserStore
    reconciler: ResourceReconciler
    resolver: IdentifierResolver
    provision_registry: StatusRegistry
    index_registry: StatusRegistry
    provisioner: AgentProvisioner
    indexer: KnowledgeBaseIndexer
    destroyer: ResourceDestroyer

    @classmethod
    def create(
        cls,
        settings: Settings,
        genai,
        documents,
        storage,
        clock=None,
        chat_factory=None,
        text_extractor=None,
    ) -> "Services":
        clock = clock or SystemClock()
        users = UserStore(
            documents,
            settings.users_db,
            settings.conflict_max_attempts,
            settings.conflict_base_delay,
            sleep=clock.sleep,
        )
        reconciler = ResourceReconciler(
            genai, users, settings.reconcile_cache_ttl, settings.resource_cache_ttl, clock=clock
        )
        resolver = IdentifierResolver(genai, settings)
        provision_registry = StatusRegistry("provisioning", settings.status_retention_seconds)
        index_registry = StatusRegistry("indexing", settings.status_retention_seconds)
        provisioner = AgentProvisioner(
            genai, users, storage, provision_registry, reconciler, resolver, settings, clock,
            chat_factory=chat_factory or AgentChatService,
            text_extractor=text_extractor or extract_text,
        )
        indexer = KnowledgeBaseIndexer(
            genai, users, storage, index_registry, reconciler, resolver, settings, clock
        )
        destroyer = ResourceDestroyer(
            genai, users, storage, reconciler, [provision_registry, index_registry]
        )
        return cls(
            settings=settings,
            genai=genai,
            documents=documents,
            storage=storage,
            users=users,
            reconciler=reconciler,
            resolver=resolver,
            provision_registry=provision_registry,
            index_registry=index_registry,
            provisioner=provisioner,
            indexer=indexer,
            destroyer=destroyer,
        )

    def evict_finished(self) -> int:
        return self.provision_registry.evict_expired() + self.index_registry.evict_expired()

    async def aclose(self) -> None:
        await self.provision_registry.shutdown()
        await self.index_registry.shutdown()
        for client in (self.genai, self.documents):
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()


def build_services(settings: Optional[Settings] = None) -> Services:
    settings = settings or get_settings()
    if not settings.do_api_token:
        logger.warning("DO_API_TOKEN is not set; remote platform calls will be rejected")
    genai = GenAIClient(
        settings.do_api_token,
        settings.do_api_base_url,
        settings.do_region,
        settings.do_request_timeout,
    )
    documents = DocumentStore.from_settings(settings)
    storage = ObjectStorage.from_settings(settings)
    return Services.create(settings, genai, documents, storage)
