from agentkb.orchestration.registry import StatusRegistry, StatusEntry
from agentkb.orchestration.reconciler import ResourceReconciler, ReconcileResult, KbStatus
from agentkb.orchestration.provisioning import AgentProvisioner
from agentkb.orchestration.indexing import KnowledgeBaseIndexer, IndexingPoller, PollOutcome
from agentkb.orchestration.destroy import ResourceDestroyer

__all__ = [
    "StatusRegistry",
    "StatusEntry",
    "ResourceReconciler",
    "ReconcileResult",
    "KbStatus",
    "AgentProvisioner",
    "KnowledgeBaseIndexer",
    "IndexingPoller",
    "PollOutcome",
    "ResourceDestroyer",
]
