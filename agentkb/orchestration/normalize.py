"""
Translation boundary for the remote platform's inconsistent payloads.

The GenAI API reports the same facts under different field names and with
overlapping status vocabularies depending on endpoint and API revision. All
of that probing lives here; the orchestrators only ever see the closed enums
and plain values returned by these functions.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Set


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @property
    def is_active(self) -> bool:
        return self in (JobState.PENDING, JobState.RUNNING)

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)


class DeploymentState(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"


_JOB_COMPLETED = {
    "INDEX_JOB_STATUS_COMPLETED",
    "INDEX_JOB_STATUS_NO_CHANGES",
    "INDEX_JOB_STATUS_PARTIAL",
    "BATCH_JOB_PHASE_SUCCEEDED",
    "JOB_STATUS_COMPLETED",
    "STATUS_COMPLETED",
    "STATUS_SUCCEEDED",
    "COMPLETED",
    "COMPLETE",
    "SUCCEEDED",
    "SUCCESS",
    "DONE",
    "FINISHED",
    "INDEXED",
}
_JOB_FAILED = {
    "INDEX_JOB_STATUS_FAILED",
    "BATCH_JOB_PHASE_FAILED",
    "BATCH_JOB_PHASE_ERROR",
    "JOB_STATUS_FAILED",
    "STATUS_FAILED",
    "FAILED",
    "ERROR",
}
_JOB_CANCELLED = {
    "INDEX_JOB_STATUS_CANCELLED",
    "BATCH_JOB_PHASE_CANCELLED",
    "STATUS_CANCELLED",
    "CANCELLED",
    "CANCELED",
}
_JOB_RUNNING = {
    "INDEX_JOB_STATUS_IN_PROGRESS",
    "INDEX_JOB_STATUS_RUNNING",
    "BATCH_JOB_PHASE_RUNNING",
    "JOB_STATUS_RUNNING",
    "STATUS_RUNNING",
    "IN_PROGRESS",
    "RUNNING",
    "INDEXING",
    "PROCESSING",
}
_JOB_PENDING = {
    "INDEX_JOB_STATUS_PENDING",
    "INDEX_JOB_STATUS_QUEUED",
    "BATCH_JOB_PHASE_PENDING",
    "BATCH_JOB_PHASE_UNKNOWN",
    "JOB_STATUS_PENDING",
    "STATUS_PENDING",
    "PENDING",
    "QUEUED",
    "CREATED",
    "STARTING",
}

_DEPLOYMENT_SUCCESS = {"STATUS_RUNNING", "RUNNING", "STATUS_SUCCEEDED", "SUCCEEDED", "STATUS_READY", "READY", "ACTIVE"}
_DEPLOYMENT_FAILURE = {
    "STATUS_FAILED",
    "FAILED",
    "STATUS_DEPLOYMENT_FAILED",
    "DEPLOYMENT_FAILED",
    "STATUS_UNDEPLOYMENT_FAILED",
    "STATUS_ERROR",
    "ERROR",
}

# Field names under which an agent reports its attached knowledge bases.
_ATTACHED_KB_FIELDS = (
    "knowledge_bases",
    "knowledgeBases",
    "knowledge_base_uuids",
    "attached_knowledge_bases",
    "kb_ids",
)


def _classify(value: Any) -> JobState:
    if not isinstance(value, str) or not value.strip():
        return JobState.UNKNOWN
    token = value.strip().upper()
    if token in _JOB_COMPLETED:
        return JobState.COMPLETED
    if token in _JOB_FAILED:
        return JobState.FAILED
    if token in _JOB_CANCELLED:
        return JobState.CANCELLED
    if token in _JOB_RUNNING:
        return JobState.RUNNING
    if token in _JOB_PENDING:
        return JobState.PENDING
    return JobState.UNKNOWN


def normalize_job_status(job: Optional[Dict[str, Any]]) -> JobState:
    """Collapse an indexing job payload into a ``JobState``.

    Looks at ``status``, ``job_status`` and ``state``, then at the
    ``completed`` boolean and the ``phase`` enum. A definite terminal signal
    from any of them wins over an active one.
    """
    if not isinstance(job, dict):
        return JobState.UNKNOWN

    states = [_classify(job.get(field)) for field in ("status", "job_status", "state")]
    if job.get("completed") is True:
        states.append(JobState.COMPLETED)
    states.append(_classify(job.get("phase")))

    for wanted in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED, JobState.RUNNING, JobState.PENDING):
        if wanted in states:
            return wanted
    return JobState.UNKNOWN


def job_id(job: Optional[Dict[str, Any]]) -> Optional[str]:
    if not isinstance(job, dict):
        return None
    for key in ("uuid", "id", "job_uuid", "indexing_job_uuid"):
        value = job.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def raw_job_status(job: Optional[Dict[str, Any]]) -> Optional[str]:
    if not isinstance(job, dict):
        return None
    for field in ("status", "job_status", "state"):
        value = job.get(field)
        if isinstance(value, str) and value:
            return value
    return None


def job_snapshot(job: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Token count, indexed file count and progress fraction from a job payload."""
    if not isinstance(job, dict):
        return {"tokens": 0, "filesIndexed": 0, "progress": 0.0}

    tokens = job.get("tokens") or job.get("total_tokens") or 0
    files = job.get("total_items_indexed") or job.get("indexed_item_count") or 0
    if not files:
        for ds in job.get("data_source_jobs") or []:
            if isinstance(ds, dict):
                files += int(ds.get("indexed_file_count") or ds.get("indexed_item_count") or 0)

    progress = 0.0
    total = job.get("total_datasources") or 0
    done = job.get("completed_datasources") or 0
    if total:
        progress = round(float(done) / float(total), 3)
    if normalize_job_status(job) == JobState.COMPLETED:
        progress = 1.0

    return {"tokens": int(tokens or 0), "filesIndexed": int(files or 0), "progress": progress}


def normalize_deployment_status(agent: Optional[Dict[str, Any]]) -> DeploymentState:
    raw = deployment_status(agent)
    if not raw:
        return DeploymentState.PENDING
    token = raw.strip().upper()
    if token in _DEPLOYMENT_SUCCESS:
        return DeploymentState.SUCCESS
    if token in _DEPLOYMENT_FAILURE:
        return DeploymentState.FAILURE
    return DeploymentState.PENDING


def deployment_status(agent: Optional[Dict[str, Any]]) -> Optional[str]:
    if not isinstance(agent, dict):
        return None
    deployment = agent.get("deployment")
    if isinstance(deployment, dict) and deployment.get("status"):
        return deployment["status"]
    return agent.get("deployment_status") or agent.get("status")


def agent_endpoint(agent: Optional[Dict[str, Any]]) -> Optional[str]:
    """Chat endpoint of a deployed agent, or None while it has no URL yet."""
    if not isinstance(agent, dict):
        return None
    deployment = agent.get("deployment")
    url = deployment.get("url") if isinstance(deployment, dict) else None
    url = url or agent.get("endpoint") or agent.get("url")
    if not url:
        return None
    url = url.rstrip("/")
    return url if url.endswith("/api/v1") else f"{url}/api/v1"


def agent_model_name(agent: Optional[Dict[str, Any]]) -> Optional[str]:
    if not isinstance(agent, dict):
        return None
    model = agent.get("model")
    if isinstance(model, dict):
        return model.get("inference_name") or model.get("name")
    return agent.get("model_name")


def attached_kb_ids(agent: Optional[Dict[str, Any]]) -> Set[str]:
    """UUIDs of the knowledge bases attached to ``agent``.

    Entries may be bare UUID strings or objects carrying ``uuid``/``id``.
    """
    ids: Set[str] = set()
    if not isinstance(agent, dict):
        return ids
    for field in _ATTACHED_KB_FIELDS:
        entries = agent.get(field)
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if isinstance(entry, str) and entry:
                ids.add(entry)
            elif isinstance(entry, dict):
                value = entry.get("uuid") or entry.get("id") or entry.get("knowledge_base_uuid")
                if isinstance(value, str) and value:
                    ids.add(value)
    return ids


def parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def kb_last_indexed_at(kb: Optional[Dict[str, Any]]) -> Optional[datetime]:
    if not isinstance(kb, dict):
        return None
    last_job = kb.get("last_indexing_job")
    if isinstance(last_job, dict):
        for field in ("finished_at", "completed_at", "updated_at"):
            parsed = parse_timestamp(last_job.get(field))
            if parsed:
                return parsed
    return parse_timestamp(kb.get("last_indexed_at") or kb.get("lastIndexedAt"))
