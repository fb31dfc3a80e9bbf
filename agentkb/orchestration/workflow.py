"""
User-document conventions: onboarding stages, storage layout and names.
"""

import secrets
from datetime import datetime
from typing import Any, Dict, Optional

WORKFLOW_STAGES = (
    "approved",
    "agent_named",
    "agent_deployed",
    "files_stored",
    "files_archived",
    "indexing",
    "patient_summary",
)

ARCHIVED_FOLDER = "archived"


def stage_advance(current: Optional[str], target: str) -> Optional[str]:
    """``target`` if it is later than ``current`` in the onboarding order, else None.

    Stages outside the known order are never overwritten.
    """
    if current is None:
        return target
    if current not in WORKFLOW_STAGES:
        return None
    if WORKFLOW_STAGES.index(target) > WORKFLOW_STAGES.index(current):
        return target
    return None


def generate_kb_name(user_id: str, now: datetime) -> str:
    return f"{user_id}-kb-{now:%Y%m%d}{secrets.randbelow(10 ** 6):06d}"


def generate_agent_name(user_id: str, now: datetime) -> str:
    return f"{user_id}-agent-{now:%Y%m%d}-{now:%H%M%S}"


def root_prefix(user_id: str) -> str:
    return f"{user_id}/"


def archived_prefix(user_id: str) -> str:
    return f"{user_id}/{ARCHIVED_FOLDER}/"


def kb_prefix(user_id: str, kb_name: str) -> str:
    return f"{user_id}/{kb_name}/"


def file_name(record: Dict[str, Any]) -> str:
    return record.get("fileName") or (record.get("bucketKey") or "").rsplit("/", 1)[-1]


def is_in_kb(record: Dict[str, Any], user_id: str, kb_name: str) -> bool:
    return (record.get("bucketKey") or "").startswith(kb_prefix(user_id, kb_name))


def wants_kb(record: Dict[str, Any], user_id: str, kb_name: str) -> bool:
    """Target membership: the ``inKnowledgeBase`` flag, else the current location."""
    flag = record.get("inKnowledgeBase")
    if isinstance(flag, bool):
        return flag
    return is_in_kb(record, user_id, kb_name)
