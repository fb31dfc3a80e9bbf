"""
Status Registry - pollable progress for background runs.

One registry per concern (provisioning, indexing). Created at application
startup and injected into the orchestrators and routes. Each user has at
most one entry; finished entries are evicted once they are older than the
retention window (see ``evict_expired``, driven by the scheduler).

Usage:
    registry = StatusRegistry("provisioning", retention_seconds=3600)

    entry = registry.start(user_id, steps=["resolve_ids", "create_agent"])
    registry.step(user_id, "create_agent", "Creating agent")
    registry.complete(user_id, {"agentId": agent_id})
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Dict, List, Optional

logger = logging.getLogger(__name__)

IN_PROGRESS = "in_progress"
COMPLETED = "completed"
FAILED = "failed"

MAX_LOG_LINES = 500


@dataclass
class StatusEntry:
    user_id: str
    status: str = IN_PROGRESS
    steps: List[str] = field(default_factory=list)
    completed_steps: List[str] = field(default_factory=list)
    current_step: Optional[str] = None
    result: Any = None
    error: Optional[str] = None
    log: List[str] = field(default_factory=list)
    started_at: float = 0.0
    finished_at: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_finished(self) -> bool:
        return self.status in (COMPLETED, FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "status": self.status,
            "steps": list(self.steps),
            "completedSteps": list(self.completed_steps),
            "currentStep": self.current_step,
            "result": self.result,
            "error": self.error,
            "log": list(self.log),
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "details": dict(self.details),
        }


class StatusRegistry:
    def __init__(
        self,
        name: str,
        retention_seconds: float = 3600.0,
        time_fn: Callable[[], float] = time.time,
    ):
        self.name = name
        self.retention_seconds = retention_seconds
        self._time = time_fn
        self._entries: Dict[str, StatusEntry] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # ── Entries ──────────────────────────────────────────────

    def start(self, user_id: str, steps: Optional[List[str]] = None) -> StatusEntry:
        """Begin a fresh entry for ``user_id``, replacing any finished one."""
        entry = StatusEntry(user_id=user_id, steps=list(steps or []), started_at=self._time())
        self._entries[user_id] = entry
        return entry

    def get(self, user_id: str) -> Optional[StatusEntry]:
        return self._entries.get(user_id)

    def log(self, user_id: str, message: str) -> None:
        entry = self._entries.get(user_id)
        if entry is None:
            return
        stamp = time.strftime("%H:%M:%S", time.gmtime(self._time()))
        entry.log.append(f"[{stamp}] {message}")
        if len(entry.log) > MAX_LOG_LINES:
            del entry.log[: len(entry.log) - MAX_LOG_LINES]

    def step(self, user_id: str, step: str, message: Optional[str] = None) -> None:
        entry = self._entries.get(user_id)
        if entry is None:
            return
        if entry.current_step and entry.current_step not in entry.completed_steps:
            entry.completed_steps.append(entry.current_step)
        entry.current_step = step
        if step not in entry.steps:
            entry.steps.append(step)
        self.log(user_id, message or step)

    def update(self, user_id: str, **details: Any) -> None:
        entry = self._entries.get(user_id)
        if entry is not None:
            entry.details.update(details)

    def complete(self, user_id: str, result: Any = None) -> None:
        entry = self._entries.get(user_id)
        if entry is None:
            return
        if entry.current_step and entry.current_step not in entry.completed_steps:
            entry.completed_steps.append(entry.current_step)
        entry.status = COMPLETED
        entry.result = result
        entry.finished_at = self._time()
        self.log(user_id, "Completed")

    def fail(self, user_id: str, error: str) -> None:
        entry = self._entries.get(user_id)
        if entry is None:
            return
        entry.status = FAILED
        entry.error = error
        entry.finished_at = self._time()
        self.log(user_id, f"Failed: {error}")

    def remove(self, user_id: str) -> bool:
        self.cancel_task(user_id)
        return self._entries.pop(user_id, None) is not None

    def evict_expired(self) -> int:
        """Drop finished entries older than the retention window."""
        now = self._time()
        expired = [
            uid
            for uid, entry in self._entries.items()
            if entry.is_finished and entry.finished_at is not None
            and now - entry.finished_at > self.retention_seconds
        ]
        for uid in expired:
            self._entries.pop(uid, None)
        if expired:
            logger.debug("[REGISTRY] %s: evicted %d finished entries", self.name, len(expired))
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        by_status: Dict[str, int] = {}
        for entry in self._entries.values():
            by_status[entry.status] = by_status.get(entry.status, 0) + 1
        return {"name": self.name, "total_entries": len(self._entries), "by_status": by_status,
                "running_tasks": len(self.running_tasks())}

    # ── Background tasks ─────────────────────────────────────

    def active_task(self, user_id: str) -> Optional[asyncio.Task]:
        task = self._tasks.get(user_id)
        if task is not None and task.done():
            self._tasks.pop(user_id, None)
            return None
        return task

    def spawn(self, user_id: str, coro: Coroutine) -> asyncio.Task:
        """Run ``coro`` detached, tracked as the user's active task."""
        task = asyncio.create_task(coro, name=f"{self.name}:{user_id}")
        self._tasks[user_id] = task

        def _done(t: asyncio.Task) -> None:
            if self._tasks.get(user_id) is t:
                self._tasks.pop(user_id, None)

        task.add_done_callback(_done)
        return task

    def cancel_task(self, user_id: str) -> bool:
        task = self._tasks.pop(user_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def running_tasks(self) -> List[asyncio.Task]:
        return [t for t in self._tasks.values() if not t.done()]

    async def shutdown(self) -> None:
        tasks = self.running_tasks()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
