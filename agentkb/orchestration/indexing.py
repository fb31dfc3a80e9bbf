"""
Knowledge-base indexing - move files into the KB folder, make sure the KB
and its single folder data source exist, start (or adopt) one indexing job
and poll it to a terminal state.

Every poll writes a compact ``kbIndexingStatus`` snapshot to the user
document, so a restarted process can resume from persisted state
(``resume_pending``). ``backendCompleted`` flips to true exactly once per job
and is the only thing that triggers attaching the KB to the agent.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from agentkb.errors import DocumentStoreError, IndexingError, RemoteAPIError, StorageError
from agentkb.logging_config import bind_run_context
from agentkb.orchestration.clock import SystemClock, utc_iso
from agentkb.orchestration.normalize import (
    JobState,
    job_id as job_uuid,
    job_snapshot,
    kb_last_indexed_at,
    normalize_job_status,
    parse_timestamp,
    raw_job_status,
)
from agentkb.orchestration.workflow import (
    archived_prefix,
    file_name,
    generate_kb_name,
    is_in_kb,
    kb_prefix,
    stage_advance,
    wants_kb,
)
from agentkb.services.genai_client import resource_id
from agentkb.services.object_storage import PLACEHOLDER, log_file_move

logger = logging.getLogger(__name__)

INDEX_STEPS = ["relocate", "ephemeral", "resolve_kb", "datasources", "start_job", "poll"]

_UUID_IN_TEXT = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.I)


class PollOutcome(str, Enum):
    CONTINUE = "continue"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class IndexingPoller:
    """Completion poll for one indexing job, one ``tick`` per interval.

    Each tick re-lists the KB's jobs and matches the tracked job id; if the
    id has briefly vanished it adopts any active (or freshly completed) job,
    and if nothing matches it treats the KB's last-indexed timestamp moving
    past ``started_at`` as completion.
    """

    def __init__(
        self,
        genai,
        kb_id: str,
        job_id: Optional[str],
        started_at: datetime,
        interval: float = 15.0,
        max_polls: int = 240,
        polls: int = 0,
    ):
        self.genai = genai
        self.kb_id = kb_id
        self.job_id = job_id
        self.started_at = started_at
        self.interval = interval
        self.max_polls = max_polls
        self.polls = polls
        self.state = JobState.UNKNOWN
        self.last_job: Optional[Dict[str, Any]] = None
        self.inferred = False
        self.error: Optional[str] = None

    def _match(self, jobs: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        for job in jobs:
            if self.job_id and job_uuid(job) == self.job_id:
                return job
        for job in jobs:
            if normalize_job_status(job).is_active:
                return job
        for job in jobs:
            if normalize_job_status(job) is JobState.COMPLETED:
                finished = parse_timestamp(job.get("finished_at") or job.get("updated_at"))
                if finished is not None and finished >= self.started_at:
                    return job
        return None

    async def _kb_indexed_since_start(self) -> bool:
        try:
            kb = await self.genai.kb.get(self.kb_id)
        except RemoteAPIError as e:
            logger.warning("[KB] KB %s lookup during poll failed: %s", self.kb_id, e)
            return False
        indexed_at = kb_last_indexed_at(kb)
        return indexed_at is not None and indexed_at > self.started_at

    async def tick(self) -> PollOutcome:
        self.polls += 1
        try:
            jobs = await self.genai.indexing.list_for_kb(self.kb_id)
        except RemoteAPIError as e:
            logger.warning("[KB] Job list for %s failed on poll %d: %s", self.kb_id, self.polls, e)
            jobs = None

        if jobs is not None:
            job = self._match(jobs)
            if job is not None:
                found_id = job_uuid(job)
                if found_id and found_id != self.job_id:
                    logger.info("[KB] Tracking job %s instead of %s", found_id, self.job_id)
                    self.job_id = found_id
                self.last_job = job
                self.state = normalize_job_status(job)
                if self.state is JobState.COMPLETED:
                    return PollOutcome.COMPLETED
                if self.state in (JobState.FAILED, JobState.CANCELLED):
                    self.error = f"Indexing job {self.job_id} ended with {raw_job_status(job)}"
                    return PollOutcome.FAILED
            elif await self._kb_indexed_since_start():
                logger.info("[KB] Job %s gone from list but KB %s was re-indexed", self.job_id, self.kb_id)
                self.inferred = True
                self.state = JobState.COMPLETED
                return PollOutcome.COMPLETED

        if self.polls >= self.max_polls:
            self.error = f"Indexing did not finish after {self.polls} polls"
            return PollOutcome.TIMEOUT
        return PollOutcome.CONTINUE

    async def run(
        self,
        clock,
        on_tick: Optional[Callable[["IndexingPoller", PollOutcome], Awaitable[None]]] = None,
    ) -> PollOutcome:
        while True:
            outcome = await self.tick()
            if on_tick is not None:
                await on_tick(self, outcome)
            if outcome is not PollOutcome.CONTINUE:
                return outcome
            await clock.sleep(self.interval)


def _bucket_name_for(prefix: str, user_id: str, now: datetime) -> str:
    slug = re.sub(r"[^a-z0-9-]", "-", user_id.lower()).strip("-") or "user"
    name = f"{prefix}-{slug}-{now:%Y%m%d%H%M%S}"
    return name[:63].rstrip("-")


class EphemeralBucket:
    """Throwaway bucket holding one run's KB files; ``cleanup`` is idempotent."""

    def __init__(self, storage, name: str):
        self.storage = storage
        self.name = name
        self.created = False
        self.cleaned = False

    async def populate(self, keys: List[str]) -> None:
        await self.storage.create_bucket(self.name)
        self.created = True
        for key in keys:
            await self.storage.copy_object(key, key, dest_bucket=self.name)
        logger.info("[KB] Copied %d files into ephemeral bucket %s", len(keys), self.name)

    async def cleanup(self) -> None:
        if self.cleaned:
            return
        self.cleaned = True
        if not self.created:
            return
        try:
            await self.storage.delete_bucket(self.name)
        except (StorageError, BotoCoreError, ClientError) as e:
            logger.error("[KB] Could not delete ephemeral bucket %s: %s", self.name, e)


class _NoEphemeral:
    name = None

    async def cleanup(self) -> None:
        return None


def _normalize_path(path: Optional[str]) -> str:
    return (path or "").strip("/")


def _spaces_source(ds: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for key in ("spaces_data_source", "bucket_data_source", "spacesDataSource"):
        value = ds.get(key)
        if isinstance(value, dict):
            return value
    return None


@dataclass
class _Run:
    user_id: str
    kb_name: str = ""
    kb_id: Optional[str] = None
    data_source_id: Optional[str] = None
    bucket: str = ""
    ephemeral: Any = field(default_factory=_NoEphemeral)
    relocations: List[Dict[str, str]] = field(default_factory=list)
    started_at: Optional[datetime] = None


class KnowledgeBaseIndexer:
    def __init__(self, genai, users, storage, registry, reconciler, resolver, settings, clock=None):
        self.genai = genai
        self.users = users
        self.storage = storage
        self.registry = registry
        self.reconciler = reconciler
        self.resolver = resolver
        self.settings = settings
        self.clock = clock or SystemClock()

    def _step(self, user_id: str, step: str, message: str) -> None:
        logger.info("[KB] %s: %s", user_id, message)
        self.registry.step(user_id, step, message)

    def _log(self, user_id: str, message: str, level: int = logging.INFO) -> None:
        logger.log(level, "[KB] %s: %s", user_id, message)
        self.registry.log(user_id, message)

    # ── Entry points ─────────────────────────────────────────

    def start_update(self, user_id: str):
        """Start ``run_update`` in the background, or return the run in progress."""
        if self.registry.active_task(user_id) is not None:
            logger.info("[KB] Update already running for %s", user_id)
            return self.registry.get(user_id)
        entry = self.registry.start(user_id, INDEX_STEPS)
        self.registry.spawn(user_id, self.run_update(user_id))
        return entry

    async def run_update(self, user_id: str) -> Optional[Dict[str, Any]]:
        bind_run_context(user_id)
        entry = self.registry.get(user_id)
        if entry is None or entry.is_finished:
            self.registry.start(user_id, INDEX_STEPS)

        run = _Run(user_id=user_id)
        try:
            return await self._update(run)
        except asyncio.CancelledError:
            await run.ephemeral.cleanup()
            self.registry.fail(user_id, "Indexing cancelled")
            raise
        except Exception as e:
            logger.exception("[KB] Update failed for %s", user_id)
            await run.ephemeral.cleanup()
            self.registry.fail(user_id, str(e) or e.__class__.__name__)
            return None

    async def cancel_indexing(self, user_id: str, job_id: Optional[str] = None) -> Dict[str, Any]:
        """Stop the current run, cancel its remote job and move its files back.

        A no-op once the backend has reported the job complete.
        """
        doc = await self.users.get(user_id)
        if doc is None:
            raise IndexingError(f"User {user_id} not found")
        status = doc.get("kbIndexingStatus") or {}
        if status.get("backendCompleted") is True:
            return {"cancelled": False, "reason": "already_completed", "jobId": status.get("jobId")}

        task = self.registry.active_task(user_id)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        job_id = job_id or status.get("jobId")
        remote = "none"
        if job_id:
            try:
                await self.genai.indexing.cancel(job_id)
                remote = "cancelled"
            except RemoteAPIError as e:
                if e.status_code not in (404, 405):
                    raise IndexingError(f"Could not cancel indexing job {job_id}: {e}") from e
                remote = "already_terminal"
            self._log(user_id, f"Indexing job {job_id}: {remote}")

        doc = await self.users.get(user_id) or doc
        kb_name = doc.get("kbName")
        restored: List[Dict[str, str]] = []
        for move in reversed(doc.get("kbRunRelocations") or []):
            if await self._move_back(user_id, kb_name, move):
                restored.append(move)

        stamp = utc_iso(self.clock.now())
        back = {m["to"]: m["from"] for m in restored}

        def apply(latest):
            files = []
            for record in latest.get("files") or []:
                old_key = back.get(record.get("bucketKey"))
                files.append({**record, "bucketKey": old_key, "updatedAt": stamp} if old_key else record)
            current = latest.get("kbIndexingStatus") or {}
            return {
                "files": files,
                "kbRunRelocations": None,
                "kbPendingFiles": [],
                "kbIndexingStatus": {
                    **current,
                    "jobId": job_id or current.get("jobId"),
                    "status": "INDEX_JOB_STATUS_CANCELLED",
                    "phase": "cancelled",
                    "backendCompleted": False,
                },
            }

        await self.users.update(user_id, apply)
        entry = self.registry.get(user_id)
        if entry is not None and not entry.is_finished:
            self.registry.fail(user_id, "Indexing cancelled")
        return {"cancelled": True, "jobId": job_id, "remote": remote, "restoredFiles": len(restored)}

    async def resume_pending(self) -> List[str]:
        """Resume completion polls recorded in user documents (after a restart)."""
        resumed = []
        for doc in await self.users.all():
            user_id = doc.get("_id") or doc.get("userId")
            status = doc.get("kbIndexingStatus") or {}
            if not user_id or not status.get("jobId") or status.get("backendCompleted") is True:
                continue
            if status.get("phase") not in (None, "indexing"):
                continue
            kb_id = status.get("kbId") or doc.get("kbId")
            if not kb_id or self.registry.active_task(user_id) is not None:
                continue
            self.registry.start(user_id, ["poll"])
            self.registry.spawn(user_id, self.resume(user_id, status, kb_id, doc.get("kbName")))
            resumed.append(user_id)
        if resumed:
            logger.info("[KB] Resumed indexing polls for %d users", len(resumed))
        return resumed

    async def resume(self, user_id: str, status: Dict[str, Any], kb_id: str,
                     kb_name: Optional[str]) -> Optional[Dict[str, Any]]:
        bind_run_context(user_id)
        run = _Run(
            user_id=user_id,
            kb_name=kb_name or "",
            kb_id=kb_id,
            started_at=parse_timestamp(status.get("startedAt")) or self.clock.now(),
        )
        try:
            self._step(user_id, "poll", f"Resuming poll of job {status['jobId']}")
            return await self._poll_until_done(run, status["jobId"], polls=int(status.get("polls") or 0))
        except asyncio.CancelledError:
            self.registry.fail(user_id, "Indexing cancelled")
            raise
        except Exception as e:
            logger.exception("[KB] Resumed poll failed for %s", user_id)
            self.registry.fail(user_id, str(e) or e.__class__.__name__)
            return None

    # ── Update pipeline ──────────────────────────────────────

    async def _update(self, run: _Run) -> Optional[Dict[str, Any]]:
        user_id = run.user_id

        self._step(user_id, "relocate", "Moving files into place")
        doc = await self._begin_run(user_id)
        run.kb_name = doc["kbName"]
        await self._relocate(run, doc)
        doc = await self.users.get(user_id) or doc
        kb_keys = await self._kb_object_keys(run)

        run.bucket = self.storage.bucket
        if self.settings.ephemeral_indexing_enabled:
            self._step(user_id, "ephemeral", "Copying files into an ephemeral bucket")
            run.ephemeral = EphemeralBucket(
                self.storage, _bucket_name_for(self.settings.ephemeral_bucket_prefix, user_id, self.clock.now())
            )
            await run.ephemeral.populate(kb_keys)
            run.bucket = run.ephemeral.name

        try:
            self._step(user_id, "resolve_kb", "Locating knowledge base")
            run.kb_id = await self._resolve_kb(run, kb_keys)
            if run.kb_id is None:
                result = {"status": "nothing_to_index", "kbName": run.kb_name}
                self._log(user_id, "No files in the knowledge base folder; nothing to index")
                self.registry.complete(user_id, result)
                return result

            self._step(user_id, "datasources", "Checking knowledge base data source")
            run.data_source_id = await self._enforce_single_datasource(run)

            self._step(user_id, "start_job", "Starting indexing job")
            job_id = await self._start_or_adopt_job(run, doc)

            self._step(user_id, "poll", f"Waiting for indexing job {job_id}")
            return await self._poll_until_done(run, job_id)
        finally:
            await run.ephemeral.cleanup()

    async def _begin_run(self, user_id: str) -> Dict[str, Any]:
        """Assign the permanent ``kbName`` if missing and start a fresh relocation record."""
        stamp = self.clock.now()

        def assign(latest):
            patch: Dict[str, Any] = {"kbRunRelocations": []}
            if not latest.get("kbName"):
                patch["kbName"] = generate_kb_name(user_id, stamp)
            return patch

        return await self.users.update(user_id, assign)

    async def _relocate(self, run: _Run, doc: Dict[str, Any]) -> None:
        user_id, kb_name = run.user_id, run.kb_name
        moves: List[Dict[str, str]] = []

        for record in doc.get("files") or []:
            key = record.get("bucketKey")
            if not key:
                continue
            target_in_kb = wants_kb(record, user_id, kb_name)
            if target_in_kb == is_in_kb(record, user_id, kb_name):
                continue
            name = file_name(record)
            dest = (kb_prefix(user_id, kb_name) if target_in_kb else archived_prefix(user_id)) + name
            move = {"fileName": name, "from": key, "to": dest}

            # A cancel lands between files, never between a move and its record.
            step = asyncio.ensure_future(self._move_and_record(run, move))
            try:
                moved = await asyncio.shield(step)
            except asyncio.CancelledError:
                await asyncio.gather(step, return_exceptions=True)
                raise
            if moved:
                moves.append(move)

        run.relocations = moves
        prefix = kb_prefix(user_id, kb_name)

        def apply(latest):
            indexed = set(latest.get("kbIndexedFiles") or [])
            patch = {
                "kbPendingFiles": [
                    r["bucketKey"] for r in latest.get("files") or []
                    if (r.get("bucketKey") or "").startswith(prefix) and r["bucketKey"] not in indexed
                ],
            }
            stage = stage_advance(latest.get("workflowStage"), "indexing")
            if stage:
                patch["workflowStage"] = stage
            return patch

        await self.users.update(user_id, apply)
        if moves:
            self._log(user_id, f"Moved {len(moves)} files")

    async def _move_and_record(self, run: _Run, move: Dict[str, str]) -> bool:
        """Move one blob and point its file record at the new key.

        When the record cannot be saved the blob is moved back before the
        error propagates, so ``bucketKey`` always names where the blob is.
        """
        user_id = run.user_id
        try:
            await self.storage.move_object_with_verify(
                move["from"], move["to"], self.settings.move_verify_retries, self.settings.move_verify_delay
            )
        except (StorageError, BotoCoreError, ClientError) as e:
            self._log(user_id, f"Could not move {move['fileName']}: {e}", logging.ERROR)
            return False

        stamp = utc_iso(self.clock.now())

        def record(latest):
            files = [
                {**r, "bucketKey": move["to"], "updatedAt": stamp} if r.get("bucketKey") == move["from"] else r
                for r in latest.get("files") or []
            ]
            return {"files": files, "kbRunRelocations": list(latest.get("kbRunRelocations") or []) + [move]}

        try:
            await self.users.update(user_id, record)
        except DocumentStoreError:
            self._log(user_id, f"Could not record the move of {move['fileName']}, moving it back", logging.ERROR)
            await self._move_back(user_id, run.kb_name, move)
            raise
        log_file_move(move["fileName"], move["from"], move["to"], user_id, run.kb_name)
        return True

    async def _move_back(self, user_id: str, kb_name: Optional[str], move: Dict[str, str]) -> bool:
        try:
            await self.storage.move_object_with_verify(
                move["to"], move["from"], self.settings.move_verify_retries, self.settings.move_verify_delay
            )
        except (StorageError, BotoCoreError, ClientError) as e:
            self._log(user_id, f"Could not move {move.get('fileName')} back: {e}", logging.ERROR)
            return False
        log_file_move(move.get("fileName") or move["to"], move["to"], move["from"], user_id, kb_name)
        return True

    async def _kb_object_keys(self, run: _Run) -> List[str]:
        objects = await self.storage.list_objects(kb_prefix(run.user_id, run.kb_name))
        return [obj["Key"] for obj in objects if not obj["Key"].endswith(PLACEHOLDER)]

    async def _resolve_kb(self, run: _Run, kb_keys: List[str]) -> Optional[str]:
        try:
            kbs = await self.genai.kb.list()
        except RemoteAPIError as e:
            raise IndexingError(f"Could not list knowledge bases: {e}") from e

        for kb in kbs:
            if kb.get("name") == run.kb_name and resource_id(kb):
                kb_id = resource_id(kb)
                await self._record_kb_id(run.user_id, kb_id)
                return kb_id

        if not kb_keys:
            return None

        project_id = await self.resolver.resolve_project_id()
        if not project_id:
            raise IndexingError("No project identifier available to create the knowledge base")
        database_id = await self.resolver.resolve_database_id()
        embedding_model_id = await self.resolver.resolve_embedding_model_id()

        try:
            kb = await self.genai.kb.create(
                name=run.kb_name,
                project_id=project_id,
                database_id=database_id,
                bucket_name=run.bucket,
                item_path=kb_prefix(run.user_id, run.kb_name),
                embedding_model_id=embedding_model_id,
                region=self.settings.do_region,
            )
        except RemoteAPIError as e:
            raise IndexingError(f"Knowledge base creation failed: {e}") from e

        kb_id = resource_id(kb)
        if not kb_id:
            raise IndexingError("Knowledge base creation returned no identifier")
        self._log(run.user_id, f"Created knowledge base {run.kb_name} ({kb_id})")
        await self._record_kb_id(run.user_id, kb_id)
        return kb_id

    async def _record_kb_id(self, user_id: str, kb_id: str) -> None:
        await self.users.update(user_id, lambda latest: {"kbId": kb_id})
        self.reconciler.invalidate(user_id, kb_id=kb_id)

    async def _enforce_single_datasource(self, run: _Run) -> str:
        """Keep one folder data source for the KB prefix; delete the rest."""
        desired_path = _normalize_path(kb_prefix(run.user_id, run.kb_name))
        try:
            sources = await self.genai.kb.list_data_sources(run.kb_id)
        except RemoteAPIError as e:
            raise IndexingError(f"Could not list data sources: {e}") from e

        keep = None
        stale = []
        for ds in sources:
            spaces = _spaces_source(ds)
            if spaces is None:
                continue
            matches = (
                spaces.get("bucket_name") == run.bucket
                and _normalize_path(spaces.get("item_path")) == desired_path
            )
            if matches and keep is None:
                keep = ds
            else:
                stale.append(ds)

        for ds in stale:
            ds_id = resource_id(ds)
            if not ds_id:
                continue
            try:
                await self.genai.kb.delete_data_source(run.kb_id, ds_id)
                self._log(run.user_id, f"Removed extra data source {ds_id}")
            except RemoteAPIError as e:
                self._log(run.user_id, f"Could not remove data source {ds_id}: {e}", logging.WARNING)

        if keep is not None and resource_id(keep):
            return resource_id(keep)

        try:
            created = await self.genai.kb.add_data_source(
                run.kb_id,
                bucket_name=run.bucket,
                item_path=kb_prefix(run.user_id, run.kb_name),
                region=self.settings.do_region,
            )
        except RemoteAPIError as e:
            raise IndexingError(f"Could not add data source: {e}") from e
        ds_id = resource_id(created)
        if not ds_id:
            raise IndexingError("Data source creation returned no identifier")
        self._log(run.user_id, f"Added data source {ds_id}")
        return ds_id

    async def _start_or_adopt_job(self, run: _Run, doc: Dict[str, Any]) -> str:
        status = doc.get("kbIndexingStatus") or {}
        stored = status.get("jobId")
        if stored and status.get("backendCompleted") is not True:
            try:
                job = await self.genai.indexing.get_status(stored)
            except RemoteAPIError as e:
                if not e.is_not_found:
                    logger.warning("[KB] Status of stored job %s unavailable: %s", stored, e)
                job = None
            if job is not None and normalize_job_status(job).is_active:
                self._log(run.user_id, f"Adopting running job {stored}")
                return await self._record_job_start(run, stored, job)

        active = await self._find_active_job(run.kb_id)
        if active is not None:
            self._log(run.user_id, f"Adopting running job {job_uuid(active)}")
            return await self._record_job_start(run, job_uuid(active), active)

        try:
            job = await self.genai.indexing.start_global(run.kb_id, [run.data_source_id])
            new_id = job_uuid(job)
        except RemoteAPIError as e:
            if not e.is_duplicate_job:
                raise IndexingError(f"Could not start indexing: {e}") from e
            new_id = self._job_id_from_error(e, run)
            job = {"uuid": new_id} if new_id else None
            if not new_id:
                job = await self._find_active_job(run.kb_id)
                new_id = job_uuid(job)
            if not new_id:
                raise IndexingError("Indexing was rejected as a duplicate but no running job was found") from e
            self._log(run.user_id, f"Platform reports job {new_id} already running")

        if not new_id:
            raise IndexingError("Indexing job start returned no identifier")
        return await self._record_job_start(run, new_id, job)

    async def _find_active_job(self, kb_id: str) -> Optional[Dict[str, Any]]:
        try:
            jobs = await self.genai.indexing.list_for_kb(kb_id)
        except RemoteAPIError as e:
            logger.warning("[KB] Job list for %s failed: %s", kb_id, e)
            return None
        for job in jobs:
            if normalize_job_status(job).is_active and job_uuid(job):
                return job
        return None

    @staticmethod
    def _job_id_from_error(error: RemoteAPIError, run: _Run) -> Optional[str]:
        text = f"{error.message} {error.body}"
        for candidate in _UUID_IN_TEXT.findall(text):
            if candidate not in (run.kb_id, run.data_source_id):
                return candidate
        return None

    async def _record_job_start(self, run: _Run, job_id: str, job: Optional[Dict[str, Any]]) -> str:
        run.started_at = self.clock.now()
        snapshot = {
            "jobId": job_id,
            "kbId": run.kb_id,
            "status": raw_job_status(job) or "INDEX_JOB_STATUS_PENDING",
            "phase": "indexing",
            **job_snapshot(job),
            "backendCompleted": False,
            "completedAt": None,
            "startedAt": utc_iso(run.started_at),
            "polls": 0,
        }
        await self.users.update(run.user_id, lambda latest: {"kbIndexingStatus": snapshot})
        self.registry.update(run.user_id, kbIndexingStatus=snapshot)
        return job_id

    # ── Completion poll ──────────────────────────────────────

    async def _poll_until_done(self, run: _Run, job_id: str, polls: int = 0) -> Optional[Dict[str, Any]]:
        poller = IndexingPoller(
            self.genai,
            run.kb_id,
            job_id,
            run.started_at or self.clock.now(),
            interval=self.settings.indexing_poll_interval,
            max_polls=self.settings.indexing_max_polls,
            polls=polls,
        )

        async def on_tick(p: IndexingPoller, outcome: PollOutcome) -> None:
            if outcome is not PollOutcome.COMPLETED:
                await self._write_snapshot(run, p, outcome)

        outcome = await poller.run(self.clock, on_tick)
        if outcome is PollOutcome.COMPLETED:
            return await self._complete(run, poller)

        await run.ephemeral.cleanup()
        self._log(run.user_id, poller.error or f"Indexing {outcome.value}", logging.ERROR)
        self.registry.fail(run.user_id, poller.error or f"Indexing {outcome.value}")
        return None

    async def _write_snapshot(self, run: _Run, poller: IndexingPoller, outcome: PollOutcome) -> None:
        phase = {
            PollOutcome.CONTINUE: "indexing",
            PollOutcome.FAILED: "failed",
            PollOutcome.TIMEOUT: "timeout",
        }[outcome]
        snapshot: Dict[str, Any] = {"jobId": poller.job_id, "kbId": run.kb_id, "phase": phase, "polls": poller.polls}
        if poller.last_job is not None:
            snapshot["status"] = raw_job_status(poller.last_job) or poller.state.value
            snapshot.update(job_snapshot(poller.last_job))
        if poller.error:
            snapshot["error"] = poller.error

        def apply(latest):
            current = latest.get("kbIndexingStatus") or {}
            if current.get("backendCompleted") is True and current.get("jobId") == poller.job_id:
                return None
            return {"kbIndexingStatus": {**current, **snapshot, "backendCompleted": False}}

        try:
            await self.users.update(run.user_id, apply)
        except DocumentStoreError as e:
            logger.warning("[KB] Could not persist indexing status for %s: %s", run.user_id, e)
        self.registry.update(run.user_id, kbIndexingStatus=snapshot, polls=poller.polls)

    async def _complete(self, run: _Run, poller: IndexingPoller) -> Dict[str, Any]:
        user_id = run.user_id
        stamp = utc_iso(self.clock.now())
        prefix = kb_prefix(user_id, run.kb_name) if run.kb_name else None
        snapshot = {
            "jobId": poller.job_id,
            "kbId": run.kb_id,
            "status": "INDEX_JOB_STATUS_COMPLETED" if poller.inferred
            else raw_job_status(poller.last_job) or "INDEX_JOB_STATUS_COMPLETED",
            "phase": "complete",
            **job_snapshot(poller.last_job),
            "inferred": poller.inferred,
            "progress": 1.0,
            "backendCompleted": True,
            "completedAt": stamp,
            "polls": poller.polls,
        }
        transition = {"happened": False}

        def apply(latest):
            transition["happened"] = False
            current = latest.get("kbIndexingStatus") or {}
            if current.get("backendCompleted") is True and current.get("jobId") == poller.job_id:
                return None
            transition["happened"] = True
            kb_prefix_now = prefix or kb_prefix(user_id, latest.get("kbName") or "")
            patch = {
                "kbIndexingStatus": {**current, **snapshot},
                "kbIndexedFiles": [
                    r["bucketKey"] for r in latest.get("files") or []
                    if (r.get("bucketKey") or "").startswith(kb_prefix_now)
                ],
                "kbPendingFiles": [],
                "kbRunRelocations": None,
                "kbLastIndexedAt": stamp,
            }
            if latest.get("workflowStage") == "indexing":
                patch["workflowStage"] = "patient_summary"
            if not latest.get("kbId"):
                patch["kbId"] = run.kb_id
            return patch

        doc = await self.users.update(user_id, apply)

        attached = False
        if transition["happened"]:
            self._log(user_id, f"Indexing job {poller.job_id} completed after {poller.polls} polls")
            attached = await self._attach(user_id, doc, run.kb_id)
        await run.ephemeral.cleanup()

        result = {
            "status": "completed",
            "jobId": poller.job_id,
            "kbId": run.kb_id,
            "polls": poller.polls,
            "inferred": poller.inferred,
            "attached": attached,
            "filesIndexed": len(doc.get("kbIndexedFiles") or []),
        }
        self.registry.complete(user_id, result)
        return result

    async def _attach(self, user_id: str, doc: Dict[str, Any], kb_id: str) -> bool:
        agent_id = doc.get("assignedAgentId")
        if not agent_id:
            self._log(user_id, "No agent yet; attachment left to reconciliation")
            return False
        try:
            await self.genai.agent.attach_kb(agent_id, kb_id)
        except RemoteAPIError as e:
            if not e.is_already_attached:
                self._log(user_id, f"Attaching KB {kb_id} to agent {agent_id} failed: {e}", logging.ERROR)
                return False
        self._log(user_id, f"Knowledge base {kb_id} attached to agent {agent_id}")

        kb_name = doc.get("kbName")
        if kb_name:
            def connect(latest):
                connected = list(latest.get("connectedKBs") or [])
                return None if kb_name in connected else {"connectedKBs": connected + [kb_name]}

            await self.users.update(user_id, connect)
        self.reconciler.invalidate(user_id, agent_id=agent_id, kb_id=kb_id)
        return True
