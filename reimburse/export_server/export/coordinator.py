"""
Export coordinator for reimbursement archives.

Runs one export job end to end:

    Idle -> Collecting -> Building -> Ready -> Delivering -> Committed
                 |            |                     |   |-> CommitFailed
                 |            |                     |   \\-> Delivered (no-claim jobs)
                 v            v                     v
               Failed       Failed              Discarded

Collection and archive building run on a worker thread; triggering,
delivery and the status commit run on the event loop. Each scope has a
single-flight guard: while a job of that scope is outstanding, further
triggers in the same scope are rejected without side effects.

Scopes:
    LIST       one guard for "claim all unclaimed"
    RECORD     one guard per record id for "share one record"
    SELECTION  one guard for "export these records", optionally claiming

Invariants:
    - The record id set is frozen when the job is triggered
    - Collection precedes build, build precedes delivery, delivery
      precedes commit
    - Record status changes only after the channel reported DELIVERED,
      and never for jobs started without claiming
    - The scope guard is released whenever a job reaches a terminal state
    - History keeps at most history_size finished jobs; unfinished jobs
      are never evicted
    - A commit failure is reported separately from a delivery failure

How to change safely:
    - New states must be terminal or lead to a terminal state
    - Never commit status from anywhere but _commit()
    - There is no delivery timeout; a hung channel keeps its scope busy
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..archive import build_archive
from ..collect import ExportBundle, FileCollector
from ..delivery import DeliveryChannel, DeliveryOutcome, DeliveryRequest
from ..store import ClaimStatus, RecordStore, Reimbursement

logger = logging.getLogger(__name__)


class ExportError(Exception):
    """Base exception for export coordination."""

    pass


class JobNotFoundError(ExportError):
    """Export job is unknown (never started or evicted from history)."""

    pass


class ExportScope(Enum):
    """Independent single-flight scopes."""

    LIST = "list"
    RECORD = "record"
    SELECTION = "selection"


class JobState(Enum):
    """Lifecycle of an export job."""

    IDLE = "idle"
    COLLECTING = "collecting"
    BUILDING = "building"
    READY = "ready"
    DELIVERING = "delivering"
    COMMITTED = "committed"
    COMMIT_FAILED = "commit_failed"
    DELIVERED = "delivered"
    DISCARDED = "discarded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {
        JobState.IDLE,
        JobState.COMMITTED,
        JobState.COMMIT_FAILED,
        JobState.DELIVERED,
        JobState.DISCARDED,
        JobState.FAILED,
    }
)

_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.IDLE: frozenset({JobState.COLLECTING}),
    JobState.COLLECTING: frozenset({JobState.BUILDING, JobState.IDLE, JobState.FAILED}),
    JobState.BUILDING: frozenset({JobState.READY, JobState.FAILED}),
    JobState.READY: frozenset({JobState.DELIVERING}),
    JobState.DELIVERING: frozenset(
        {JobState.COMMITTED, JobState.COMMIT_FAILED, JobState.DELIVERED, JobState.DISCARDED}
    ),
}


@dataclass(frozen=True)
class CommitResult:
    """Result of the status commit after a confirmed delivery.

    Attributes:
        ok: Whether the store accepted the change
        updated: Number of records whose status changed
        error: Error message when ok is False
    """

    ok: bool
    updated: int = 0
    error: str | None = None


@dataclass
class ExportJob:
    """One end-to-end export attempt for a frozen set of records.

    Attributes:
        job_id: Unique job identifier
        scope: Scope whose guard this job holds
        scope_key: Guard key (scope plus record id for RECORD scope)
        record_ids: Records captured at trigger time
        claim: Mark the records claimed after a confirmed delivery
        state: Current lifecycle state
        archive_name: Suggested archive file name
        archive: Archive bytes while the job owns them
        entry_count: Number of archive entries
        archive_size: Archive size in bytes
        outcome: Delivery outcome, once known
        commit: Commit result, once attempted
        error: Failure message for FAILED jobs
        created_at: Trigger time (Unix ms)
        finished_at: Time a terminal state was reached (Unix ms)
    """

    job_id: str
    scope: ExportScope
    scope_key: str
    record_ids: tuple[str, ...]
    claim: bool = True
    state: JobState = JobState.IDLE
    archive_name: str = ""
    archive: bytes | None = field(default=None, repr=False)
    entry_count: int = 0
    archive_size: int = 0
    outcome: DeliveryOutcome | None = None
    commit: CommitResult | None = None
    error: str | None = None
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))
    finished_at: int | None = None

    def transition(self, new_state: JobState) -> None:
        """Move to a new state.

        Raises:
            ExportError: If the transition is not allowed
        """
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise ExportError(
                f"Invalid transition for job {self.job_id}: "
                f"{self.state.value} -> {new_state.value}"
            )
        logger.debug(f"Job {self.job_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        if new_state.is_terminal:
            self.finished_at = int(time.time() * 1000)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "job_id": self.job_id,
            "scope": self.scope.value,
            "record_ids": list(self.record_ids),
            "claim": self.claim,
            "state": self.state.value,
            "archive_name": self.archive_name,
            "entry_count": self.entry_count,
            "archive_size": self.archive_size,
            "outcome": self.outcome.value if self.outcome else None,
            "commit": (
                {"ok": self.commit.ok, "updated": self.commit.updated, "error": self.commit.error}
                if self.commit
                else None
            ),
            "error": self.error,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }


@dataclass(frozen=True)
class ExportResult:
    """Final result of a job, as seen by the caller."""

    job_id: str
    state: JobState
    record_ids: tuple[str, ...]
    outcome: DeliveryOutcome | None
    commit: CommitResult | None
    entry_count: int
    archive_size: int
    error: str | None = None

    @property
    def committed(self) -> bool:
        return self.state is JobState.COMMITTED


def _scope_key(scope: ExportScope, record_id: str | None = None) -> str:
    if scope is ExportScope.RECORD:
        if not record_id:
            raise ValueError("record_id is required for RECORD scope")
        return f"record:{record_id}"
    return scope.value


class ExportCoordinator:
    """Coordinates collect -> build -> deliver -> commit.

    Attributes:
        store: Record store to read from and commit to
        channel: Delivery channel
        collector: File collector
        recipients: Default message recipients
        legacy_zero_timestamps: Passed through to the archive writer
        history_size: Number of finished jobs kept for lookups

    Example:
        >>> coordinator = ExportCoordinator(store, channel)
        >>> job = await coordinator.start_claim_export()
        >>> result = await coordinator.wait(job.job_id)
        >>> result.state
        <JobState.COMMITTED: 'committed'>
    """

    def __init__(
        self,
        store: RecordStore,
        channel: DeliveryChannel,
        collector: FileCollector | None = None,
        recipients: Sequence[str] = (),
        legacy_zero_timestamps: bool = False,
        history_size: int = 100,
    ) -> None:
        self.store = store
        self.channel = channel
        self.collector = collector or FileCollector()
        self.recipients = tuple(recipients)
        self.legacy_zero_timestamps = legacy_zero_timestamps
        self.history_size = history_size

        self._active: dict[str, ExportJob] = {}  # key = scope key
        self._jobs: OrderedDict[str, ExportJob] = OrderedDict()
        self._tasks: dict[str, asyncio.Task[ExportResult]] = {}

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def start_claim_export(self) -> ExportJob | None:
        """Start exporting every unclaimed record.

        Returns:
            The started job, or None if the LIST scope is busy or there is
            nothing to export
        """
        job = self._claim_scope(ExportScope.LIST)
        if job is None:
            return None

        try:
            records = await self.store.list_records(status=ClaimStatus.UNCLAIMED)
        except Exception as e:
            self._fail(job, f"Failed to read records: {e}")
            raise

        return self._launch(job, records, single=False)

    async def start_record_export(self, record_id: str) -> ExportJob | None:
        """Start exporting one record.

        Returns:
            The started job, or None if this record's scope is busy or the
            record does not exist
        """
        job = self._claim_scope(ExportScope.RECORD, record_id)
        if job is None:
            return None

        try:
            record = await self.store.get_record(record_id)
        except Exception as e:
            self._fail(job, f"Failed to read record: {e}")
            raise

        return self._launch(job, [record] if record else [], single=True)

    async def start_selection_export(
        self,
        record_ids: Sequence[str],
        claim: bool = False,
    ) -> ExportJob | None:
        """Start exporting an explicit selection of records.

        The archive uses the batch layout. Unknown ids are skipped.

        Args:
            record_ids: Records to export, in archive order
            claim: Mark the records claimed once delivery is confirmed

        Returns:
            The started job, or None if the SELECTION scope is busy or none
            of the records exist
        """
        job = self._claim_scope(ExportScope.SELECTION, claim=claim)
        if job is None:
            return None

        try:
            records = await self.store.get_records(record_ids)
        except Exception as e:
            self._fail(job, f"Failed to read records: {e}")
            raise

        return self._launch(job, records, single=False)

    async def export_claim(self) -> ExportResult | None:
        """Trigger a LIST export and wait for its result."""
        job = await self.start_claim_export()
        if job is None:
            return None
        return await self.wait(job.job_id)

    async def export_record(self, record_id: str) -> ExportResult | None:
        """Trigger a RECORD export and wait for its result."""
        job = await self.start_record_export(record_id)
        if job is None:
            return None
        return await self.wait(job.job_id)

    async def export_selection(
        self,
        record_ids: Sequence[str],
        claim: bool = False,
    ) -> ExportResult | None:
        """Trigger a SELECTION export and wait for its result."""
        job = await self.start_selection_export(record_ids, claim=claim)
        if job is None:
            return None
        return await self.wait(job.job_id)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def wait(self, job_id: str) -> ExportResult:
        """Wait for a job to reach a terminal state.

        Raises:
            JobNotFoundError: If the job is unknown
        """
        task = self._tasks.get(job_id)
        if task is not None:
            return await asyncio.shield(task)

        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Unknown export job: {job_id}")
        return self._result(job)

    def get_job(self, job_id: str) -> ExportJob | None:
        """Look up an active or recently finished job."""
        return self._jobs.get(job_id)

    def state(self, scope: ExportScope, record_id: str | None = None) -> JobState:
        """Current state of a scope (IDLE when nothing is in flight)."""
        job = self._active.get(_scope_key(scope, record_id))
        return job.state if job else JobState.IDLE

    def is_in_flight(self, scope: ExportScope, record_id: str | None = None) -> bool:
        """Whether the scope's single-flight guard is set."""
        return _scope_key(scope, record_id) in self._active

    def active_jobs(self) -> list[ExportJob]:
        """Jobs currently holding a scope guard."""
        return list(self._active.values())

    def recent_jobs(self) -> list[ExportJob]:
        """Active and retained finished jobs, oldest first."""
        return list(self._jobs.values())

    async def close(self) -> None:
        """Wait for outstanding jobs to finish."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _claim_scope(
        self,
        scope: ExportScope,
        record_id: str | None = None,
        claim: bool = True,
    ) -> ExportJob | None:
        """Set the scope guard and create a job, or reject the trigger.

        Runs without suspension points so two triggers cannot both pass.
        """
        key = _scope_key(scope, record_id)
        if key in self._active:
            logger.info(
                "Export already in flight, trigger ignored",
                extra={"scope": key, "job_id": self._active[key].job_id},
            )
            return None

        job = ExportJob(
            job_id=str(uuid.uuid4()),
            scope=scope,
            scope_key=key,
            record_ids=(),
            claim=claim,
        )
        job.transition(JobState.COLLECTING)
        self._active[key] = job
        self._remember(job)
        return job

    def _launch(
        self,
        job: ExportJob,
        records: Sequence[Reimbursement],
        single: bool,
    ) -> ExportJob | None:
        records = list(records)
        job.record_ids = tuple(r.record_id for r in records)

        if not records:
            logger.info("Nothing to export", extra={"scope": job.scope_key})
            job.transition(JobState.IDLE)
            self._release(job)
            self._jobs.pop(job.job_id, None)
            return None

        task = asyncio.create_task(self._run(job, records, single))
        self._tasks[job.job_id] = task
        task.add_done_callback(lambda _t, job_id=job.job_id: self._tasks.pop(job_id, None))
        return job

    async def _run(
        self,
        job: ExportJob,
        records: list[Reimbursement],
        single: bool,
    ) -> ExportResult:
        try:
            bundle = await self._collect_and_build(job, records, single)
            if bundle is None:
                return self._result(job)

            job.transition(JobState.DELIVERING)
            outcome = await self._deliver(job, bundle)
            job.outcome = outcome

            if outcome is DeliveryOutcome.DELIVERED and not job.claim:
                job.transition(JobState.DELIVERED)
            elif outcome is DeliveryOutcome.DELIVERED:
                job.commit = await self._commit(job)
                job.transition(JobState.COMMITTED if job.commit.ok else JobState.COMMIT_FAILED)
            else:
                job.transition(JobState.DISCARDED)

            logger.info(
                "Export finished",
                extra={
                    "job_id": job.job_id,
                    "scope": job.scope_key,
                    "state": job.state.value,
                    "outcome": outcome.value,
                },
            )
            return self._result(job)

        except Exception as e:
            logger.error(f"Export job {job.job_id} crashed: {e}", exc_info=True)
            if not job.state.is_terminal:
                job.error = str(e)
                job.state = JobState.FAILED
                job.finished_at = int(time.time() * 1000)
            return self._result(job)

        finally:
            job.archive = None
            self._release(job)
            self._trim_history()

    async def _collect_and_build(
        self,
        job: ExportJob,
        records: list[Reimbursement],
        single: bool,
    ) -> ExportBundle | None:
        """Collect entries and build the archive off the event loop."""
        start = time.monotonic()
        try:
            bundle = await asyncio.to_thread(self.collector.collect, records, single)
        except Exception as e:
            self._fail(job, f"Collection failed: {e}")
            return None

        if bundle.is_empty:
            job.transition(JobState.IDLE)
            return None

        job.transition(JobState.BUILDING)
        try:
            archive = await asyncio.to_thread(
                build_archive, bundle.entries, self.legacy_zero_timestamps
            )
        except Exception as e:
            self._fail(job, f"Archive build failed: {e}")
            return None

        job.archive = archive
        job.archive_name = bundle.archive_name
        job.entry_count = len(bundle.entries)
        job.archive_size = len(archive)
        job.transition(JobState.READY)

        logger.info(
            f"Built export archive in {time.monotonic() - start:.3f}s",
            extra={
                "job_id": job.job_id,
                "scope": job.scope_key,
                "records": len(records),
                "entries": job.entry_count,
                "size_bytes": job.archive_size,
            },
        )
        return bundle

    async def _deliver(self, job: ExportJob, bundle: ExportBundle) -> DeliveryOutcome:
        assert job.archive is not None
        request = DeliveryRequest(
            job_id=job.job_id,
            archive=job.archive,
            file_name=bundle.archive_name,
            subject=bundle.subject,
            body=bundle.body,
            recipients=self.recipients,
        )
        try:
            return await self.channel.deliver(request)
        except Exception as e:
            logger.error(
                f"Delivery channel raised: {e}",
                extra={"job_id": job.job_id},
                exc_info=True,
            )
            return DeliveryOutcome.FAILED

    async def _commit(self, job: ExportJob) -> CommitResult:
        """Mark the captured records as claimed."""
        try:
            updated = await self.store.mark_claimed(job.record_ids)
        except Exception as e:
            logger.error(
                f"Archive was delivered but status commit failed: {e}",
                extra={"job_id": job.job_id, "record_ids": list(job.record_ids)},
                exc_info=True,
            )
            return CommitResult(ok=False, error=str(e))
        return CommitResult(ok=True, updated=updated)

    def _fail(self, job: ExportJob, message: str) -> None:
        logger.error(message, extra={"job_id": job.job_id, "scope": job.scope_key})
        job.error = message
        job.transition(JobState.FAILED)
        self._release(job)

    def _release(self, job: ExportJob) -> None:
        if self._active.get(job.scope_key) is job:
            del self._active[job.scope_key]

    def _remember(self, job: ExportJob) -> None:
        self._jobs[job.job_id] = job
        self._trim_history()

    def _trim_history(self) -> None:
        """Evict the oldest finished jobs beyond history_size."""
        excess = len(self._jobs) - self.history_size
        if excess <= 0:
            return
        for job_id, job in list(self._jobs.items()):
            if excess == 0:
                break
            if job.state.is_terminal:
                del self._jobs[job_id]
                excess -= 1

    def _result(self, job: ExportJob) -> ExportResult:
        return ExportResult(
            job_id=job.job_id,
            state=job.state,
            record_ids=job.record_ids,
            outcome=job.outcome,
            commit=job.commit,
            entry_count=job.entry_count,
            archive_size=job.archive_size,
            error=job.error,
        )
