"""LearningScheduler: background learning work as persisted, checkpointed jobs.

Design Principles:
- Every learning step (DPO retrain, GEPA cycle, LIMI curation) is a
  ``LearningJob`` row, so work survives a crash instead of being lost
- Jobs left RUNNING by a crash go back to PENDING on ``recover()``
- Non-blocking failures: one failed job doesn't stop the others; a failed
  job is retried on a later tick until ``job_max_attempts`` is reached
- The request path only enqueues; it never waits on a job

Usage:
    scheduler = LearningScheduler(store, config.learning)
    scheduler.register(JobKind.DPO_RETRAIN, run_dpo)
    await scheduler.recover()
    await scheduler.enqueue(JobKind.DPO_RETRAIN, dedupe_key="dpo.retrain")
    summary = await scheduler.run_pending()
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from arbiter.config.models import LearningConfig
from arbiter.core.errors import ArbiterError
from arbiter.core.types import Result
from arbiter.learning.models import JobKind, JobStatus, LearningJob
from arbiter.observability.logging import get_logger

if TYPE_CHECKING:
    from arbiter.persistence.store import ArbiterStore

log = get_logger(__name__)

JobHandler = Callable[[LearningJob], Awaitable[Result[dict[str, Any], ArbiterError]]]
DueCheck = Callable[[], Awaitable[bool]]


@dataclass(frozen=True, slots=True)
class JobResult:
    """Result of running a single job.

    Attributes:
        job_id: ID of the job.
        kind: Job kind.
        success: Whether the handler succeeded.
        output: Handler output on success.
        error_message: Error details on failure.
        duration_ms: Run time in milliseconds.
    """

    job_id: str
    kind: JobKind
    success: bool
    output: dict[str, Any] | None = None
    error_message: str | None = None
    duration_ms: int = 0


@dataclass(frozen=True, slots=True)
class JobBatchSummary:
    """Summary of one ``run_pending`` pass."""

    total: int
    success_count: int
    failure_count: int
    results: tuple[JobResult, ...]
    started_at: datetime
    completed_at: datetime

    @property
    def duration_ms(self) -> int:
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "duration_ms": self.duration_ms,
        }


class LearningScheduler:
    """Persists, runs and retries background learning jobs."""

    def __init__(self, store: ArbiterStore, config: LearningConfig) -> None:
        self._store = store
        self._config = config
        self._handlers: dict[JobKind, JobHandler] = {}
        self._due_checks: list[tuple[JobKind, DueCheck]] = []
        self._run_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

    def register(self, kind: JobKind, handler: JobHandler) -> None:
        self._handlers[kind] = handler

    def schedule(self, kind: JobKind, is_due: DueCheck) -> None:
        """Enqueue ``kind`` on every tick where ``is_due()`` says so."""
        self._due_checks.append((kind, is_due))

    async def enqueue(
        self,
        kind: JobKind,
        payload: dict[str, Any] | None = None,
        *,
        dedupe_key: str | None = None,
    ) -> bool:
        """Persist a new job. Returns False if an unfinished duplicate exists."""
        job = LearningJob(kind=kind, payload=payload or {})
        created = await self._store.enqueue_job(job, dedupe_key=dedupe_key)
        if created:
            log.info("learning.job.enqueued", job_id=job.id, kind=kind.value)
        else:
            log.debug("learning.job.deduplicated", kind=kind.value, dedupe_key=dedupe_key)
        return created

    async def recover(self) -> int:
        """Return jobs interrupted mid-run to the queue."""
        count = await self._store.reset_running_jobs()
        if count:
            log.warning("learning.jobs.recovered", count=count)
        return count

    async def pending(self) -> list[LearningJob]:
        return await self._store.list_jobs(statuses=[JobStatus.PENDING, JobStatus.RUNNING])

    async def run_pending(self, limit: int | None = None) -> JobBatchSummary:
        """Run every pending job once, oldest first."""
        async with self._run_lock:
            started_at = datetime.now(UTC)
            jobs = await self._store.list_jobs(statuses=[JobStatus.PENDING])
            if limit is not None:
                jobs = jobs[:limit]

            results = [await self._run_job(job) for job in jobs]
            success_count = sum(1 for r in results if r.success)
            summary = JobBatchSummary(
                total=len(results),
                success_count=success_count,
                failure_count=len(results) - success_count,
                results=tuple(results),
                started_at=started_at,
                completed_at=datetime.now(UTC),
            )
        if summary.total:
            log.info("learning.batch.completed", **summary.to_dict())
        return summary

    async def _run_job(self, job: LearningJob) -> JobResult:
        start_time = datetime.now(UTC)
        handler = self._handlers.get(job.kind)
        job = replace(job, status=JobStatus.RUNNING, attempts=job.attempts + 1)
        await self._store.update_job(job)
        log.info("learning.job.started", job_id=job.id, kind=job.kind.value, attempt=job.attempts)

        if handler is None:
            error_message = f"No handler registered for {job.kind.value}"
            output = None
        else:
            try:
                result = await handler(job)
            except ArbiterError as e:
                result = Result.err(e)
            if result.is_ok:
                error_message, output = None, result.value
            else:
                error_message, output = result.error.message, None

        duration_ms = int((datetime.now(UTC) - start_time).total_seconds() * 1000)

        if error_message is None:
            await self._store.update_job(replace(job, status=JobStatus.DONE, last_error=None))
            log.info(
                "learning.job.completed",
                job_id=job.id,
                kind=job.kind.value,
                duration_ms=duration_ms,
            )
            return JobResult(job.id, job.kind, True, output=output, duration_ms=duration_ms)

        exhausted = job.attempts >= self._config.job_max_attempts
        await self._store.update_job(
            replace(
                job,
                status=JobStatus.FAILED if exhausted else JobStatus.PENDING,
                last_error=error_message,
            )
        )
        log.warning(
            "learning.job.failed",
            job_id=job.id,
            kind=job.kind.value,
            attempt=job.attempts,
            will_retry=not exhausted,
            error=error_message,
        )
        return JobResult(
            job.id, job.kind, False, error_message=error_message, duration_ms=duration_ms
        )

    async def tick(self) -> JobBatchSummary:
        """Enqueue scheduled jobs that are due, then run everything pending."""
        for kind, is_due in self._due_checks:
            if await is_due():
                await self.enqueue(kind, dedupe_key=kind.value)
        return await self.run_pending()

    def start(self, interval_seconds: float) -> None:
        """Run ``tick`` every ``interval_seconds`` in the background."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop(interval_seconds))
        log.info("learning.scheduler.started", interval_seconds=interval_seconds)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("learning.scheduler.stopped")

    async def _loop(self, interval_seconds: float) -> None:
        while True:
            try:
                await self.tick()
            except ArbiterError as e:
                log.error("learning.tick.failed", error=e.message)
            await asyncio.sleep(interval_seconds)
