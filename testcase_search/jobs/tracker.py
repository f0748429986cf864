"""
Lifecycle tracking for long-running asynchronous jobs.

Embedding generation over a test case repository takes minutes, so the API
answers with a job id and clients poll. JobTracker owns every job:

State Machine:
    queued → processing → completed
                        ↘ failed
    Terminal states are final. Progress never decreases.

Ownership:
    - The tracker is created once in the application lifespan and reached
      through app.state; there is no module-level registry.
    - Each job's execution task receives a JobReporter, the only object
      allowed to mutate that job (single writer per job).
    - Every mutation swaps in a new frozen Job snapshot, so readers never
      see a half-updated job.
    - Observers either poll get(), or subscribe() to an asyncio.Queue that
      receives each new snapshot, or await wait() for a terminal snapshot.

Retention:
    Terminal jobs are purged after job_completed_retention_seconds
    (completed) or job_failed_retention_seconds (failed). Queued and
    processing jobs are never purged.

Usage:
    from testcase_search.jobs.tracker import JobTracker

    tracker = JobTracker()

    async def runner(reporter):
        reporter.start()
        reporter.progress(50.0)
        return {"indexed": 10}

    job = tracker.submit("embeddings", runner)
    final = await tracker.wait(job.id)
    print(final.status, final.result)
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any

import structlog

from testcase_search.errors import JobNotFoundError, JobStateError

# Configure structured logger
logger = structlog.get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_COMPLETED_RETENTION = 3600.0  # 1 hour
DEFAULT_FAILED_RETENTION = 86400.0  # 24 hours
DEFAULT_PURGE_INTERVAL = 60.0


# =============================================================================
# Job Values
# =============================================================================


class JobStatus(str, Enum):
    """Lifecycle states of a job."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


@dataclass(frozen=True)
class JobMetrics:
    """Resource usage of a job."""

    token_count: int = 0
    cost_estimate: float = 0.0
    elapsed_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_count": self.token_count,
            "cost_estimate": round(self.cost_estimate, 8),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


@dataclass(frozen=True)
class JobError:
    """Why a job failed, and at which chunk when chunked."""

    reason: str
    chunk_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"reason": self.reason, "chunk_index": self.chunk_index}


@dataclass(frozen=True)
class JobCheckpoint:
    """
    Chunk-level progress of a chunked job, enough to resume it.

    Attributes:
        total_chunks: Number of chunks the job's input was split into.
        completed_chunks: Indices of chunks that finished.
        chunk_results: Result payload per completed chunk index.
    """

    total_chunks: int
    completed_chunks: frozenset[int] = frozenset()
    chunk_results: Mapping[int, Any] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @property
    def progress(self) -> float:
        if self.total_chunks <= 0:
            return 0.0
        return len(self.completed_chunks) / self.total_chunks * 100.0

    def with_chunk(self, index: int, result: Any) -> "JobCheckpoint":
        results = dict(self.chunk_results)
        results[index] = result
        return replace(
            self,
            completed_chunks=self.completed_chunks | {index},
            chunk_results=MappingProxyType(results),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_chunks": self.total_chunks,
            "completed_chunks": sorted(self.completed_chunks),
            "chunk_results": {str(k): v for k, v in sorted(self.chunk_results.items())},
        }


@dataclass(frozen=True)
class Job:
    """Immutable snapshot of a job at one point in time."""

    id: str
    kind: str
    status: JobStatus
    progress: float
    metrics: JobMetrics
    created_at: float
    updated_at: float
    started_at: float | None = None
    finished_at: float | None = None
    result: Any = None
    error: JobError | None = None
    checkpoint: JobCheckpoint | None = None
    resumed_from: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind,
            "status": self.status.value,
            "progress": round(self.progress, 2),
            "metrics": self.metrics.to_dict(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "resumed_from": self.resumed_from,
        }
        if self.checkpoint is not None:
            data["checkpoint"] = {
                "total_chunks": self.checkpoint.total_chunks,
                "completed_chunks": sorted(self.checkpoint.completed_chunks),
            }
        if self.is_terminal:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data


JobRunner = Callable[["JobReporter"], Awaitable[Any]]


# =============================================================================
# Job Reporter (single writer)
# =============================================================================


class JobReporter:
    """
    The only mutator of one job.

    Handed to the job's runner by JobTracker.submit(). Every method
    validates the transition, then publishes a new snapshot.
    """

    def __init__(self, tracker: "JobTracker", job_id: str) -> None:
        self._tracker = tracker
        self.job_id = job_id

    @property
    def job(self) -> Job:
        return self._tracker.require(self.job_id)

    def _elapsed(self, job: Job, now: float) -> float:
        return now - job.started_at if job.started_at is not None else 0.0

    def _transition(self, job: Job, status: JobStatus) -> None:
        if status not in ALLOWED_TRANSITIONS[job.status]:
            raise JobStateError(
                f"Job {job.id} cannot move from {job.status.value} to {status.value}"
            )

    def start(self) -> Job:
        """queued → processing."""
        job = self.job
        self._transition(job, JobStatus.PROCESSING)
        now = self._tracker.now()
        return self._tracker._publish(
            replace(job, status=JobStatus.PROCESSING, started_at=now, updated_at=now)
        )

    def progress(
        self,
        percent: float,
        token_count: int | None = None,
        cost_estimate: float | None = None,
    ) -> Job:
        """
        Publish a progress update while processing.

        Raises:
            JobStateError: If the job is not processing, or percent is
                below the current progress or outside [0, 100].
        """
        job = self.job
        if job.status is not JobStatus.PROCESSING:
            raise JobStateError(f"Job {job.id} is {job.status.value}, not processing")
        if not 0.0 <= percent <= 100.0:
            raise JobStateError(f"Progress must be within [0, 100], got {percent}")
        if percent < job.progress:
            raise JobStateError(
                f"Progress of job {job.id} cannot regress from {job.progress} to {percent}"
            )

        now = self._tracker.now()
        metrics = replace(
            job.metrics,
            token_count=job.metrics.token_count if token_count is None else token_count,
            cost_estimate=(
                job.metrics.cost_estimate if cost_estimate is None else cost_estimate
            ),
            elapsed_seconds=self._elapsed(job, now),
        )
        return self._tracker._publish(
            replace(job, progress=percent, metrics=metrics, updated_at=now)
        )

    def record_chunk(
        self,
        index: int,
        result: Any,
        token_count: int = 0,
        cost_estimate: float = 0.0,
    ) -> Job:
        """
        Mark one chunk done, add its usage and advance progress.

        Raises:
            JobStateError: If the job has no checkpoint, is not processing,
                or the chunk is unknown or already recorded.
        """
        job = self.job
        checkpoint = job.checkpoint
        if checkpoint is None:
            raise JobStateError(f"Job {job.id} is not chunked")
        if not 0 <= index < checkpoint.total_chunks:
            raise JobStateError(f"Chunk {index} outside 0..{checkpoint.total_chunks - 1}")
        if index in checkpoint.completed_chunks:
            raise JobStateError(f"Chunk {index} of job {job.id} already recorded")
        if job.status is not JobStatus.PROCESSING:
            raise JobStateError(f"Job {job.id} is {job.status.value}, not processing")

        updated = checkpoint.with_chunk(index, result)
        now = self._tracker.now()
        metrics = JobMetrics(
            token_count=job.metrics.token_count + token_count,
            cost_estimate=job.metrics.cost_estimate + cost_estimate,
            elapsed_seconds=self._elapsed(job, now),
        )
        return self._tracker._publish(
            replace(
                job,
                checkpoint=updated,
                progress=max(job.progress, updated.progress),
                metrics=metrics,
                updated_at=now,
            )
        )

    def complete(self, result: Any = None) -> Job:
        """processing → completed with the result payload; progress becomes 100."""
        job = self.job
        self._transition(job, JobStatus.COMPLETED)
        now = self._tracker.now()
        return self._tracker._publish(
            replace(
                job,
                status=JobStatus.COMPLETED,
                progress=100.0,
                result=result,
                metrics=replace(job.metrics, elapsed_seconds=self._elapsed(job, now)),
                updated_at=now,
                finished_at=now,
            )
        )

    def fail(self, reason: str, chunk_index: int | None = None, result: Any = None) -> Job:
        """processing → failed; progress and checkpoint are kept."""
        job = self.job
        self._transition(job, JobStatus.FAILED)
        now = self._tracker.now()
        return self._tracker._publish(
            replace(
                job,
                status=JobStatus.FAILED,
                error=JobError(reason=reason, chunk_index=chunk_index),
                result=result,
                metrics=replace(job.metrics, elapsed_seconds=self._elapsed(job, now)),
                updated_at=now,
                finished_at=now,
            )
        )


# =============================================================================
# Job Tracker
# =============================================================================


class JobTracker:
    """
    Registry of jobs with polling, subscriptions and retention.

    Attributes:
        completed_retention: Seconds a completed job is kept.
        failed_retention: Seconds a failed job is kept.
        purge_interval: Seconds between purge passes of the purge loop.
    """

    def __init__(
        self,
        completed_retention: float = DEFAULT_COMPLETED_RETENTION,
        failed_retention: float = DEFAULT_FAILED_RETENTION,
        purge_interval: float = DEFAULT_PURGE_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.completed_retention = completed_retention
        self.failed_retention = failed_retention
        self.purge_interval = purge_interval
        self._clock = clock

        self._jobs: dict[str, Job] = {}
        self._subscribers: dict[str, list[asyncio.Queue[Job]]] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._purge_task: asyncio.Task[None] | None = None

        self._log = logger.bind(component="job_tracker")

    def now(self) -> float:
        return self._clock()

    def __len__(self) -> int:
        return len(self._jobs)

    # =========================================================================
    # Submission
    # =========================================================================

    def submit(
        self,
        kind: str,
        runner: JobRunner,
        checkpoint: JobCheckpoint | None = None,
        resumed_from: str | None = None,
        metrics: JobMetrics | None = None,
    ) -> Job:
        """
        Register a queued job and schedule its runner on the running loop.

        The runner receives the job's JobReporter. If it returns without
        finishing the job, the job completes with the returned value; if it
        raises, the job fails with the exception message.

        Returns:
            The queued snapshot.
        """
        now = self.now()
        job = Job(
            id=str(uuid.uuid4()),
            kind=kind,
            status=JobStatus.QUEUED,
            progress=checkpoint.progress if checkpoint is not None else 0.0,
            metrics=replace(metrics or JobMetrics(), elapsed_seconds=0.0),
            created_at=now,
            updated_at=now,
            checkpoint=checkpoint,
            resumed_from=resumed_from,
        )
        self._jobs[job.id] = job

        reporter = JobReporter(self, job.id)
        task = asyncio.get_running_loop().create_task(self._run(reporter, runner))
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.id, None))

        self._log.info(
            "job_submitted", job_id=job.id, kind=kind, resumed_from=resumed_from
        )
        return job

    async def _run(self, reporter: JobReporter, runner: JobRunner) -> None:
        job_id = reporter.job_id
        try:
            result = await runner(reporter)
        except asyncio.CancelledError:
            self._finish_failed(reporter, "job cancelled during shutdown")
            raise
        except Exception as e:
            self._log.error(
                "job_runner_failed",
                job_id=job_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            self._finish_failed(reporter, f"{type(e).__name__}: {e}")
            return

        job = self.get(job_id)
        if job is not None and not job.is_terminal:
            if job.status is JobStatus.QUEUED:
                reporter.start()
            reporter.complete(result)

    def _finish_failed(self, reporter: JobReporter, reason: str) -> None:
        job = self.get(reporter.job_id)
        if job is None or job.is_terminal:
            return
        if job.status is JobStatus.QUEUED:
            reporter.start()
        reporter.fail(reason)

    # =========================================================================
    # Observation
    # =========================================================================

    def get(self, job_id: str) -> Job | None:
        """Current snapshot, or None for an unknown (or purged) id."""
        return self._jobs.get(job_id)

    def require(self, job_id: str) -> Job:
        """Current snapshot; raises JobNotFoundError for an unknown id."""
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def list_jobs(self) -> list[Job]:
        return sorted(self._jobs.values(), key=lambda j: j.created_at)

    def subscribe(self, job_id: str) -> asyncio.Queue[Job]:
        """
        Queue receiving every new snapshot of the job, starting with the current one.

        Raises:
            JobNotFoundError: For an unknown id.
        """
        job = self.require(job_id)
        queue: asyncio.Queue[Job] = asyncio.Queue()
        queue.put_nowait(job)
        self._subscribers.setdefault(job_id, []).append(queue)
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue[Job]) -> None:
        queues = self._subscribers.get(job_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(job_id, None)

    async def wait(self, job_id: str, timeout: float | None = None) -> Job:
        """
        Await the job's terminal snapshot.

        Raises:
            JobNotFoundError: For an unknown id.
            asyncio.TimeoutError: If the job is not terminal within timeout.
        """
        queue = self.subscribe(job_id)
        try:

            async def until_terminal() -> Job:
                while True:
                    snapshot = await queue.get()
                    if snapshot.is_terminal:
                        return snapshot

            return await asyncio.wait_for(until_terminal(), timeout=timeout)
        finally:
            self.unsubscribe(job_id, queue)

    def _publish(self, job: Job) -> Job:
        """Swap in a new snapshot and notify subscribers."""
        self._jobs[job.id] = job
        for queue in self._subscribers.get(job.id, []):
            queue.put_nowait(job)

        self._log.debug(
            "job_updated",
            job_id=job.id,
            status=job.status.value,
            progress=round(job.progress, 2),
        )
        if job.is_terminal:
            self._log.info(
                "job_finished",
                job_id=job.id,
                kind=job.kind,
                status=job.status.value,
                progress=round(job.progress, 2),
                error=job.error.reason if job.error else None,
                **job.metrics.to_dict(),
            )
        return job

    # =========================================================================
    # Retention
    # =========================================================================

    def purge_expired(self, now: float | None = None) -> list[str]:
        """
        Remove terminal jobs past their retention window.

        Returns:
            Ids of the purged jobs.
        """
        now = self.now() if now is None else now
        expired: list[str] = []
        for job_id, job in self._jobs.items():
            if not job.is_terminal or job.finished_at is None:
                continue
            retention = (
                self.completed_retention
                if job.status is JobStatus.COMPLETED
                else self.failed_retention
            )
            if now - job.finished_at > retention:
                expired.append(job_id)

        for job_id in expired:
            self._jobs.pop(job_id, None)
            self._subscribers.pop(job_id, None)

        if expired:
            self._log.info("jobs_purged", count=len(expired))
        return expired

    async def _purge_loop(self) -> None:
        while True:
            await asyncio.sleep(self.purge_interval)
            try:
                self.purge_expired()
            except Exception as e:
                self._log.error("job_purge_failed", error=str(e))

    def start_purge_loop(self) -> None:
        """Start the periodic purge task on the running loop."""
        if self._purge_task is None or self._purge_task.done():
            self._purge_task = asyncio.get_running_loop().create_task(self._purge_loop())
            self._log.debug("job_purge_loop_started", interval=self.purge_interval)

    async def close(self) -> None:
        """Stop the purge loop and cancel running jobs."""
        tasks = list(self._tasks.values())
        if self._purge_task is not None:
            tasks.append(self._purge_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._purge_task = None
        self._log.info("job_tracker_closed", cancelled=len(tasks))


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "JobStatus",
    "JobMetrics",
    "JobError",
    "JobCheckpoint",
    "Job",
    "JobRunner",
    "JobReporter",
    "JobTracker",
    "TERMINAL_STATUSES",
]
