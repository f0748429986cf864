from __future__ import annotations

import asyncio

import pytest

from testcase_search.errors import JobNotFoundError, JobStateError
from testcase_search.jobs.tracker import (
    JobCheckpoint,
    JobReporter,
    JobStatus,
    JobTracker,
)


class _Clock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


# =============================================================================
# Lifecycle
# =============================================================================


@pytest.mark.asyncio
async def test_job_runs_to_completion() -> None:
    tracker = JobTracker()

    async def runner(reporter: JobReporter) -> dict:
        reporter.start()
        reporter.progress(40.0, token_count=12, cost_estimate=0.001)
        return {"indexed": 3}

    job = tracker.submit("embeddings", runner)
    assert job.status is JobStatus.QUEUED
    assert job.progress == 0.0

    final = await tracker.wait(job.id, timeout=1)

    assert final.status is JobStatus.COMPLETED
    assert final.progress == 100.0
    assert final.result == {"indexed": 3}
    assert final.metrics.token_count == 12
    assert final.finished_at is not None


@pytest.mark.asyncio
async def test_runner_exception_fails_job() -> None:
    tracker = JobTracker()

    async def runner(reporter: JobReporter) -> None:
        reporter.start()
        raise RuntimeError("store unreachable")

    job = tracker.submit("embeddings", runner)
    final = await tracker.wait(job.id, timeout=1)

    assert final.status is JobStatus.FAILED
    assert final.error is not None
    assert "store unreachable" in final.error.reason


@pytest.mark.asyncio
async def test_runner_that_never_starts_still_completes() -> None:
    tracker = JobTracker()

    async def runner(reporter: JobReporter) -> str:
        return "done"

    job = tracker.submit("noop", runner)
    final = await tracker.wait(job.id, timeout=1)

    assert final.status is JobStatus.COMPLETED
    assert final.started_at is not None
    assert final.result == "done"


@pytest.mark.asyncio
async def test_progress_never_regresses() -> None:
    tracker = JobTracker()
    errors: list[Exception] = []

    async def runner(reporter: JobReporter) -> None:
        reporter.start()
        reporter.progress(60.0)
        try:
            reporter.progress(30.0)
        except JobStateError as e:
            errors.append(e)
        try:
            reporter.progress(120.0)
        except JobStateError as e:
            errors.append(e)

    job = tracker.submit("embeddings", runner)
    final = await tracker.wait(job.id, timeout=1)

    assert len(errors) == 2
    assert final.status is JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_terminal_state_is_final() -> None:
    tracker = JobTracker()
    captured: dict[str, JobReporter] = {}

    async def runner(reporter: JobReporter) -> None:
        captured["reporter"] = reporter
        reporter.start()
        reporter.complete("ok")

    job = tracker.submit("embeddings", runner)
    await tracker.wait(job.id, timeout=1)
    reporter = captured["reporter"]

    with pytest.raises(JobStateError):
        reporter.fail("too late")
    with pytest.raises(JobStateError):
        reporter.progress(100.0)
    assert tracker.require(job.id).status is JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_progress_requires_processing() -> None:
    tracker = JobTracker()
    gate = asyncio.Event()
    captured: dict[str, JobReporter] = {}

    async def runner(reporter: JobReporter) -> None:
        captured["reporter"] = reporter
        await gate.wait()

    job = tracker.submit("embeddings", runner)
    await asyncio.sleep(0)

    with pytest.raises(JobStateError):
        captured["reporter"].progress(10.0)

    gate.set()
    await tracker.wait(job.id, timeout=1)


# =============================================================================
# Chunk Checkpoints
# =============================================================================


@pytest.mark.asyncio
async def test_record_chunk_tracks_progress_and_usage() -> None:
    tracker = JobTracker()

    async def runner(reporter: JobReporter) -> None:
        reporter.start()
        reporter.record_chunk(0, {"documents": 2}, token_count=10, cost_estimate=0.5)
        with pytest.raises(JobStateError):
            reporter.record_chunk(0, {"documents": 2})
        with pytest.raises(JobStateError):
            reporter.record_chunk(5, {"documents": 2})
        reporter.fail("chunk 1 failed", chunk_index=1)

    job = tracker.submit(
        "embeddings", runner, checkpoint=JobCheckpoint(total_chunks=4)
    )
    final = await tracker.wait(job.id, timeout=1)

    assert final.status is JobStatus.FAILED
    assert final.progress == pytest.approx(25.0)
    assert final.metrics.token_count == 10
    assert final.metrics.cost_estimate == pytest.approx(0.5)
    assert final.checkpoint is not None
    assert final.checkpoint.completed_chunks == frozenset({0})
    assert final.error is not None and final.error.chunk_index == 1


@pytest.mark.asyncio
async def test_seeded_checkpoint_sets_initial_progress() -> None:
    tracker = JobTracker()
    checkpoint = JobCheckpoint(total_chunks=4).with_chunk(0, "a").with_chunk(1, "b")

    async def runner(reporter: JobReporter) -> None:
        await asyncio.sleep(0)

    job = tracker.submit("embeddings", runner, checkpoint=checkpoint, resumed_from="x")

    assert job.progress == pytest.approx(50.0)
    assert job.resumed_from == "x"
    await tracker.wait(job.id, timeout=1)


def test_checkpoint_to_dict() -> None:
    checkpoint = JobCheckpoint(total_chunks=3).with_chunk(2, {"n": 1})

    assert checkpoint.to_dict() == {
        "total_chunks": 3,
        "completed_chunks": [2],
        "chunk_results": {"2": {"n": 1}},
    }


# =============================================================================
# Observation
# =============================================================================


@pytest.mark.asyncio
async def test_subscribe_receives_each_snapshot() -> None:
    tracker = JobTracker()
    gate = asyncio.Event()

    async def runner(reporter: JobReporter) -> None:
        await gate.wait()
        reporter.start()
        reporter.progress(50.0)

    job = tracker.submit("embeddings", runner)
    queue = tracker.subscribe(job.id)
    gate.set()
    await tracker.wait(job.id, timeout=1)

    statuses = []
    while not queue.empty():
        statuses.append(queue.get_nowait().status)
    assert statuses == [
        JobStatus.QUEUED,
        JobStatus.PROCESSING,
        JobStatus.PROCESSING,
        JobStatus.COMPLETED,
    ]


def test_unknown_job() -> None:
    tracker = JobTracker()

    assert tracker.get("missing") is None
    with pytest.raises(JobNotFoundError):
        tracker.require("missing")


@pytest.mark.asyncio
async def test_wait_times_out_for_running_job() -> None:
    tracker = JobTracker()
    gate = asyncio.Event()

    async def runner(reporter: JobReporter) -> None:
        await gate.wait()

    job = tracker.submit("embeddings", runner)

    with pytest.raises(asyncio.TimeoutError):
        await tracker.wait(job.id, timeout=0.01)

    gate.set()
    await tracker.wait(job.id, timeout=1)


@pytest.mark.asyncio
async def test_to_dict_hides_result_until_terminal() -> None:
    tracker = JobTracker()
    gate = asyncio.Event()

    async def runner(reporter: JobReporter) -> str:
        await gate.wait()
        return "payload"

    job = tracker.submit("embeddings", runner)
    assert "result" not in job.to_dict()

    gate.set()
    final = await tracker.wait(job.id, timeout=1)

    assert final.to_dict()["result"] == "payload"
    assert final.to_dict()["status"] == "completed"


# =============================================================================
# Retention
# =============================================================================


@pytest.mark.asyncio
async def test_purge_respects_retention_per_status() -> None:
    clock = _Clock()
    tracker = JobTracker(completed_retention=10, failed_retention=100, clock=clock)

    async def ok(reporter: JobReporter) -> str:
        return "ok"

    async def broken(reporter: JobReporter) -> None:
        raise ValueError("bad")

    done = tracker.submit("embeddings", ok)
    failed = tracker.submit("embeddings", broken)
    await tracker.wait(done.id, timeout=1)
    await tracker.wait(failed.id, timeout=1)

    clock.now += 50
    assert tracker.purge_expired() == [done.id]
    assert tracker.get(failed.id) is not None

    clock.now += 100
    assert tracker.purge_expired() == [failed.id]
    assert len(tracker) == 0


@pytest.mark.asyncio
async def test_running_jobs_are_never_purged() -> None:
    clock = _Clock()
    tracker = JobTracker(completed_retention=0, failed_retention=0, clock=clock)
    gate = asyncio.Event()

    async def runner(reporter: JobReporter) -> None:
        reporter.start()
        await gate.wait()

    job = tracker.submit("embeddings", runner)
    await asyncio.sleep(0)
    clock.now += 10_000

    assert tracker.purge_expired() == []

    gate.set()
    await tracker.wait(job.id, timeout=1)


@pytest.mark.asyncio
async def test_close_fails_running_jobs() -> None:
    tracker = JobTracker()
    tracker.start_purge_loop()

    async def runner(reporter: JobReporter) -> None:
        reporter.start()
        await asyncio.Event().wait()

    job = tracker.submit("embeddings", runner)
    await asyncio.sleep(0)

    await tracker.close()

    final = tracker.require(job.id)
    assert final.status is JobStatus.FAILED
    assert final.error is not None
    assert "cancelled" in final.error.reason
