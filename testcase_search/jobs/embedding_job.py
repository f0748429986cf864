"""
Chunked, throttled, resumable embedding generation.

Indexing a test case repository means one Titan call per test case plus two
Pinecone upserts per chunk; that is too slow for a request, so it runs as a
tracked job:

Architecture:
    TestCaseDocuments → chunks of embedding_batch_size
                             ↓  (≤ embedding_max_concurrent_chunks at once,
                             ↓   each start waits embedding_batch_delay_seconds
                             ↓   after the previous chunk start or finish)
        embed_batch → dense records  → vector index
        encode_document → sparse records → keyword index
                             ↓
              JobReporter.record_chunk (progress, tokens, cost)

Failure Policy:
    A failing chunk is retried with exponential backoff up to
    embedding_max_attempts. When retries are exhausted no further chunks
    start, chunks already running finish, and the job fails with the
    failing chunk index and reason. Completed chunks stay recorded in the
    job's checkpoint.

Resumption:
    resume(failed_job_id) submits a new job seeded with the failed job's
    checkpoint (resumed_from points at it), so completed chunks are not
    embedded again.

Usage:
    from testcase_search.jobs.embedding_job import EmbeddingJobRunner

    runner = EmbeddingJobRunner(tracker, embeddings, pinecone_client, encoder)
    job = runner.submit(documents)
    ...
    retry_job = runner.resume(job.id)
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import structlog

from testcase_search.config.settings import Settings, get_settings
from testcase_search.errors import JobStateError, ValidationError
from testcase_search.jobs.tracker import (
    Job,
    JobCheckpoint,
    JobReporter,
    JobStatus,
    JobTracker,
)
from testcase_search.retrieval.types import TestCaseDocument
from testcase_search.utils.retry import call_with_retry

if TYPE_CHECKING:
    from testcase_search.utils.bm25_encoder import BM25Encoder
    from testcase_search.utils.embeddings import BedrockEmbeddings
    from testcase_search.utils.pinecone_client import PineconeClient

# Configure structured logger
logger = structlog.get_logger(__name__)

EMBEDDING_JOB_KIND = "embeddings"


class EmbeddingJobRunner:
    """
    Submits and resumes embedding jobs on a JobTracker.

    Attributes:
        batch_size: Default documents per chunk.
        max_batch_size: Largest chunk accepted.
        max_concurrent_chunks: Chunks processed at the same time.
        batch_delay: Seconds a chunk start waits after the previous chunk
            started or finished.
        max_attempts: Attempts per chunk before the job fails.
    """

    def __init__(
        self,
        tracker: JobTracker,
        embeddings: "BedrockEmbeddings",
        client: "PineconeClient",
        encoder: "BM25Encoder",
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._tracker = tracker
        self._embeddings = embeddings
        self._client = client
        self._encoder = encoder

        self.vector_index = settings.pinecone_vector_index_name
        self.keyword_index = settings.pinecone_keyword_index_name
        self.batch_size = settings.embedding_batch_size
        self.max_batch_size = settings.embedding_max_batch_size
        self.max_concurrent_chunks = settings.embedding_max_concurrent_chunks
        self.batch_delay = settings.embedding_batch_delay_seconds
        self.max_attempts = settings.embedding_max_attempts
        self._min_wait = settings.retry_min_wait_seconds
        self._max_wait = settings.retry_max_wait_seconds

        # Chunked input per job id, kept while the job can still be resumed
        self._inputs: dict[str, list[list[TestCaseDocument]]] = {}

        self._log = logger.bind(component="embedding_job")

    # =========================================================================
    # Submission
    # =========================================================================

    def _chunk(
        self, documents: Sequence[TestCaseDocument], batch_size: int | None
    ) -> list[list[TestCaseDocument]]:
        size = batch_size or self.batch_size
        if not 1 <= size <= self.max_batch_size:
            raise ValidationError(
                f"batch_size must be between 1 and {self.max_batch_size}, got {size}"
            )
        if not documents:
            raise ValidationError("At least one test case is required")

        seen: set[str] = set()
        duplicates: set[str] = set()
        for doc in documents:
            if doc.id in seen:
                duplicates.add(doc.id)
            seen.add(doc.id)
        if duplicates:
            raise ValidationError(
                f"Duplicate test case ids: {', '.join(sorted(duplicates)[:10])}"
            )

        return [list(documents[i : i + size]) for i in range(0, len(documents), size)]

    def _forget_purged(self) -> None:
        for job_id in [j for j in self._inputs if self._tracker.get(j) is None]:
            self._inputs.pop(job_id, None)

    def submit(
        self, documents: Sequence[TestCaseDocument], batch_size: int | None = None
    ) -> Job:
        """
        Queue an embedding job for the documents.

        Raises:
            ValidationError: Empty input, duplicate ids or bad batch size.
        """
        self._forget_purged()
        chunks = self._chunk(documents, batch_size)
        job = self._tracker.submit(
            EMBEDDING_JOB_KIND,
            self._runner(chunks),
            checkpoint=JobCheckpoint(total_chunks=len(chunks)),
        )
        self._inputs[job.id] = chunks

        self._log.info(
            "embedding_job_submitted",
            job_id=job.id,
            documents=len(documents),
            chunks=len(chunks),
        )
        return job

    def resume(self, failed_job_id: str) -> Job:
        """
        Submit a new job continuing a failed one from its checkpoint.

        Raises:
            JobNotFoundError: Unknown (or purged) job id.
            JobStateError: The job is not a failed embedding job.
        """
        previous = self._tracker.require(failed_job_id)
        if previous.kind != EMBEDDING_JOB_KIND:
            raise JobStateError(f"Job {failed_job_id} is not an embedding job")
        if previous.status is not JobStatus.FAILED:
            raise JobStateError(
                f"Only failed jobs can be resumed; job {failed_job_id} is "
                f"{previous.status.value}"
            )
        chunks = self._inputs.get(failed_job_id)
        if chunks is None or previous.checkpoint is None:
            raise JobStateError(f"Job {failed_job_id} has no resumable input")

        job = self._tracker.submit(
            EMBEDDING_JOB_KIND,
            self._runner(chunks),
            checkpoint=previous.checkpoint,
            resumed_from=failed_job_id,
            metrics=previous.metrics,
        )
        self._inputs[job.id] = chunks
        # Input now belongs to the new job
        self._inputs.pop(failed_job_id, None)

        self._log.info(
            "embedding_job_resumed",
            job_id=job.id,
            resumed_from=failed_job_id,
            completed_chunks=len(previous.checkpoint.completed_chunks),
            total_chunks=previous.checkpoint.total_chunks,
        )
        return job

    # =========================================================================
    # Execution
    # =========================================================================

    def _runner(self, chunks: list[list[TestCaseDocument]]):
        async def run(reporter: JobReporter) -> Any:
            return await self._run(reporter, chunks)

        return run

    async def _run(
        self, reporter: JobReporter, chunks: list[list[TestCaseDocument]]
    ) -> dict[str, Any] | None:
        reporter.start()
        checkpoint = reporter.job.checkpoint
        done = checkpoint.completed_chunks if checkpoint is not None else frozenset()
        pending = [i for i in range(len(chunks)) if i not in done]

        semaphore = asyncio.Semaphore(self.max_concurrent_chunks)
        pacing = asyncio.Lock()
        stop = asyncio.Event()
        failures: list[tuple[int, BaseException]] = []
        loop = asyncio.get_running_loop()
        # Loop time of the latest chunk start or finish
        last_event: float | None = None

        async def pace() -> None:
            nonlocal last_event
            async with pacing:
                while last_event is not None and self.batch_delay > 0:
                    remaining = last_event + self.batch_delay - loop.time()
                    if remaining <= 0:
                        break
                    await asyncio.sleep(remaining)
                last_event = loop.time()

        async def process(index: int) -> None:
            nonlocal last_event
            async with semaphore:
                if stop.is_set():
                    return
                await pace()
                if stop.is_set():
                    return
                try:
                    result = await call_with_retry(
                        lambda: self._process_chunk(index, chunks[index]),
                        operation=f"embedding_chunk_{index}",
                        max_attempts=self.max_attempts,
                        min_wait=self._min_wait,
                        max_wait=self._max_wait,
                    )
                except Exception as e:
                    failures.append((index, e))
                    stop.set()
                    self._log.warning(
                        "embedding_chunk_failed",
                        job_id=reporter.job_id,
                        chunk_index=index,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    return
                finally:
                    last_event = loop.time()
                reporter.record_chunk(
                    index,
                    result,
                    token_count=result["token_count"],
                    cost_estimate=result["cost_estimate"],
                )

        tasks = [asyncio.create_task(process(index)) for index in pending]
        try:
            await asyncio.gather(*tasks)
        finally:
            # Chunks must not outlive a cancelled job
            for task in tasks:
                if not task.done():
                    task.cancel()

        job = reporter.job
        summary = self._summary(job, sum(len(c) for c in chunks))
        if failures:
            index, error = min(failures, key=lambda f: f[0])
            reporter.fail(f"{type(error).__name__}: {error}", chunk_index=index, result=summary)
            return None

        reporter.complete(summary)
        return summary

    def _summary(self, job: Job, documents: int) -> dict[str, Any]:
        checkpoint = job.checkpoint
        completed = sorted(checkpoint.completed_chunks) if checkpoint else []
        results = checkpoint.chunk_results if checkpoint else {}
        return {
            "documents": documents,
            "total_chunks": checkpoint.total_chunks if checkpoint else 0,
            "completed_chunks": completed,
            "indexed_documents": sum(results[i]["documents"] for i in completed),
            "token_count": job.metrics.token_count,
            "cost_estimate": round(job.metrics.cost_estimate, 8),
        }

    async def _process_chunk(
        self, index: int, documents: list[TestCaseDocument]
    ) -> dict[str, Any]:
        """Embed one chunk and upsert it into both indexes."""
        batch = await self._embeddings.embed_batch([d.embedding_text() for d in documents])

        dense_records = [
            {"id": doc.id, "values": vector, "metadata": doc.metadata()}
            for doc, vector in zip(documents, batch.vectors)
        ]
        sparse_records = []
        for doc in documents:
            sparse = self._encoder.encode_document(doc.field_texts())
            # Pinecone rejects empty sparse vectors
            if sparse["indices"]:
                sparse_records.append(
                    {"id": doc.id, "sparse_values": dict(sparse), "metadata": doc.metadata()}
                )

        dense = await self._client.upsert(self.vector_index, dense_records)
        keyword = await self._client.upsert(self.keyword_index, sparse_records)

        self._log.debug(
            "embedding_chunk_completed",
            chunk_index=index,
            documents=len(documents),
            token_count=batch.token_count,
        )
        return {
            "documents": len(documents),
            "dense_upserted": dense["upserted_count"],
            "sparse_upserted": keyword["upserted_count"],
            "skipped": dense["skipped_count"] + keyword["skipped_count"],
            "token_count": batch.token_count,
            "cost_estimate": batch.cost_estimate,
        }


__all__ = ["EmbeddingJobRunner", "EMBEDDING_JOB_KIND"]
