"""
Long-running job tracking.

Modules:
    tracker        JobTracker, JobReporter and immutable Job snapshots
    embedding_job  EmbeddingJobRunner, the chunked embedding operation

Usage:
    from testcase_search.jobs import JobTracker, JobStatus
"""

from __future__ import annotations

from testcase_search.jobs.tracker import (
    Job,
    JobCheckpoint,
    JobMetrics,
    JobReporter,
    JobStatus,
    JobTracker,
)

__all__ = [
    "Job",
    "JobCheckpoint",
    "JobMetrics",
    "JobReporter",
    "JobStatus",
    "JobTracker",
]
