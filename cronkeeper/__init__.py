"""Cronkeeper – top-level package exports.

This module re-exports the job-coordination primitives for convenience.
"""

from cronkeeper.coordination.rate_limiter import RateLimiter
from cronkeeper.coordination.retry import (
    NonRetryableError,
    RetryableError,
    RetryExecutor,
    RetryPolicy,
)
from cronkeeper.coordination.job_lock import DistributedLock, LockContentionError, LockResult
from cronkeeper.coordination.run_ledger import JobStatus, RunLedger, RunStart
from cronkeeper.coordination.heartbeat import HeartbeatMonitor
from cronkeeper.coordination.job_runner import JobAction, JobOutcome, JobRunner
from cronkeeper.archival.coordinator import ArchivalCoordinator

__version__ = "0.1.0"
