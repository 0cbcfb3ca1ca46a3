"""
Job Scheduler - enqueue, delay and chain background jobs.

Jobs are addressed by a JobInvocation (registered job name + keyword
arguments). The in-process scheduler runs them on a thread pool and provides:

- Deduplication: an invocation whose fingerprint (name + arguments) is
  already queued or running is dropped when it would enter the queue.
- Delayed jobs: schedule() enters the queue after a delay.
- Continuations: continue_job_with() holds a job until its parent succeeded.
  A parent that fails permanently takes its pending continuations with it.
- Retries: failures are retried with exponential backoff. ConfigurationError
  is never retried.

Example:
    >>> scheduler = InProcessJobScheduler(build_registry())
    >>> scheduler.enqueue(JobInvocation("clustering.incremental"))
    >>> scheduler.wait_until_idle()
    >>> scheduler.shutdown()
"""

from __future__ import annotations

import enum
import json
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol
from uuid import uuid4

from loguru import logger

from knowledge_synth.errors import ConfigurationError
from knowledge_synth.jobs.context import JobContext

if TYPE_CHECKING:
    from knowledge_synth.jobs.registry import JobRegistry


@dataclass(frozen=True)
class JobInvocation:
    """A job name plus the keyword arguments it is called with."""

    name: str
    kwargs: dict[str, Any] = field(default_factory=dict)

    @property
    def fingerprint(self) -> str:
        """Identity used to drop duplicate queued or running invocations."""
        return f"{self.name}:{json.dumps(self.kwargs, sort_keys=True, default=str)}"

    def __str__(self) -> str:
        if not self.kwargs:
            return self.name
        args = ", ".join(f"{key}={value}" for key, value in sorted(self.kwargs.items()))
        return f"{self.name}({args})"


class JobScheduler(Protocol):
    """What jobs need from a scheduler to chain further work."""

    def enqueue(self, invocation: JobInvocation) -> str | None: ...

    def schedule(self, invocation: JobInvocation, delay_seconds: float) -> str | None: ...

    def continue_job_with(self, parent_job_id: str, invocation: JobInvocation) -> str | None: ...


class JobState(str, enum.Enum):
    SCHEDULED = "scheduled"
    AWAITING = "awaiting"
    ENQUEUED = "enqueued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DELETED = "deleted"


PENDING_STATES = {JobState.SCHEDULED, JobState.AWAITING, JobState.ENQUEUED, JobState.PROCESSING}


@dataclass
class JobRecord:
    """Bookkeeping for one job, kept after it finished for inspection."""

    job_id: str
    invocation: JobInvocation
    state: JobState
    parent_job_id: str | None = None
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None


class InProcessJobScheduler:
    """
    Thread-pool job scheduler with deduplication, delays, continuations and retries.

    Args:
        registry: Resolves job names to callables.
        workers: Worker threads.
        retry_attempts: Attempts before a job is marked failed.
        retry_delay_seconds: Delay before the first retry; doubled for each further one.
    """

    def __init__(
        self,
        registry: JobRegistry,
        workers: int = 2,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 30.0,
    ):
        self.registry = registry
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay_seconds = retry_delay_seconds
        self.stop_event = threading.Event()

        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ksynth-job")
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._records: dict[str, JobRecord] = {}
        self._fingerprints: dict[str, str] = {}
        self._continuations: dict[str, list[str]] = {}
        self._timers: dict[str, threading.Timer] = {}

    # ========================================
    # Public API
    # ========================================

    def enqueue(self, invocation: JobInvocation) -> str | None:
        """Queue a job for immediate execution. Returns None when deduplicated."""
        with self._lock:
            record = self._create(invocation, JobState.ENQUEUED)
            if not self._enter_queue(record):
                return None
            return record.job_id

    def schedule(self, invocation: JobInvocation, delay_seconds: float) -> str | None:
        """Queue a job after delay_seconds."""
        with self._lock:
            record = self._create(invocation, JobState.SCHEDULED)
            if self.stop_event.is_set():
                self._finish(record, JobState.DELETED, "scheduler shut down")
                return None
            self._start_timer(record.job_id, delay_seconds)
            logger.debug("Scheduled {} in {:.1f}s", invocation, delay_seconds)
            return record.job_id

    def continue_job_with(self, parent_job_id: str, invocation: JobInvocation) -> str | None:
        """Queue a job once the parent job succeeded."""
        with self._lock:
            parent = self._records.get(parent_job_id)
            if parent is None:
                raise KeyError(f"Unknown parent job: {parent_job_id}")

            record = self._create(invocation, JobState.AWAITING, parent_job_id=parent_job_id)
            if parent.state == JobState.SUCCEEDED:
                self._enter_queue(record)
            elif parent.state in (JobState.FAILED, JobState.DELETED):
                self._finish(record, JobState.DELETED, f"parent {parent_job_id} {parent.state.value}")
            else:
                self._continuations.setdefault(parent_job_id, []).append(record.job_id)
            return record.job_id

    def get(self, job_id: str) -> JobRecord | None:
        with self._lock:
            return self._records.get(job_id)

    def records(self) -> list[JobRecord]:
        with self._lock:
            return sorted(self._records.values(), key=lambda r: r.created_at)

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        """Block until no job is scheduled, awaiting, queued or running."""
        with self._idle:
            return self._idle.wait_for(self._is_idle, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        """Signal cancellation to running jobs, drop pending timers and stop the pool."""
        self.stop_event.set()
        with self._lock:
            for job_id, timer in list(self._timers.items()):
                timer.cancel()
                self._finish(self._records[job_id], JobState.DELETED, "scheduler shut down")
            self._timers.clear()
        self._pool.shutdown(wait=wait)

    # ========================================
    # State transitions (caller holds the lock)
    # ========================================

    def _create(
        self,
        invocation: JobInvocation,
        state: JobState,
        parent_job_id: str | None = None,
    ) -> JobRecord:
        record = JobRecord(
            job_id=uuid4().hex[:12],
            invocation=invocation,
            state=state,
            parent_job_id=parent_job_id,
        )
        self._records[record.job_id] = record
        return record

    def _enter_queue(self, record: JobRecord) -> bool:
        if self.stop_event.is_set():
            self._finish(record, JobState.DELETED, "scheduler shut down")
            return False

        fingerprint = record.invocation.fingerprint
        holder = self._fingerprints.get(fingerprint)
        if holder is not None and holder != record.job_id:
            logger.info("Skipping {}: already queued or running as job {}", record.invocation, holder)
            self._finish(record, JobState.DELETED, f"duplicate of {holder}")
            return False

        self._fingerprints[fingerprint] = record.job_id
        record.state = JobState.ENQUEUED
        self._pool.submit(self._perform, record.job_id)
        return True

    def _finish(self, record: JobRecord, state: JobState, reason: str | None = None) -> None:
        record.state = state
        record.finished_at = datetime.now(timezone.utc)
        if reason and state != JobState.SUCCEEDED:
            record.last_error = record.last_error or reason
        if self._fingerprints.get(record.invocation.fingerprint) == record.job_id:
            del self._fingerprints[record.invocation.fingerprint]

        children = self._continuations.pop(record.job_id, [])
        for child_id in children:
            child = self._records[child_id]
            if state == JobState.SUCCEEDED:
                self._enter_queue(child)
            else:
                self._finish(child, JobState.DELETED, f"parent {record.job_id} {state.value}")
        self._idle.notify_all()

    def _start_timer(self, job_id: str, delay_seconds: float) -> None:
        timer = threading.Timer(max(0.0, delay_seconds), self._on_timer, args=(job_id,))
        timer.daemon = True
        self._timers[job_id] = timer
        timer.start()

    def _on_timer(self, job_id: str) -> None:
        with self._lock:
            self._timers.pop(job_id, None)
            record = self._records[job_id]
            if record.state != JobState.SCHEDULED:
                return
            self._enter_queue(record)

    def _is_idle(self) -> bool:
        return not any(record.state in PENDING_STATES for record in self._records.values())

    # ========================================
    # Execution (worker threads)
    # ========================================

    def _perform(self, job_id: str) -> None:
        with self._lock:
            record = self._records[job_id]
            if self.stop_event.is_set():
                self._finish(record, JobState.DELETED, "scheduler shut down")
                return
            record.state = JobState.PROCESSING
            record.attempts += 1

        context = JobContext(
            job_id=job_id,
            invocation=record.invocation,
            scheduler=self,
            cancel_event=self.stop_event,
            attempt=record.attempts,
        )

        try:
            job = self.registry.get(record.invocation.name)
            context.log.info("Starting job {} (attempt {})", record.invocation, record.attempts)
            job(context, **record.invocation.kwargs)
        except ConfigurationError as exc:
            context.log.error("Job {} failed permanently: {}", record.invocation, exc)
            with self._lock:
                record.last_error = str(exc)
                self._finish(record, JobState.FAILED)
        except Exception as exc:
            self._handle_failure(record, exc, context)
        else:
            context.log.info("Job {} succeeded", record.invocation)
            with self._lock:
                self._finish(record, JobState.SUCCEEDED)

    def _handle_failure(self, record: JobRecord, exc: Exception, context: JobContext) -> None:
        with self._lock:
            record.last_error = str(exc)
            if record.attempts >= self.retry_attempts or self.stop_event.is_set():
                context.log.opt(exception=exc).error(
                    "Job {} failed after {} attempts", record.invocation, record.attempts
                )
                self._finish(record, JobState.FAILED)
                return

            delay = self.retry_delay_seconds * (2 ** (record.attempts - 1))
            context.log.warning(
                "Job {} failed (attempt {}), retrying in {:.1f}s: {}",
                record.invocation,
                record.attempts,
                delay,
                exc,
            )
            record.state = JobState.SCHEDULED
            self._start_timer(record.job_id, delay)
