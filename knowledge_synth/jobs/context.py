from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from knowledge_synth.jobs.scheduler import JobInvocation, JobScheduler


@dataclass
class JobContext:
    """Per-run handle a job receives: its identity, the scheduler and the cancellation flag."""

    job_id: str
    invocation: JobInvocation
    scheduler: JobScheduler
    cancel_event: threading.Event = field(default_factory=threading.Event)
    attempt: int = 1
    log: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.log = logger.bind(job=self.invocation.name, job_id=self.job_id)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()
