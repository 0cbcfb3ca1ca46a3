"""
Base class for pipeline jobs.

A job is a callable registered under a name. The scheduler calls it with a
JobContext and the invocation's keyword arguments. Database work goes through
the TransactionalExecutor; chained work is registered on context.scheduler only
after the transaction that produced it has committed.
"""
from __future__ import annotations

from typing import Any, ClassVar

from config import Settings, get_settings
from knowledge_synth.jobs.batch_loop import BatchLoopController
from knowledge_synth.jobs.context import JobContext
from knowledge_synth.jobs.executor import TransactionalExecutor
from knowledge_synth.jobs.scheduler import JobInvocation


class BaseJob:
    """Common wiring: settings, executor and invocation helpers."""

    name: ClassVar[str]

    def __init__(self, executor: TransactionalExecutor, settings: Settings | None = None):
        self.executor = executor
        self.settings = settings or get_settings()

    def __call__(self, context: JobContext, **kwargs: Any) -> Any:
        return self.run(context, **kwargs)

    def run(self, context: JobContext, **kwargs: Any) -> Any:
        raise NotImplementedError

    @classmethod
    def invocation(cls, **kwargs: Any) -> JobInvocation:
        """Build a JobInvocation for this job, dropping None arguments."""
        return JobInvocation(cls.name, {key: value for key, value in kwargs.items() if value is not None})

    def time_budget_controller(self) -> BatchLoopController:
        """Loop controller bounded by the configured job duration."""
        return BatchLoopController(max_duration_seconds=self.settings.job_max_duration_minutes * 60)
