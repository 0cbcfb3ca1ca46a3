"""
Transactional Job Executor - run job work inside a database transaction.

Every unit of job work runs through one of three entry points:

- run_in_transaction: begin (at an isolation level), run, commit; roll back
  and re-raise on failure. A failing rollback is logged on its own and never
  replaces the original exception.
- run_without_transaction: a session that is never committed, for read-only
  checks.
- run_per_item: one transaction per item; a failing item is logged and the
  remaining items still run.

Example:
    >>> executor = TransactionalExecutor(get_session_factory())
    >>> unit_ids = executor.run_in_transaction(lambda session: synthesize(session))
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

T = TypeVar("T")
ItemT = TypeVar("ItemT")

DEFAULT_ISOLATION_LEVEL = "READ COMMITTED"


@dataclass
class PerItemResult(Generic[ItemT]):
    """Outcome of run_per_item."""

    succeeded: list[ItemT] = field(default_factory=list)
    failed: list[tuple[ItemT, Exception]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)


class TransactionalExecutor:
    """
    Run callables against a fresh session inside a single transaction.

    Args:
        session_factory: Callable returning a new Session (a sessionmaker).
        isolation_level: Default isolation level. None keeps the dialect default.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | Callable[[], Session],
        isolation_level: str | None = DEFAULT_ISOLATION_LEVEL,
    ):
        self.session_factory = session_factory
        self.isolation_level = isolation_level

    def run_in_transaction(
        self,
        action: Callable[[Session], T],
        isolation_level: str | None = None,
        log: Any = logger,
    ) -> T:
        """
        Execute action(session) in one transaction and return its result.

        Args:
            action: Work to perform. Must not commit on its own.
            isolation_level: Overrides the executor default for this call.
            log: Logger to report failures on (jobs pass their bound logger).

        Returns:
            Whatever the action returned, after the commit succeeded.
        """
        level = isolation_level or self.isolation_level
        session = self.session_factory()
        try:
            if level:
                session.connection(execution_options={"isolation_level": level})
            result = action(session)
            session.commit()
            return result
        except Exception as exc:
            try:
                session.rollback()
            except Exception as rollback_exc:  # Original exception must survive a failed rollback
                log.error("Transaction rollback failed: {}", rollback_exc)
            log.error("Transaction failed and was rolled back: {}", exc)
            raise
        finally:
            session.close()

    def run_without_transaction(self, action: Callable[[Session], T]) -> T:
        """Execute action(session) on a session that is rolled back, never committed."""
        session = self.session_factory()
        try:
            return action(session)
        finally:
            session.rollback()
            session.close()

    def run_per_item(
        self,
        items: Iterable[ItemT],
        action: Callable[[Session, ItemT], Any],
        describe: Callable[[ItemT], str] = str,
        log: Any = logger,
    ) -> PerItemResult[ItemT]:
        """
        Run action(session, item) for each item in its own transaction.

        A failure rolls back only that item's transaction. It is logged with the
        item's description and processing continues with the next item.
        """
        outcome: PerItemResult[ItemT] = PerItemResult()
        for item in items:
            try:
                self.run_in_transaction(lambda session: action(session, item), log=log)
            except Exception as exc:  # Per-item isolation: record and continue
                log.warning("Item {} failed: {}", describe(item), exc)
                outcome.failed.append((item, exc))
            else:
                outcome.succeeded.append(item)
        return outcome
