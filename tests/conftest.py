"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests:
an in-memory SQLite database, fake embedding/synthesis collaborators and a
scheduler that records what jobs chain instead of running it.
"""
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np
import pytest
from loguru import logger
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from config import Settings  # noqa: E402
from knowledge_synth.db.models import (  # noqa: E402
    AiPrompt,
    Base,
    Fragment,
    FragmentCategory,
    PromptType,
)
from knowledge_synth.jobs.context import JobContext  # noqa: E402
from knowledge_synth.jobs.executor import TransactionalExecutor  # noqa: E402
from knowledge_synth.jobs.scheduler import JobInvocation  # noqa: E402
from knowledge_synth.semantic.embedding_service import EmbeddingService  # noqa: E402
from fakes import RecordingScheduler  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (require database)")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ========================================
# Fixtures
# ========================================


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def settings():
    """Settings tuned for SQLite and three-dimensional test vectors."""
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        job_isolation_level=None,
        embedding_dimension=3,
        embedding_batch_size=100,
        embedding_requeue_delay_seconds=5.0,
        clustering_min_similarity=0.85,
        clustering_candidate_limit=100,
        clustering_seed_order="newest",
        job_max_duration_minutes=10.0,
    )


@pytest.fixture
def engine():
    """In-memory SQLite database shared across sessions of one test."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def executor(session_factory):
    return TransactionalExecutor(session_factory, isolation_level=None)


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def job_context(scheduler):
    """Factory for a JobContext bound to the recording scheduler."""

    def _make(name="test.job", job_id="job-under-test", **kwargs):
        return JobContext(
            job_id=job_id,
            invocation=JobInvocation(name, kwargs),
            scheduler=scheduler,
            cancel_event=threading.Event(),
        )

    return _make


@pytest.fixture
def log_messages():
    """Collect loguru messages emitted during a test."""
    messages = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)


@pytest.fixture
def category(db_session):
    category = FragmentCategory(name="Decision", description="Decisions taken in meetings")
    db_session.add(category)
    db_session.commit()
    return category


@pytest.fixture
def prompts(db_session):
    """Seed the prompts the synthesis contract requires."""
    db_session.add_all(
        [
            AiPrompt(prompt_type=PromptType.FRAGMENT_CLUSTERING, content="Merge fragments stating the same fact."),
            AiPrompt(prompt_type=PromptType.KNOWLEDGE_UNIT_CLUSTERING, content="Merge this cluster."),
            AiPrompt(prompt_type=PromptType.FRAGMENT_WEIGHTING, content="Prefer recent internal sources."),
        ]
    )
    db_session.commit()


@pytest.fixture
def make_fragment(db_session, category):
    """Factory for committed fragments; `vector` becomes the stored embedding."""
    base_time = datetime(2024, 1, 1, tzinfo=timezone.utc)
    counter = {"n": 0}

    def _make(title=None, vector=None, created_minute=None, **kwargs):
        counter["n"] += 1
        n = counter["n"]
        fragment = Fragment(
            title=title or f"Fragment {n}",
            summary=kwargs.pop("summary", f"Summary {n}"),
            content=kwargs.pop("content", f"Content of fragment {n}"),
            category_id=category.id,
            created_at=base_time + timedelta(minutes=n if created_minute is None else created_minute),
            embedding=EmbeddingService.to_bytes(np.asarray(vector, dtype=np.float32))
            if vector is not None
            else None,
            **kwargs,
        )
        db_session.add(fragment)
        db_session.commit()
        return fragment

    return _make
