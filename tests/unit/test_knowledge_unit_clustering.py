"""
Unit tests for the incremental clustering job.

Runs the job against an in-memory database with a scripted synthesis client
and a recording scheduler.
"""
import math
from uuid import uuid4

import pytest
from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from fakes import FakeSynthesisClient
from knowledge_synth.db.models import Fragment, FragmentKnowledgeUnit, KnowledgeUnit
from knowledge_synth.errors import ConfigurationError, MalformedResponseError
from knowledge_synth.jobs.batch_loop import LoopExit
from knowledge_synth.jobs.knowledge_unit_clustering import KnowledgeUnitClusteringJob
from knowledge_synth.synthesis.knowledge_units import KnowledgeUnitSynthesizer

SEED_VECTOR = [1.0, 0.0, 0.0]


def similar_to_seed(similarity):
    return [similarity, math.sqrt(1 - similarity**2), 0.0]


def proposal(fragment_ids, title="Merged fact", category="Decision", **overrides):
    data = {
        "fragment_ids": fragment_ids,
        "title": title,
        "summary": "Short summary",
        "category": category,
        "content": "Merged content",
        "confidence": "High",
        "confidence_comment": "Two independent sources",
        "clustering_rationale": "Same decision stated twice",
    }
    data.update(overrides)
    return data


def count(session, model):
    return session.scalar(select(func.count()).select_from(model))


@pytest.fixture
def make_job(executor, settings):
    def _make(client):
        return KnowledgeUnitClusteringJob(executor, KnowledgeUnitSynthesizer(client), settings=settings)

    return _make


class TestIncrementalClustering:
    """End-to-end behaviour of KnowledgeUnitClusteringJob.run."""

    def test_threshold_scenario(self, make_job, job_context, scheduler, db_session, make_fragment, prompts):
        """F2 (0.90) joins the newest seed F1; F3 (0.80) is left for its own iteration."""
        f3 = make_fragment("F3", similar_to_seed(0.80), created_minute=1)
        f2 = make_fragment("F2", similar_to_seed(0.90), created_minute=2)
        f1 = make_fragment("F1", SEED_VECTOR, created_minute=3)
        client = FakeSynthesisClient({"knowledge_units": [proposal([1, 2])], "message": "ok"})
        job = make_job(client)

        result = job.run(job_context(KnowledgeUnitClusteringJob.name))

        assert result.exit_reason == LoopExit.DRAINED
        assert len(client.calls) == 1
        request = client.calls[0]["user"]
        assert [fragment["title"] for fragment in request["fragments"]] == ["F1", "F2"]
        assert request["seed_fragment_id"] == 1

        db_session.expire_all()
        unit = db_session.scalars(select(KnowledgeUnit)).one()
        linked = {link.fragment_id for link in unit.fragment_links}
        assert linked == {f1.id, f2.id}
        for fragment in db_session.scalars(select(Fragment)):
            assert fragment.clustering_processed is not None
        assert f3.id not in linked

    def test_single_iteration_leaves_weaker_candidate_unprocessed(
        self, make_job, executor, db_session, make_fragment, prompts
    ):
        """After the first seed only F1 and F2 carry the watermark; F3 waits for a later iteration."""
        f3 = make_fragment("F3", similar_to_seed(0.80), created_minute=1)
        f2 = make_fragment("F2", similar_to_seed(0.90), created_minute=2)
        f1 = make_fragment("F1", SEED_VECTOR, created_minute=3)
        job = make_job(FakeSynthesisClient({"knowledge_units": [proposal([1, 2])]}))

        outcome = executor.run_in_transaction(lambda session: job.process_next_seed(session, logger))

        assert outcome.created_count == 1
        db_session.expire_all()
        assert db_session.get(Fragment, f1.id).clustering_processed is not None
        assert db_session.get(Fragment, f2.id).clustering_processed is not None
        assert db_session.get(Fragment, f3.id).clustering_processed is None

    def test_seed_without_candidates_is_marked_processed(
        self, make_job, job_context, db_session, make_fragment, prompts
    ):
        """A lone seed is marked processed without calling the model."""
        lonely = make_fragment("Lonely", SEED_VECTOR)
        client = FakeSynthesisClient()

        make_job(client).run(job_context(KnowledgeUnitClusteringJob.name))

        db_session.expire_all()
        assert client.calls == []
        assert db_session.get(Fragment, lonely.id).clustering_processed is not None
        assert count(db_session, KnowledgeUnit) == 0

    def test_invalid_proposals_are_skipped_others_kept(
        self, make_job, job_context, db_session, make_fragment, prompts, log_messages
    ):
        """Single-fragment, unknown-id and unknown-category proposals are rejected individually."""
        make_fragment("A", similar_to_seed(0.95), created_minute=1)
        make_fragment("B", similar_to_seed(0.97), created_minute=2)
        make_fragment("Seed", SEED_VECTOR, created_minute=3)
        client = FakeSynthesisClient(
            {
                "knowledge_units": [
                    proposal([1], title="Only one"),
                    proposal([1, 2, 3], title="Valid"),
                    proposal([2, 99], title="Unknown id"),
                    proposal([1, 3], title="Bad category", category="Gossip"),
                    proposal([2, 2], title="Duplicate ids"),
                ]
            }
        )

        make_job(client).run(job_context(KnowledgeUnitClusteringJob.name))

        db_session.expire_all()
        units = db_session.scalars(select(KnowledgeUnit)).all()
        assert [unit.title for unit in units] == ["Valid"]
        assert count(db_session, FragmentKnowledgeUnit) == 3
        assert all(f.clustering_processed is not None for f in db_session.scalars(select(Fragment)))
        assert sum("Rejected proposed knowledge unit" in message for message in log_messages) == 4

    def test_empty_proposal_list_still_marks_participants(
        self, make_job, job_context, db_session, make_fragment, prompts
    ):
        make_fragment("A", similar_to_seed(0.99), created_minute=1)
        make_fragment("Seed", SEED_VECTOR, created_minute=2)
        client = FakeSynthesisClient({"knowledge_units": [], "message": "Nothing to merge"})

        make_job(client).run(job_context(KnowledgeUnitClusteringJob.name))

        db_session.expire_all()
        assert count(db_session, KnowledgeUnit) == 0
        assert all(f.clustering_processed is not None for f in db_session.scalars(select(Fragment)))

    def test_embedding_continuation_per_created_unit(
        self, make_job, job_context, scheduler, make_fragment, prompts
    ):
        """Each new knowledge unit gets its own embedding continuation on the running job."""
        make_fragment("A", similar_to_seed(0.99), created_minute=1)
        make_fragment("B", similar_to_seed(0.98), created_minute=2)
        make_fragment("Seed", SEED_VECTOR, created_minute=3)
        client = FakeSynthesisClient(
            {"knowledge_units": [proposal([1, 2], title="One"), proposal([2, 3], title="Two")]}
        )

        make_job(client).run(job_context(KnowledgeUnitClusteringJob.name, job_id="parent-1"))

        assert len(scheduler.continuations) == 2
        assert {parent for parent, _ in scheduler.continuations} == {"parent-1"}
        assert {inv.name for _, inv in scheduler.continuations} == {"embedding.knowledge_units"}
        assert len({inv.kwargs["knowledge_unit_id"] for _, inv in scheduler.continuations}) == 2

    def test_malformed_response_rolls_back_everything(
        self, make_job, job_context, scheduler, db_session, make_fragment, prompts
    ):
        """A failed AI call leaves no unit and no processed marker behind."""
        make_fragment("A", similar_to_seed(0.99), created_minute=1)
        make_fragment("Seed", SEED_VECTOR, created_minute=2)
        client = FakeSynthesisClient(MalformedResponseError("not json"))

        with pytest.raises(MalformedResponseError):
            make_job(client).run(job_context(KnowledgeUnitClusteringJob.name))

        db_session.expire_all()
        assert count(db_session, KnowledgeUnit) == 0
        assert all(f.clustering_processed is None for f in db_session.scalars(select(Fragment)))
        assert scheduler.continuations == []

    def test_failed_link_insert_rolls_back_unit_and_watermarks(
        self, make_job, job_context, scheduler, db_session, make_fragment, prompts, monkeypatch
    ):
        """A constraint violation on a fragment link discards the unit and every processed marker."""
        make_fragment("A", similar_to_seed(0.99), created_minute=1)
        make_fragment("Seed", SEED_VECTOR, created_minute=2)
        persist = KnowledgeUnitSynthesizer._persist

        def persist_with_duplicate_link(session, proposal, fragments, category):
            unit = persist(session, proposal, fragments, category)
            session.add(
                FragmentKnowledgeUnit(id=uuid4(), fragment_id=fragments[0].id, knowledge_unit_id=unit.id)
            )
            return unit

        monkeypatch.setattr(KnowledgeUnitSynthesizer, "_persist", staticmethod(persist_with_duplicate_link))
        client = FakeSynthesisClient({"knowledge_units": [proposal([1, 2])]})

        with pytest.raises(IntegrityError):
            make_job(client).run(job_context(KnowledgeUnitClusteringJob.name))

        db_session.expire_all()
        assert count(db_session, KnowledgeUnit) == 0
        assert count(db_session, FragmentKnowledgeUnit) == 0
        assert all(f.clustering_processed is None for f in db_session.scalars(select(Fragment)))
        assert scheduler.continuations == []

    def test_missing_prompt_is_a_configuration_error(self, make_job, job_context, db_session, make_fragment):
        make_fragment("A", similar_to_seed(0.99), created_minute=1)
        make_fragment("Seed", SEED_VECTOR, created_minute=2)

        with pytest.raises(ConfigurationError, match="FragmentClustering"):
            make_job(FakeSynthesisClient()).run(job_context(KnowledgeUnitClusteringJob.name))

        db_session.expire_all()
        assert all(f.clustering_processed is None for f in db_session.scalars(select(Fragment)))

    def test_processed_fragments_are_never_reclaimed(
        self, make_job, job_context, db_session, make_fragment, prompts
    ):
        """Fragments already processed or without embedding are ignored."""
        from datetime import datetime, timezone

        done_at = datetime(2024, 2, 1, tzinfo=timezone.utc)
        make_fragment("Done", SEED_VECTOR, clustering_processed=done_at)
        make_fragment("Unembedded")
        client = FakeSynthesisClient()

        result = make_job(client).run(job_context(KnowledgeUnitClusteringJob.name))

        assert result.iterations == 1
        assert result.productive_iterations == 0
        assert client.calls == []

    def test_budget_exhaustion_enqueues_continuation(
        self, make_job, job_context, scheduler, make_fragment, prompts, settings
    ):
        """When the time budget is gone the job chains another run of itself."""
        settings.job_max_duration_minutes = 0
        make_fragment("Seed", SEED_VECTOR)

        result = make_job(FakeSynthesisClient()).run(
            job_context(KnowledgeUnitClusteringJob.name, job_id="parent-2")
        )

        assert result.exit_reason == LoopExit.BUDGET_EXHAUSTED
        assert scheduler.continuations == [("parent-2", KnowledgeUnitClusteringJob.invocation())]

    def test_cancellation_stops_before_next_seed(self, make_job, job_context, make_fragment, prompts):
        make_fragment("Seed", SEED_VECTOR)
        context = job_context(KnowledgeUnitClusteringJob.name)
        context.cancel_event.set()

        result = make_job(FakeSynthesisClient()).run(context)

        assert result.exit_reason == LoopExit.CANCELLED
        assert result.iterations == 0
