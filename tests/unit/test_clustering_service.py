"""
Unit tests for the offline clustering service and the clustering session job.
"""
import numpy as np
import pytest
from sqlalchemy import select

from knowledge_synth.db.models import Cluster, ClusteringSession, ClusteringStatus, LinkageMethod
from knowledge_synth.jobs.clustering_session import ClusteringSessionJob
from knowledge_synth.semantic.clustering_service import FragmentClusteringService
from knowledge_synth.semantic.embedding_service import EmbeddingService

GROUP_X = [[1.0, 0.05, 0.0], [1.0, 0.0, 0.05], [0.98, 0.02, 0.02]]
GROUP_Y = [[0.05, 1.0, 0.0], [0.0, 1.0, 0.05], [0.02, 0.98, 0.02]]
LONER = [0.0, 0.0, 1.0]


@pytest.fixture
def service(settings):
    return FragmentClusteringService(settings=settings)


class TestClusterEmbeddings:
    """Tests for the in-memory clustering stages."""

    def test_two_groups_give_two_clusters(self, service):
        matrix = np.array(GROUP_X + GROUP_Y, dtype=np.float32)
        ids = list("abcdef")

        results = service.cluster_embeddings(ids, matrix, distance_threshold=0.3)

        assert sorted(sorted(r.fragment_ids) for r in results) == [["a", "b", "c"], ["d", "e", "f"]]
        assert [r.cluster_number for r in results] == [1, 2]

    def test_small_clusters_are_discarded(self, service):
        matrix = np.array(GROUP_X + [LONER], dtype=np.float32)

        results = service.cluster_embeddings(list("abcd"), matrix, distance_threshold=0.3, min_cluster_size=2)

        assert [sorted(r.fragment_ids) for r in results] == [["a", "b", "c"]]

    def test_large_clusters_are_discarded(self, service):
        matrix = np.array(GROUP_X + GROUP_Y[:2], dtype=np.float32)

        results = service.cluster_embeddings(
            list("abcde"), matrix, distance_threshold=0.3, max_cluster_size=2
        )

        assert [sorted(r.fragment_ids) for r in results] == [["d", "e"]]

    def test_centroid_and_distance(self, service):
        matrix = np.array([[1.0, 0.0, 0.0], [1.0, 0.0, 0.0]], dtype=np.float32)

        (result,) = service.cluster_embeddings(["a", "b"], matrix, distance_threshold=0.3)

        np.testing.assert_array_almost_equal(result.centroid, [1.0, 0.0, 0.0])
        assert result.intra_cluster_distance == pytest.approx(0.0, abs=1e-6)

    def test_ward_linkage(self, service):
        matrix = np.array(GROUP_X + GROUP_Y, dtype=np.float32)

        results = service.cluster_embeddings(
            list("abcdef"), matrix, distance_threshold=0.5, linkage=LinkageMethod.WARD
        )

        assert len(results) == 2

    def test_oversized_input_is_bucketed(self, settings):
        """Buckets above max_bucket_size are split with K-means until they fit."""
        service = FragmentClusteringService(max_bucket_size=4, target_bucket_size=2, settings=settings)
        matrix = np.array(GROUP_X + GROUP_Y + [LONER, [0.0, 0.05, 1.0]], dtype=np.float32)

        buckets = service._bucket(matrix)

        assert all(len(bucket) <= 4 for bucket in buckets)
        assert sorted(np.concatenate(buckets).tolist()) == list(range(8))


class TestPerformClustering:
    """Tests for persisting a clustering session."""

    def test_persists_clusters_and_completes_session(self, service, db_session, make_fragment):
        group_x = [make_fragment(vector=v) for v in GROUP_X]
        group_y = [make_fragment(vector=v) for v in GROUP_Y]
        make_fragment("Deleted", GROUP_X[0], is_deleted=True)
        make_fragment("Unembedded")
        clustering_session = service.create_session(db_session, distance_threshold=0.3)

        results = service.perform_clustering(db_session, clustering_session)
        db_session.commit()

        assert len(results) == 2
        assert clustering_session.status == ClusteringStatus.COMPLETED
        assert clustering_session.fragment_count == 6
        assert clustering_session.cluster_count == 2
        clusters = db_session.scalars(select(Cluster).order_by(Cluster.cluster_number)).all()
        memberships = sorted(sorted(str(f.id) for f in cluster.fragments) for cluster in clusters)
        assert memberships == sorted(
            [sorted(str(f.id) for f in group_x), sorted(str(f.id) for f in group_y)]
        )
        assert all(cluster.fragment_count == 3 for cluster in clusters)
        assert EmbeddingService.from_bytes(clusters[0].centroid).shape == (3,)

    def test_completed_session_cannot_be_rerun(self, service, db_session, make_fragment):
        clustering_session = service.create_session(db_session, distance_threshold=0.3)
        service.perform_clustering(db_session, clustering_session)

        with pytest.raises(ValueError, match="Completed"):
            service.perform_clustering(db_session, clustering_session)

    def test_too_few_fragments_complete_without_clusters(self, service, db_session, make_fragment):
        make_fragment(vector=GROUP_X[0])
        clustering_session = service.create_session(db_session)

        assert service.perform_clustering(db_session, clustering_session) == []
        assert clustering_session.status == ClusteringStatus.COMPLETED

    def test_explicit_zero_values_are_kept(self, service, db_session):
        """Explicit falsy parameters are stored as given, not replaced by configured defaults."""
        clustering_session = service.create_session(
            db_session, distance_threshold=0.0, min_cluster_size=0, max_cluster_size=0
        )

        assert clustering_session.distance_threshold == 0.0
        assert clustering_session.min_cluster_size == 0
        assert clustering_session.max_cluster_size == 0

    def test_omitted_values_use_settings(self, service, db_session, settings):
        clustering_session = service.create_session(db_session)

        assert clustering_session.distance_threshold == pytest.approx(settings.session_distance_threshold)
        assert clustering_session.linkage == LinkageMethod(settings.session_linkage)
        assert clustering_session.min_cluster_size == settings.session_min_cluster_size


class TestClusteringSessionJob:
    """Tests for ClusteringSessionJob."""

    @pytest.fixture
    def pending_session_id(self, service, executor):
        session_id = executor.run_in_transaction(
            lambda session: service.create_session(session, distance_threshold=0.3).id
        )
        return str(session_id)

    def test_new_session_is_clustered_by_continuation(
        self, service, executor, settings, job_context, scheduler, db_session
    ):
        """Without an id the job creates a session and continues with itself carrying that id."""
        session_id = ClusteringSessionJob(executor, service, settings).run(
            job_context(ClusteringSessionJob.name, job_id="create-job"), distance_threshold=0.3, generate=False
        )

        clustering_session = db_session.get(ClusteringSession, session_id)
        assert clustering_session.status == ClusteringStatus.PENDING
        assert clustering_session.distance_threshold == pytest.approx(0.3)
        assert [(parent, inv.name, inv.kwargs) for parent, inv in scheduler.continuations] == [
            ("create-job", "clustering.session", {"clustering_session_id": str(session_id), "generate": False})
        ]

    def test_completed_session_continues_with_traversal(
        self, service, executor, settings, job_context, scheduler, make_fragment, pending_session_id
    ):
        for vector in GROUP_X:
            make_fragment(vector=vector)

        ClusteringSessionJob(executor, service, settings).run(
            job_context(ClusteringSessionJob.name, job_id="session-job"), clustering_session_id=pending_session_id
        )

        assert [(parent, inv.name, inv.kwargs) for parent, inv in scheduler.continuations] == [
            ("session-job", "clustering.generate", {"clustering_session_id": pending_session_id})
        ]

    def test_generate_false_does_not_chain(
        self, service, executor, settings, job_context, scheduler, make_fragment, pending_session_id
    ):
        for vector in GROUP_X:
            make_fragment(vector=vector)

        ClusteringSessionJob(executor, service, settings).run(
            job_context(), clustering_session_id=pending_session_id, generate=False
        )

        assert scheduler.continuations == []

    def test_failure_is_recorded_on_session(
        self,
        service,
        executor,
        settings,
        job_context,
        scheduler,
        db_session,
        make_fragment,
        monkeypatch,
        pending_session_id,
    ):
        for vector in GROUP_X:
            make_fragment(vector=vector)

        def explode(*args, **kwargs):
            raise RuntimeError("out of memory")

        monkeypatch.setattr(service, "cluster_embeddings", explode)

        with pytest.raises(RuntimeError):
            ClusteringSessionJob(executor, service, settings).run(
                job_context(), clustering_session_id=pending_session_id
            )

        db_session.expire_all()
        clustering_session = db_session.scalars(select(ClusteringSession)).one()
        assert clustering_session.status == ClusteringStatus.FAILED
        assert clustering_session.status_message == "out of memory"
        assert db_session.scalars(select(Cluster)).all() == []
        assert scheduler.continuations == []

    def test_retry_reuses_the_failed_session(
        self,
        service,
        executor,
        settings,
        job_context,
        scheduler,
        db_session,
        make_fragment,
        monkeypatch,
        pending_session_id,
    ):
        """A retried attempt clusters into the same session instead of creating another one."""
        for vector in GROUP_X:
            make_fragment(vector=vector)
        cluster_embeddings = service.cluster_embeddings
        attempts = []

        def fail_once(*args, **kwargs):
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("out of memory")
            return cluster_embeddings(*args, **kwargs)

        monkeypatch.setattr(service, "cluster_embeddings", fail_once)
        job = ClusteringSessionJob(executor, service, settings)
        context = job_context(ClusteringSessionJob.name, job_id="session-job")

        with pytest.raises(RuntimeError):
            job.run(context, clustering_session_id=pending_session_id)
        job.run(context, clustering_session_id=pending_session_id)

        db_session.expire_all()
        clustering_session = db_session.scalars(select(ClusteringSession)).one()
        assert str(clustering_session.id) == pending_session_id
        assert clustering_session.status == ClusteringStatus.COMPLETED
        assert clustering_session.cluster_count == 1
        assert len(scheduler.continuations) == 1

    def test_completed_session_is_not_clustered_again(
        self, service, executor, settings, job_context, scheduler, db_session, make_fragment, pending_session_id
    ):
        for vector in GROUP_X:
            make_fragment(vector=vector)
        job = ClusteringSessionJob(executor, service, settings)

        job.run(job_context(), clustering_session_id=pending_session_id, generate=False)
        job.run(job_context(), clustering_session_id=pending_session_id, generate=False)

        db_session.expire_all()
        assert db_session.scalars(select(ClusteringSession)).one().status == ClusteringStatus.COMPLETED
        assert len(db_session.scalars(select(Cluster)).all()) == 1
