"""
Typer CLI for knowledge-synth.

Commands:
    ksynth db init                   - Initialize database tables
    ksynth embed fragments           - Backfill fragment embeddings
    ksynth embed knowledge-units     - Backfill knowledge unit embeddings
    ksynth cluster incremental       - Grow knowledge units seed by seed
    ksynth cluster session           - Run offline clustering, then cluster traversal
    ksynth cluster generate ID       - Traverse an existing clustering session
    ksynth status                    - Show pipeline backlog

Usage:
    ksynth --help
    ksynth embed fragments --source-id 3f0c...
    ksynth cluster session --distance-threshold 0.25 --linkage complete
"""

from __future__ import annotations

import sys
from typing import Optional

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.table import Table
from sqlalchemy import func, select

from config import get_settings
from knowledge_synth.jobs.scheduler import InProcessJobScheduler, JobInvocation, JobState

app = typer.Typer(
    help="knowledge-synth CLI: fragments -> embeddings -> clusters -> knowledge units",
    no_args_is_help=True,
)
console = Console()


def configure_logging(level: str | None = None) -> None:
    """Install stderr (and optional file) sinks at the configured level."""
    settings = get_settings()
    level = (level or settings.log_level).upper()
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=(
            "<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | "
            "<cyan>{extra[job]}</cyan> | {message}"
        ),
    )
    logger.configure(extra={"job": "-"})
    if settings.log_file:
        logger.add(settings.log_file, level=level, rotation="1 day", retention="14 days")


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable DEBUG logging"),
) -> None:
    configure_logging("DEBUG" if verbose else None)


def _run_jobs(invocation: JobInvocation) -> None:
    """Run an invocation (and everything it chains) on the in-process scheduler."""
    from knowledge_synth.jobs.registry import build_registry

    settings = get_settings()
    scheduler = InProcessJobScheduler(
        build_registry(settings=settings),
        workers=settings.scheduler_workers,
        retry_attempts=settings.job_retry_attempts,
        retry_delay_seconds=settings.job_retry_delay_seconds,
    )
    scheduler.enqueue(invocation)
    try:
        scheduler.wait_until_idle()
    except KeyboardInterrupt:
        rprint("[yellow]Interrupted - cancelling running jobs[/yellow]")
    finally:
        scheduler.shutdown()

    table = Table(title="Jobs")
    table.add_column("Job", style="cyan")
    table.add_column("State")
    table.add_column("Attempts", justify="right")
    table.add_column("Error", style="red")
    failed = False
    for record in scheduler.records():
        color = {JobState.SUCCEEDED: "green", JobState.FAILED: "red"}.get(record.state, "yellow")
        failed = failed or record.state == JobState.FAILED
        table.add_row(
            str(record.invocation),
            f"[{color}]{record.state.value}[/{color}]",
            str(record.attempts),
            record.last_error or "",
        )
    console.print(table)
    if failed:
        raise typer.Exit(code=1)


# ========================================
# DATABASE COMMANDS
# ========================================

db_app = typer.Typer(help="Database management")
app.add_typer(db_app, name="db")


@db_app.command("init")
def db_init() -> None:
    """
    Initialize database tables from SQLAlchemy models.

    Safe to run multiple times (idempotent).
    """
    from knowledge_synth.db.database import init_db

    init_db()
    rprint("[green]✓[/green] Database initialized!")


# ========================================
# EMBEDDING COMMANDS
# ========================================

embed_app = typer.Typer(help="Embedding backfill")
app.add_typer(embed_app, name="embed")


@embed_app.command("fragments")
def embed_fragments(
    source_id: Optional[str] = typer.Option(None, "--source-id", help="Only fragments of this source"),
    fragment_id: Optional[str] = typer.Option(None, "--fragment-id", help="Only this fragment"),
) -> None:
    """Embed fragments that have no embedding yet (batches re-run until drained)."""
    from knowledge_synth.jobs.embedding_generation import FragmentEmbeddingJob

    _run_jobs(FragmentEmbeddingJob.invocation(source_id=source_id, fragment_id=fragment_id))


@embed_app.command("knowledge-units")
def embed_knowledge_units(
    knowledge_unit_id: Optional[str] = typer.Option(None, "--id", help="Only this knowledge unit"),
) -> None:
    """Embed knowledge units that have no embedding yet."""
    from knowledge_synth.jobs.embedding_generation import KnowledgeUnitEmbeddingJob

    _run_jobs(KnowledgeUnitEmbeddingJob.invocation(knowledge_unit_id=knowledge_unit_id))


# ========================================
# CLUSTERING COMMANDS
# ========================================

cluster_app = typer.Typer(help="Fragment clustering and knowledge unit synthesis")
app.add_typer(cluster_app, name="cluster")


@cluster_app.command("incremental")
def cluster_incremental() -> None:
    """Process unprocessed fragments seed by seed until none are left."""
    from knowledge_synth.jobs.knowledge_unit_clustering import KnowledgeUnitClusteringJob

    _run_jobs(KnowledgeUnitClusteringJob.invocation())


@cluster_app.command("session")
def cluster_session(
    distance_threshold: Optional[float] = typer.Option(
        None, "--distance-threshold", "-d", help="Cosine distance threshold for HAC"
    ),
    linkage: Optional[str] = typer.Option(
        None, "--linkage", "-l", help="average, complete, single or ward"
    ),
    generate: bool = typer.Option(True, "--generate/--no-generate", help="Synthesize after clustering"),
) -> None:
    """Cluster all embedded fragments offline, then synthesize largest clusters first."""
    from knowledge_synth.jobs.clustering_session import ClusteringSessionJob

    _run_jobs(
        ClusteringSessionJob.invocation(
            distance_threshold=distance_threshold,
            linkage=linkage,
            generate=generate,
        )
    )


@cluster_app.command("generate")
def cluster_generate(
    clustering_session_id: str = typer.Argument(..., help="Completed clustering session id"),
) -> None:
    """Synthesize knowledge units from an existing clustering session."""
    from knowledge_synth.jobs.knowledge_unit_generator import KnowledgeUnitGeneratorJob

    _run_jobs(KnowledgeUnitGeneratorJob.invocation(clustering_session_id=clustering_session_id))


# ========================================
# STATUS
# ========================================


@app.command("status")
def status() -> None:
    """Show how much work each pipeline stage has left."""
    from knowledge_synth.db.database import session_scope
    from knowledge_synth.db.models import ClusteringSession, Fragment, KnowledgeUnit

    live = Fragment.is_deleted.is_(False)
    with session_scope() as session:
        counts = {
            "Fragments": session.scalar(select(func.count()).where(live)),
            "Fragments without embedding": session.scalar(
                select(func.count()).where(live, Fragment.embedding.is_(None))
            ),
            "Fragments awaiting clustering": session.scalar(
                select(func.count()).where(
                    live,
                    Fragment.embedding.is_not(None),
                    Fragment.clustering_processed.is_(None),
                )
            ),
            "Knowledge units": session.scalar(
                select(func.count()).where(KnowledgeUnit.is_deleted.is_(False))
            ),
            "Knowledge units without embedding": session.scalar(
                select(func.count()).where(
                    KnowledgeUnit.is_deleted.is_(False), KnowledgeUnit.embedding.is_(None)
                )
            ),
        }
        sessions = session.scalars(
            select(ClusteringSession).order_by(ClusteringSession.created_at.desc()).limit(5)
        ).all()

        table = Table(title="Pipeline backlog")
        table.add_column("Metric", style="cyan")
        table.add_column("Count", justify="right")
        for label, count in counts.items():
            table.add_row(label, str(count or 0))
        console.print(table)

        if sessions:
            session_table = Table(title="Recent clustering sessions")
            session_table.add_column("Id", style="dim")
            session_table.add_column("Status")
            session_table.add_column("Fragments", justify="right")
            session_table.add_column("Clusters", justify="right")
            session_table.add_column("Message")
            for item in sessions:
                session_table.add_row(
                    str(item.id),
                    item.status.value,
                    str(item.fragment_count),
                    str(item.cluster_count),
                    item.status_message or "",
                )
            console.print(session_table)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
