"""Main CLI entry point for the scene and character pipeline."""
import asyncio
import logging

import click
from rich.table import Table

from utils.logger import console, setup_logger, set_level
from monitoring.progress_tracker import ProgressTracker
from pipeline.orchestrator import PipelineOrchestrator
from pipeline.stages import DocumentNotFoundError
from pipeline.state_machine import InvalidTransitionError
from storage.vector_store import EmbeddingNotFoundError
import config

logger = setup_logger(__name__)


def _run_workers(orchestrator: PipelineOrchestrator) -> None:
    """Drain the queues with a live progress display."""
    tracker = ProgressTracker(console)
    with tracker.create_progress() as progress:
        unsubscribe = tracker.attach(orchestrator.emitter, progress)
        try:
            asyncio.run(orchestrator.run_until_idle())
        finally:
            unsubscribe()


def _print_status(orchestrator: PipelineOrchestrator, document_id: str) -> None:
    status = orchestrator.get_status(document_id)

    table = Table(show_header=False)
    table.add_row("Document ID", f"[cyan]{status['document_id']}[/cyan]")
    table.add_row("Title", status["title"] or "")
    table.add_row("Status", status["status"])
    table.add_row("Progress", f"{status['progress_percent']}%")
    table.add_row("Step", status["current_step"] or "")
    if status["error_message"]:
        table.add_row("Error", f"[red]{status['error_message']}[/red]")
    table.add_row("Chapters", str(status["total_chapters"] or 0))
    table.add_row("Scenes", str(status["total_scenes"] or 0))
    for scene_status, count in sorted(status["scenes"].items()):
        table.add_row(f"  {scene_status}", str(count))
    table.add_row("Characters", str(status["total_characters"] or 0))
    console.print(table)

    if status["jobs"]:
        jobs = Table(title="Jobs")
        jobs.add_column("Stage", style="cyan")
        jobs.add_column("Status")
        jobs.add_column("Attempts", justify="right")
        jobs.add_column("Last Error", style="dim")
        for job in status["jobs"]:
            jobs.add_row(
                job["stage"],
                job["status"],
                f"{job['attempts']}/{job['max_attempts']}",
                job["last_error"] or "",
            )
        console.print(jobs)


@click.group()
@click.option('--verbose', is_flag=True, help='Enable debug logging')
def cli(verbose):
    """Scene & Character Pipeline - book segmentation, scene analysis and character discovery"""
    if verbose:
        set_level(logging.DEBUG)


@cli.command()
@click.option('--file', 'source', required=True, type=click.Path(exists=True), help='Path to EPUB or PDF book')
@click.option('--caller-id', default=config.DEFAULT_CALLER_ID, help='Owner of the document')
@click.option('--title', default=None, help='Title used when the book has no metadata')
@click.option('--run/--no-run', default=True, help='Process the queue after submitting')
def submit(source, caller_id, title, run):
    """Submit a book and segment it into scenes."""
    console.print("\n[bold cyan]Document Submission[/bold cyan]\n")

    orchestrator = PipelineOrchestrator()
    document = orchestrator.submit(source, caller_id, title=title)

    if document["duplicate"]:
        console.print(f"[yellow]Document already submitted: {document['title']} (ID: {document['id']})[/yellow]")
        return

    console.print(f"Document ID: [cyan]{document['id']}[/cyan]")
    if run:
        _run_workers(orchestrator)
        _print_status(orchestrator, document["id"])


@cli.command()
@click.option('--document-id', required=True, help='Document UUID')
@click.option('--caller-id', default=None, help='Caller whose credentials are used')
@click.option('--provider', default=None, help='LLM provider (ollama, claude, chatgpt)')
@click.option('--model', default=None, help='LLM model name')
@click.option('--limit', type=int, default=None, help='Analyze at most this many scenes')
def analyze(document_id, caller_id, provider, model, limit):
    """Analyze pending and failed scenes with an LLM."""
    console.print("\n[bold cyan]Scene Analysis[/bold cyan]\n")

    orchestrator = PipelineOrchestrator()
    try:
        queued = orchestrator.enqueue_analysis(document_id, caller_id, provider, model, limit)
    except (DocumentNotFoundError, InvalidTransitionError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return

    if not queued:
        console.print("[yellow]Analysis is already queued or running[/yellow]")
    _run_workers(orchestrator)
    _print_status(orchestrator, document_id)


@cli.command()
@click.option('--document-id', required=True, help='Document UUID')
@click.option('--caller-id', default=None, help='Caller whose credentials are used')
@click.option('--provider', default=None, help='LLM provider (ollama, claude, chatgpt)')
@click.option('--model', default=None, help='LLM model name')
@click.option('--embedding-provider', default=None, help='Embedding provider (local, ollama, openai)')
@click.option('--embedding-model', default=None, help='Embedding model name')
def discover(document_id, caller_id, provider, model, embedding_provider, embedding_model):
    """Discover and profile the characters of an analyzed document."""
    console.print("\n[bold cyan]Character Discovery[/bold cyan]\n")

    orchestrator = PipelineOrchestrator()
    try:
        queued = orchestrator.enqueue_discovery(
            document_id, caller_id, provider, model, embedding_provider, embedding_model
        )
    except (DocumentNotFoundError, InvalidTransitionError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return

    if not queued:
        console.print("[yellow]Discovery is already queued or running[/yellow]")
    _run_workers(orchestrator)
    _print_status(orchestrator, document_id)


@cli.command()
@click.option('--document-id', required=True, help='Document UUID')
@click.option('--caller-id', default=None, help='Caller whose credentials are used')
@click.option('--provider', default=None, help='LLM provider for the retried stage')
def retry(document_id, caller_id, provider):
    """Retry the stage a document failed in or is waiting at."""
    orchestrator = PipelineOrchestrator()
    try:
        stage = orchestrator.retry(document_id, caller_id, provider=provider)
    except (DocumentNotFoundError, InvalidTransitionError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return

    console.print(f"Retrying [cyan]{stage}[/cyan]")
    _run_workers(orchestrator)
    _print_status(orchestrator, document_id)


@cli.command()
@click.option('--document-id', default=None, help='Document UUID; lists all documents when omitted')
@click.option('--caller-id', default=None, help='Only list this caller\'s documents')
def status(document_id, caller_id):
    """Show pipeline status."""
    orchestrator = PipelineOrchestrator()

    if document_id:
        try:
            _print_status(orchestrator, document_id)
        except DocumentNotFoundError as e:
            console.print(f"[red]Error: {e}[/red]")
        return

    documents = orchestrator.db.list_documents(caller_id)
    if not documents:
        console.print("[yellow]No documents have been submitted yet[/yellow]")
        return

    table = Table(title="Documents")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Scenes", justify="right")
    table.add_column("Characters", justify="right")
    table.add_column("Created", style="dim")

    for document in documents:
        table.add_row(
            document['id'],
            document['title'] or "",
            document['status'],
            f"{document['progress_percent']}%",
            str(document['total_scenes'] or 0),
            str(document['total_characters'] or 0),
            document['created_at'][:10]
        )

    console.print(table)


@cli.command()
@click.option('--document-id', required=True, help='Document UUID')
def characters(document_id):
    """List discovered characters."""
    orchestrator = PipelineOrchestrator()
    cast = orchestrator.list_characters(document_id)

    if not cast:
        console.print("[yellow]No characters found for this document[/yellow]")
        return

    table = Table(title="Characters")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Aliases")
    table.add_column("Role")
    table.add_column("Scenes", justify="right")
    table.add_column("Summary", style="dim")

    for character in cast:
        table.add_row(
            character.id,
            character.name,
            ", ".join(character.aliases),
            character.role,
            str(character.total_appearances),
            character.appearance.visual_summary,
        )

    console.print(table)


@cli.command()
@click.option('--character-id', required=True, help='Character UUID')
@click.option('--limit', type=int, default=config.SIMILARITY_LIMIT, help='Maximum results')
@click.option('--threshold', type=float, default=config.SIMILARITY_THRESHOLD, help='Minimum similarity')
def similar(character_id, limit, threshold):
    """Find characters that look like the given one."""
    orchestrator = PipelineOrchestrator()
    try:
        matches = orchestrator.find_similar_characters(character_id, limit=limit, threshold=threshold)
    except (LookupError, EmbeddingNotFoundError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return

    if not matches:
        console.print("[yellow]No similar characters found[/yellow]")
        return

    table = Table(title="Similar Characters")
    table.add_column("Name", style="cyan")
    table.add_column("Role")
    table.add_column("Similarity", justify="right")
    for match in matches:
        table.add_row(match["character"].name, match["character"].role, f"{match['similarity']:.3f}")

    console.print(table)


@cli.command()
@click.option('--cleanup/--no-cleanup', default=True, help='Remove old finished jobs first')
def worker(cleanup):
    """Run the stage workers until interrupted."""
    console.print("\n[bold cyan]Pipeline Worker[/bold cyan]\n")

    orchestrator = PipelineOrchestrator()
    if cleanup:
        orchestrator.cleanup_jobs()

    try:
        asyncio.run(orchestrator.run_forever())
    except KeyboardInterrupt:
        logger.info("Worker interrupted; active jobs are requeued on next start")
        console.print("\n[yellow]Worker stopped[/yellow]")


@cli.command()
@click.option('--caller-id', default=config.DEFAULT_CALLER_ID, help='Caller whose credentials are checked')
def providers(caller_id):
    """List LLM providers available to a caller."""
    orchestrator = PipelineOrchestrator()

    table = Table(title="LLM Providers")
    table.add_column("Name", style="cyan")
    table.add_column("Label")
    table.add_column("Available")
    for provider in orchestrator.factory.available_providers(caller_id):
        mark = "[green]yes[/green]" if provider["available"] else "[red]no API key[/red]"
        table.add_row(provider["name"], provider["label"], mark)

    console.print(table)


if __name__ == '__main__':
    cli()
