import os
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from tribunal.core.config import Settings
from tribunal.core.errors import NotFoundError, QueryEmbeddingError
from tribunal.core.jobs import InlineJobQueue
from tribunal.core.logging_config import configure_logging
from tribunal.core.models import Job, SearchMode
from tribunal.core.service import CaseSearchService, build_service

app = typer.Typer(help="Tribunal CLI: document ingestion and case search")
console = Console()

# Initialize structured logging
configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "false").lower() == "true"
)


def _service() -> CaseSearchService:
    try:
        return build_service(Settings.from_env(), queue_cls=InlineJobQueue)
    except ValueError as e:
        console.print(f"[red]Configuration error:[/] {e}")
        raise typer.Exit(1)


def _print_job(job: Job) -> None:
    color = "green" if job.status.value == "completed" else "red"
    console.print(f"[bold]Job:[/] {job.id} [{color}]{job.status.value}[/]")
    if job.result:
        result = job.result
        console.print(f"[bold]Document status:[/] {result.status.value}")
        console.print(f"[bold]Method:[/] {result.method.value if result.method else '-'}")
        console.print(f"[bold]Pages:[/] {result.processed_pages}/{result.total_pages} "
                      f"({result.failed_pages} failed)")
        if result.avg_confidence is not None:
            console.print(f"[bold]Avg OCR confidence:[/] {result.avg_confidence:.1f}")
    if job.error:
        console.print(f"[red]Error:[/] {job.error}")


@app.command()
def register(
    case_id: str,
    path: str,
    document_id: Optional[str] = typer.Option(None, help="Explicit document id"),
):
    """Register a PDF for ingestion (status PENDING)."""
    file_path = Path(path)
    if not file_path.is_file():
        console.print(f"[red]Error:[/] {path} is not a file")
        raise typer.Exit(1)

    document = _service().register_document(case_id, file_path, document_id)
    console.print(f"[green]Registered[/] {document.file_name}")
    console.print(f"[bold]Document id:[/] {document.id}")
    console.print(f"[bold]SHA256:[/] {document.content_hash}")


@app.command()
def process(document_id: str):
    """Extract, embed and index one document."""
    service = _service()
    try:
        with console.status(f"[bold green]Processing {document_id}..."):
            job = service.enqueue(document_id)
    except NotFoundError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)
    _print_job(job)


@app.command("process-pending")
def process_pending(
    limit: Optional[int] = typer.Option(None, help="Maximum documents to process"),
):
    """Process PENDING documents, oldest first."""
    service = _service()
    with console.status("[bold green]Processing pending documents..."):
        jobs = service.enqueue_pending(limit)

    if not jobs:
        console.print("[yellow]No pending documents[/]")
        return
    for job in jobs:
        _print_job(job)
    stats = service.get_queue_stats()
    console.print(f"[bold]Completed:[/] {stats.completed}  [bold]Failed:[/] {stats.failed}")


@app.command()
def reprocess(document_id: str):
    """Delete a document's pages and process it again."""
    service = _service()
    try:
        with console.status(f"[bold green]Reprocessing {document_id}..."):
            job = service.reprocess(document_id)
    except NotFoundError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)
    _print_job(job)


@app.command()
def status(document_id: str):
    """Show processing status of a document."""
    try:
        doc_status = _service().get_document_status(document_id)
    except NotFoundError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)

    console.print(f"[bold]Status:[/] {doc_status.status.value}")
    console.print(f"[bold]Page count:[/] {doc_status.page_count if doc_status.page_count is not None else '-'}")
    console.print(f"[bold]Processed pages:[/] {doc_status.processed_pages}")
    if doc_status.error:
        console.print(f"[red]Error:[/] {doc_status.error}")


@app.command()
def stats():
    """Show document counts per processing status."""
    counts = _service().get_processing_stats()
    table = Table(title="Documents by status")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for name, count in counts.items():
        table.add_row(name, str(count))
    console.print(table)


@app.command()
def search(
    query: str,
    mode: SearchMode = typer.Option(SearchMode.HYBRID, help="full-text, semantic or hybrid"),
    limit: Optional[int] = typer.Option(None, help="Maximum results (default from settings)"),
    lexical_weight: Optional[float] = typer.Option(None, help="Hybrid lexical weight (default from settings)"),
    semantic_weight: Optional[float] = typer.Option(None, help="Hybrid semantic weight (default from settings)"),
):
    """Search indexed page content."""
    service = _service()
    weights = None
    if lexical_weight is not None or semantic_weight is not None:
        default_lexical, default_semantic = service.search_engine.default_weights
        weights = (
            default_lexical if lexical_weight is None else lexical_weight,
            default_semantic if semantic_weight is None else semantic_weight,
        )
    try:
        response = service.search(query, limit=limit, mode=mode, weights=weights)
    except (ValueError, QueryEmbeddingError) as e:
        console.print(f"[red]Search failed:[/] {e}")
        raise typer.Exit(1)

    console.print(f"[bold]{response.total_results} results[/] "
                  f"({response.search_type.value}, {response.execution_time_ms:.1f} ms)")
    for i, result in enumerate(response.results, 1):
        case_number = result.case_metadata.case_number if result.case_metadata else result.case_id
        console.print(f"\n[bold cyan]{i}. {result.document_name or result.document_id}[/] "
                      f"p.{result.page_number}  [dim]case {case_number}  score {result.score:.4f}[/]")
        console.print(result.content)


if __name__ == "__main__":
    app()
