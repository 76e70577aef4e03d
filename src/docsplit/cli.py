"""Invoice Bundle Splitter CLI."""

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from docsplit.config import settings
from docsplit.context import PipelineContext, build_context
from docsplit.errors import DocsplitError
from docsplit.log import configure_logging
from docsplit.models import BatchStatus, CandidateSpan, DocumentBatch, InvoiceRecord
from docsplit.storage import close_db, create_engine, init_db

app = typer.Typer(
    name="docsplit",
    help="Split multi-invoice PDF bundles and extract invoice records",
    add_completion=False,
)
console = Console()

STATUS_STYLES = {
    BatchStatus.DATA_VALIDATION_PENDING: "green",
    BatchStatus.SPLIT_PROPOSED: "cyan",
    BatchStatus.SPLIT_VALIDATED: "cyan",
    BatchStatus.PROCESSING_FAILED: "yellow",
    BatchStatus.ERROR: "red",
}


def _context(in_memory: bool = False) -> PipelineContext:
    configure_logging(settings.log_level)
    try:
        return build_context(settings, in_memory=in_memory)
    except DocsplitError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(code=2)


async def _with_context(ctx: PipelineContext, operation) -> Any:
    try:
        return await operation(ctx)
    finally:
        await ctx.close()


def _run(ctx: PipelineContext, operation) -> Any:
    try:
        return asyncio.run(_with_context(ctx, operation))
    except DocsplitError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)


def _print_batch(batch: DocumentBatch) -> None:
    style = STATUS_STYLES.get(batch.status, "white")
    console.print(f"[bold]Batch:[/bold] {batch.id}")
    console.print(f"[bold]Status:[/bold] [{style}]{batch.status.value}[/{style}]")
    if batch.error_message:
        console.print(f"[red]{batch.error_message}[/red]")


def _print_spans(spans: list) -> None:
    table = Table(title="Invoice boundaries")
    table.add_column("ID")
    table.add_column("Label")
    table.add_column("Pages", justify="right")
    table.add_column("Confidence", justify="right")
    table.add_column("Rationale", overflow="fold")
    for span in spans:
        table.add_row(
            span.id, span.label, span.page_range, f"{span.confidence:.2f}", span.rationale
        )
    console.print(table)


def _print_records(records: list[InvoiceRecord]) -> None:
    table = Table(title="Extracted invoices")
    table.add_column("Span")
    table.add_column("Pages", justify="right")
    table.add_column("Invoice #")
    table.add_column("Date")
    table.add_column("Total", justify="right")
    table.add_column("Items", justify="right")
    table.add_column("Confidence", justify="right")
    table.add_column("Issues", overflow="fold")
    for record in records:
        issues = record.error or "; ".join(record.validation.errors)
        total = record.value("total_ttc")
        table.add_row(
            record.span_id,
            record.page_range,
            str(record.value("invoice_id") or ""),
            str(record.value("issue_date") or ""),
            f"{total:.2f}" if isinstance(total, (int, float)) else "",
            str(len(record.items)),
            f"{record.confidence:.2f} ({record.confidence_level.value})",
            issues,
        )
    console.print(table)


def _records(batch: DocumentBatch) -> list[InvoiceRecord]:
    return [InvoiceRecord.model_validate(data) for data in batch.extracted_data or []]


@app.command()
def process(
    pdf_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Path to PDF bundle"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write records as JSON"),
    flat: bool = typer.Option(False, "--flat", help="Write plain field/value records"),
) -> None:
    """Split and extract a PDF bundle in one in-memory run."""
    console.print(f"[bold blue]Processing:[/bold blue] {pdf_path}")
    ctx = _context(in_memory=True)
    batch = _run(ctx, lambda c: c.controller.process_file(pdf_path))

    _print_batch(batch)
    if batch.proposed_splits:
        _print_spans(batch.proposed_spans())
    records = _records(batch)
    if records:
        _print_records(records)

    if output is not None:
        output.write_text(
            json.dumps(
                [r.to_flat_dict() if flat else r.model_dump(mode="json") for r in records],
                indent=2,
                default=str,
            ),
            encoding="utf-8",
        )
        console.print(f"[dim]Records written to {output}[/dim]")

    if batch.status != BatchStatus.DATA_VALIDATION_PENDING:
        raise typer.Exit(code=1)


@app.command()
def detect(
    pdf_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Path to PDF bundle"),
) -> None:
    """Detect invoice boundaries without splitting."""
    console.print(f"[bold blue]Detecting boundaries:[/bold blue] {pdf_path}")
    ctx = _context(in_memory=True)

    async def operation(c: PipelineContext):
        pages = await c.controller.layout_client.extract_pages(pdf_path.read_bytes())
        if not pages.success:
            raise DocsplitError(f"Page extraction failed: {pages.error}")
        return await c.controller.detector.detect(pages.pages)

    result = _run(ctx, operation)
    _print_spans(result.spans)
    console.print(
        f"{result.invoice_count} invoice(s) over {result.total_pages} pages, "
        f"confidence {result.confidence:.2f}"
    )
    if result.used_fallback:
        console.print("[yellow]Boundary response was unusable; single-invoice fallback[/yellow]")


@app.command()
def submit(
    pdf_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Path to PDF bundle"),
    name: Optional[str] = typer.Option(None, help="Original filename to record"),
) -> None:
    """Register a PDF bundle as a new batch."""
    ctx = _context()
    batch = _run(ctx, lambda c: c.controller.submit(pdf_path, name))
    _print_batch(batch)
    console.print(f"[dim]{batch.total_pages} pages[/dim]")


@app.command()
def start(batch_id: str = typer.Argument(..., help="Batch ID")) -> None:
    """Run boundary detection for a batch."""
    ctx = _context()
    batch = _run(ctx, lambda c: c.controller.start_processing(batch_id))
    _print_batch(batch)
    if batch.status == BatchStatus.SPLIT_PROPOSED:
        _print_spans(batch.proposed_spans())


@app.command()
def validate(
    batch_id: str = typer.Argument(..., help="Batch ID"),
    spans_file: Optional[Path] = typer.Option(
        None, "--spans", exists=True, dir_okay=False, help="JSON list of spans replacing the proposal"
    ),
) -> None:
    """Accept the split proposal (or a corrected one) and write split PDFs."""
    spans = None
    if spans_file is not None:
        entries = json.loads(spans_file.read_text(encoding="utf-8"))
        spans = [CandidateSpan.model_validate(entry) for entry in entries]

    ctx = _context()
    batch = _run(ctx, lambda c: c.controller.validate_splits(batch_id, spans))
    _print_batch(batch)
    for split in batch.split_documents():
        marker = "[green]✓[/green]" if split.success else f"[red]✗ {split.error}[/red]"
        console.print(f"  {marker} {split.span.page_range} {split.file_path}")


@app.command()
def extract(batch_id: str = typer.Argument(..., help="Batch ID")) -> None:
    """Extract invoice records from a batch's split documents."""
    ctx = _context()
    batch = _run(ctx, lambda c: c.controller.extract(batch_id))
    _print_batch(batch)
    records = _records(batch)
    if records:
        _print_records(records)


@app.command()
def status(batch_id: str = typer.Argument(..., help="Batch ID")) -> None:
    """Show the status of a batch."""
    ctx = _context()
    summary = _run(ctx, lambda c: c.controller.get_status(batch_id))

    table = Table(title="Batch status", show_header=False)
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in summary.items():
        table.add_row(key, "" if value is None else str(value))
    console.print(table)


@app.command("init-db")
def init_database() -> None:
    """Create the database tables."""
    configure_logging(settings.log_level)
    engine = create_engine(settings)

    async def operation():
        try:
            await init_db(engine)
        finally:
            await close_db(engine)

    asyncio.run(operation())
    console.print("[green]Database initialized[/green]")


if __name__ == "__main__":
    app()
