"""Medical record reconciliation CLI."""

import logging
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from medrecon import __version__
from medrecon.config import settings
from medrecon.errors import MedReconError
from medrecon.llm import LLMClient
from medrecon.models import FIELD_DEFINITIONS, ProgressStatus, ProgressUpdate
from medrecon.processor import DocumentProcessor

app = typer.Typer(
    name="medrecon",
    help="Extract medical fields from scanned PDFs and locate their sources",
    add_completion=False,
)
console = Console()

STATUS_STYLES = {
    ProgressStatus.PROCESSING: "blue",
    ProgressStatus.WARNING: "yellow",
    ProgressStatus.ERROR: "red",
    ProgressStatus.COMPLETE: "green",
}


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Log level (default from settings)"),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def print_progress(update: ProgressUpdate) -> None:
    style = STATUS_STYLES[update.status]
    console.print(
        f"[{style}]{update.progress:>4.0%}[/{style}] [bold]{update.step}[/bold] "
        f"[dim]{update.message}[/dim]"
    )


@app.command()
def process(
    pdf_path: str = typer.Argument(..., help="Path to PDF file to process"),
    references: bool = typer.Option(True, help="Locate each field in the source pages"),
    as_json: bool = typer.Option(False, "--json", help="Print the document as JSON"),
) -> None:
    """Process a single PDF document."""
    console.print(f"[bold blue]Processing:[/bold blue] {pdf_path}")
    processor = DocumentProcessor()

    try:
        document = processor.process(pdf_path, progress=print_progress)
    except (MedReconError, OSError) as e:
        console.print(f"[red]Processing failed:[/red] {e}")
        raise typer.Exit(code=1)

    if as_json:
        console.print_json(document.model_dump_json(exclude={"extraction": {"positions"}}))
        return

    record = document.field_record
    console.print(
        f"[dim]{document.page_count} pages, "
        f"{'OCR' if document.is_ocr else 'embedded text'}, "
        f"extraction {record.extraction_method.value}[/dim]"
    )
    if record.error:
        console.print(f"[yellow]{record.error}[/yellow]")

    table = Table(title=document.name)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    if references:
        table.add_column("Source", style="cyan")

    for definition in FIELD_DEFINITIONS:
        value = record.get(definition.key)
        row = [str(definition.number), definition.label, value or "[dim]-[/dim]"]
        if references:
            reference = processor.field_reference(document.id, definition.key)
            if reference and reference.matches:
                row.append(
                    ", ".join(
                        f"p{m.page} ({m.strategy.value}, {m.confidence:.0f}%)"
                        for m in reference.matches
                    )
                )
            else:
                row.append("")
        table.add_row(*row)

    console.print(table)


@app.command()
def fields() -> None:
    """List the clinical field schema."""
    table = Table(title="Clinical Fields")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Key", style="cyan")
    table.add_column("Label", style="bold")
    table.add_column("Values")
    table.add_column("Description")

    for definition in FIELD_DEFINITIONS:
        table.add_row(
            str(definition.number),
            definition.key,
            definition.label,
            "many" if definition.multi_value else "one",
            definition.description,
        )

    console.print(table)


@app.command()
def status() -> None:
    """Show pipeline configuration and model endpoint status."""
    console.print(f"[bold blue]medrecon {__version__}[/bold blue]")
    console.print()

    table = Table(show_header=False)
    table.add_column("Setting", style="dim")
    table.add_column("Value")
    table.add_row("LLM endpoint", f"{settings.llm_host} ({settings.llm_api_style})")
    table.add_row("LLM model", settings.llm_model)
    table.add_row("OCR pool size", str(settings.effective_pool_size))
    table.add_row("OCR language", settings.ocr_language)
    table.add_row("Render scale", f"{settings.render_scale}x")
    table.add_row("Chunk size / overlap", f"{settings.chunk_size} / {settings.chunk_overlap}")
    table.add_row("Embeddings", "enabled" if settings.enable_embeddings else "disabled")
    console.print(table)

    client = LLMClient()
    try:
        health = client.health()
    finally:
        client.close()

    if health["status"] == "ok":
        console.print("[green]Model endpoint reachable[/green]")
    else:
        console.print(f"[red]Model endpoint {health['status']}:[/red] {health.get('error', '')}")


if __name__ == "__main__":
    app()
