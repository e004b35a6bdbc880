import logging
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
import typer

from exam_extraction.config import Settings
from exam_extraction.errors import ConfigurationError
from exam_extraction.orchestrator import ExtractionOrchestrator

load_dotenv()


app = typer.Typer(add_completion=False)


@app.command()
def process(
    files: List[Path],
    output: Path = typer.Option(
        Path("exam_records.csv"),
        "--output",
        "-o",
        help="Output CSV file path",
    ),
    excel: Optional[Path] = typer.Option(
        None,
        "--excel",
        help="Also write the records to this Excel file",
    ),
    model: Optional[str] = typer.Option(
        None,
        "--model",
        "-m",
        help="Vision model name (defaults to EXAM_EXTRACTION_MODEL or gpt-4o)",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Per-document deadline in seconds",
    ),
    reject_duplicates: bool = typer.Option(
        False,
        "--reject-duplicates",
        help="Skip files whose name was already submitted",
    ),
    log_level: str = typer.Option(
        "INFO",
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    ),
):
    """
    Extract per-subject exam statistics from the given PDFs into one CSV.

    Documents are processed one after another; a failing file is reported and
    the rest of the batch continues.
    """
    log_path = output.with_suffix(".log")
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_path),
        ],
    )
    logger = logging.getLogger(__name__)
    logger.info("Logging to %s", log_path)

    try:
        settings = Settings.from_env()
        overrides = {}
        if model:
            overrides["model_name"] = model
        if timeout is not None:
            overrides["document_timeout"] = timeout
        if reject_duplicates:
            overrides["duplicate_policy"] = "reject"
        settings = replace(settings, **overrides)
        settings.require_api_key()
    except ConfigurationError as exc:
        typer.echo(f"Configuration error: {exc}", err=True)
        raise typer.Exit(code=2)

    orchestrator = ExtractionOrchestrator.from_settings(settings)
    statuses = orchestrator.process_paths(files)

    orchestrator.to_csv(output)
    if excel is not None:
        orchestrator.to_excel(excel)

    for status in statuses:
        detail = status.message if status.state == "error" else f"{status.record_count} record(s)"
        typer.echo(f"{status.document_name}: {status.state} ({detail})")
    typer.echo(f"Wrote {len(orchestrator.records)} record(s) to {output}")

    if any(status.state == "error" for status in statuses):
        raise typer.Exit(code=1)


def main():
    app()


if __name__ == "__main__":
    main()
