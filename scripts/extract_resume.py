#!/usr/bin/env python3
"""
Run the extraction pipeline synchronously on one résumé text file.

Bypasses the queue: useful for trying prompts and providers. The structured
profile is printed as JSON (or written to --output).

Usage:
    python scripts/extract_resume.py data/cv.txt
    python scripts/extract_resume.py data/cv.txt --provider ollama --model llama3.2 -o outs/cv.json
"""

import json
import time
from pathlib import Path
from typing import Optional

import typer

from vitae.contexts.extraction.exceptions import ExtractionError
from vitae.contexts.extraction.logger import setup_extraction_logger
from vitae.contexts.extraction.pipeline import ExtractionPipeline
from vitae.contexts.extraction.session_store import InMemorySessionStore
from vitae.utils.config import load_config
from vitae.utils.exceptions import ConfigurationError, GenerationError, ParseError
from vitae.utils.llm import get_provider

app = typer.Typer(
    help="Extract a structured profile from a résumé text file",
    add_completion=False,
)


@app.command()
def main(
    text_file: Path = typer.Argument(..., exists=True, dir_okay=False, resolve_path=True, help="Résumé text (.txt)"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write JSON here instead of stdout"),
    provider_name: Optional[str] = typer.Option(None, "--provider", "-p", help="LLM provider (default: config)"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model name (default: provider default)"),
    owner: str = typer.Option("cli", "--owner", help="Owner id recorded on the session"),
    log_dir: Optional[Path] = typer.Option(None, "--log-dir", help="Write a DEBUG log file here"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file"),
):
    """Extract a structured profile from a résumé text file."""
    config = load_config(config_path)

    try:
        provider = get_provider(provider_name=provider_name, model=model, config=config)
    except ConfigurationError as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    setup_extraction_logger(log_dir or config.logging.log_dir, provider_name=provider.name)
    pipeline = ExtractionPipeline(provider, InMemorySessionStore(), config=config)

    start_time = time.time()
    try:
        result = pipeline.run(owner, text_file.read_text(encoding="utf-8"))
    except (ExtractionError, GenerationError, ParseError, ValueError) as e:
        typer.secho(f"Extraction failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    rendered = json.dumps(result, indent=2, ensure_ascii=False)
    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(rendered + "\n", encoding="utf-8")
        typer.secho(f"Wrote {output} ({time.time() - start_time:.1f}s)", fg=typer.colors.GREEN, err=True)
    else:
        typer.echo(rendered)


if __name__ == "__main__":
    app()
