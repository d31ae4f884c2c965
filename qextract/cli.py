"""
CLI Interface
=============
Command-line interface for the question extractor.

Usage:
    qextract reference <pdf_path> -o reference.png
    qextract calibrate --question X,Y,W,H --answer X,Y,W,H
    qextract extract <pdf_path>... [options]
    qextract tests
    qextract serve [options]
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from . import __version__
from .calibration import encode_png, preview_calibration, render_reference_page
from .engine import ExtractionEngine, PipelineConfig
from .models import (
    CalibrationConfig,
    CalibrationMissingError,
    JobStatus,
    JobView,
    Rectangle,
    SourceFile,
)

console = Console()

STATUS_STYLES = {
    JobStatus.PENDING: "dim",
    JobStatus.PROCESSING: "cyan",
    JobStatus.COMPLETED: "green",
    JobStatus.ERROR: "red",
}


@click.group()
@click.version_option(version=__version__, prog_name="qextract")
@click.option("--db", "db_path", default=None, envvar="QEXTRACT_DB_PATH",
              help="SQLite database path")
@click.option("--storage-dir", default=None, envvar="QEXTRACT_STORAGE_DIR",
              help="Directory for stored images and uploads")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.option("--log-file", default=None, help="Path to log file")
@click.pass_context
def cli(ctx, db_path, storage_dir, log_level, log_file):
    """Exam Question Extractor — calibrated batch extraction from exam PDFs."""
    ctx.ensure_object(dict)
    ctx.obj.update(
        db_path=db_path,
        storage_dir=storage_dir,
        log_level=log_level,
        log_file=log_file,
    )


def _engine(ctx: click.Context, **overrides) -> ExtractionEngine:
    config = PipelineConfig(**{**ctx.obj, **overrides})
    return ExtractionEngine(config)


def _parse_rectangle(ctx, param, value):
    try:
        return Rectangle.parse(value)
    except (ValueError, ValidationError) as e:
        raise click.BadParameter(str(e))


def _fail(message: str):
    console.print(f"[red]Error:[/] {message}")
    sys.exit(1)


# ─── Calibration ──────────────────────────────────────────────────────────────


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", default="reference.png", help="PNG to write")
@click.option("--preview", is_flag=True, default=False,
              help="Draw the saved calibration boxes on the page")
@click.pass_context
def reference(ctx, pdf_path: str, output: str, preview: bool):
    """Render the calibration reference page of a PDF."""
    engine = _engine(ctx)
    try:
        image = asyncio.run(
            render_reference_page(Path(pdf_path).read_bytes(), engine.rasterizer)
        )
    except Exception as e:
        _fail(f"Cannot render {pdf_path}: {e}")

    if preview:
        calibration = engine.calibration_store.load()
        if calibration is None:
            _fail("No calibration saved to preview")
        image = preview_calibration(image, calibration)

    Path(output).write_bytes(encode_png(image))
    console.print(
        f"[green]Reference page written:[/] {output} "
        f"[dim]({image.width}x{image.height} px)[/]"
    )


@cli.command()
@click.option("--question", "question_box", required=True, callback=_parse_rectangle,
              help="Question box as x,y,width,height (reference pixels)")
@click.option("--answer", "answer_box", required=True, callback=_parse_rectangle,
              help="Answer box as x,y,width,height (reference pixels)")
@click.pass_context
def calibrate(ctx, question_box: Rectangle, answer_box: Rectangle):
    """Save the question and answer boxes used for every page."""
    engine = _engine(ctx)
    calibration = CalibrationConfig(question_box=question_box, answer_box=answer_box)
    engine.calibration_store.save(calibration)
    console.print("[green]Calibration saved[/]")
    _display_calibration(calibration)


@cli.command("show-calibration")
@click.pass_context
def show_calibration(ctx):
    """Display the saved calibration."""
    calibration = _engine(ctx).calibration_store.load()
    if calibration is None:
        console.print("[yellow]No calibration saved[/]")
        return
    _display_calibration(calibration)


# ─── Extraction ───────────────────────────────────────────────────────────────


@cli.command()
@click.argument("pdf_paths", nargs=-1, required=True,
                type=click.Path(exists=True, dir_okay=False))
@click.option("--batch-size", "-j", default=3, type=click.IntRange(min=1),
              help="Pages processed concurrently within a file")
@click.option("--skip-pages", default=1, type=click.IntRange(min=0),
              help="Leading pages to skip (cover)")
@click.option("--ocr-lang", default="ara", help="Tesseract language")
@click.option("--tesseract-cmd", default=None, help="Path to the tesseract binary")
@click.option("--vocabulary", "vocabulary_file", default=None,
              type=click.Path(exists=True, dir_okay=False),
              help="JSON file with answer markers and letter variants")
@click.option("--json-output", is_flag=True, default=False,
              help="Print only the final job list as JSON")
@click.pass_context
def extract(
    ctx,
    pdf_paths: tuple[str, ...],
    batch_size: int,
    skip_pages: int,
    ocr_lang: str,
    tesseract_cmd: str,
    vocabulary_file: str,
    json_output: bool,
):
    """Extract questions from one or more exam PDFs."""
    overrides = dict(
        batch_size=batch_size,
        skip_leading_pages=skip_pages,
        ocr_language=ocr_lang,
        tesseract_cmd=tesseract_cmd,
        vocabulary_file=vocabulary_file,
    )
    if json_output:
        overrides["log_level"] = "CRITICAL"

    engine = _engine(ctx, **overrides)
    try:
        calibration = engine.require_calibration()
    except CalibrationMissingError as e:
        _fail(str(e))

    sources = [SourceFile.from_path(p) for p in pdf_paths]

    if json_output:
        jobs = asyncio.run(engine.extract(sources, calibration))
        print(json.dumps(
            [j.model_dump(mode="json") for j in jobs],
            indent=2,
            ensure_ascii=False,
        ))
    else:
        console.print()
        console.print(
            Panel.fit(
                f"[bold cyan]Question Extractor v{__version__}[/]\n"
                f"[dim]{len(sources)} file(s), {batch_size} pages at a time[/]",
                border_style="cyan",
            )
        )
        console.print()

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            tasks: dict[str, int] = {}

            def on_change(views: list[JobView]):
                for view in views:
                    if view.id not in tasks:
                        tasks[view.id] = progress.add_task(view.file_name, total=100)
                    style = STATUS_STYLES[view.status]
                    progress.update(
                        tasks[view.id],
                        completed=view.progress,
                        description=f"[{style}]{view.file_name}[/]",
                    )

            jobs = asyncio.run(engine.extract(sources, calibration, on_change=on_change))

        _display_job_summary(jobs)

    if any(j.status is JobStatus.ERROR for j in jobs):
        sys.exit(1)


# ─── Review ───────────────────────────────────────────────────────────────────


@cli.command("tests")
@click.pass_context
def list_tests(ctx):
    """List extracted tests."""
    tests = _engine(ctx).sink.list_tests()
    if not tests:
        console.print("[yellow]No tests extracted yet[/]")
        return

    table = Table(title="Extracted Tests", border_style="cyan")
    table.add_column("ID", justify="right")
    table.add_column("Name", style="bold")
    table.add_column("Questions", justify="right")
    table.add_column("Unknown answers", justify="right")
    table.add_column("Created")
    for t in tests:
        unknown = t["unknown_answers"]
        table.add_row(
            str(t["id"]),
            t["name"],
            str(t["total_questions"]),
            f"[yellow]{unknown}[/]" if unknown else "0",
            str(t["created_at"]),
        )
    console.print(table)


@cli.command()
@click.argument("test_id", type=int)
@click.pass_context
def show(ctx, test_id: int):
    """Show the questions of one test."""
    test = _engine(ctx).sink.get_test(test_id)
    if not test:
        _fail(f"Test {test_id} not found")

    table = Table(title=f"{test['name']} (id={test_id})", border_style="cyan")
    table.add_column("Question ID", justify="right")
    table.add_column("Page", justify="right")
    table.add_column("Answer", justify="center")
    table.add_column("Edited", justify="center")
    table.add_column("Image")
    for q in test["questions"]:
        answer = q["correct_answer"]
        table.add_row(
            str(q["id"]),
            str(q["page_number"]),
            f"[yellow]{answer}[/]" if answer == "?" else answer,
            "✓" if q["is_edited"] else "",
            q["question_image"] or "[dim](empty)[/]",
        )
    console.print(table)


@cli.command("set-answer")
@click.argument("question_id", type=int)
@click.argument("answer")
@click.pass_context
def set_answer(ctx, question_id: int, answer: str):
    """Correct the answer of one question (marks it as edited)."""
    try:
        updated = _engine(ctx).sink.update_question_answer(question_id, answer)
    except ValueError as e:
        _fail(str(e))
    if not updated:
        _fail(f"Question {question_id} not found")
    console.print(f"[green]Question {question_id} answer set to[/] {answer}")


@cli.command()
@click.argument("test_ids", nargs=-1, required=True, type=int)
@click.option("--yes", "-y", is_flag=True, default=False, help="Skip confirmation")
@click.pass_context
def delete(ctx, test_ids: tuple[int, ...], yes: bool):
    """Delete tests with their questions and images."""
    if not yes:
        click.confirm(f"Delete {len(test_ids)} test(s)?", abort=True)
    deleted = _engine(ctx).sink.delete_tests(list(test_ids))
    console.print(f"[green]Deleted {deleted} test(s)[/]")


# ─── Server ───────────────────────────────────────────────────────────────────


@cli.command()
@click.option("--host", default="0.0.0.0", help="Server host")
@click.option("--port", default=5000, type=int, help="Server port")
@click.option("--debug", is_flag=True, default=False, help="Debug mode")
@click.pass_context
def serve(ctx, host: str, port: int, debug: bool):
    """Start the HTTP service."""
    from .server import run_server

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Question Extractor Service[/]\n"
            f"[dim]Starting on {host}:{port}[/]",
            border_style="cyan",
        )
    )
    console.print()

    run_server(
        host=host,
        port=port,
        debug=debug,
        config={
            "DB_PATH": ctx.obj["db_path"],
            "STORAGE_DIR": ctx.obj["storage_dir"],
            "LOG_LEVEL": ctx.obj["log_level"],
        },
    )


# ─── Display Helpers ──────────────────────────────────────────────────────────


def _display_calibration(calibration: CalibrationConfig):
    table = Table(title="Calibration (reference pixels)", border_style="cyan")
    table.add_column("Region", style="bold")
    table.add_column("X", justify="right")
    table.add_column("Y", justify="right")
    table.add_column("Width", justify="right")
    table.add_column("Height", justify="right")
    for label, box in (
        ("Question", calibration.question_box),
        ("Answer", calibration.answer_box),
    ):
        table.add_row(
            label,
            f"{box.x:.0f}",
            f"{box.y:.0f}",
            f"{box.width:.0f}",
            f"{box.height:.0f}",
        )
    console.print(table)


def _display_job_summary(jobs: list[JobView]):
    console.print()
    table = Table(title="Extraction Summary", border_style="cyan")
    table.add_column("File", style="bold")
    table.add_column("Status")
    table.add_column("Questions", justify="right")
    table.add_column("Test ID", justify="right")
    for job in jobs:
        style = STATUS_STYLES[job.status]
        table.add_row(
            job.file_name,
            f"[{style}]{job.status.value}[/]",
            str(job.total_questions),
            job.test_id or "-",
        )
    console.print(table)

    failed = sum(1 for j in jobs if j.status is JobStatus.ERROR)
    if failed:
        console.print(f"[red]{failed} file(s) failed — see the log for details[/]")
    console.print()
