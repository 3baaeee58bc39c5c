"""Command line entrypoint for the photo sorter."""

from __future__ import annotations

import asyncio
import signal
from dataclasses import asdict
from pathlib import Path

import httpx
import typer
import yaml

from photo_sorter.classifier import StreamChunk, warmup_clip_engine
from photo_sorter.clip.engine import ModelArtifactError, accel_capabilities, list_clip_model_files
from photo_sorter.config import ENGINE_CLIP, SUPPORTED_ENGINES, Settings, load_settings, normalize_settings, save_settings
from photo_sorter.db import DistributionMode, PhotoNotFoundError, PhotoStore
from photo_sorter.ollama import OllamaClient, OllamaError
from photo_sorter.pipeline import AnalysisPipeline, JobMeta, JobStatus, NoRunningJobError, Progress, distribution_for
from utils.logging import get_logger

LOGGER = get_logger(__name__)

app = typer.Typer(add_completion=False, help="Classify photos into category folders.")


def _load(
    settings_path: Path | None,
    engine: str | None = None,
    concurrency: int | None = None,
    value: bool | None = None,
) -> Settings:
    """Load settings and apply command line overrides."""

    settings = load_settings(settings_path)
    if engine is not None:
        engine = engine.lower().strip()
        if engine not in SUPPORTED_ENGINES:
            raise typer.BadParameter(f"engine must be one of: {', '.join(sorted(SUPPORTED_ENGINES))}")
        settings.analysis.engine = engine
    if concurrency is not None:
        settings.analysis.concurrency = concurrency
    if value is not None:
        settings.analysis.value_enabled = value
    return normalize_settings(settings)


def _print_progress(progress: Progress) -> None:
    current = progress.current_file or ""
    typer.echo(
        f"[{progress.status.value}] {progress.processed}/{progress.total} errors={progress.errors} {current}".rstrip()
    )


def _print_stream(chunk: StreamChunk) -> None:
    if chunk.reset:
        typer.echo(f"--- {chunk.file_name}")
    elif chunk.done:
        typer.echo("")
    else:
        typer.echo(chunk.delta, nl=False)


def _request_cancel(pipeline: AnalysisPipeline) -> None:
    try:
        pipeline.cancel()
    except NoRunningJobError:
        return
    typer.echo("cancel requested, waiting for in-flight photos...", err=True)


async def _run_job(pipeline: AnalysisPipeline, settings: Settings, source: Path, export: Path) -> Progress:
    loop = asyncio.get_running_loop()
    job_id = await pipeline.start(settings, source, export)
    handler_installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, _request_cancel, pipeline)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        LOGGER.debug("sigint_handler_unavailable")
    try:
        return await pipeline.wait(job_id)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)


@app.command("run")
def run_command(
    source: Path = typer.Argument(..., help="Directory to scan for photos."),
    export: Path = typer.Argument(..., help="Directory that receives the category folders."),
    settings_path: Path | None = typer.Option(None, "--settings", help="Settings YAML path."),
    engine: str | None = typer.Option(None, "--engine", help="Classification engine: clip or ollama."),
    concurrency: int | None = typer.Option(None, "--concurrency", help="Override analysis.concurrency."),
    value: bool | None = typer.Option(None, "--value/--no-value", help="Enable or disable the keep/drop judgment."),
) -> None:
    """Classify every photo under SOURCE and copy it into EXPORT."""

    settings = _load(settings_path, engine, concurrency, value)
    store = PhotoStore(settings.database.url)
    pipeline = AnalysisPipeline(store, on_progress=_print_progress, on_stream=_print_stream)
    progress = asyncio.run(_run_job(pipeline, settings, source, export))

    typer.echo(
        f"job {progress.job_id}: {progress.status.value} "
        f"({progress.processed}/{progress.total}, errors={progress.errors})"
    )
    if progress.status is JobStatus.ERROR:
        raise typer.Exit(code=1)


@app.command("results")
def results_command(
    photo_id: str | None = typer.Option(None, "--id", help="Show one result in detail."),
    settings_path: Path | None = typer.Option(None, "--settings", help="Settings YAML path."),
) -> None:
    """List stored results, newest first."""

    settings = _load(settings_path)
    store = PhotoStore(settings.database.url)

    if photo_id:
        try:
            detail = store.get_photo_detail(photo_id)
        except PhotoNotFoundError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=1) from exc
        typer.echo(f"id: {detail.id}")
        typer.echo(f"path: {detail.path}")
        typer.echo(f"category: {detail.category.value} ({detail.category.label})")
        typer.echo(f"scores: {detail.scores.to_map()}")
        typer.echo(f"tags: {', '.join(detail.tags)}")
        typer.echo(f"caption: {detail.caption or ''}")
        typer.echo(f"text_in_image: {detail.text_in_image or ''}")
        typer.echo(f"model: {detail.model or ''}")
        typer.echo(f"value: {detail.is_valuable} ({detail.valuable_score})")
        typer.echo(f"export_status: {detail.export_status.value}")
        if detail.error_message:
            typer.echo(f"error: {detail.error_message}")
        typer.echo("")
        typer.echo(detail.analysis_log or "")
        return

    for row in store.list_photos():
        typer.echo(
            f"{row.id}  {row.export_status.value:<7}  {row.category.label:<10}  "
            f"{row.top_score:.3f}  {row.file_name}"
        )


@app.command("stats")
def stats_command(
    mode: DistributionMode = typer.Option(DistributionMode.AVG_SCORE, "--mode", help="Distribution mode."),
    export_root: Path | None = typer.Option(
        None,
        "--export-root",
        file_okay=False,
        dir_okay=True,
        help="Count exported category folders under this root instead of stored rows.",
    ),
    settings_path: Path | None = typer.Option(None, "--settings", help="Settings YAML path."),
) -> None:
    """Print value counts and the category distribution."""

    settings = _load(settings_path)
    store = PhotoStore(settings.database.url)

    stats = store.value_stats()
    typer.echo(f"valuable={stats.valuable} not_valuable={stats.not_valuable} unknown={stats.unknown}")

    meta = JobMeta(export_root=export_root, engine=ENGINE_CLIP) if export_root is not None else None
    for key, share in distribution_for(store, meta, mode).items():
        typer.echo(f"{key:<18} {share:.4f}")


@app.command("clear")
def clear_command(
    settings_path: Path | None = typer.Option(None, "--settings", help="Settings YAML path."),
) -> None:
    """Delete every stored result."""

    settings = _load(settings_path)
    removed = PhotoStore(settings.database.url).clear_photos()
    typer.echo(f"removed {removed} rows")


@app.command("models")
def models_command(
    base_url: str | None = typer.Option(None, "--base-url", help="Ollama base URL."),
    settings_path: Path | None = typer.Option(None, "--settings", help="Settings YAML path."),
) -> None:
    """List models installed on the Ollama server."""

    settings = _load(settings_path)
    client = OllamaClient(base_url or settings.ollama.base_url)
    try:
        names = asyncio.run(client.list_models())
    except (OllamaError, httpx.HTTPError) as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc
    for name in names:
        typer.echo(name)


@app.command("ping")
def ping_command(
    base_url: str | None = typer.Option(None, "--base-url", help="Ollama base URL."),
    settings_path: Path | None = typer.Option(None, "--settings", help="Settings YAML path."),
) -> None:
    """Check the connection to the Ollama server."""

    settings = _load(settings_path)
    client = OllamaClient(base_url or settings.ollama.base_url)
    try:
        message = asyncio.run(client.test_connection())
    except (OllamaError, httpx.HTTPError) as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(message)


@app.command("clip-models")
def clip_models_command(
    settings_path: Path | None = typer.Option(None, "--settings", help="Settings YAML path."),
) -> None:
    """List ONNX model files in the CLIP model directory."""

    settings = _load(settings_path)
    try:
        files = list_clip_model_files(settings.clip.model_dir)
    except ModelArtifactError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc
    for name in files:
        marker = "*" if name == settings.clip.model_file else " "
        typer.echo(f"{marker} {name}")


@app.command("accel")
def accel_command() -> None:
    """Show which execution backends this machine supports."""

    for key, capability in accel_capabilities().items():
        typer.echo(
            f"{key:<9} {capability.name:<20} supported={str(capability.supported).lower()} "
            f"available={str(capability.available).lower()}"
        )


@app.command("warmup")
def warmup_command(
    settings_path: Path | None = typer.Option(None, "--settings", help="Settings YAML path."),
) -> None:
    """Load the CLIP engine once so the first job starts fast."""

    settings = _load(settings_path)
    try:
        engine = warmup_clip_engine(settings)
    except (OSError, RuntimeError) as exc:
        typer.echo(f"warmup failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(
        f"loaded {engine.model_path} providers={engine.backends_label} pool={engine.pool_size} "
        f"load_ms={engine.model_load_ms} text_cache_ms={engine.text_cache_ms}"
    )


@app.command("settings")
def settings_command(
    settings_path: Path | None = typer.Option(None, "--settings", help="Settings YAML path."),
    save: bool = typer.Option(False, "--save", help="Write the normalized settings back to disk."),
) -> None:
    """Print the effective settings."""

    settings = _load(settings_path)
    if save:
        written = save_settings(settings, settings_path)
        typer.echo(f"saved {written}")
        return
    typer.echo(yaml.safe_dump(asdict(settings), allow_unicode=True, sort_keys=False).rstrip())


__all__ = ["app"]
