"""Batch job orchestration: scan, classify, export, persist.

One :class:`AnalysisPipeline` runs at most one job at a time. A job scans the
source root once, then keeps a bounded set of classification tasks in flight,
starting the next file as soon as any task finishes. Every item ends up as a
row in the store, successful or not; only setup failures end a job in the
``error`` state.
"""

from __future__ import annotations

import asyncio
import re
import threading
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

from photo_sorter.cancellation import CancellationToken, JobCanceled
from photo_sorter.categories import CategoryKey, Scores
from photo_sorter.classifier import (
    ClassificationOutput,
    Classifier,
    ClassifyRequest,
    StreamSink,
    build_classifier,
    build_fallback_classifier,
    encode_options_from_settings,
)
from photo_sorter.clip.engine import MODEL_ID
from photo_sorter.config import ENGINE_CLIP, Settings, available_cores
from photo_sorter.db import DistributionMode, ExportStatus, PhotoDetail, PhotoStore
from photo_sorter.decode import encode_image_base64
from photo_sorter.export import ExportError, export_photo, folder_distribution
from photo_sorter.scanner import scan_sources
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "pipeline"})

_VISION_INFER_MS = re.compile(r"vision_infer_ms: (\d+)")


class JobAlreadyRunningError(RuntimeError):
    """Raised when a job is started while another one is active."""


class NoRunningJobError(LookupError):
    """Raised when cancelling without an active job."""


class PipelineError(RuntimeError):
    """Orchestration-level failure that ends the whole job."""


class JobStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELED = "canceled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.CANCELED, JobStatus.ERROR)


@dataclass(frozen=True)
class Progress:
    """Immutable progress snapshot handed to observers."""

    job_id: str | None = None
    status: JobStatus = JobStatus.IDLE
    current_file: str | None = None
    processed: int = 0
    total: int = 0
    errors: int = 0


@dataclass(frozen=True)
class JobMeta:
    export_root: Path
    engine: str


ProgressSink = Callable[[Progress], None]


@dataclass
class _ActiveJob:
    job_id: str
    token: CancellationToken


def _flag(value: bool) -> str:
    return str(value).lower()


def effective_concurrency(
    settings: Settings,
    classifier: Classifier,
    fallback: Classifier | None = None,
    cores: int | None = None,
) -> int:
    """Concurrency actually used for a job.

    The configured value is bounded by the core count and is at least 1. A
    streaming classifier forces a single worker because the stream sink
    carries one file at a time.
    """

    if classifier.streams_output or (fallback is not None and fallback.streams_output):
        return 1
    total = cores if cores is not None else available_cores()
    return max(min(settings.analysis.concurrency, total), 1)


def failure_log(settings: Settings, error: str) -> str:
    """Settings dump stored with a failed row."""

    return (
        f"engine: {settings.analysis.engine}\n"
        f"clip_model_dir: {settings.clip.model_dir or ''}\n"
        f"clip_fallback_to_ollama: {_flag(settings.clip.fallback_to_ollama)}\n\n"
        f"base_url: {settings.ollama.base_url}\n"
        f"ollama_model: {settings.ollama.model}\n"
        f"think: {_flag(settings.ollama.think)}\n"
        f"stream: {_flag(settings.ollama.stream)}\n"
        f"resize_enabled: {_flag(settings.analysis.resize_enabled)}\n"
        f"max_edge: {settings.analysis.max_edge}\n"
        f"jpeg_quality: {settings.analysis.jpeg_quality}\n\n"
        f"error:\n{error}\n"
    )


def success_log(settings: Settings, body: str) -> str:
    return (
        f"engine: {settings.analysis.engine}\n"
        f"resize_enabled: {_flag(settings.analysis.resize_enabled)}\n"
        f"max_edge: {settings.analysis.max_edge}\n"
        f"jpeg_quality: {settings.analysis.jpeg_quality}\n\n"
        f"{body}"
    )


def mean_vision_infer_ms(logs: Sequence[str | None]) -> float | None:
    """Average the ``vision_infer_ms`` values found in diagnostic logs."""

    values: list[int] = []
    for log in logs:
        match = _VISION_INFER_MS.search(log or "")
        if match:
            values.append(int(match.group(1)))
    if not values:
        return None
    return sum(values) / len(values)


def distribution_for(store: PhotoStore, meta: JobMeta | None, mode: DistributionMode) -> dict[str, float]:
    """Category distribution for reporting.

    After a local CLIP job the exported folders are counted; otherwise the
    stored rows are aggregated by ``mode``.
    """

    if meta is not None and meta.engine == ENGINE_CLIP:
        return folder_distribution(meta.export_root)
    return store.distribution(mode)


class AnalysisPipeline:
    """Runs classification jobs against a :class:`PhotoStore`."""

    def __init__(
        self,
        store: PhotoStore,
        *,
        classifier_factory: Callable[[Settings], Classifier] = build_classifier,
        fallback_factory: Callable[[Settings], Classifier | None] = build_fallback_classifier,
        on_progress: ProgressSink | None = None,
        on_stream: StreamSink | None = None,
        cores: int | None = None,
    ) -> None:
        self._store = store
        self._classifier_factory = classifier_factory
        self._fallback_factory = fallback_factory
        self._on_progress = on_progress
        self._on_stream = on_stream
        self._cores = cores

        self._lock = threading.RLock()
        self._active: _ActiveJob | None = None
        self._progress = Progress()
        self._last_meta: JobMeta | None = None
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def current_progress(self) -> Progress:
        with self._lock:
            return self._progress

    def last_job_meta(self) -> JobMeta | None:
        with self._lock:
            return self._last_meta

    def is_running(self) -> bool:
        with self._lock:
            return self._active is not None

    def _publish(self, job_id: str, **changes: object) -> Progress:
        """Apply ``changes`` to the snapshot of ``job_id`` and notify the observer."""

        with self._lock:
            if self._progress.job_id != job_id:
                return self._progress
            self._progress = replace(self._progress, **changes)
            snapshot = self._progress
            if self._on_progress is not None:
                self._on_progress(snapshot)
        return snapshot

    async def start(self, settings: Settings, source_root: Path | str, export_root: Path | str) -> str:
        """Register a new job and schedule it on the running loop; returns its id."""

        job_id = str(uuid.uuid4())
        token = CancellationToken()
        token.bind(asyncio.get_running_loop())
        with self._lock:
            if self._active is not None:
                raise JobAlreadyRunningError("job already running")
            self._active = _ActiveJob(job_id, token)
            self._progress = Progress(job_id=job_id, status=JobStatus.RUNNING)
        self._publish(job_id)

        task = asyncio.create_task(self._run_job(job_id, token, settings, Path(source_root), Path(export_root)))
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))
        return job_id

    async def wait(self, job_id: str) -> Progress:
        """Wait until ``job_id`` reaches a terminal state."""

        task = self._tasks.get(job_id)
        if task is not None:
            await task
        return self.current_progress()

    async def run(self, settings: Settings, source_root: Path | str, export_root: Path | str) -> Progress:
        """Start a job and wait for it."""

        job_id = await self.start(settings, source_root, export_root)
        return await self.wait(job_id)

    def cancel(self, job_id: str | None = None) -> None:
        """Request cancellation of the active job. Safe to call from any thread."""

        with self._lock:
            active = self._active
            if active is None or (job_id is not None and active.job_id != job_id):
                raise NoRunningJobError("no running job")
        LOGGER.info("job_cancel_requested", extra={"job_id": active.job_id})
        active.token.cancel()

    async def _run_job(
        self,
        job_id: str,
        token: CancellationToken,
        settings: Settings,
        source_root: Path,
        export_root: Path,
    ) -> None:
        started = time.perf_counter()
        try:
            with self._lock:
                self._last_meta = JobMeta(export_root=export_root, engine=settings.analysis.engine)

            try:
                files = await asyncio.to_thread(scan_sources, source_root)
            except FileNotFoundError as exc:
                raise PipelineError(str(exc)) from exc
            try:
                await asyncio.to_thread(export_root.mkdir, parents=True, exist_ok=True)
            except OSError as exc:
                raise PipelineError(f"failed to create export root {export_root}: {exc}") from exc

            classifier = self._classifier_factory(settings)
            fallback = self._fallback_factory(settings)
            concurrency = effective_concurrency(settings, classifier, fallback, self._cores)
            self._publish(job_id, total=len(files))
            LOGGER.info(
                "job_started",
                extra={
                    "job_id": job_id,
                    "engine": settings.analysis.engine,
                    "total": len(files),
                    "concurrency": concurrency,
                    "source_root": str(source_root),
                    "export_root": str(export_root),
                },
            )

            details = await self._drive(job_id, token, settings, files, classifier, fallback, export_root, concurrency)

            if token.is_cancelled():
                progress = self._publish(job_id, status=JobStatus.CANCELED, current_file=None)
                LOGGER.info("job_canceled", extra={"job_id": job_id, "processed": progress.processed})
                return

            progress = self._publish(job_id, status=JobStatus.COMPLETED, current_file=None)
            self._log_perf(job_id, settings, details, time.perf_counter() - started)
            LOGGER.info(
                "job_completed",
                extra={"job_id": job_id, "processed": progress.processed, "errors": progress.errors},
            )
        except asyncio.CancelledError:
            self._publish(job_id, status=JobStatus.CANCELED, current_file=None)
            raise
        except Exception as exc:
            LOGGER.error("job_failed", exc_info=True, extra={"job_id": job_id, "error": str(exc)})
            current = self.current_progress()
            self._publish(job_id, status=JobStatus.ERROR, current_file=None, errors=current.errors + 1)
        finally:
            with self._lock:
                if self._active is not None and self._active.job_id == job_id:
                    self._active = None

    async def _drive(
        self,
        job_id: str,
        token: CancellationToken,
        settings: Settings,
        files: Sequence[Path],
        classifier: Classifier,
        fallback: Classifier | None,
        export_root: Path,
        concurrency: int,
    ) -> list[PhotoDetail]:
        """Keep up to ``concurrency`` tasks in flight until files run out or the job is cancelled."""

        details: list[PhotoDetail] = []
        in_flight: dict[asyncio.Task[PhotoDetail], Path] = {}
        next_index = 0
        cancel_wait = asyncio.ensure_future(token.wait())

        def record(task: asyncio.Task[PhotoDetail]) -> None:
            in_flight.pop(task)
            if task.cancelled() or isinstance(task.exception(), JobCanceled):
                return
            exc = task.exception()
            if exc is not None:
                # Per-item failures are stored inside the task; anything left here is unexpected.
                LOGGER.error("photo_task_crashed", exc_info=exc, extra={"job_id": job_id})
                current = self.current_progress()
                self._publish(job_id, processed=current.processed + 1, errors=current.errors + 1)
                return
            detail = task.result()
            details.append(detail)
            current = self.current_progress()
            failed = detail.export_status is ExportStatus.ERROR
            self._publish(
                job_id,
                processed=current.processed + 1,
                errors=current.errors + (1 if failed else 0),
                current_file=f"병렬 처리 중: {len(in_flight)}개",
            )

        try:
            while not token.is_cancelled():
                while len(in_flight) < concurrency and next_index < len(files):
                    path = files[next_index]
                    next_index += 1
                    task = asyncio.create_task(
                        self._process_one(job_id, token, settings, path, classifier, fallback, export_root)
                    )
                    in_flight[task] = path
                    self._publish(job_id, current_file=f"({len(in_flight)}/{concurrency}) {path.name}")

                if not in_flight:
                    break

                done, _ = await asyncio.wait({*in_flight, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task is not cancel_wait:
                        record(task)

            if in_flight:
                # Cancelled: in-flight tasks abort at their next check point or finish their write.
                await asyncio.gather(*in_flight, return_exceptions=True)
                for task in list(in_flight):
                    record(task)
        finally:
            cancel_wait.cancel()

        return details

    async def _classify(
        self,
        job_id: str,
        token: CancellationToken,
        settings: Settings,
        path: Path,
        classifier: Classifier,
    ) -> ClassificationOutput:
        payload: str | None = None
        if classifier.needs_encoded_payload:
            payload = await token.race(asyncio.to_thread(encode_image_base64, path, encode_options_from_settings(settings)))
        request = ClassifyRequest(
            path=path,
            token=token,
            payload=payload,
            job_id=job_id,
            file_name=path.name,
            sink=self._on_stream,
        )
        return await classifier.classify(request)

    async def _process_one(
        self,
        job_id: str,
        token: CancellationToken,
        settings: Settings,
        path: Path,
        classifier: Classifier,
        fallback: Classifier | None,
        export_root: Path,
    ) -> PhotoDetail:
        token.raise_if_cancelled()
        started = time.perf_counter()

        output: ClassificationOutput | None = None
        error: str | None = None
        try:
            output = await self._classify(job_id, token, settings, path, classifier)
        except JobCanceled:
            raise
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            LOGGER.warning("photo_classify_failed", extra={"job_id": job_id, "path": str(path), "error": error})

        if output is None and fallback is not None:
            LOGGER.info("photo_fallback_started", extra={"job_id": job_id, "path": str(path)})
            try:
                output = await self._classify(job_id, token, settings, path, fallback)
            except JobCanceled:
                raise
            except Exception as exc:
                fallback_error = str(exc) or exc.__class__.__name__
                error = f"clip failed and fallback also failed.\n\nclip:\n{error}\n\nollama:\n{fallback_error}"
                LOGGER.warning(
                    "photo_fallback_failed",
                    extra={"job_id": job_id, "path": str(path), "error": fallback_error},
                )

        token.raise_if_cancelled()
        duration_ms = int((time.perf_counter() - started) * 1000)
        if output is None:
            detail = self._failure_detail(settings, path, error or "unknown error", duration_ms)
        else:
            detail = await asyncio.to_thread(
                self._export_success, settings, path, output, export_root, duration_ms
            )
        await asyncio.to_thread(self._store.insert_photo, detail)
        return detail

    def _export_success(
        self,
        settings: Settings,
        path: Path,
        output: ClassificationOutput,
        export_root: Path,
        duration_ms: int,
    ) -> PhotoDetail:
        value_enabled = settings.analysis.value_enabled
        try:
            target = export_photo(
                export_root,
                path,
                output.category,
                value_enabled=value_enabled,
                is_valuable=output.is_valuable,
            )
        except (ExportError, OSError) as exc:
            LOGGER.warning("photo_export_failed", extra={"path": str(path), "error": str(exc)})
            return PhotoDetail(
                id=str(uuid.uuid4()),
                file_name=path.name,
                path=str(path),
                category=output.category,
                scores=output.scores,
                tags=list(output.tags),
                export_status=ExportStatus.ERROR,
                error_message=f"export failed: {exc}",
                analysis_duration_ms=duration_ms,
                model=output.model,
                is_valuable=output.is_valuable,
                valuable_score=output.valuable_score,
                caption=output.caption,
                text_in_image=output.text_in_image,
                analysis_log=success_log(settings, output.analysis_log),
            )

        LOGGER.debug("export_copy_done", extra={"source": str(path), "target": str(target)})
        top_score = output.scores.top()[1]
        body = (
            f"{output.analysis_log}"
            f"export_path: {target}\n"
            f"top_score: {top_score:.4f}\n"
            f"duration_ms: {duration_ms}\n"
        )
        return PhotoDetail(
            id=str(uuid.uuid4()),
            file_name=path.name,
            path=str(target),
            category=output.category,
            scores=output.scores,
            tags=list(output.tags),
            export_status=ExportStatus.SUCCESS,
            error_message=None,
            analysis_duration_ms=duration_ms,
            model=output.model,
            is_valuable=output.is_valuable if value_enabled else None,
            valuable_score=output.valuable_score if value_enabled else None,
            caption=output.caption,
            text_in_image=output.text_in_image,
            analysis_log=success_log(settings, body),
        )

    def _failure_detail(self, settings: Settings, path: Path, error: str, duration_ms: int) -> PhotoDetail:
        model = MODEL_ID if settings.analysis.engine == ENGINE_CLIP else settings.ollama.model
        return PhotoDetail(
            id=str(uuid.uuid4()),
            file_name=path.name,
            path=str(path),
            category=CategoryKey.OTHER,
            scores=Scores(),
            tags=[],
            export_status=ExportStatus.ERROR,
            error_message=error,
            analysis_duration_ms=duration_ms,
            model=model,
            analysis_log=failure_log(settings, error),
        )

    def _log_perf(self, job_id: str, settings: Settings, details: Sequence[PhotoDetail], elapsed: float) -> None:
        images = len(details)
        extra: dict[str, object] = {
            "job_id": job_id,
            "engine": settings.analysis.engine,
            "images": images,
            "elapsed_s": round(elapsed, 3),
            "images_per_s": round(images / elapsed, 3) if elapsed > 0 else 0.0,
        }
        if settings.analysis.engine == ENGINE_CLIP:
            mean_ms = mean_vision_infer_ms([detail.analysis_log for detail in details])
            extra["avg_vision_infer_ms"] = round(mean_ms, 1) if mean_ms is not None else None
        LOGGER.info("job_perf", extra=extra)


__all__ = [
    "AnalysisPipeline",
    "JobAlreadyRunningError",
    "JobMeta",
    "JobStatus",
    "NoRunningJobError",
    "PipelineError",
    "Progress",
    "ProgressSink",
    "distribution_for",
    "effective_concurrency",
    "failure_log",
    "mean_vision_infer_ms",
    "success_log",
]
