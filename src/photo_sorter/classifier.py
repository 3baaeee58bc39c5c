"""Uniform classification contract over the local CLIP engine and Ollama.

The orchestrator only sees :class:`Classifier`. It asks each classifier
whether it needs a pre-encoded JPEG payload and whether it streams tokens,
then calls :meth:`Classifier.classify` the same way for both.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import httpx

from photo_sorter.cancellation import CancellationToken
from photo_sorter.categories import CategoryKey, Scores
from photo_sorter.clip.engine import (
    MODEL_ID,
    ClipEngine,
    ClipEngineOptions,
    ClipPrediction,
    EngineRegistry,
    default_registry,
    derive_clip_threads,
)
from photo_sorter.clip.preprocess import preprocess_clip_image
from photo_sorter.config import ENGINE_CLIP, ENGINE_OLLAMA, OllamaConfig, Settings
from photo_sorter.decode import EncodeOptions
from photo_sorter.ollama import OllamaClient, OllamaError
from utils.logging import get_logger

LOGGER = get_logger(__name__)


@dataclass(frozen=True)
class StreamChunk:
    """One streaming event: a reset, a content delta, or the final done marker."""

    job_id: str
    file_name: str
    delta: str = ""
    done: bool = False
    reset: bool = False


StreamSink = Callable[[StreamChunk], None]


@dataclass
class ClassificationOutput:
    """What a classifier produces for one image."""

    model: str
    scores: Scores
    category: CategoryKey
    tags: list[str] = field(default_factory=list)
    caption: str = ""
    text_in_image: str = ""
    analysis_log: str = ""
    is_valuable: bool | None = None
    valuable_score: float | None = None


@dataclass
class ClassifyRequest:
    """Input for a single classification call."""

    path: Path
    token: CancellationToken
    payload: str | None = None
    job_id: str = ""
    file_name: str = ""
    sink: StreamSink | None = None


class Classifier(Protocol):
    needs_encoded_payload: bool
    streams_output: bool

    async def classify(self, request: ClassifyRequest) -> ClassificationOutput:
        ...


class ClipClassifier:
    """Local strategy: reads the file itself and ignores any payload."""

    needs_encoded_payload = False
    streams_output = False

    def __init__(self, options: ClipEngineOptions, registry: EngineRegistry | None = None) -> None:
        self.options = options
        self._registry = registry or default_registry()

    def _predict(self, path: Path) -> ClipPrediction:
        pixels = preprocess_clip_image(path)
        engine = self._registry.get(self.options)
        return engine.classify(pixels)

    async def classify(self, request: ClassifyRequest) -> ClassificationOutput:
        request.token.raise_if_cancelled()
        prediction = await request.token.race(asyncio.to_thread(self._predict, request.path))

        is_valuable: bool | None = None
        valuable_score: float | None = None
        if self.options.enable_value and prediction.value is not None:
            is_valuable, valuable_score = prediction.value

        return ClassificationOutput(
            model=MODEL_ID,
            scores=prediction.scores,
            category=prediction.category,
            tags=[prediction.category.label],
            caption="",
            text_in_image="",
            analysis_log=prediction.log,
            is_valuable=is_valuable,
            valuable_score=valuable_score,
        )


class OllamaClassifier:
    """Remote strategy: sends the pre-encoded JPEG payload to Ollama."""

    needs_encoded_payload = True

    def __init__(self, config: OllamaConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config
        self.streams_output = config.stream
        self._client = OllamaClient(config.base_url, transport=transport)

    async def classify(self, request: ClassifyRequest) -> ClassificationOutput:
        if request.payload is None:
            raise OllamaError("missing encoded image payload")
        request.token.raise_if_cancelled()

        if self.config.stream:
            sink = request.sink

            def emit(delta: str = "", *, done: bool = False, reset: bool = False) -> None:
                if sink is not None:
                    sink(StreamChunk(request.job_id, request.file_name, delta=delta, done=done, reset=reset))

            emit(reset=True)
            try:
                output, log = await self._client.classify_streaming(
                    self.config.model,
                    self.config.think,
                    request.payload,
                    request.token,
                    on_delta=emit,
                )
            finally:
                emit(done=True)
        else:
            output, log = await self._client.classify(
                self.config.model,
                self.config.think,
                request.payload,
                request.token,
            )

        return ClassificationOutput(
            model=self.config.model,
            scores=output.scores,
            category=output.category,
            tags=output.tags_ko,
            caption=output.caption_ko,
            text_in_image=output.text_in_image_ko,
            analysis_log=log,
        )


def clip_options_from_settings(settings: Settings) -> ClipEngineOptions:
    """Map settings onto engine options, sizing the pool from the concurrency."""

    pool_size, intra_threads = derive_clip_threads(settings.analysis.concurrency)
    clip = settings.clip
    return ClipEngineOptions(
        model_dir=clip.model_dir,
        model_file=clip.model_file,
        session_pool_size=pool_size,
        intra_threads=intra_threads,
        enable_value=settings.analysis.value_enabled,
        allow_backend_fallback=True,
        ep_auto=clip.ep_auto,
        ep_coreml=clip.ep_coreml,
        ep_cuda=clip.ep_cuda,
        ep_rocm=clip.ep_rocm,
        ep_directml=clip.ep_directml,
        ep_openvino=clip.ep_openvino,
    )


def encode_options_from_settings(settings: Settings) -> EncodeOptions:
    analysis = settings.analysis
    return EncodeOptions(
        resize_enabled=analysis.resize_enabled,
        max_edge=analysis.max_edge,
        jpeg_quality=analysis.jpeg_quality,
    )


def build_classifier(
    settings: Settings,
    registry: EngineRegistry | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Classifier:
    """Return the classifier for the configured engine."""

    if settings.analysis.engine == ENGINE_OLLAMA:
        return OllamaClassifier(settings.ollama, transport=transport)
    return ClipClassifier(clip_options_from_settings(settings), registry=registry)


def build_fallback_classifier(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Classifier | None:
    """Return the Ollama classifier used when CLIP fails, if enabled."""

    if settings.analysis.engine == ENGINE_CLIP and settings.clip.fallback_to_ollama:
        return OllamaClassifier(settings.ollama, transport=transport)
    return None


def warmup_clip_engine(settings: Settings, registry: EngineRegistry | None = None) -> ClipEngine:
    """Build (or reuse) the engine for ``settings`` before the first job."""

    options = clip_options_from_settings(settings)
    started = time.perf_counter()
    try:
        engine = (registry or default_registry()).get(options)
    except Exception:
        LOGGER.error("clip_warmup_failed", exc_info=True, extra={"key": options.cache_key()})
        raise
    LOGGER.info(
        "clip_warmup_done",
        extra={
            "elapsed_ms": int((time.perf_counter() - started) * 1000),
            "execution_providers": engine.backends_label,
            "pool_size": engine.pool_size,
        },
    )
    return engine


__all__ = [
    "ClassificationOutput",
    "Classifier",
    "ClassifyRequest",
    "ClipClassifier",
    "OllamaClassifier",
    "StreamChunk",
    "StreamSink",
    "build_classifier",
    "build_fallback_classifier",
    "clip_options_from_settings",
    "encode_options_from_settings",
    "warmup_clip_engine",
]
