"""CLIP ONNX embedding engine with backend negotiation and a session pool.

The engine owns one or more ``onnxruntime`` sessions for a combined CLIP
graph (text and vision towers in one model). At construction it negotiates
execution providers, caches text prototypes for every category and for the
keep/drop value judgment, and smoke-tests the vision path. Afterwards
:meth:`ClipEngine.classify` scores a preprocessed pixel tensor against the
cached prototypes.
"""

from __future__ import annotations

import itertools
import math
import os
import sys
import threading
import time
from collections.abc import Callable, Collection, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
import onnxruntime as ort
from numpy.typing import NDArray
from transformers import PreTrainedTokenizerFast

from photo_sorter.categories import CATEGORY_KEYS, CategoryKey, Scores
from photo_sorter.clip.math import cosine_similarity, l2_normalize, softmax
from photo_sorter.clip.preprocess import IMAGE_SIZE
from photo_sorter.clip.prompts import VALUE_DROP_PROMPTS, VALUE_KEEP_PROMPTS, all_category_prompts
from photo_sorter.config import available_cores
from utils.logging import get_logger

LOGGER = get_logger(__name__)

MODEL_ID = "clip-vit-b32-onnx"
TEXT_LENGTH = 77
PAD_TOKEN = "<|endoftext|>"
VALUE_KEEP_THRESHOLD = 0.5
CPU_PROVIDER = "CPUExecutionProvider"

_MODEL_SUBDIR = Path("models") / MODEL_ID
_IMAGE_OUTPUT_PRIORITIES = ("image_embeds", "image_embeddings", "image_features", "vision_embeds")
_TEXT_OUTPUT_PRIORITIES = ("text_embeds", "text_embeddings", "text_features")


class ModelArtifactError(FileNotFoundError):
    """Raised when the model directory, model file, or tokenizer is missing."""


class ClipEngineError(RuntimeError):
    """Raised for malformed model interfaces, outputs, or tokenizer problems."""


@dataclass(frozen=True)
class ExecutionBackend:
    """An optional accelerator execution provider."""

    key: str
    provider: str
    display_name: str
    platforms: tuple[str, ...] = ()
    excluded_platforms: tuple[str, ...] = ()
    provider_options: tuple[tuple[str, str], ...] = ()

    def supported_by_platform(self, platform: str | None = None) -> bool:
        current = platform or sys.platform
        if self.platforms and not current.startswith(self.platforms):
            return False
        return not (self.excluded_platforms and current.startswith(self.excluded_platforms))

    def provider_entry(self) -> str | tuple[str, dict[str, str]]:
        if self.provider_options:
            return self.provider, dict(self.provider_options)
        return self.provider


# Priority order; CPU is appended after these.
EXECUTION_BACKENDS: tuple[ExecutionBackend, ...] = (
    ExecutionBackend(
        "coreml",
        "CoreMLExecutionProvider",
        "CoreML (Apple)",
        platforms=("darwin",),
        provider_options=(("ModelFormat", "MLProgram"), ("RequireStaticInputShapes", "1")),
    ),
    ExecutionBackend("cuda", "CUDAExecutionProvider", "CUDA (NVIDIA)", excluded_platforms=("darwin",)),
    ExecutionBackend("rocm", "ROCMExecutionProvider", "ROCm (AMD)", platforms=("linux",)),
    ExecutionBackend("directml", "DmlExecutionProvider", "DirectML (Windows)", platforms=("win32",)),
    ExecutionBackend("openvino", "OpenVINOExecutionProvider", "OpenVINO (Intel)"),
)


def _default_intra_threads() -> int:
    return min(available_cores(), 4)


@dataclass(frozen=True)
class ClipEngineOptions:
    """Everything that identifies one engine instance."""

    model_dir: str | None = None
    model_file: str = "onnx/model_q4f16.onnx"
    session_pool_size: int = 1
    intra_threads: int = field(default_factory=_default_intra_threads)
    enable_value: bool = False
    allow_backend_fallback: bool = True
    ep_auto: bool = True
    ep_coreml: bool = sys.platform == "darwin"
    ep_cuda: bool = False
    ep_rocm: bool = False
    ep_directml: bool = False
    ep_openvino: bool = False

    def requested_backends(self) -> list[str]:
        """Backend keys the caller asked for, in priority order."""

        if not self.ep_auto:
            return []
        return [backend.key for backend in EXECUTION_BACKENDS if getattr(self, f"ep_{backend.key}")]

    def cache_key(self) -> str:
        return ";".join(
            [
                f"dir={self.model_dir or '<auto>'}",
                f"file={self.model_file}",
                f"pool={self.session_pool_size}",
                f"intra={self.intra_threads}",
                f"value={self.enable_value}",
                f"backends={'+'.join(self.requested_backends()) or 'cpu'}",
            ]
        )


@dataclass(frozen=True)
class BackendCapability:
    name: str
    supported: bool
    available: bool


@dataclass(frozen=True)
class ClipPrediction:
    """Result of scoring one image."""

    scores: Scores
    category: CategoryKey
    value: tuple[bool, float] | None
    log: str
    inference_ms: int


@dataclass(frozen=True)
class _IONames:
    input_ids: str
    attention_mask: str
    pixel_values: str
    image_output: str
    text_output: str


@dataclass
class _PooledSession:
    session: Any
    lock: threading.Lock = field(default_factory=threading.Lock)


def _has_tokenizer(candidate: Path) -> bool:
    return (candidate / "tokenizer.json").is_file()


def resolve_model_dir(override: str | None = None) -> Path:
    """Locate the CLIP model directory.

    Candidates, in order: the explicit override, bundled resource directories
    (``PHOTO_SORTER_RESOURCE_DIR`` and the repository root), then development
    paths relative to the working directory. A candidate qualifies when it
    contains ``tokenizer.json``.
    """

    if override:
        candidate = Path(override).expanduser()
        if _has_tokenizer(candidate):
            return candidate

    resource_roots: list[Path] = []
    env_resources = os.getenv("PHOTO_SORTER_RESOURCE_DIR")
    if env_resources:
        resource_roots.append(Path(env_resources).expanduser())
    resource_roots.append(Path(__file__).resolve().parents[3])
    for root in resource_roots:
        for candidate in (root / _MODEL_SUBDIR, root / MODEL_ID):
            if _has_tokenizer(candidate):
                return candidate

    cwd = Path.cwd()
    for candidate in (cwd / _MODEL_SUBDIR, cwd.parent / _MODEL_SUBDIR, cwd.parent.parent / _MODEL_SUBDIR):
        if _has_tokenizer(candidate):
            return candidate

    raise ModelArtifactError(f"CLIP model dir not found (expected `{_MODEL_SUBDIR.as_posix()}/` with tokenizer.json)")


def list_clip_model_files(model_dir: str | None = None) -> list[str]:
    """Return the ``onnx/*.onnx`` model files available in the model directory."""

    onnx_dir = resolve_model_dir(model_dir) / "onnx"
    if not onnx_dir.is_dir():
        raise ModelArtifactError(f"onnx directory not found: {onnx_dir}")
    return sorted(f"onnx/{path.name}" for path in onnx_dir.iterdir() if path.is_file() and path.suffix == ".onnx")


def resolve_backends(options: ClipEngineOptions, available: Collection[str] | None = None) -> list[ExecutionBackend]:
    """Return the requested accelerator backends usable on this machine.

    Backends that are unsupported on this platform or not compiled into the
    installed runtime are skipped without a retry.
    """

    runtime_available = set(available if available is not None else ort.get_available_providers())
    requested = set(options.requested_backends())
    usable: list[ExecutionBackend] = []
    for backend in EXECUTION_BACKENDS:
        if backend.key not in requested:
            continue
        if not backend.supported_by_platform():
            LOGGER.debug("clip_backend_unsupported", extra={"backend": backend.key, "platform": sys.platform})
            continue
        if backend.provider not in runtime_available:
            LOGGER.debug("clip_backend_unavailable", extra={"backend": backend.key})
            continue
        usable.append(backend)
    return usable


def accel_capabilities() -> dict[str, BackendCapability]:
    """Report platform support and runtime availability for every backend."""

    runtime_available = set(ort.get_available_providers())
    capabilities = {"cpu": BackendCapability("CPU", True, CPU_PROVIDER in runtime_available)}
    for backend in EXECUTION_BACKENDS:
        supported = backend.supported_by_platform()
        capabilities[backend.key] = BackendCapability(
            backend.display_name,
            supported,
            supported and backend.provider in runtime_available,
        )
    return capabilities


def derive_clip_threads(concurrency: int, cores: int | None = None) -> tuple[int, int]:
    """Split the machine between pooled sessions.

    Returns ``(session_pool_size, intra_op_threads)`` where the pool matches
    the requested concurrency (bounded by the core count) and each session
    gets an equal share of cores, rounded up.
    """

    total = max(cores if cores is not None else available_cores(), 1)
    pool = min(max(concurrency, 1), total)
    return pool, max(math.ceil(total / pool), 1)


def backends_label(backends: Sequence[ExecutionBackend]) -> str:
    return "+".join([backend.key for backend in backends] + ["cpu"])


def _pick_output_name(names: Sequence[str], priorities: Sequence[str]) -> str:
    for priority in priorities:
        for name in names:
            if priority in name.lower():
                return name
    raise ClipEngineError(f"required output not found. available outputs: {', '.join(names)}")


def _resolve_io_names(session: Any) -> _IONames:
    input_ids: str | None = None
    attention_mask: str | None = None
    pixel_values: str | None = None
    for node in session.get_inputs():
        name = node.name
        lowered = name.lower()
        if input_ids is None and ("input_ids" in lowered or lowered == "input"):
            input_ids = name
        elif attention_mask is None and "attention_mask" in lowered:
            attention_mask = name
        elif pixel_values is None and "pixel" in lowered:
            pixel_values = name

    if input_ids is None:
        raise ClipEngineError("model input_ids not found")
    if attention_mask is None:
        raise ClipEngineError("model attention_mask not found")
    if pixel_values is None:
        raise ClipEngineError("model pixel_values not found")

    output_names = [node.name for node in session.get_outputs()]
    return _IONames(
        input_ids=input_ids,
        attention_mask=attention_mask,
        pixel_values=pixel_values,
        image_output=_pick_output_name(output_names, _IMAGE_OUTPUT_PRIORITIES),
        text_output=_pick_output_name(output_names, _TEXT_OUTPUT_PRIORITIES),
    )


def load_tokenizer(tokenizer_path: Path) -> tuple[Any, int]:
    """Load ``tokenizer.json`` and return ``(tokenizer, pad_token_id)``."""

    try:
        tokenizer = PreTrainedTokenizerFast(tokenizer_file=str(tokenizer_path))
    except Exception as exc:
        raise ClipEngineError(f"failed to load tokenizer {tokenizer_path}: {exc}") from exc

    pad_id = tokenizer.get_vocab().get(PAD_TOKEN)
    if pad_id is None:
        raise ClipEngineError(f"tokenizer missing {PAD_TOKEN}")
    return tokenizer, int(pad_id)


def encode_fixed_length(tokenizer: Any, text: str, pad_id: int, length: int = TEXT_LENGTH) -> tuple[list[int], list[int]]:
    """Tokenize ``text`` into exactly ``length`` ids and mask values.

    Long sequences are truncated; short ones are padded with ``pad_id`` and a
    zero mask.
    """

    encoded = tokenizer(text, add_special_tokens=True)
    ids = [int(value) for value in encoded["input_ids"]][:length]
    mask = [int(value) for value in encoded["attention_mask"]][:length]
    ids.extend([pad_id] * (length - len(ids)))
    mask.extend([0] * (length - len(mask)))
    return ids, mask


class ClipEngine:
    """Pooled CLIP ONNX sessions plus cached category and value prototypes."""

    def __init__(self, options: ClipEngineOptions) -> None:
        self.options = options
        model_dir = resolve_model_dir(options.model_dir)
        self.model_path = model_dir / options.model_file
        if not self.model_path.is_file():
            raise ModelArtifactError(f"CLIP ONNX model file not found: {self.model_path}")
        self.tokenizer_path = model_dir / "tokenizer.json"
        if not self.tokenizer_path.is_file():
            raise ModelArtifactError(f"CLIP tokenizer.json not found: {self.tokenizer_path}")

        self._intra_threads = max(options.intra_threads, 1)
        tokenizer, pad_id = load_tokenizer(self.tokenizer_path)
        dummy_ids, dummy_mask = encode_fixed_length(tokenizer, "", pad_id)
        self._dummy_ids = np.asarray([dummy_ids], dtype=np.int64)
        self._dummy_mask = np.asarray([dummy_mask], dtype=np.int64)

        backends = resolve_backends(options)
        started = time.perf_counter()
        session, io_names = self._negotiate(backends, tokenizer, pad_id, started)
        self.backends: tuple[ExecutionBackend, ...] = tuple(backends)
        self.io_names = io_names

        pool_size = max(options.session_pool_size, 1)
        self._pool: list[_PooledSession] = [_PooledSession(session)]
        for index in range(1, pool_size):
            pooled_started = time.perf_counter()
            self._pool.append(_PooledSession(self._create_session(self.backends)))
            LOGGER.info(
                "clip_session_pooled",
                extra={
                    "position": index + 1,
                    "pool_size": pool_size,
                    "elapsed_ms": int((time.perf_counter() - pooled_started) * 1000),
                },
            )
        self._dispatch = itertools.count()

        LOGGER.info(
            "clip_engine_loaded",
            extra={
                "model_path": str(self.model_path),
                "model_load_ms": self.model_load_ms,
                "text_cache_ms": self.text_cache_ms,
                "execution_providers": self.backends_label,
                "pool_size": pool_size,
                "intra_threads": self._intra_threads,
            },
        )

    @property
    def backends_label(self) -> str:
        return backends_label(self.backends)

    @property
    def pool_size(self) -> int:
        return len(self._pool)

    def _create_session(self, backends: Sequence[ExecutionBackend]) -> Any:
        session_options = ort.SessionOptions()
        session_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        session_options.intra_op_num_threads = self._intra_threads
        providers = [backend.provider_entry() for backend in backends] + [CPU_PROVIDER]
        return ort.InferenceSession(str(self.model_path), sess_options=session_options, providers=providers)

    def _drop_backend(self, backends: list[ExecutionBackend], stage: str, exc: Exception) -> bool:
        """Remove the highest-priority accelerator after a failure; ``False`` when none is left."""

        if not (self.options.allow_backend_fallback and backends):
            return False
        dropped = backends.pop(0)
        LOGGER.warning(
            "clip_backend_dropped",
            extra={"backend": dropped.key, "stage": stage, "remaining": backends_label(backends), "error": str(exc)},
        )
        return True

    def _negotiate(
        self,
        backends: list[ExecutionBackend],
        tokenizer: Any,
        pad_id: int,
        started: float,
    ) -> tuple[Any, _IONames]:
        """Build a working primary session, eliminating failing accelerators."""

        while True:
            try:
                session = self._create_session(backends)
            except Exception as exc:
                if self._drop_backend(backends, "session", exc):
                    continue
                raise
            self.model_load_ms = int((time.perf_counter() - started) * 1000)

            io_names = _resolve_io_names(session)

            cache_started = time.perf_counter()
            try:
                self._cache_prototypes(session, io_names, tokenizer, pad_id)
                self._smoke_test(session, io_names)
            except Exception as exc:
                if self._drop_backend(backends, "warmup", exc):
                    continue
                raise
            self.text_cache_ms = int((time.perf_counter() - cache_started) * 1000)
            return session, io_names

    def _embed_texts(self, session: Any, io_names: _IONames, tokenizer: Any, pad_id: int, prompts: Sequence[str]) -> NDArray[np.float32]:
        if not prompts:
            raise ClipEngineError("no prompts for embed cache")

        encoded = [encode_fixed_length(tokenizer, prompt, pad_id) for prompt in prompts]
        count = len(prompts)
        feeds = {
            io_names.input_ids: np.asarray([ids for ids, _ in encoded], dtype=np.int64),
            io_names.attention_mask: np.asarray([mask for _, mask in encoded], dtype=np.int64),
            # Some exported graphs require every input to share the batch size.
            io_names.pixel_values: np.zeros((count, 3, IMAGE_SIZE, IMAGE_SIZE), dtype=np.float32),
        }
        outputs = session.run([io_names.text_output], feeds)
        data = np.asarray(outputs[0] if outputs else [], dtype=np.float32)
        if data.size == 0:
            raise ClipEngineError("empty text embeddings")
        if data.size % count != 0:
            raise ClipEngineError(f"invalid text embeddings shape {data.shape} for {count} prompts")
        return data.reshape(count, -1)

    def _cache_prototypes(self, session: Any, io_names: _IONames, tokenizer: Any, pad_id: int) -> None:
        flat = all_category_prompts()
        embeddings = self._embed_texts(session, io_names, tokenizer, pad_id, [prompt for _, prompt in flat])

        categories = np.asarray([CATEGORY_KEYS.index(category) for category, _ in flat])
        prototypes: dict[CategoryKey, NDArray[np.float32]] = {}
        for index, category in enumerate(CATEGORY_KEYS):
            rows = embeddings[categories == index]
            if rows.shape[0] == 0:
                raise ClipEngineError(f"missing prompts for {category.value}")
            prototypes[category] = l2_normalize(rows.mean(axis=0))
        self._category_prototypes = prototypes

        self._keep_prototype = l2_normalize(
            self._embed_texts(session, io_names, tokenizer, pad_id, VALUE_KEEP_PROMPTS).mean(axis=0)
        )
        self._drop_prototype = l2_normalize(
            self._embed_texts(session, io_names, tokenizer, pad_id, VALUE_DROP_PROMPTS).mean(axis=0)
        )

    def _image_feeds(self, io_names: _IONames, pixel_values: NDArray[np.float32]) -> dict[str, NDArray[Any]]:
        return {
            io_names.input_ids: self._dummy_ids,
            io_names.attention_mask: self._dummy_mask,
            io_names.pixel_values: pixel_values,
        }

    def _smoke_test(self, session: Any, io_names: _IONames) -> None:
        """Run the vision path once; some providers load fine but fail at execution."""

        pixels = np.zeros((1, 3, IMAGE_SIZE, IMAGE_SIZE), dtype=np.float32)
        outputs = session.run([io_names.image_output], self._image_feeds(io_names, pixels))
        if not outputs or np.asarray(outputs[0]).size == 0:
            raise ClipEngineError("empty image embeddings (smoke test)")

    def classify(self, pixel_values: NDArray[np.float32]) -> ClipPrediction:
        """Score a ``(1, 3, 224, 224)`` pixel tensor against the cached prototypes."""

        started = time.perf_counter()
        pixels = np.asarray(pixel_values, dtype=np.float32).reshape(1, 3, IMAGE_SIZE, IMAGE_SIZE)

        slot = self._pool[next(self._dispatch) % len(self._pool)]
        with slot.lock:
            outputs = slot.session.run([self.io_names.image_output], self._image_feeds(self.io_names, pixels))

        if not outputs:
            raise ClipEngineError("missing image embeddings output")
        raw_embedding = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if raw_embedding.size == 0:
            raise ClipEngineError("empty image embeddings")
        image_embedding = l2_normalize(raw_embedding)

        value: tuple[bool, float] | None = None
        if self.options.enable_value:
            keep_prob = softmax(
                [
                    cosine_similarity(image_embedding, self._keep_prototype),
                    cosine_similarity(image_embedding, self._drop_prototype),
                ]
            )[0]
            value = (keep_prob >= VALUE_KEEP_THRESHOLD, keep_prob)

        logits = [cosine_similarity(image_embedding, self._category_prototypes[key]) for key in CATEGORY_KEYS]
        scores = Scores.from_probabilities(softmax(logits))
        category, _ = scores.top()

        inference_ms = int((time.perf_counter() - started) * 1000)
        return ClipPrediction(
            scores=scores,
            category=category,
            value=value,
            log=self._diagnostics(inference_ms, value),
            inference_ms=inference_ms,
        )

    def _diagnostics(self, inference_ms: int, value: tuple[bool, float] | None) -> str:
        keep_prob = f"{value[1]:.4f}" if value is not None else "n/a"
        return (
            "engine: clip\n"
            f"model_path: {self.model_path}\n"
            f"tokenizer_path: {self.tokenizer_path}\n"
            f"model_load_ms: {self.model_load_ms}\n"
            f"text_cache_ms: {self.text_cache_ms}\n"
            f"execution_providers: {self.backends_label}\n"
            f"output_image_embeds: {self.io_names.image_output}\n"
            f"output_text_embeds: {self.io_names.text_output}\n"
            f"vision_infer_ms: {inference_ms}\n"
            f"value_keep_prob: {keep_prob}\n"
        )


class EngineRegistry:
    """Holds the single live engine, keyed by its options fingerprint.

    Requesting the current key returns the shared instance; a different key
    builds a new engine and replaces the cached one. Callers still holding the
    previous engine keep it alive until they release it.
    """

    def __init__(self, factory: Callable[[ClipEngineOptions], ClipEngine] = ClipEngine) -> None:
        self._factory = factory
        self._lock = threading.Lock()
        self._entry: tuple[str, ClipEngine] | None = None

    def get(self, options: ClipEngineOptions) -> ClipEngine:
        key = options.cache_key()
        with self._lock:
            if self._entry is not None and self._entry[0] == key:
                return self._entry[1]
            engine = self._factory(options)
            replaced = self._entry is not None
            self._entry = (key, engine)
        LOGGER.info("clip_engine_registered", extra={"key": key, "replaced": replaced})
        return engine

    def clear(self) -> None:
        with self._lock:
            self._entry = None


_DEFAULT_REGISTRY = EngineRegistry()


def default_registry() -> EngineRegistry:
    """Process-wide registry used when callers do not supply their own."""

    return _DEFAULT_REGISTRY


__all__ = [
    "BackendCapability",
    "ClipEngine",
    "ClipEngineError",
    "ClipEngineOptions",
    "ClipPrediction",
    "CPU_PROVIDER",
    "EXECUTION_BACKENDS",
    "EngineRegistry",
    "ExecutionBackend",
    "MODEL_ID",
    "ModelArtifactError",
    "VALUE_KEEP_THRESHOLD",
    "accel_capabilities",
    "backends_label",
    "default_registry",
    "derive_clip_threads",
    "encode_fixed_length",
    "list_clip_model_files",
    "load_tokenizer",
    "resolve_backends",
    "resolve_model_dir",
]
