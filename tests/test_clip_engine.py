"""Tests for the CLIP engine using a fake onnxruntime session and tokenizer.

The fake model embeds each category prompt as a one-hot vector on the
category's axis and the keep/drop prompts on two extra axes. An image tensor
picks its axis from the first pixel value, so tests control the outcome
without real weights.
"""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from typing import Any

import numpy as np
import pytest

from photo_sorter.categories import CATEGORY_KEYS, CategoryKey
from photo_sorter.clip import engine as engine_module
from photo_sorter.clip.engine import (
    CPU_PROVIDER,
    ClipEngine,
    ClipEngineOptions,
    EngineRegistry,
    ExecutionBackend,
    derive_clip_threads,
    encode_fixed_length,
    list_clip_model_files,
    resolve_backends,
)
from photo_sorter.clip.prompts import CATEGORY_PROMPTS, VALUE_DROP_PROMPTS, VALUE_KEEP_PROMPTS

DIM = 10
KEEP_AXIS = 8
DROP_AXIS = 9
CUDA = "CUDAExecutionProvider"
OPENVINO = "OpenVINOExecutionProvider"

_TOKEN_IDS: dict[str, int] = {}
for _entry in CATEGORY_PROMPTS:
    for _prompt in _entry.prompts:
        _TOKEN_IDS[_prompt] = 10 + CATEGORY_KEYS.index(_entry.category)
for _prompt in VALUE_KEEP_PROMPTS:
    _TOKEN_IDS[_prompt] = 30
for _prompt in VALUE_DROP_PROMPTS:
    _TOKEN_IDS[_prompt] = 31


def _text_vector(token: int) -> np.ndarray:
    vector = np.zeros(DIM, dtype=np.float32)
    if 10 <= token < 10 + len(CATEGORY_KEYS):
        vector[token - 10] = 1.0
    elif token == 30:
        vector[KEEP_AXIS] = 1.0
    elif token == 31:
        vector[DROP_AXIS] = 1.0
    return vector


class FakeTokenizer:
    def __init__(self, tokenizer_file: str) -> None:
        self.tokenizer_file = tokenizer_file

    def get_vocab(self) -> dict[str, int]:
        return {"<|endoftext|>": 0, "<|startoftext|>": 1}

    def __call__(self, text: str, add_special_tokens: bool = True) -> dict[str, list[int]]:
        return {"input_ids": [_TOKEN_IDS.get(text, 0)], "attention_mask": [1]}


class FakeRuntime:
    """Stands in for ``onnxruntime.InferenceSession`` and records every session."""

    def __init__(self, fail_create: set[str] | None = None, fail_run: set[str] | None = None) -> None:
        self.fail_create = fail_create or set()
        self.fail_run = fail_run or set()
        self.sessions: list[FakeSession] = []

    def __call__(self, path: str, sess_options: Any = None, providers: list[Any] | None = None) -> "FakeSession":
        names = [entry[0] if isinstance(entry, tuple) else entry for entry in providers or []]
        session = FakeSession(names, self.fail_run)
        self.sessions.append(session)
        if names[0] in self.fail_create:
            raise RuntimeError(f"{names[0]} failed to initialize")
        return session


class FakeSession:
    def __init__(self, providers: list[str], fail_run: set[str]) -> None:
        self.providers = providers
        self._fail_run = fail_run
        self.image_runs = 0

    def get_inputs(self) -> list[SimpleNamespace]:
        return [SimpleNamespace(name=name) for name in ("input_ids", "attention_mask", "pixel_values")]

    def get_outputs(self) -> list[SimpleNamespace]:
        return [SimpleNamespace(name=name) for name in ("logits_per_image", "text_embeds", "image_embeds")]

    def run(self, output_names: list[str], feeds: dict[str, np.ndarray]) -> list[np.ndarray]:
        if self.providers[0] in self._fail_run:
            raise RuntimeError("execution failed")
        if output_names == ["text_embeds"]:
            ids = np.asarray(feeds["input_ids"])
            assert ids.shape[1] == 77
            assert feeds["pixel_values"].shape[0] == ids.shape[0]
            return [np.stack([_text_vector(int(row[0])) for row in ids])]

        pixels = np.asarray(feeds["pixel_values"]).reshape(-1)
        self.image_runs += 1
        vector = np.zeros(DIM, dtype=np.float32)
        vector[int(pixels[0])] = 1.0
        vector[KEEP_AXIS] += pixels[1]
        vector[DROP_AXIS] += pixels[2]
        return [vector[np.newaxis, :]]


TEST_BACKENDS = (
    ExecutionBackend("cuda", CUDA, "CUDA (NVIDIA)"),
    ExecutionBackend("openvino", OPENVINO, "OpenVINO (Intel)"),
)


@pytest.fixture
def model_dir(tmp_path: Path) -> Path:
    (tmp_path / "onnx").mkdir()
    (tmp_path / "onnx" / "model.onnx").write_bytes(b"onnx")
    (tmp_path / "onnx" / "model_q4f16.onnx").write_bytes(b"onnx")
    (tmp_path / "onnx" / "readme.txt").write_text("skip")
    (tmp_path / "tokenizer.json").write_text("{}")
    return tmp_path


def _install(
    monkeypatch: pytest.MonkeyPatch,
    runtime: FakeRuntime,
    available: tuple[str, ...] = (CUDA, OPENVINO, CPU_PROVIDER),
) -> None:
    monkeypatch.setattr(engine_module, "EXECUTION_BACKENDS", TEST_BACKENDS)
    monkeypatch.setattr(engine_module, "PreTrainedTokenizerFast", FakeTokenizer)
    monkeypatch.setattr(engine_module.ort, "InferenceSession", runtime)
    monkeypatch.setattr(engine_module.ort, "get_available_providers", lambda: list(available))


def _options(model_dir: Path, **overrides: Any) -> ClipEngineOptions:
    values: dict[str, Any] = {
        "model_dir": str(model_dir),
        "model_file": "onnx/model.onnx",
        "intra_threads": 1,
        "ep_auto": True,
        "ep_coreml": False,
        "ep_cuda": True,
        "ep_openvino": True,
    }
    values.update(overrides)
    return ClipEngineOptions(**values)


def _pixels(axis: int, keep: float = 0.0, drop: float = 0.0) -> np.ndarray:
    pixels = np.zeros((1, 3, 224, 224), dtype=np.float32)
    flat = pixels.reshape(-1)
    flat[0] = axis
    flat[1] = keep
    flat[2] = drop
    return pixels


def test_cpu_only_failure_is_fatal_after_one_attempt(model_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runtime = FakeRuntime(fail_create={CPU_PROVIDER})
    _install(monkeypatch, runtime)

    with pytest.raises(RuntimeError, match="failed to initialize"):
        ClipEngine(_options(model_dir, ep_auto=False))

    assert len(runtime.sessions) == 1
    assert runtime.sessions[0].providers == [CPU_PROVIDER]


def test_failing_accelerator_is_dropped_at_session_stage(model_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runtime = FakeRuntime(fail_create={CUDA})
    _install(monkeypatch, runtime)

    engine = ClipEngine(_options(model_dir))

    assert [session.providers for session in runtime.sessions] == [
        [CUDA, OPENVINO, CPU_PROVIDER],
        [OPENVINO, CPU_PROVIDER],
    ]
    assert engine.backends_label == "openvino+cpu"


def test_failing_accelerator_is_dropped_at_warmup_stage(model_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runtime = FakeRuntime(fail_run={CUDA, OPENVINO})
    _install(monkeypatch, runtime)

    engine = ClipEngine(_options(model_dir))

    assert [session.providers[0] for session in runtime.sessions] == [CUDA, OPENVINO, CPU_PROVIDER]
    assert engine.backends_label == "cpu"


def test_backend_failure_without_fallback_propagates(model_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runtime = FakeRuntime(fail_create={CUDA})
    _install(monkeypatch, runtime)

    with pytest.raises(RuntimeError):
        ClipEngine(_options(model_dir, allow_backend_fallback=False))

    assert len(runtime.sessions) == 1


def test_unavailable_backends_are_skipped_without_retry(model_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runtime = FakeRuntime()
    _install(monkeypatch, runtime, available=(CPU_PROVIDER,))

    engine = ClipEngine(_options(model_dir))

    assert [session.providers for session in runtime.sessions] == [[CPU_PROVIDER]]
    assert engine.backends_label == "cpu"


def test_resolve_backends_keeps_priority_order(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(engine_module, "EXECUTION_BACKENDS", TEST_BACKENDS)

    backends = resolve_backends(ClipEngineOptions(ep_cuda=True, ep_openvino=True), available=[OPENVINO, CUDA])
    assert [backend.key for backend in backends] == ["cuda", "openvino"]

    assert resolve_backends(ClipEngineOptions(ep_auto=False, ep_cuda=True), available=[CUDA]) == []


def test_missing_model_file_is_reported(model_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, FakeRuntime())

    with pytest.raises(engine_module.ModelArtifactError, match="model file not found"):
        ClipEngine(_options(model_dir, model_file="onnx/missing.onnx"))


def test_classify_scores_against_category_prototypes(model_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, FakeRuntime())
    engine = ClipEngine(_options(model_dir))

    prediction = engine.classify(_pixels(CATEGORY_KEYS.index(CategoryKey.FOOD_CAFE)))

    assert prediction.category is CategoryKey.FOOD_CAFE
    assert sum(prediction.scores.values()) == pytest.approx(1.0)
    assert prediction.scores[CategoryKey.FOOD_CAFE] > prediction.scores[CategoryKey.PEOPLE]
    assert prediction.value is None
    assert "vision_infer_ms: " in prediction.log
    assert "value_keep_prob: n/a" in prediction.log
    assert "output_image_embeds: image_embeds" in prediction.log


def test_value_judgment_contrasts_keep_and_drop(model_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, FakeRuntime())
    engine = ClipEngine(_options(model_dir, enable_value=True))

    keep = engine.classify(_pixels(1, keep=1.0))
    drop = engine.classify(_pixels(1, drop=1.0))
    neutral = engine.classify(_pixels(1))

    assert keep.value is not None and keep.value[0] is True and keep.value[1] > 0.5
    assert drop.value is not None and drop.value[0] is False and drop.value[1] < 0.5
    assert neutral.value == (True, pytest.approx(0.5))
    assert keep.category is CategoryKey.PEOPLE


def test_session_pool_dispatches_round_robin(model_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runtime = FakeRuntime()
    _install(monkeypatch, runtime)
    engine = ClipEngine(_options(model_dir, session_pool_size=3))

    for _ in range(6):
        engine.classify(_pixels(0))

    assert engine.pool_size == 3
    # The first session also ran the smoke test.
    assert [session.image_runs for session in runtime.sessions] == [3, 2, 2]


def test_encode_fixed_length_pads_and_truncates() -> None:
    def encode(text: str, add_special_tokens: bool = True) -> dict[str, list[int]]:
        ids = list(range(1, len(text) + 1))
        return {"input_ids": ids, "attention_mask": [1] * len(ids)}

    ids, mask = encode_fixed_length(encode, "abc", pad_id=0)
    assert ids[:4] == [1, 2, 3, 0]
    assert len(ids) == len(mask) == 77
    assert sum(mask) == 3

    long_ids, long_mask = encode_fixed_length(encode, "x" * 100, pad_id=0)
    assert len(long_ids) == 77 and sum(long_mask) == 77


def test_derive_clip_threads() -> None:
    assert derive_clip_threads(3, cores=8) == (3, 3)
    assert derive_clip_threads(16, cores=4) == (4, 1)
    assert derive_clip_threads(0, cores=4) == (1, 4)


def test_list_clip_model_files(model_dir: Path) -> None:
    assert list_clip_model_files(str(model_dir)) == ["onnx/model.onnx", "onnx/model_q4f16.onnx"]


def test_registry_reuses_matching_key_and_replaces_on_change(tmp_path: Path) -> None:
    built: list[ClipEngineOptions] = []

    def factory(options: ClipEngineOptions) -> Any:
        built.append(options)
        return object()

    registry = EngineRegistry(factory=factory)
    first_options = ClipEngineOptions(model_dir=str(tmp_path), intra_threads=2)

    first = registry.get(first_options)
    again = registry.get(ClipEngineOptions(model_dir=str(tmp_path), intra_threads=2))
    other = registry.get(ClipEngineOptions(model_dir=str(tmp_path), intra_threads=2, enable_value=True))

    assert first is again
    assert other is not first
    assert len(built) == 2
    assert registry.get(first_options) is not first
    assert len(built) == 3
