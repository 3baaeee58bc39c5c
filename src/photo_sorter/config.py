"""Configuration loader and typed settings for the photo sorter."""

from __future__ import annotations

import os
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from utils.logging import get_logger

LOGGER = get_logger(__name__)

ENGINE_CLIP = "clip"
ENGINE_OLLAMA = "ollama"
SUPPORTED_ENGINES: frozenset[str] = frozenset({ENGINE_CLIP, ENGINE_OLLAMA})


def available_cores() -> int:
    """Return the usable hardware parallelism, at least 1."""

    return max(os.cpu_count() or 4, 1)


def _default_concurrency() -> int:
    return min(available_cores(), 4)


@dataclass
class OllamaConfig:
    """Remote multimodal model reached through the Ollama HTTP API."""

    base_url: str = "http://127.0.0.1:11434"
    model: str = "qwen2.5vl:7b"
    think: bool = False
    stream: bool = False


@dataclass
class AnalysisConfig:
    """Options shared by every classification strategy."""

    engine: str = ENGINE_CLIP
    resize_enabled: bool = True
    max_edge: int = 768
    jpeg_quality: int = 60
    value_enabled: bool = False
    concurrency: int = field(default_factory=_default_concurrency)


@dataclass
class ClipConfig:
    """Local CLIP ONNX engine options and execution backend toggles."""

    model_dir: str | None = None
    model_file: str = "onnx/model_q4f16.onnx"
    fallback_to_ollama: bool = False
    ep_auto: bool = True
    ep_coreml: bool = sys.platform == "darwin"
    ep_cuda: bool = False
    ep_rocm: bool = False
    ep_directml: bool = False
    ep_openvino: bool = False


@dataclass
class DatabaseConfig:
    """Location of the results database."""

    url: str = "data/photos.db"


@dataclass
class Settings:
    """Top-level settings object."""

    ollama: OllamaConfig = field(default_factory=OllamaConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    clip: ClipConfig = field(default_factory=ClipConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)


def _project_root() -> Path:
    """Best-effort detection of the repository root for config discovery."""

    module_path = Path(__file__).resolve()
    try:
        return module_path.parents[2]
    except IndexError:  # pragma: no cover - installed without a repo checkout
        return module_path.parent


def _build_default_settings_paths() -> list[Path]:
    """Return candidate settings paths ordered by preference."""

    candidates: list[Path] = []
    for candidate in (
        (Path.cwd() / "config" / "settings.yaml").resolve(),
        (_project_root() / "config" / "settings.yaml").resolve(),
    ):
        if candidate not in candidates:
            candidates.append(candidate)
    return candidates


def resolve_settings_path(settings_path: Path | str | None = None) -> Path:
    """Determine which settings file to use, honoring overrides."""

    if settings_path:
        return Path(settings_path).expanduser().resolve()

    env_override = os.getenv("PHOTO_SORTER_SETTINGS")
    if env_override:
        return Path(env_override).expanduser().resolve()

    candidates = _build_default_settings_paths()
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return candidates[0]


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def load_settings(settings_path: Path | str | None = None) -> Settings:
    """Load settings from YAML, falling back to defaults.

    Missing or malformed files produce a default :class:`Settings`. Each field
    is type-checked on its own so one bad value does not discard the rest.
    """

    path = resolve_settings_path(settings_path)
    settings = Settings()

    if not path.exists() or not path.is_file():
        return settings

    try:
        with path.open("r", encoding="utf-8") as fp:
            raw: Any = yaml.safe_load(fp) or {}
    except yaml.YAMLError as exc:
        LOGGER.warning("settings_parse_failed", extra={"path": str(path), "error": str(exc)})
        return settings

    if not isinstance(raw, dict):
        return settings

    ollama_raw = _as_dict(raw.get("ollama"))
    ollama_cfg = settings.ollama
    if isinstance(ollama_raw.get("base_url"), str):
        ollama_cfg.base_url = ollama_raw["base_url"]
    if isinstance(ollama_raw.get("model"), str):
        ollama_cfg.model = ollama_raw["model"]
    if isinstance(ollama_raw.get("think"), bool):
        ollama_cfg.think = ollama_raw["think"]
    if isinstance(ollama_raw.get("stream"), bool):
        ollama_cfg.stream = ollama_raw["stream"]

    analysis_raw = _as_dict(raw.get("analysis"))
    analysis_cfg = settings.analysis
    if isinstance(analysis_raw.get("engine"), str):
        analysis_cfg.engine = analysis_raw["engine"]
    if isinstance(analysis_raw.get("resize_enabled"), bool):
        analysis_cfg.resize_enabled = analysis_raw["resize_enabled"]
    if _is_int(analysis_raw.get("max_edge")):
        analysis_cfg.max_edge = analysis_raw["max_edge"]
    if _is_int(analysis_raw.get("jpeg_quality")):
        analysis_cfg.jpeg_quality = analysis_raw["jpeg_quality"]
    if isinstance(analysis_raw.get("value_enabled"), bool):
        analysis_cfg.value_enabled = analysis_raw["value_enabled"]
    if _is_int(analysis_raw.get("concurrency")):
        analysis_cfg.concurrency = analysis_raw["concurrency"]

    clip_raw = _as_dict(raw.get("clip"))
    clip_cfg = settings.clip
    if isinstance(clip_raw.get("model_dir"), str) and clip_raw["model_dir"].strip():
        clip_cfg.model_dir = clip_raw["model_dir"]
    if isinstance(clip_raw.get("model_file"), str):
        clip_cfg.model_file = clip_raw["model_file"]
    for flag in (
        "fallback_to_ollama",
        "ep_auto",
        "ep_coreml",
        "ep_cuda",
        "ep_rocm",
        "ep_directml",
        "ep_openvino",
    ):
        if isinstance(clip_raw.get(flag), bool):
            setattr(clip_cfg, flag, clip_raw[flag])

    database_raw = _as_dict(raw.get("database"))
    if isinstance(database_raw.get("url"), str):
        settings.database.url = database_raw["url"]

    return normalize_settings(settings)


def normalize_settings(settings: Settings, cores: int | None = None) -> Settings:
    """Clamp settings into their valid ranges in place and return them.

    Concurrency is limited to ``1..cores``; token streaming is only allowed for
    a single worker because the stream sink is not shared between producers.
    """

    max_workers = cores if cores is not None else available_cores()
    analysis = settings.analysis
    analysis.concurrency = min(max(analysis.concurrency, 1), max(max_workers, 1))
    if analysis.concurrency > 1:
        settings.ollama.stream = False
    analysis.jpeg_quality = min(max(analysis.jpeg_quality, 1), 100)
    analysis.max_edge = max(analysis.max_edge, 0)
    if analysis.engine not in SUPPORTED_ENGINES:
        LOGGER.warning("settings_unknown_engine", extra={"engine": analysis.engine, "fallback": ENGINE_CLIP})
        analysis.engine = ENGINE_CLIP
    return settings


def save_settings(settings: Settings, settings_path: Path | str | None = None) -> Path:
    """Persist ``settings`` as YAML and return the written path."""

    path = resolve_settings_path(settings_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fp:
        yaml.safe_dump(asdict(settings), fp, allow_unicode=True, sort_keys=False)
    LOGGER.info("settings_saved", extra={"path": str(path)})
    return path


__all__ = [
    "AnalysisConfig",
    "ClipConfig",
    "DatabaseConfig",
    "ENGINE_CLIP",
    "ENGINE_OLLAMA",
    "OllamaConfig",
    "SUPPORTED_ENGINES",
    "Settings",
    "available_cores",
    "load_settings",
    "normalize_settings",
    "resolve_settings_path",
    "save_settings",
]
