"""Collision-safe export of classified photos into category folders."""

from __future__ import annotations

import os
import shutil
import uuid
from collections.abc import Sequence
from pathlib import Path

from photo_sorter.categories import CATEGORY_KEYS, CategoryKey
from utils.logging import get_logger

LOGGER = get_logger(__name__)

VALUABLE_DIR = "가치있음"
NOT_VALUABLE_DIR = "가치없음"
VALUE_UNKNOWN_DIR = "가치미정"
MAX_DUPLICATE_SUFFIX = 9999
PARTIAL_SUFFIX = ".part"


class ExportError(RuntimeError):
    """Raised when a photo cannot be placed in the export tree."""


def value_dir_name(is_valuable: bool | None) -> str:
    if is_valuable is None:
        return VALUE_UNKNOWN_DIR
    return VALUABLE_DIR if is_valuable else NOT_VALUABLE_DIR


def export_dirs(category: CategoryKey, value_enabled: bool, is_valuable: bool | None) -> list[str]:
    """Folder chain below the export root for one photo."""

    if value_enabled:
        return [value_dir_name(is_valuable), category.label]
    return [category.label]


def _claim(candidate: Path) -> bool:
    """Atomically create an empty ``candidate``; False when the name is taken."""

    try:
        with open(candidate, "xb"):
            return True
    except FileExistsError:
        return False


def _claim_target(target_dir: Path, file_name: str) -> Path:
    target = target_dir / file_name
    if _claim(target):
        return target

    stem = target.stem or "image"
    suffix = target.suffix or ".jpg"
    for counter in range(1, MAX_DUPLICATE_SUFFIX + 1):
        candidate = target_dir / f"{stem}_{counter}{suffix}"
        if _claim(candidate):
            return candidate
    raise ExportError(f"too many duplicates for {file_name}")


def copy_to_dirs(export_root: Path, dirs: Sequence[str], file_name: str, source: Path) -> Path:
    """Copy ``source`` to ``export_root/<dirs...>/file_name`` without overwriting.

    An existing file with the same name gets a ``_<n>`` suffix before the
    extension; more than :data:`MAX_DUPLICATE_SUFFIX` collisions raise
    :class:`ExportError`. The name is reserved before copying, so concurrent
    exports never share a target. Data goes to a temporary file in the same
    folder and is moved into place, so a failed copy leaves nothing behind.
    """

    target_dir = export_root.joinpath(*[name for name in dirs if name.strip()])
    target_dir.mkdir(parents=True, exist_ok=True)
    target = _claim_target(target_dir, file_name)
    partial = target_dir / f".{target.name}.{uuid.uuid4().hex}{PARTIAL_SUFFIX}"
    try:
        shutil.copyfile(source, partial)
        shutil.copystat(source, partial)
        os.replace(partial, target)
    except BaseException:
        partial.unlink(missing_ok=True)
        target.unlink(missing_ok=True)
        raise
    LOGGER.debug("export_copy_done", extra={"source": str(source), "target": str(target)})
    return target


def export_photo(
    export_root: Path,
    source: Path,
    category: CategoryKey,
    *,
    value_enabled: bool = False,
    is_valuable: bool | None = None,
) -> Path:
    """Export ``source`` into its category (and optional value) folder."""

    return copy_to_dirs(export_root, export_dirs(category, value_enabled, is_valuable), source.name, source)


def _count_files(directory: Path) -> int:
    if not directory.is_dir():
        return 0
    return sum(1 for entry in directory.iterdir() if entry.is_file() and entry.suffix != PARTIAL_SUFFIX)


def folder_distribution(export_root: Path) -> dict[str, float]:
    """Share of exported files per category, read from the folder tree.

    Both the flat ``<label>/`` layout and the value layout
    ``<value dir>/<label>/`` are counted. Ratios are rounded to 4 decimals and
    every category is present.
    """

    counts: dict[str, float] = {}
    for category in CATEGORY_KEYS:
        counts[category.value] = float(
            _count_files(export_root / category.label)
            + sum(
                _count_files(export_root / value_dir / category.label)
                for value_dir in (VALUABLE_DIR, NOT_VALUABLE_DIR, VALUE_UNKNOWN_DIR)
            )
        )

    total = sum(counts.values())
    if total <= 0:
        return counts
    return {key: round(count / total, 4) for key, count in counts.items()}


__all__ = [
    "ExportError",
    "MAX_DUPLICATE_SUFFIX",
    "NOT_VALUABLE_DIR",
    "VALUABLE_DIR",
    "VALUE_UNKNOWN_DIR",
    "copy_to_dirs",
    "export_dirs",
    "export_photo",
    "folder_distribution",
    "value_dir_name",
]
