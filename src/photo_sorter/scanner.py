"""Filesystem scanner for source photo trees."""

from __future__ import annotations

from pathlib import Path

from utils.logging import get_logger

LOGGER = get_logger(__name__)

DEFAULT_IMAGE_EXTENSIONS: frozenset[str] = frozenset(
    {
        ".png",
        ".jpg",
        ".jpeg",
        ".heic",
        ".dng",
    }
)


def scan_sources(root: Path, extensions: frozenset[str] | None = None) -> list[Path]:
    """Recursively collect image files under ``root``.

    Args:
        root: Source directory to scan.
        extensions: Allowed file extensions, lowercased with the leading dot.
            Defaults to :data:`DEFAULT_IMAGE_EXTENSIONS`.

    Returns:
        Matching file paths in a stable, sorted order. The list is built up
        front so a job's total does not change while it runs.

    Raises:
        FileNotFoundError: If ``root`` does not exist or is not a directory.
    """

    if not root.is_dir():
        LOGGER.warning("scan_root_missing", extra={"root": str(root)})
        raise FileNotFoundError(f"source path not found: {root}")

    allowed = extensions or DEFAULT_IMAGE_EXTENSIONS
    files = sorted(path for path in root.rglob("*") if path.is_file() and path.suffix.lower() in allowed)
    LOGGER.info("scan_done", extra={"root": str(root), "files": len(files)})
    return files


__all__ = ["DEFAULT_IMAGE_EXTENSIONS", "scan_sources"]
