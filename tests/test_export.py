"""Tests for the export writer and folder distribution."""

from __future__ import annotations

import shutil
import threading
import time
from pathlib import Path
from typing import Any

import pytest

from photo_sorter import export
from photo_sorter.categories import CategoryKey
from photo_sorter.export import (
    NOT_VALUABLE_DIR,
    VALUABLE_DIR,
    VALUE_UNKNOWN_DIR,
    ExportError,
    copy_to_dirs,
    export_dirs,
    export_photo,
    folder_distribution,
)


def _source(tmp_path: Path, name: str = "photo.jpg", payload: bytes = b"jpeg-bytes") -> Path:
    source_dir = tmp_path / "src"
    source_dir.mkdir(exist_ok=True)
    path = source_dir / name
    path.write_bytes(payload)
    return path


def test_export_dirs_follow_value_setting() -> None:
    assert export_dirs(CategoryKey.PEOPLE, False, True) == ["사람"]
    assert export_dirs(CategoryKey.PEOPLE, True, True) == [VALUABLE_DIR, "사람"]
    assert export_dirs(CategoryKey.PEOPLE, True, False) == [NOT_VALUABLE_DIR, "사람"]
    assert export_dirs(CategoryKey.PEOPLE, True, None) == [VALUE_UNKNOWN_DIR, "사람"]


def test_export_photo_copies_into_category_folder(tmp_path: Path) -> None:
    source = _source(tmp_path)
    export_root = tmp_path / "out"

    target = export_photo(export_root, source, CategoryKey.FOOD_CAFE)

    assert target == export_root / "음식_카페" / "photo.jpg"
    assert target.read_bytes() == b"jpeg-bytes"
    assert source.exists()


def test_export_photo_uses_value_parent_folder(tmp_path: Path) -> None:
    source = _source(tmp_path)

    target = export_photo(tmp_path / "out", source, CategoryKey.PEOPLE, value_enabled=True, is_valuable=False)

    assert target.relative_to(tmp_path / "out").parts == (NOT_VALUABLE_DIR, "사람", "photo.jpg")


def test_collisions_get_numeric_suffix(tmp_path: Path) -> None:
    """Existing names are never overwritten; suffixes count up from 1."""

    first = _source(tmp_path, payload=b"first")
    export_root = tmp_path / "out"

    targets = [copy_to_dirs(export_root, ["기타"], "photo.jpg", first) for _ in range(3)]

    assert [target.name for target in targets] == ["photo.jpg", "photo_1.jpg", "photo_2.jpg"]
    assert all(target.read_bytes() == b"first" for target in targets)


def test_collision_ceiling_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(export, "MAX_DUPLICATE_SUFFIX", 2)
    source = _source(tmp_path)
    export_root = tmp_path / "out"
    for _ in range(3):
        copy_to_dirs(export_root, ["기타"], "photo.jpg", source)

    with pytest.raises(ExportError, match="too many duplicates"):
        copy_to_dirs(export_root, ["기타"], "photo.jpg", source)


def test_folder_distribution_counts_flat_and_value_layouts(tmp_path: Path) -> None:
    export_root = tmp_path / "out"
    source = _source(tmp_path)
    export_photo(export_root, source, CategoryKey.PEOPLE)
    export_photo(export_root, source, CategoryKey.PEOPLE, value_enabled=True, is_valuable=True)
    export_photo(export_root, source, CategoryKey.PETS_ANIMALS, value_enabled=True, is_valuable=None)
    export_photo(export_root, source, CategoryKey.OTHER, value_enabled=True, is_valuable=False)

    distribution = folder_distribution(export_root)

    assert distribution["people"] == pytest.approx(0.5)
    assert distribution["pets_animals"] == pytest.approx(0.25)
    assert distribution["other"] == pytest.approx(0.25)
    assert distribution["food_cafe"] == 0.0
    assert len(distribution) == 8


def test_folder_distribution_of_missing_root_is_all_zero(tmp_path: Path) -> None:
    distribution = folder_distribution(tmp_path / "missing")

    assert set(distribution.values()) == {0.0}


def test_concurrent_exports_of_same_name_keep_both_files(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Two photos named alike from different folders both survive a simultaneous export."""

    first_dir = tmp_path / "100APPLE"
    second_dir = tmp_path / "101APPLE"
    first_dir.mkdir()
    second_dir.mkdir()
    (first_dir / "IMG.jpg").write_bytes(b"first")
    (second_dir / "IMG.jpg").write_bytes(b"second")
    export_root = tmp_path / "out"

    real_copyfile = shutil.copyfile
    barrier = threading.Barrier(2)

    def slow_copyfile(src: Any, dst: Any, *args: Any, **kwargs: Any) -> Any:
        barrier.wait(timeout=5)
        time.sleep(0.05)
        return real_copyfile(src, dst, *args, **kwargs)

    monkeypatch.setattr(export.shutil, "copyfile", slow_copyfile)

    targets: list[Path] = []
    errors: list[Exception] = []

    def worker(source: Path) -> None:
        try:
            targets.append(export_photo(export_root, source, CategoryKey.PEOPLE))
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(path / "IMG.jpg",)) for path in (first_dir, second_dir)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    folder = export_root / "사람"
    assert sorted(path.name for path in folder.iterdir()) == ["IMG.jpg", "IMG_1.jpg"]
    assert sorted(path.read_bytes() for path in folder.iterdir()) == [b"first", b"second"]
    assert len(set(targets)) == 2


def test_failed_copy_leaves_no_partial_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    source = _source(tmp_path)
    export_root = tmp_path / "out"

    def broken_copyfile(src: Any, dst: Any, *args: Any, **kwargs: Any) -> Any:
        Path(dst).write_bytes(b"half")
        raise OSError("disk full")

    monkeypatch.setattr(export.shutil, "copyfile", broken_copyfile)

    with pytest.raises(OSError, match="disk full"):
        export_photo(export_root, source, CategoryKey.OTHER)

    assert list((export_root / "기타").iterdir()) == []


def test_folder_distribution_ignores_partial_files(tmp_path: Path) -> None:
    export_root = tmp_path / "out"
    export_photo(export_root, _source(tmp_path), CategoryKey.PEOPLE)
    (export_root / "동물").mkdir()
    (export_root / "동물" / ".IMG.jpg.abc.part").write_bytes(b"in progress")

    distribution = folder_distribution(export_root)

    assert distribution["people"] == pytest.approx(1.0)
    assert distribution["pets_animals"] == 0.0
