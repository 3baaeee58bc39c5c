"""Tests for the SQLAlchemy result store."""

from __future__ import annotations

import uuid
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
from sqlalchemy.dialects.postgresql import Insert as PgInsert
from sqlalchemy.dialects.sqlite import Insert as SqliteInsert

from photo_sorter.categories import CategoryKey, Scores
from photo_sorter.db import (
    DistributionMode,
    ExportStatus,
    PhotoDetail,
    PhotoNotFoundError,
    PhotoRecord,
    PhotoStore,
    dialect_insert,
    open_session,
)


def _detail(
    category: CategoryKey,
    scores: Scores,
    *,
    is_valuable: bool | None = None,
    status: ExportStatus = ExportStatus.SUCCESS,
) -> PhotoDetail:
    return PhotoDetail(
        id=str(uuid.uuid4()),
        file_name=f"{category.value}.jpg",
        path=f"/photos/{category.value}.jpg",
        category=category,
        scores=scores,
        tags=[category.label, "태그"],
        export_status=status,
        model="clip-vit-b32-onnx",
        is_valuable=is_valuable,
        valuable_score=0.7 if is_valuable is not None else None,
        caption="설명",
        analysis_log="engine: clip\n",
        analysis_duration_ms=12,
    )


def test_insert_and_fetch_detail(tmp_path: Path) -> None:
    store = PhotoStore(tmp_path / "photos.db")
    detail = _detail(CategoryKey.PEOPLE, Scores({"people": 0.9, "other": 0.1}), is_valuable=True)

    store.insert_photo(detail)
    fetched = store.get_photo_detail(detail.id)

    assert fetched.category is CategoryKey.PEOPLE
    assert fetched.scores[CategoryKey.PEOPLE] == pytest.approx(0.9)
    assert fetched.tags == ["사람", "태그"]
    assert fetched.export_status is ExportStatus.SUCCESS
    assert fetched.is_valuable is True
    assert fetched.caption == "설명"
    assert fetched.top_score == pytest.approx(0.9)


def test_insert_replaces_row_with_same_id(tmp_path: Path) -> None:
    store = PhotoStore(tmp_path / "photos.db")
    detail = _detail(CategoryKey.PEOPLE, Scores.one_hot(CategoryKey.PEOPLE))
    store.insert_photo(detail)

    detail.category = CategoryKey.OTHER
    detail.export_status = ExportStatus.ERROR
    detail.error_message = "boom"
    store.insert_photo(detail)

    rows = store.list_photos()
    assert len(rows) == 1
    assert rows[0].category is CategoryKey.OTHER
    assert rows[0].error_message == "boom"


def test_missing_detail_raises(tmp_path: Path) -> None:
    store = PhotoStore(tmp_path / "photos.db")

    with pytest.raises(PhotoNotFoundError):
        store.get_photo_detail("nope")


def test_value_stats_and_clear(tmp_path: Path) -> None:
    store = PhotoStore(tmp_path / "photos.db")
    store.insert_photo(_detail(CategoryKey.PEOPLE, Scores.one_hot(CategoryKey.PEOPLE), is_valuable=True))
    store.insert_photo(_detail(CategoryKey.PEOPLE, Scores.one_hot(CategoryKey.PEOPLE), is_valuable=True))
    store.insert_photo(_detail(CategoryKey.OTHER, Scores.one_hot(CategoryKey.OTHER), is_valuable=False))
    store.insert_photo(_detail(CategoryKey.OTHER, Scores.one_hot(CategoryKey.OTHER)))

    stats = store.value_stats()
    assert (stats.valuable, stats.not_valuable, stats.unknown) == (2, 1, 1)

    assert store.clear_photos() == 4
    assert store.list_photos() == []


def test_distribution_modes(tmp_path: Path) -> None:
    store = PhotoStore(tmp_path / "photos.db")
    store.insert_photo(_detail(CategoryKey.PEOPLE, Scores({"people": 0.6, "other": 0.4})))
    store.insert_photo(_detail(CategoryKey.FOOD_CAFE, Scores({"food_cafe": 1.0})))

    averaged = store.distribution(DistributionMode.AVG_SCORE)
    assert averaged["people"] == pytest.approx(0.3)
    assert averaged["other"] == pytest.approx(0.2)
    assert averaged["food_cafe"] == pytest.approx(0.5)
    assert len(averaged) == 8

    ratios = store.distribution(DistributionMode.COUNT_RATIO)
    assert ratios["people"] == pytest.approx(0.5)
    assert ratios["food_cafe"] == pytest.approx(0.5)
    assert ratios["other"] == 0.0


def test_distribution_of_empty_store(tmp_path: Path) -> None:
    store = PhotoStore(tmp_path / "photos.db")

    assert set(store.distribution(DistributionMode.COUNT_RATIO).values()) == {0.0}


def test_database_url_target(tmp_path: Path) -> None:
    store = PhotoStore(f"sqlite:///{tmp_path / 'url.db'}")
    store.insert_photo(_detail(CategoryKey.PEOPLE, Scores.one_hot(CategoryKey.PEOPLE)))

    assert len(store.list_photos()) == 1
    assert (tmp_path / "url.db").exists()


class _FakeBindSession:
    def __init__(self, dialect_name: str) -> None:
        self._bind = SimpleNamespace(dialect=SimpleNamespace(name=dialect_name))

    def get_bind(self) -> Any:
        return self._bind


def test_dialect_insert_follows_bound_engine(tmp_path: Path) -> None:
    PhotoStore(tmp_path / "photos.db")
    with open_session(tmp_path / "photos.db") as session:
        assert isinstance(dialect_insert(session, PhotoRecord), SqliteInsert)

    assert isinstance(dialect_insert(_FakeBindSession("postgresql"), PhotoRecord), PgInsert)
    with pytest.raises(NotImplementedError, match="mysql"):
        dialect_insert(_FakeBindSession("mysql"), PhotoRecord)
