"""SQLAlchemy storage for classification results."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any

from sqlalchemy import Boolean, Float, Index, Integer, String, Text, create_engine, delete, event, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from photo_sorter.categories import CATEGORY_KEYS, CategoryKey, Scores
from utils.logging import get_logger

LOGGER = get_logger(__name__)


class ExportStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"

    @classmethod
    def parse(cls, raw: str | None) -> "ExportStatus":
        try:
            return cls(raw or "")
        except ValueError:
            return cls.ERROR


class DistributionMode(str, Enum):
    AVG_SCORE = "avg_score"
    COUNT_RATIO = "count_ratio"


class PhotoNotFoundError(LookupError):
    """Raised when a result id does not exist."""


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class PhotoRecord(Base):
    """One classification outcome, successful or failed."""

    __tablename__ = "photos"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    path: Mapped[str] = mapped_column(String, nullable=False)
    file_name: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    scores: Mapped[str] = mapped_column(Text, nullable=False)
    tags: Mapped[str | None] = mapped_column(Text, nullable=True)
    caption: Mapped[str | None] = mapped_column(Text, nullable=True)
    text_in_image: Mapped[str | None] = mapped_column(Text, nullable=True)
    model: Mapped[str | None] = mapped_column(String, nullable=True)
    is_valuable: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    valuable_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    export_status: Mapped[str] = mapped_column(String, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    analysis_log: Mapped[str | None] = mapped_column(Text, nullable=True)
    analysis_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        Index("idx_photos_category", "category"),
        Index("idx_photos_created_at", "created_at"),
    )


@dataclass
class PhotoRow:
    """Summary view of a stored result."""

    id: str
    file_name: str
    path: str
    category: CategoryKey
    scores: Scores
    tags: list[str] = field(default_factory=list)
    export_status: ExportStatus = ExportStatus.PENDING
    error_message: str | None = None
    analysis_duration_ms: int | None = None
    model: str | None = None
    is_valuable: bool | None = None
    valuable_score: float | None = None

    @property
    def top_score(self) -> float:
        return self.scores.top()[1]


@dataclass
class PhotoDetail(PhotoRow):
    """Full stored result including free-form text fields."""

    caption: str | None = None
    text_in_image: str | None = None
    analysis_log: str | None = None


@dataclass(frozen=True)
class ValueStats:
    valuable: int
    not_valuable: int
    unknown: int


def encode_scores(scores: Scores) -> str:
    return json.dumps(scores.to_map(), sort_keys=True)


def decode_scores(raw: str | None) -> Scores:
    try:
        payload = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return Scores()
    return Scores(payload if isinstance(payload, dict) else {})


def _decode_tags(raw: str | None) -> list[str]:
    try:
        payload = json.loads(raw or "[]")
    except json.JSONDecodeError:
        return []
    return [str(tag) for tag in payload] if isinstance(payload, list) else []


_ENGINE_CACHE: dict[str, Engine] = {}
_ENGINE_LOCK = Lock()


def _normalize_target(target: str | Path) -> str:
    if isinstance(target, Path):
        return f"sqlite:///{target.resolve()}"

    raw = str(target).strip()
    if not raw:
        raise ValueError("database target cannot be empty")
    if "://" not in raw:
        return f"sqlite:///{Path(raw).resolve()}"
    return raw


def _get_engine(target: str | Path) -> Engine:
    """Return a cached engine for ``target``, creating the schema on first use."""

    normalized = _normalize_target(target)
    engine = _ENGINE_CACHE.get(normalized)
    if engine is not None:
        return engine

    with _ENGINE_LOCK:
        engine = _ENGINE_CACHE.get(normalized)
        if engine is not None:
            return engine

        url = make_url(normalized)
        is_sqlite = url.drivername.startswith("sqlite")
        engine_kwargs: dict[str, Any] = {"future": True}
        if is_sqlite:
            if url.database:
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
            engine_kwargs["connect_args"] = {"timeout": 30.0, "check_same_thread": False}
        else:
            engine_kwargs["pool_pre_ping"] = True

        engine = create_engine(normalized, **engine_kwargs)

        if is_sqlite:

            @event.listens_for(engine, "connect")
            def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:  # type: ignore[override]
                cursor = dbapi_connection.cursor()
                try:
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA busy_timeout = 30000")
                finally:
                    cursor.close()

        Base.metadata.create_all(engine)
        _ENGINE_CACHE[normalized] = engine
        LOGGER.info("db_engine_created", extra={"target": normalized})
        return engine


def open_session(target: str | Path) -> Session:
    """Open an ORM session for ``target`` (path or SQLAlchemy URL)."""

    return Session(_get_engine(target), future=True)


def _row_values(detail: PhotoDetail) -> dict[str, Any]:
    return {
        "id": detail.id,
        "path": detail.path,
        "file_name": detail.file_name,
        "category": detail.category.value,
        "scores": encode_scores(detail.scores),
        "tags": json.dumps(detail.tags, ensure_ascii=False),
        "caption": detail.caption,
        "text_in_image": detail.text_in_image,
        "model": detail.model,
        "is_valuable": detail.is_valuable,
        "valuable_score": detail.valuable_score,
        "export_status": detail.export_status.value,
        "error_message": detail.error_message,
        "analysis_log": detail.analysis_log,
        "analysis_duration_ms": detail.analysis_duration_ms,
        "created_at": time.time(),
    }


def _to_detail(record: PhotoRecord) -> PhotoDetail:
    return PhotoDetail(
        id=record.id,
        file_name=record.file_name,
        path=record.path,
        category=CategoryKey.parse(record.category),
        scores=decode_scores(record.scores),
        tags=_decode_tags(record.tags),
        export_status=ExportStatus.parse(record.export_status),
        error_message=record.error_message,
        analysis_duration_ms=record.analysis_duration_ms,
        model=record.model,
        is_valuable=record.is_valuable,
        valuable_score=record.valuable_score,
        caption=record.caption,
        text_in_image=record.text_in_image,
        analysis_log=record.analysis_log,
    )


def _to_row(record: PhotoRecord) -> PhotoRow:
    return PhotoRow(
        id=record.id,
        file_name=record.file_name,
        path=record.path,
        category=CategoryKey.parse(record.category),
        scores=decode_scores(record.scores),
        tags=_decode_tags(record.tags),
        export_status=ExportStatus.parse(record.export_status),
        error_message=record.error_message,
        analysis_duration_ms=record.analysis_duration_ms,
        model=record.model,
        is_valuable=record.is_valuable,
        valuable_score=record.valuable_score,
    )


def dialect_insert(session: Session, table: Any) -> Any:
    """Return a dialect-aware INSERT statement supporting ON CONFLICT."""

    bind = session.get_bind()
    if bind is None:
        raise RuntimeError("Session is not bound to an engine.")

    name = bind.dialect.name
    if name == "sqlite":
        return sqlite_insert(table)
    if name.startswith("postgresql"):
        return pg_insert(table)
    raise NotImplementedError(f"Unsupported dialect for upsert: {name}")


class PhotoStore:
    """Result persistence backed by the ``photos`` table."""

    def __init__(self, target: str | Path) -> None:
        self._target = target
        _get_engine(target)

    def insert_photo(self, detail: PhotoDetail) -> None:
        """Insert ``detail`` or replace the row with the same id."""

        values = _row_values(detail)
        with open_session(self._target) as session, session.begin():
            stmt = dialect_insert(session, PhotoRecord).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[PhotoRecord.id],
                set_={key: stmt.excluded[key] for key in values if key != "id"},
            )
            session.execute(stmt)

    def list_photos(self) -> list[PhotoRow]:
        """Return all rows, newest first."""

        with open_session(self._target) as session:
            records = session.scalars(
                select(PhotoRecord).order_by(PhotoRecord.created_at.desc(), PhotoRecord.id)
            ).all()
            return [_to_row(record) for record in records]

    def get_photo_detail(self, photo_id: str) -> PhotoDetail:
        with open_session(self._target) as session:
            record = session.get(PhotoRecord, photo_id)
            if record is None:
                raise PhotoNotFoundError(f"photo not found: {photo_id}")
            return _to_detail(record)

    def clear_photos(self) -> int:
        with open_session(self._target) as session, session.begin():
            result = session.execute(delete(PhotoRecord))
        LOGGER.info("db_photos_cleared", extra={"rows": result.rowcount})
        return int(result.rowcount or 0)

    def value_stats(self) -> ValueStats:
        """Count rows judged valuable, not valuable, and without a judgment."""

        with open_session(self._target) as session:
            rows = session.execute(
                select(PhotoRecord.is_valuable, func.count()).group_by(PhotoRecord.is_valuable)
            ).all()

        counts = {value: int(count) for value, count in rows}
        return ValueStats(
            valuable=counts.get(True, 0),
            not_valuable=counts.get(False, 0),
            unknown=counts.get(None, 0),
        )

    def distribution(self, mode: DistributionMode) -> dict[str, float]:
        """Aggregate per-category shares over all rows.

        ``avg_score`` averages each category's score; ``count_ratio`` is the
        share of rows whose stored category is that category. Every category
        is present and values are rounded to 4 decimals.
        """

        rows = self.list_photos()
        totals = {key.value: 0.0 for key in CATEGORY_KEYS}
        if not rows:
            return totals

        for row in rows:
            if mode is DistributionMode.COUNT_RATIO:
                totals[row.category.value] += 1.0
            else:
                for key, value in row.scores.to_map().items():
                    totals[key] += value

        return {key: round(total / len(rows), 4) for key, total in totals.items()}


__all__ = [
    "Base",
    "DistributionMode",
    "ExportStatus",
    "PhotoDetail",
    "PhotoNotFoundError",
    "PhotoRecord",
    "PhotoRow",
    "PhotoStore",
    "ValueStats",
    "decode_scores",
    "dialect_insert",
    "encode_scores",
    "open_session",
]
