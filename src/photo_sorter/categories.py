"""Fixed photo category taxonomy and normalized per-category scores."""

from __future__ import annotations

import math
from collections.abc import Iterator, Mapping, Sequence
from enum import Enum
from typing import Any


class CategoryKey(str, Enum):
    """Closed set of categories; declaration order is the canonical order."""

    SCREENSHOT_DOCUMENT = "screenshot_document"
    PEOPLE = "people"
    FOOD_CAFE = "food_cafe"
    NATURE_LANDSCAPE = "nature_landscape"
    CITY_STREET_TRAVEL = "city_street_travel"
    PETS_ANIMALS = "pets_animals"
    PRODUCTS_OBJECTS = "products_objects"
    OTHER = "other"

    @property
    def label(self) -> str:
        """Localized label used as the export folder name."""

        return _CATEGORY_LABELS[self]

    @classmethod
    def parse(cls, raw: Any) -> "CategoryKey":
        """Map a machine key to a category; anything unknown becomes ``OTHER``."""

        if isinstance(raw, CategoryKey):
            return raw
        try:
            return cls(str(raw).strip())
        except ValueError:
            return cls.OTHER


_CATEGORY_LABELS: dict[CategoryKey, str] = {
    CategoryKey.SCREENSHOT_DOCUMENT: "스크린샷_문서",
    CategoryKey.PEOPLE: "사람",
    CategoryKey.FOOD_CAFE: "음식_카페",
    CategoryKey.NATURE_LANDSCAPE: "자연_풍경",
    CategoryKey.CITY_STREET_TRAVEL: "도시_여행",
    CategoryKey.PETS_ANIMALS: "동물",
    CategoryKey.PRODUCTS_OBJECTS: "사물",
    CategoryKey.OTHER: "기타",
}

CATEGORY_KEYS: tuple[CategoryKey, ...] = tuple(CategoryKey)


class Scores(Mapping[CategoryKey, float]):
    """Immutable mapping from every category to a non-negative share.

    Values always sum to 1.0 after construction. Inputs with unknown keys are
    ignored, missing keys count as zero, and a non-positive total leaves every
    value at zero instead of dividing by it.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[Any, float] | None = None) -> None:
        raw: dict[CategoryKey, float] = {key: 0.0 for key in CATEGORY_KEYS}
        for key, value in (values or {}).items():
            try:
                category = key if isinstance(key, CategoryKey) else CategoryKey(str(key))
                number = float(value)
            except (TypeError, ValueError):
                continue
            if math.isfinite(number):
                raw[category] = max(number, 0.0)

        total = sum(raw.values())
        denominator = total if total > 0.0 else 1.0
        self._values: dict[CategoryKey, float] = {key: raw[key] / denominator for key in CATEGORY_KEYS}

    @classmethod
    def from_probabilities(cls, probabilities: Sequence[float]) -> "Scores":
        """Build scores from values aligned with :data:`CATEGORY_KEYS`."""

        if len(probabilities) != len(CATEGORY_KEYS):
            raise ValueError(f"expected {len(CATEGORY_KEYS)} probabilities, got {len(probabilities)}")
        return cls(dict(zip(CATEGORY_KEYS, probabilities)))

    @classmethod
    def one_hot(cls, category: CategoryKey) -> "Scores":
        return cls({category: 1.0})

    def __getitem__(self, key: CategoryKey) -> float:
        return self._values[CategoryKey(key)]

    def __iter__(self) -> Iterator[CategoryKey]:
        return iter(CATEGORY_KEYS)

    def __len__(self) -> int:
        return len(CATEGORY_KEYS)

    def __repr__(self) -> str:
        inner = ", ".join(f"{key.value}={value:.4f}" for key, value in self._values.items())
        return f"Scores({inner})"

    def to_map(self) -> dict[str, float]:
        """Return a JSON-friendly mapping keyed by machine key."""

        return {key.value: value for key, value in self._values.items()}

    def top(self) -> tuple[CategoryKey, float]:
        """Return the highest-scoring category; ties go to the earlier category."""

        best_key = CATEGORY_KEYS[0]
        best_value = -1.0
        for key in CATEGORY_KEYS:
            value = self._values[key]
            if value > best_value:
                best_key, best_value = key, value
        return best_key, best_value


__all__ = ["CATEGORY_KEYS", "CategoryKey", "Scores"]
