"""Tests for the category taxonomy and normalized scores."""

from __future__ import annotations

import math

import pytest

from photo_sorter.categories import CATEGORY_KEYS, CategoryKey, Scores


def test_category_order_and_labels_are_stable() -> None:
    """Eight categories in canonical order, each with a distinct folder label."""

    assert len(CATEGORY_KEYS) == 8
    assert CATEGORY_KEYS[0] is CategoryKey.SCREENSHOT_DOCUMENT
    assert CATEGORY_KEYS[-1] is CategoryKey.OTHER
    assert len({key.label for key in CATEGORY_KEYS}) == 8
    assert CategoryKey.OTHER.label == "기타"


def test_parse_maps_unknown_values_to_other() -> None:
    assert CategoryKey.parse("people") is CategoryKey.PEOPLE
    assert CategoryKey.parse(" food_cafe ") is CategoryKey.FOOD_CAFE
    assert CategoryKey.parse("selfie") is CategoryKey.OTHER
    assert CategoryKey.parse(None) is CategoryKey.OTHER


def test_scores_normalize_to_one() -> None:
    """Partial, unnormalized input is completed with zeros and rescaled."""

    scores = Scores({"people": 3.0, "food_cafe": 1.0, "not_a_category": 10.0})

    assert math.isclose(sum(scores.values()), 1.0)
    assert scores[CategoryKey.PEOPLE] == pytest.approx(0.75)
    assert scores[CategoryKey.FOOD_CAFE] == pytest.approx(0.25)
    assert scores[CategoryKey.OTHER] == 0.0
    assert set(scores.to_map()) == {key.value for key in CATEGORY_KEYS}


def test_scores_with_non_positive_total_stay_zero() -> None:
    """A zero or negative total must not divide by zero."""

    scores = Scores({"people": -2.0, "other": 0.0})

    assert all(value == 0.0 for value in scores.values())


def test_scores_ignore_invalid_values() -> None:
    scores = Scores({"people": "abc", "pets_animals": float("nan"), "other": 2})

    assert scores[CategoryKey.OTHER] == pytest.approx(1.0)


def test_top_prefers_first_category_on_ties() -> None:
    scores = Scores({"nature_landscape": 0.5, "people": 0.5})

    assert scores.top() == (CategoryKey.PEOPLE, pytest.approx(0.5))


def test_top_of_all_zero_scores_is_first_category() -> None:
    assert Scores().top()[0] is CategoryKey.SCREENSHOT_DOCUMENT


def test_from_probabilities_requires_full_vector() -> None:
    with pytest.raises(ValueError):
        Scores.from_probabilities([1.0, 0.0])

    scores = Scores.from_probabilities([0.0] * 7 + [2.0])
    assert scores.top() == (CategoryKey.OTHER, pytest.approx(1.0))


def test_one_hot_scores() -> None:
    scores = Scores.one_hot(CategoryKey.PETS_ANIMALS)

    assert scores[CategoryKey.PETS_ANIMALS] == 1.0
    assert sum(scores.values()) == pytest.approx(1.0)
