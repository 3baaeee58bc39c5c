"""Prompt bank for zero-shot category and keep/drop scoring.

Prompts are part of the model contract: changing them changes the cached
prototypes, so bump :data:`PROMPT_BANK_VERSION` with any edit.
"""

from __future__ import annotations

from dataclasses import dataclass

from photo_sorter.categories import CATEGORY_KEYS, CategoryKey

PROMPT_BANK_VERSION = "2024.1"


@dataclass(frozen=True)
class CategoryPrompts:
    """Natural-language prompts describing a single category."""

    category: CategoryKey
    prompts: tuple[str, ...]


CATEGORY_PROMPTS: tuple[CategoryPrompts, ...] = (
    CategoryPrompts(
        CategoryKey.SCREENSHOT_DOCUMENT,
        (
            "a screenshot of a document",
            "a screenshot with text and UI",
            "a photographed document or paper",
        ),
    ),
    CategoryPrompts(
        CategoryKey.PEOPLE,
        ("a photo of people", "a portrait of a person", "people in a social scene"),
    ),
    CategoryPrompts(
        CategoryKey.FOOD_CAFE,
        ("a photo of food", "a cafe or restaurant scene", "a drink or dessert on a table"),
    ),
    CategoryPrompts(
        CategoryKey.NATURE_LANDSCAPE,
        ("a nature landscape photo", "mountains, forest, ocean, or sky", "a scenic outdoor view"),
    ),
    CategoryPrompts(
        CategoryKey.CITY_STREET_TRAVEL,
        ("a city street photo", "a travel landmark or tourist place", "buildings and urban scenery"),
    ),
    CategoryPrompts(
        CategoryKey.PETS_ANIMALS,
        ("a photo of an animal", "a pet dog or cat", "wildlife or animals outdoors"),
    ),
    CategoryPrompts(
        CategoryKey.PRODUCTS_OBJECTS,
        ("a photo of an object or product", "an item on a table", "a close-up of a thing"),
    ),
    CategoryPrompts(
        CategoryKey.OTHER,
        ("a miscellaneous photo", "an abstract or unclear scene", "something else"),
    ),
)

VALUE_KEEP_PROMPTS: tuple[str, ...] = (
    "a valuable personal photo worth keeping",
    "a meaningful photo to keep in a personal album",
    "a high quality photo worth saving",
    "an important screenshot to keep",
)

VALUE_DROP_PROMPTS: tuple[str, ...] = (
    "a low quality photo not worth keeping",
    "a blurry or accidental photo",
    "a duplicate or unimportant screenshot",
    "a meaningless image to delete",
)


def all_category_prompts() -> list[tuple[CategoryKey, str]]:
    """Flatten the category prompts in canonical category order."""

    by_category = {entry.category: entry.prompts for entry in CATEGORY_PROMPTS}
    return [(category, prompt) for category in CATEGORY_KEYS for prompt in by_category[category]]


__all__ = [
    "CATEGORY_PROMPTS",
    "CategoryPrompts",
    "PROMPT_BANK_VERSION",
    "VALUE_DROP_PROMPTS",
    "VALUE_KEEP_PROMPTS",
    "all_category_prompts",
]
