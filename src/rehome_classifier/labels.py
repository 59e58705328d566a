from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import Enum
from types import MappingProxyType
from typing import Final


class Category(str, Enum):
    books = "books"
    clothes = "clothes"
    electronics = "electronics"
    ewaste = "ewaste"
    furniture = "furniture"


# Output index i of the model always corresponds to LABEL_SET[i].
LABEL_SET: Final[tuple[str, ...]] = tuple(c.value for c in Category)

# Reusable items go to partner organisations; the rest are routed to recycling.
REUSABILITY: Final[Mapping[str, bool]] = MappingProxyType(
    {
        Category.books.value: True,
        Category.clothes.value: True,
        Category.electronics.value: True,
        Category.ewaste.value: False,
        Category.furniture.value: True,
    }
)

# Used when a label is missing from the table; callers log the drift.
REUSABLE_FALLBACK: Final[bool] = True


def missing_from_table(labels: Sequence[str], table: Mapping[str, bool]) -> tuple[str, ...]:
    return tuple(lbl for lbl in labels if lbl not in table)
