"""Map aggregator category labels onto a user's local budget categories.

Aggregators tag each transaction with a hierarchy of labels, most general
first (``["Food and Drink", "Restaurants"]``). A :class:`CategoryResolver` runs
a chain of :class:`MappingStrategy` objects over those labels and always
returns a category: when nothing matches, the user's fallback category.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Protocol, Sequence

from rapidfuzz.distance import Levenshtein
from sqlalchemy.orm import Session

from auth import SessionContext
from models import Category
from services import CategoryService

logger = logging.getLogger(__name__)


def _clean(label: Optional[str]) -> str:
    return (label or "").strip().lower()


def _most_specific_first(labels: Sequence[str]) -> list[str]:
    return [label for label in reversed(labels) if _clean(label)]


class MappingStrategy(Protocol):
    def match(
        self, labels: Sequence[str], categories: Sequence[Category]
    ) -> Optional[Category]: ...


class LabelTableStrategy:
    """Look labels up in a configured ``{aggregator label: category name}`` table."""

    def __init__(self, table: dict[str, str]) -> None:
        self.table = {_clean(k): v.strip() for k, v in table.items() if _clean(k)}

    def match(
        self, labels: Sequence[str], categories: Sequence[Category]
    ) -> Optional[Category]:
        by_name = {_clean(c.name): c for c in categories}
        for label in _most_specific_first(labels):
            target = self.table.get(_clean(label))
            if target and _clean(target) in by_name:
                return by_name[_clean(target)]
        return None


class CategoryNameStrategy:
    def match(
        self, labels: Sequence[str], categories: Sequence[Category]
    ) -> Optional[Category]:
        by_name = {_clean(c.name): c for c in categories}
        for label in _most_specific_first(labels):
            category = by_name.get(_clean(label))
            if category:
                return category
        return None


class FuzzyNameStrategy:
    """Accept the single closest category name within ``max_distance`` edits.

    Ties at the best distance are treated as no match.
    """

    def __init__(self, max_distance: int = 1) -> None:
        self.max_distance = max_distance

    def match(
        self, labels: Sequence[str], categories: Sequence[Category]
    ) -> Optional[Category]:
        for label in _most_specific_first(labels):
            label_lower = _clean(label)
            best_distance: Optional[int] = None
            best: list[Category] = []
            for category in categories:
                dist = int(Levenshtein.distance(label_lower, _clean(category.name)))
                if best_distance is None or dist < best_distance:
                    best_distance = dist
                    best = [category]
                elif dist == best_distance:
                    best.append(category)
            if (
                best_distance is not None
                and best_distance <= self.max_distance
                and len(best) == 1
            ):
                return best[0]
        return None


class CategoryResolver:
    def __init__(
        self,
        categories: Sequence[Category],
        strategies: Sequence[MappingStrategy],
        fallback: Category,
    ) -> None:
        self.categories = list(categories)
        self.strategies = list(strategies)
        self.fallback = fallback

    def resolve(self, labels: Optional[Sequence[str]]) -> Category:
        labels = list(labels or [])
        if not labels:
            return self.fallback
        for strategy in self.strategies:
            try:
                category = strategy.match(labels, self.categories)
            except Exception:
                logger.exception(
                    f"category_resolve: strategy={type(strategy).__name__} "
                    f"labels={labels}"
                )
                continue
            if category is not None:
                return category
        return self.fallback

    @classmethod
    def for_user(
        cls,
        session: Session,
        user: SessionContext,
        table: Optional[dict[str, str]] = None,
    ) -> "CategoryResolver":
        categories = CategoryService(session, user)
        fallback = categories.get_or_create_fallback()
        strategies: list[MappingStrategy] = []
        if table:
            strategies.append(LabelTableStrategy(table))
        strategies.extend([CategoryNameStrategy(), FuzzyNameStrategy()])
        return cls(categories.list_all(), strategies, fallback)


def load_mapping_table(path: Optional[str]) -> dict[str, str]:
    if not path:
        return {}
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ValueError(f"Could not read category map from {path}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Category map in {path} must be a JSON object")
    return {str(k): str(v) for k, v in payload.items()}
