"""Snapshot building.

A snapshot maps every category name to the list of its entities, sorted by
business key, with node-local ids and timestamps removed. Two nodes holding
the same configuration build equal snapshots no matter in which order their
rows were created.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.orm import Session

from nodesync.errors import ValidationError
from nodesync.sync.categories import CATEGORIES, CategoryStrategy, get_category

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    """Category name -> entities sorted by business key."""

    categories: dict[str, list[dict]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, list[dict]]:
        return {c.name: list(self.categories.get(c.name, [])) for c in CATEGORIES}

    def entities(self, category: str) -> list[dict]:
        return self.categories.get(category, [])

    def entity_count(self) -> int:
        return sum(len(v) for v in self.categories.values())

    def keys(self, category: str) -> list[str]:
        strategy = get_category(category)
        return [e[strategy.key] for e in self.entities(category)]

    @classmethod
    def from_dict(cls, data: Any) -> Snapshot:
        """Validate and normalize a snapshot received over the wire.

        Missing categories are treated as empty. Unknown categories (from a
        newer leader) are ignored with a warning.
        """
        if not isinstance(data, dict):
            raise ValidationError("Snapshot must be an object", details=type(data).__name__)

        unknown = sorted(set(data) - {c.name for c in CATEGORIES})
        if unknown:
            logger.warning("Ignoring unknown snapshot categories: %s", ", ".join(unknown))

        categories: dict[str, list[dict]] = {}
        for strategy in CATEGORIES:
            raw = data.get(strategy.name) or []
            if not isinstance(raw, list):
                raise ValidationError(f"Snapshot category '{strategy.name}' must be a list")
            entities = [strategy.normalize(item) for item in raw]
            seen: set[str] = set()
            for entity in entities:
                key = entity[strategy.key]
                if key in seen:
                    raise ValidationError(
                        f"Duplicate {strategy.key} in '{strategy.name}'", details=key
                    )
                seen.add(key)
            categories[strategy.name] = sorted(entities, key=lambda e, k=strategy.key: e[k])
        return cls(categories=categories)


class SnapshotBuilder:
    """Reads every synchronizable category inside one transaction."""

    def __init__(self, categories: Optional[tuple[CategoryStrategy, ...]] = None) -> None:
        self.categories = categories or CATEGORIES

    def build(self, session: Session) -> Snapshot:
        """Build a snapshot from ``session``.

        The caller owns the session; using one session for every category
        keeps the whole read inside a single transaction.
        """
        categories: dict[str, list[dict]] = {}
        for strategy in self.categories:
            entities = [strategy.serialize(row) for row in strategy.load(session)]
            entities.sort(key=lambda e, k=strategy.key: e[k])
            categories[strategy.name] = entities
        return Snapshot(categories=categories)
