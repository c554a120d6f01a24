"""Follower-side reconciliation.

Policy: sync is additive. Entities in the incoming snapshot but missing
locally are created, entities present on both sides but different are
overwritten, identical entities are not touched, and entities that exist only
on the follower are left alone. A leader that removes an entity therefore does
not remove it from followers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import Session

from nodesync.sync.categories import CATEGORIES, CategoryStrategy
from nodesync.sync.snapshot import Snapshot

logger = logging.getLogger(__name__)


@dataclass
class CategoryResult:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0

    @property
    def changes(self) -> int:
        return self.created + self.updated

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
        }


@dataclass
class ReconcileReport:
    categories: dict[str, CategoryResult] = field(default_factory=dict)

    @property
    def total_changes(self) -> int:
        return sum(r.changes for r in self.categories.values())

    def to_dict(self) -> dict:
        return {name: r.to_dict() for name, r in self.categories.items()}


class Reconciler:
    """Applies a snapshot to local storage inside the caller's transaction."""

    def __init__(self, categories: Optional[tuple[CategoryStrategy, ...]] = None) -> None:
        self.categories = categories or CATEGORIES

    def apply(self, session: Session, snapshot: Snapshot) -> ReconcileReport:
        report = ReconcileReport()
        for strategy in self.categories:
            report.categories[strategy.name] = self._apply_category(
                session, strategy, snapshot.entities(strategy.name)
            )
        return report

    def _apply_category(
        self, session: Session, strategy: CategoryStrategy, incoming: list[dict]
    ) -> CategoryResult:
        result = CategoryResult()
        local = {strategy.row_key(row): row for row in strategy.load(session)}

        for entity in incoming:
            key = entity[strategy.key]
            row = local.get(key)
            if row is None:
                if strategy.create(session, entity) is None:
                    result.skipped += 1
                else:
                    result.created += 1
            elif strategy.serialize(row) != entity:
                strategy.update(session, row, entity)
                result.updated += 1
            else:
                result.unchanged += 1

        # Flush per category so later categories can resolve earlier ones by key.
        session.flush()

        if result.changes:
            logger.debug(
                "Reconciled %s: %d created, %d updated",
                strategy.name, result.created, result.updated,
            )
        return result
