"""Stale-node detection.

A follower is expected to call export every ``sync_interval`` seconds. Once
it has been silent for ``stale_factor`` intervals (but never less than
``min_seconds``) its status drops back to ``offline``. The leader never
flips a node to ``online`` here; only an authenticated export does that.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from nodesync.cluster.models import NodeStatus
from nodesync.cluster.registry import utcnow
from nodesync.db.database import Database
from nodesync.db.models import SlaveNode

logger = logging.getLogger(__name__)

LIVE_STATUSES = (NodeStatus.online.value, NodeStatus.syncing.value)


class StatusChecker:
    """Flips silent followers to offline."""

    def __init__(self, database: Database, stale_factor: int = 3, min_seconds: int = 300) -> None:
        self._db = database
        self.stale_factor = max(1, stale_factor)
        self.min_seconds = max(0, min_seconds)

    def window_for(self, sync_interval: int) -> timedelta:
        return timedelta(seconds=max(self.stale_factor * sync_interval, self.min_seconds))

    def is_stale(self, last_seen: Optional[datetime], sync_interval: int, now: datetime) -> bool:
        if last_seen is None:
            return True
        return now - last_seen > self.window_for(sync_interval)

    def mark_stale(self, now: Optional[datetime] = None) -> list[str]:
        """Mark expired live nodes offline. Returns the names flipped."""
        now = now or utcnow()
        flipped: list[str] = []

        with self._db.session_scope() as session:
            rows = session.execute(
                select(SlaveNode).where(SlaveNode.status.in_(LIVE_STATUSES))
            ).scalars()
            for row in rows:
                if self.is_stale(row.last_seen, row.sync_interval, now):
                    row.status = NodeStatus.offline.value
                    flipped.append(row.name)

        if flipped:
            logger.info("Marking stale nodes as offline: %s", ", ".join(sorted(flipped)))
        return sorted(flipped)

    def run_forever(self, stop_event: threading.Event, every: int = 60) -> None:
        """Run ``mark_stale`` every ``every`` seconds until ``stop_event`` is set."""
        while not stop_event.wait(every):
            try:
                self.mark_stale()
            except SQLAlchemyError as exc:
                logger.error("Stale node check failed: %s", exc)
