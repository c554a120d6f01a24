"""Follower-side pull loop.

``sync_once`` runs one tick: fetch the leader's export, hand it to the engine.
``run_forever`` repeats ticks every ``sync_interval`` seconds, backing off
exponentially while the leader is unreachable. Ticks never overlap: a second
caller gets ``SyncInProgressError`` instead of queueing behind the first.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from nodesync.cluster.registry import utcnow
from nodesync.config import DEFAULT_SYNC_INTERVAL, Settings, get_settings
from nodesync.db.database import Database
from nodesync.db.models import SystemConfig
from nodesync.errors import (
    AuthError,
    NodeSyncError,
    RoleError,
    SyncInProgressError,
    TransientNetworkError,
    ValidationError,
)
from nodesync.sync.engine import ImportResult, SyncEngine
from nodesync.system.role import SYSTEM_CONFIG_ID, ClientFactory, NodeRole, RoleStateMachine

logger = logging.getLogger(__name__)


@dataclass
class SyncOutcome:
    imported: bool
    leader_hash: str
    local_hash_before: str
    changes_applied: int = 0
    details: Optional[dict] = None
    last_sync_at: Optional[datetime] = None


class SyncPuller:
    """Drives periodic pulls from the configured leader."""

    def __init__(
        self,
        database: Database,
        engine: Optional[SyncEngine] = None,
        roles: Optional[RoleStateMachine] = None,
        client_factory: Optional[ClientFactory] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._db = database
        self._settings = settings or get_settings()
        self._engine = engine or SyncEngine(database)
        self._roles = roles or RoleStateMachine(database, client_factory, self._settings)
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def sync_once(self) -> SyncOutcome:
        """Pull and apply the leader's configuration once."""
        if not self._lock.acquire(blocking=False):
            raise SyncInProgressError("A sync is already in progress")
        try:
            return self._tick()
        finally:
            self._lock.release()

    def apply(self, snapshot_hash, config) -> ImportResult:
        """Import a pushed snapshot under the same lock as the pull tick."""
        if not self._lock.acquire(blocking=False):
            raise SyncInProgressError("A sync is already in progress")
        try:
            return self._engine.import_from_leader(snapshot_hash, config)
        finally:
            self._lock.release()

    def _tick(self) -> SyncOutcome:
        with self._db.read_scope() as session:
            system = session.get(SystemConfig, SYSTEM_CONFIG_ID)
            if system is None or system.role != NodeRole.follower.value:
                raise RoleError("Sync is only available in follower mode")
            if not system.connected or not system.leader_host or not system.leader_api_key:
                raise ValidationError("Not connected to a leader")
            client = self._roles.client_for(system)

        leader_hash, config = client.fetch_export()
        result = self._engine.import_from_leader(leader_hash, config)

        outcome = SyncOutcome(
            imported=result.imported,
            leader_hash=leader_hash,
            local_hash_before=result.previous_hash,
            changes_applied=result.changes,
            details=result.details,
            last_sync_at=utcnow() if result.imported else None,
        )
        if result.imported:
            logger.info("Sync completed: %d changes applied", result.changes)
        else:
            logger.debug("Sync tick: already at %s", leader_hash[:12])
        return outcome

    def run_forever(self, stop_event: threading.Event, max_backoff: int = 300) -> None:
        """Tick until ``stop_event`` is set.

        Network and database failures double the wait up to ``max_backoff``;
        any other error is logged and the normal interval resumes. Ticks are
        skipped while the deployment is a leader or disconnected.
        """
        backoff = 0
        interval = DEFAULT_SYNC_INTERVAL
        while not stop_event.is_set():
            try:
                config = self._roles.get()
                interval = config.sync_interval
                if config.role != NodeRole.follower or not config.connected:
                    stop_event.wait(interval)
                    continue
                self.sync_once()
                backoff = 0
            except TransientNetworkError as exc:
                backoff = min(max(backoff * 2, interval), max_backoff)
                logger.warning("Leader unreachable, retrying in %ds: %s", backoff, exc)
            except SQLAlchemyError as exc:
                backoff = min(max(backoff * 2, interval), max_backoff)
                logger.error("Database error during sync, retrying in %ds: %s", backoff, exc)
            except AuthError as exc:
                logger.error("Leader rejected credentials: %s", exc)
            except SyncInProgressError:
                logger.debug("Previous sync still running, skipping tick")
            except NodeSyncError as exc:
                logger.error("Sync failed: %s", exc)

            stop_event.wait(backoff or interval)
