"""Leader-side export and follower-side import.

Export (leader): authenticate the caller's key, build a snapshot inside one
read transaction, digest it, then record the contact on the calling node.

Import (follower): verify that the received digest matches the received
configuration, compare it with the local digest and, only when they differ,
reconcile inside a single transaction. An import whose digest already matches
writes nothing at all.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from nodesync.auth.credentials import CredentialStore
from nodesync.cluster.registry import NodeRegistry, utcnow
from nodesync.db.database import Database
from nodesync.errors import (
    AuthError,
    ConcurrentModificationError,
    NodeSyncError,
    NotFoundError,
    ReconciliationError,
    RoleError,
    ValidationError,
)
from nodesync.sync.hasher import digest
from nodesync.sync.reconcile import Reconciler
from nodesync.sync.snapshot import Snapshot, SnapshotBuilder
from nodesync.system.role import NodeRole, current_role, load_system_config

logger = logging.getLogger(__name__)


@dataclass
class ExportResult:
    hash: str
    config: dict

    def to_dict(self) -> dict:
        return {"hash": self.hash, "config": self.config}


@dataclass
class ImportResult:
    imported: bool
    hash: str
    changes: int = 0
    details: Optional[dict] = None
    previous_hash: str = field(default="", repr=False)

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "imported": self.imported,
            "hash": self.hash,
            "changes": self.changes,
        }
        if self.details is not None:
            data["details"] = self.details
        return data


class SyncEngine:
    """Builds, digests and applies configuration snapshots."""

    def __init__(
        self,
        database: Database,
        credentials: Optional[CredentialStore] = None,
        registry: Optional[NodeRegistry] = None,
        builder: Optional[SnapshotBuilder] = None,
        reconciler: Optional[Reconciler] = None,
    ) -> None:
        self._db = database
        self._credentials = credentials or CredentialStore(database)
        self._registry = registry or NodeRegistry(database, self._credentials)
        self._builder = builder or SnapshotBuilder()
        self._reconciler = reconciler or Reconciler()

    # ------------------------------------------------------------------
    # Leader side
    # ------------------------------------------------------------------

    def build_snapshot(self) -> Snapshot:
        with self._db.read_scope() as session:
            return self._builder.build(session)

    def report_local_digest(self) -> str:
        """Digest of this deployment's current configuration. Never writes."""
        return digest(self.build_snapshot())

    def export_for_sync(self, raw_key: Optional[str]) -> ExportResult:
        """Serve a snapshot to the follower owning ``raw_key``."""
        identity = self._credentials.resolve(raw_key)

        with self._db.read_scope() as session:
            if current_role(session) != NodeRole.leader:
                raise RoleError("Configuration export is only available in leader mode")
            snapshot = self._builder.build(session)
        snapshot_hash = digest(snapshot)

        try:
            self._registry.record_contact(identity.id, snapshot_hash)
        except NotFoundError as exc:
            # Node deleted between authentication and contact.
            raise AuthError("Invalid API key") from exc

        logger.info(
            "Config exported for node %s (%d entities, hash %s)",
            identity.name, snapshot.entity_count(), snapshot_hash[:12],
        )
        return ExportResult(hash=snapshot_hash, config=snapshot.to_dict())

    # ------------------------------------------------------------------
    # Follower side
    # ------------------------------------------------------------------

    def import_from_leader(self, snapshot_hash: Any, config: Any) -> ImportResult:
        """Apply a leader's snapshot if it differs from local state."""
        if not isinstance(snapshot_hash, str) or not snapshot_hash:
            raise ValidationError("Invalid sync data: 'hash' is required")
        if not isinstance(config, dict):
            raise ValidationError("Invalid sync data: 'config' must be an object")

        snapshot = Snapshot.from_dict(config)
        if digest(snapshot) != snapshot_hash:
            raise ValidationError(
                "Configuration does not match its hash", details=snapshot_hash[:12]
            )

        with self._db.read_scope() as session:
            if current_role(session) != NodeRole.follower:
                raise RoleError("Configuration import is only available in follower mode")
            local_hash = digest(self._builder.build(session))

        if local_hash == snapshot_hash:
            logger.info("Config unchanged (hash %s), skipping import", local_hash[:12])
            return ImportResult(imported=False, hash=local_hash, previous_hash=local_hash)

        logger.info("Config hash mismatch (local %s, leader %s), importing", local_hash[:12], snapshot_hash[:12])
        try:
            with self._db.session_scope() as session:
                if current_role(session) != NodeRole.follower:
                    raise RoleError("Configuration import is only available in follower mode")
                report = self._reconciler.apply(session, snapshot)
                system = load_system_config(session)
                system.last_connected_at = utcnow()
                system.last_sync_hash = snapshot_hash
        except StaleDataError as exc:
            raise ConcurrentModificationError(
                "System configuration was modified during import"
            ) from exc
        except NodeSyncError:
            raise
        except SQLAlchemyError as exc:
            logger.error("Import failed, rolled back: %s", exc)
            raise ReconciliationError("Import failed and was rolled back", details=str(exc)) from exc

        logger.info("Config imported: %d changes (hash %s)", report.total_changes, snapshot_hash[:12])
        return ImportResult(
            imported=True,
            hash=snapshot_hash,
            changes=report.total_changes,
            details=report.to_dict(),
            previous_hash=local_hash,
        )
