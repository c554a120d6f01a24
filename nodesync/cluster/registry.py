"""Node registry -- the leader's catalogue of follower identities.

Registration mints a credential and stores only its hash, so the raw key in
the returned ``RegisteredNode`` is the one and only time it is visible.
Status and last-seen are written exclusively by ``record_contact`` (after a
successful authenticated export) and by the stale-node checker.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from nodesync.auth.credentials import CredentialStore
from nodesync.cluster.models import NodeHealth, NodeIdentity, NodeStatus, RegisteredNode
from nodesync.config import DEFAULT_NODE_PORT, DEFAULT_SYNC_INTERVAL, MIN_SYNC_INTERVAL
from nodesync.db.database import Database
from nodesync.db.models import SlaveNode
from nodesync.errors import DuplicateError, NotFoundError, RoleError, ValidationError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC now, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class NodeRegistry:
    """CRUD over registered follower nodes."""

    def __init__(
        self,
        database: Database,
        credentials: Optional[CredentialStore] = None,
        is_leader: Optional[Callable[[], bool]] = None,
    ) -> None:
        self._db = database
        self._credentials = credentials or CredentialStore(database)
        self._is_leader = is_leader

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_leader(self) -> None:
        if self._is_leader is not None and not self._is_leader():
            raise RoleError("Node registration is only available in leader mode")

    @staticmethod
    def _load(session: Session, node_id: str) -> SlaveNode:
        row = session.get(SlaveNode, node_id)
        if row is None:
            raise NotFoundError("Slave node not found", details=node_id)
        return row

    @staticmethod
    def _name_taken(session: Session, name: str, exclude_id: str = "") -> bool:
        stmt = select(SlaveNode.id).where(SlaveNode.name == name)
        if exclude_id:
            stmt = stmt.where(SlaveNode.id != exclude_id)
        return session.execute(stmt).first() is not None

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def register(
        self,
        name: str,
        host: str,
        port: int = DEFAULT_NODE_PORT,
        sync_interval: int = DEFAULT_SYNC_INTERVAL,
    ) -> RegisteredNode:
        """Register a follower and return it with its one-time API key."""
        self._require_leader()
        name = _clean_str(name, "name")
        host = _clean_str(host, "host")
        _check_port(port)
        _check_interval(sync_interval)

        credential = self._credentials.issue(name)
        try:
            with self._db.session_scope() as session:
                if self._name_taken(session, name):
                    raise DuplicateError("Slave node with this name already exists", details=name)
                row = SlaveNode(
                    name=name,
                    host=host,
                    port=port,
                    sync_interval=sync_interval,
                    api_key_hash=credential.key_hash,
                    api_key_prefix=credential.prefix,
                    sync_enabled=True,
                    status=NodeStatus.offline.value,
                )
                session.add(row)
                session.flush()
                node_id = row.id
        except IntegrityError as exc:
            # Lost a race against a concurrent registration of the same name.
            raise DuplicateError("Slave node with this name already exists", details=name) from exc

        logger.info("Slave node registered: %s (%s:%s)", name, host, port)
        return RegisteredNode(
            id=node_id,
            name=name,
            host=host,
            port=port,
            api_key=credential.raw_key,
            status=NodeStatus.offline,
        )

    def list_all(self) -> list[NodeIdentity]:
        """All nodes, newest first."""
        with self._db.read_scope() as session:
            rows = session.execute(
                select(SlaveNode).order_by(SlaveNode.created_at.desc(), SlaveNode.name)
            ).scalars()
            return [NodeIdentity.from_row(r) for r in rows]

    def get(self, node_id: str) -> NodeIdentity:
        with self._db.read_scope() as session:
            return NodeIdentity.from_row(self._load(session, node_id))

    def update(
        self,
        node_id: str,
        name: Optional[str] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        sync_interval: Optional[int] = None,
        sync_enabled: Optional[bool] = None,
    ) -> NodeIdentity:
        """Change a node's settings. The API key is never touched."""
        try:
            with self._db.session_scope() as session:
                row = self._load(session, node_id)
                if name is not None:
                    name = _clean_str(name, "name")
                    if self._name_taken(session, name, exclude_id=node_id):
                        raise DuplicateError("Slave node with this name already exists", details=name)
                    row.name = name
                if host is not None:
                    row.host = _clean_str(host, "host")
                if port is not None:
                    _check_port(port)
                    row.port = port
                if sync_interval is not None:
                    _check_interval(sync_interval)
                    row.sync_interval = sync_interval
                if sync_enabled is not None:
                    row.sync_enabled = bool(sync_enabled)
                session.flush()
                updated = NodeIdentity.from_row(row)
        except IntegrityError as exc:
            raise DuplicateError("Slave node with this name already exists", details=name) from exc

        logger.info("Slave node updated: %s", updated.name)
        return updated

    def delete(self, node_id: str) -> None:
        """Remove a node. Its key stops resolving immediately."""
        with self._db.session_scope() as session:
            row = self._load(session, node_id)
            name = row.name
            session.delete(row)
        logger.info("Slave node deleted: %s (%s)", name, node_id)

    # ------------------------------------------------------------------
    # Contact tracking
    # ------------------------------------------------------------------

    def record_contact(self, node_id: str, digest_offered: str) -> NodeIdentity:
        """Mark a node online after an authenticated export."""
        with self._db.session_scope() as session:
            row = self._load(session, node_id)
            row.status = NodeStatus.online.value
            row.last_seen = utcnow()
            row.config_hash = digest_offered
            session.flush()
            return NodeIdentity.from_row(row)

    def health(self, identity: NodeIdentity) -> NodeHealth:
        """Liveness record for an authenticated caller. Writes nothing."""
        return NodeHealth(
            timestamp=datetime.now(timezone.utc),
            node_id=identity.id,
            node_name=identity.name,
        )


def _clean_str(value, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{field_name}' is required")
    return value.strip()


def _check_port(port) -> None:
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise ValidationError("'port' must be an integer between 1 and 65535", details=port)


def _check_interval(interval) -> None:
    if isinstance(interval, bool) or not isinstance(interval, int) or interval < MIN_SYNC_INTERVAL:
        raise ValidationError(
            f"'sync_interval' must be an integer of at least {MIN_SYNC_INTERVAL} seconds", details=interval
        )
