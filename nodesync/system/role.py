"""Deployment role state machine.

A deployment is either a leader (exports configuration, owns the node
registry) or a follower (pulls from exactly one leader). The state lives in a
single ``system_config`` row, created lazily as a leader the first time it is
read. Every update goes through SQLAlchemy's version counter, so two admins
racing on the same row cannot silently overwrite each other.

Transitions::

    leader ──become_follower──▶ follower (disconnected)
    follower ──connect_to_leader──▶ follower (connected | connection_error)
    follower ──disconnect_from_leader──▶ follower (disconnected)
    any ──become_leader──▶ leader (leader fields cleared)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from nodesync.cluster.registry import utcnow
from nodesync.config import DEFAULT_NODE_PORT, MIN_SYNC_INTERVAL, Settings, get_settings
from nodesync.db.database import Database
from nodesync.db.models import SystemConfig
from nodesync.errors import (
    ConcurrentModificationError,
    NodeSyncError,
    RoleError,
    ValidationError,
)
from nodesync.logging_setup import key_prefix
from nodesync.sync.client import LeaderClient

logger = logging.getLogger(__name__)

SYSTEM_CONFIG_ID = 1


class NodeRole(str, Enum):
    leader = "leader"
    follower = "follower"

    @classmethod
    def parse(cls, value: str) -> NodeRole:
        """Accept ``leader``/``follower`` and the older ``master``/``slave`` names."""
        aliases = {"master": cls.leader, "slave": cls.follower}
        text = (value or "").strip().lower()
        if text in aliases:
            return aliases[text]
        try:
            return cls(text)
        except ValueError as exc:
            raise ValidationError(
                "Role must be 'leader' or 'follower'", details=value
            ) from exc


@dataclass
class RoleConfig:
    """Read-only view of the system configuration row."""

    role: NodeRole
    leader_host: Optional[str] = None
    leader_port: Optional[int] = None
    leader_key_prefix: Optional[str] = None
    sync_interval: int = 60
    connected: bool = False
    last_connected_at: Optional[datetime] = None
    last_sync_hash: Optional[str] = None
    connection_error: Optional[str] = None
    version: int = 0

    @property
    def is_leader(self) -> bool:
        return self.role == NodeRole.leader

    @classmethod
    def from_row(cls, row: SystemConfig) -> RoleConfig:
        return cls(
            role=NodeRole(row.role),
            leader_host=row.leader_host,
            leader_port=row.leader_port,
            leader_key_prefix=key_prefix(row.leader_api_key) if row.leader_api_key else None,
            sync_interval=row.sync_interval,
            connected=row.connected,
            last_connected_at=row.last_connected_at,
            last_sync_hash=row.last_sync_hash,
            connection_error=row.connection_error,
            version=row.version,
        )


@dataclass
class ConnectionTestResult:
    success: bool
    latency_ms: Optional[int] = None
    leader_status: Optional[str] = None
    node_name: Optional[str] = None
    message: str = ""


ClientFactory = Callable[[str, int, str], LeaderClient]


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------


def load_system_config(session: Session) -> SystemConfig:
    """Return the singleton row, creating it as a leader if absent."""
    row = session.get(SystemConfig, SYSTEM_CONFIG_ID)
    if row is None:
        row = SystemConfig(id=SYSTEM_CONFIG_ID, role=NodeRole.leader.value, sync_interval=60, connected=False)
        session.add(row)
        session.flush()
    return row


def current_role(session: Session) -> NodeRole:
    """Peek at the role without creating the row."""
    row = session.get(SystemConfig, SYSTEM_CONFIG_ID)
    return NodeRole(row.role) if row is not None else NodeRole.leader


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class RoleStateMachine:
    """Reads and changes the deployment's role and leader connection."""

    def __init__(
        self,
        database: Database,
        client_factory: Optional[ClientFactory] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._db = database
        self._settings = settings or get_settings()
        self._client_factory = client_factory or self._default_client

    def _default_client(self, host: str, port: int, api_key: str) -> LeaderClient:
        return LeaderClient(
            host,
            port,
            api_key,
            timeout=self._settings.http_timeout,
            sync_timeout=self._settings.sync_timeout,
        )

    def client_for(self, config: SystemConfig) -> LeaderClient:
        return self._client_factory(config.leader_host, config.leader_port, config.leader_api_key)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self) -> RoleConfig:
        with self._db.session_scope() as session:
            return RoleConfig.from_row(load_system_config(session))

    def is_leader(self) -> bool:
        with self._db.read_scope() as session:
            return current_role(session) == NodeRole.leader

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _mutate(
        self,
        change: Callable[[SystemConfig], None],
        expected_version: Optional[int] = None,
    ) -> RoleConfig:
        try:
            with self._db.session_scope() as session:
                row = load_system_config(session)
                if expected_version is not None and row.version != expected_version:
                    raise ConcurrentModificationError(
                        "System configuration was modified concurrently",
                        details=f"expected version {expected_version}, found {row.version}",
                    )
                change(row)
                session.flush()
                return RoleConfig.from_row(row)
        except StaleDataError as exc:
            raise ConcurrentModificationError(
                "System configuration was modified concurrently"
            ) from exc

    def set_role(self, role: NodeRole | str, expected_version: Optional[int] = None) -> RoleConfig:
        role = role if isinstance(role, NodeRole) else NodeRole.parse(role)
        if role == NodeRole.leader:
            return self.become_leader(expected_version)
        return self.become_follower(expected_version)

    def become_leader(self, expected_version: Optional[int] = None) -> RoleConfig:
        """Switch to leader and forget everything about the old leader."""

        def change(row: SystemConfig) -> None:
            row.role = NodeRole.leader.value
            row.leader_host = None
            row.leader_port = None
            row.leader_api_key = None
            row.connected = False
            row.last_connected_at = None
            row.connection_error = None
            row.last_sync_hash = None

        config = self._mutate(change, expected_version)
        logger.info("Node mode set to leader")
        return config

    def become_follower(self, expected_version: Optional[int] = None) -> RoleConfig:
        """Switch to follower. Already a follower: the leader connection is kept."""

        def change(row: SystemConfig) -> None:
            if row.role == NodeRole.follower.value:
                return
            row.role = NodeRole.follower.value
            row.connected = False

        config = self._mutate(change, expected_version)
        logger.info("Node mode set to follower")
        return config

    def connect_to_leader(
        self,
        host: str,
        port: int = DEFAULT_NODE_PORT,
        api_key: str = "",
        sync_interval: int = 60,
        expected_version: Optional[int] = None,
    ) -> RoleConfig:
        """Store the leader's address and key, then verify them with one probe.

        On a failed probe the parameters stay stored, ``connected`` stays
        false, ``connection_error`` records why, and the error is re-raised.
        """
        if not isinstance(host, str) or not host.strip():
            raise ValidationError("'host' is required")
        if not api_key:
            raise ValidationError("'api_key' is required")
        if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
            raise ValidationError("'port' must be an integer between 1 and 65535", details=port)
        if isinstance(sync_interval, bool) or not isinstance(sync_interval, int) or sync_interval < MIN_SYNC_INTERVAL:
            raise ValidationError(
                f"Sync interval must be at least {MIN_SYNC_INTERVAL} seconds", details=sync_interval
            )
        host = host.strip()

        def store(row: SystemConfig) -> None:
            if row.role != NodeRole.follower.value:
                raise RoleError("Cannot connect to a leader while in leader mode")
            row.leader_host = host
            row.leader_port = port
            row.leader_api_key = api_key
            row.sync_interval = sync_interval
            row.connected = False
            row.connection_error = None

        config = self._mutate(store, expected_version)

        try:
            self._client_factory(host, port, api_key).health()
        except NodeSyncError as exc:
            message = str(exc)

            def failed(row: SystemConfig) -> None:
                row.connected = False
                row.connection_error = message

            self._mutate(failed)
            logger.warning("Failed to connect to leader %s:%s: %s", host, port, message)
            raise

        def succeeded(row: SystemConfig) -> None:
            row.connected = True
            row.last_connected_at = utcnow()
            row.connection_error = None

        config = self._mutate(succeeded)
        logger.info("Connected to leader %s:%s", host, port)
        return config

    def disconnect_from_leader(self, expected_version: Optional[int] = None) -> RoleConfig:
        """Stop syncing and forget the key. Host and port are kept for a later reconnect."""

        def change(row: SystemConfig) -> None:
            row.connected = False
            row.leader_api_key = None
            row.last_connected_at = None
            row.connection_error = None

        config = self._mutate(change, expected_version)
        logger.info("Disconnected from leader")
        return config

    def test_connection(self) -> ConnectionTestResult:
        """Probe the configured leader without changing any state."""
        with self._db.read_scope() as session:
            row = session.get(SystemConfig, SYSTEM_CONFIG_ID)
            if row is None or row.role != NodeRole.follower.value:
                raise RoleError("Connection test is only available in follower mode")
            if not row.leader_host or not row.leader_api_key:
                raise ValidationError("Leader connection not configured")
            client = self.client_for(row)

        started = time.monotonic()
        try:
            body = client.health()
        except NodeSyncError as exc:
            logger.info("Connection test to %s failed: %s", client.base_url, exc)
            return ConnectionTestResult(success=False, message=str(exc))

        latency_ms = int((time.monotonic() - started) * 1000)
        return ConnectionTestResult(
            success=True,
            latency_ms=latency_ms,
            leader_status=body.get("status"),
            node_name=body.get("nodeName"),
            message="Connection successful",
        )
