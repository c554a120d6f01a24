"""Domain models for registered follower nodes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class NodeStatus(str, Enum):
    """Lifecycle status of a registered follower."""

    online = "online"
    offline = "offline"
    syncing = "syncing"
    error = "error"


@dataclass
class NodeIdentity:
    """A registered follower as seen by readers. Never carries the raw key."""

    id: str
    name: str
    host: str
    port: int
    sync_enabled: bool = True
    sync_interval: int = 60
    status: NodeStatus = NodeStatus.offline
    last_seen: Optional[datetime] = None
    config_hash: Optional[str] = None
    key_prefix: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if isinstance(self.status, str):
            self.status = NodeStatus(self.status)

    @classmethod
    def from_row(cls, row) -> NodeIdentity:
        return cls(
            id=row.id,
            name=row.name,
            host=row.host,
            port=row.port,
            sync_enabled=row.sync_enabled,
            sync_interval=row.sync_interval,
            status=row.status,
            last_seen=row.last_seen,
            config_hash=row.config_hash,
            key_prefix=row.api_key_prefix,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


@dataclass
class RegisteredNode:
    """Result of a registration: the only object that ever holds the raw key."""

    id: str
    name: str
    host: str
    port: int
    api_key: str
    status: NodeStatus = NodeStatus.offline


@dataclass
class NodeHealth:
    """Timestamped liveness record for an authenticated caller."""

    timestamp: datetime
    node_id: str
    node_name: str
    status: str = "healthy"
