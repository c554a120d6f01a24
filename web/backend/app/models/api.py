"""Pydantic models for API request/response serialization.

These models mirror the nodesync dataclasses. JSON uses camelCase
(``apiKey``, ``syncInterval``); snake_case field names are accepted on input
too.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Node registry models
# ---------------------------------------------------------------------------


class RegisterNodeRequest(ApiModel):
    name: str
    host: str
    port: int = 3001
    sync_interval: int = 60


class UpdateNodeRequest(ApiModel):
    """Every field optional; only the ones sent are changed."""

    name: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    sync_interval: Optional[int] = None
    sync_enabled: Optional[bool] = None


class NodeResponse(ApiModel):
    """Mirrors nodesync.cluster.models.NodeIdentity. Never carries the key."""

    id: str
    name: str
    host: str
    port: int
    status: str
    sync_enabled: bool = True
    sync_interval: int = 60
    last_seen: Optional[datetime] = None
    config_hash: Optional[str] = None
    api_key_prefix: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RegisteredNodeResponse(ApiModel):
    """Mirrors nodesync.cluster.models.RegisteredNode."""

    id: str
    name: str
    host: str
    port: int
    status: str
    api_key: str
    message: str = "Save this API key, it will not be shown again"


class NodeHealthResponse(ApiModel):
    status: str = "healthy"
    timestamp: datetime
    node_id: str
    node_name: str


class StaleCheckResponse(ApiModel):
    marked_offline: list[str] = Field(default_factory=list)
    count: int = 0


# ---------------------------------------------------------------------------
# Sync models
# ---------------------------------------------------------------------------


class ExportResponse(ApiModel):
    hash: str
    config: dict[str, Any]


class ImportRequest(ApiModel):
    """Types are checked by the import itself so bad input answers 400."""

    hash: Any = None
    config: Any = None


class ImportResponse(ApiModel):
    imported: bool
    hash: str
    changes: int = 0
    details: Optional[dict[str, Any]] = None


class CurrentHashResponse(ApiModel):
    hash: str


class SyncResponse(ApiModel):
    imported: bool
    hash: str
    previous_hash: str = ""
    changes: int = 0
    details: Optional[dict[str, Any]] = None
    last_sync_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# System (role) models
# ---------------------------------------------------------------------------


class SystemConfigResponse(ApiModel):
    """Mirrors nodesync.system.role.RoleConfig. The leader key is masked."""

    role: str
    leader_host: Optional[str] = None
    leader_port: Optional[int] = None
    leader_key_prefix: Optional[str] = None
    sync_interval: int = 60
    connected: bool = False
    last_connected_at: Optional[datetime] = None
    last_sync_hash: Optional[str] = None
    connection_error: Optional[str] = None
    version: int = 0


class SetNodeModeRequest(ApiModel):
    node_mode: str
    expected_version: Optional[int] = None


class ConnectRequest(ApiModel):
    host: str
    port: int = 3001
    api_key: str
    sync_interval: int = 60
    expected_version: Optional[int] = None


class ConnectionTestResponse(ApiModel):
    success: bool
    latency_ms: Optional[int] = None
    leader_status: Optional[str] = None
    node_name: Optional[str] = None
    message: str = ""
