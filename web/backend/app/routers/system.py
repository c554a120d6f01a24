"""System router -- node mode, leader connection and manual sync."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from nodesync.system.role import RoleConfig

from web.backend.app.middleware.auth import require_admin
from web.backend.app.models.api import (
    ConnectionTestResponse,
    ConnectRequest,
    SetNodeModeRequest,
    SyncResponse,
    SystemConfigResponse,
)
from web.backend.app.services import get_puller, get_roles

router = APIRouter(
    prefix="/api/system",
    tags=["system"],
    dependencies=[Depends(require_admin)],
)


def _config_response(config: RoleConfig) -> SystemConfigResponse:
    return SystemConfigResponse(
        role=config.role.value,
        leader_host=config.leader_host,
        leader_port=config.leader_port,
        leader_key_prefix=config.leader_key_prefix,
        sync_interval=config.sync_interval,
        connected=config.connected,
        last_connected_at=config.last_connected_at,
        last_sync_hash=config.last_sync_hash,
        connection_error=config.connection_error,
        version=config.version,
    )


@router.get("/config", response_model=SystemConfigResponse, summary="Current node mode")
def get_system_config():
    return _config_response(get_roles().get())


@router.put("/node-mode", response_model=SystemConfigResponse, summary="Switch leader/follower")
def set_node_mode(body: SetNodeModeRequest):
    """Accepts ``leader``/``follower`` (or ``master``/``slave``)."""
    return _config_response(get_roles().set_role(body.node_mode, body.expected_version))


@router.post("/connect", response_model=SystemConfigResponse, summary="Connect to a leader")
def connect_to_leader(body: ConnectRequest):
    config = get_roles().connect_to_leader(
        body.host,
        body.port,
        body.api_key,
        body.sync_interval,
        expected_version=body.expected_version,
    )
    return _config_response(config)


@router.post("/disconnect", response_model=SystemConfigResponse, summary="Disconnect from the leader")
def disconnect_from_leader():
    return _config_response(get_roles().disconnect_from_leader())


@router.post("/test-connection", response_model=ConnectionTestResponse, summary="Probe the leader")
def test_connection():
    result = get_roles().test_connection()
    return ConnectionTestResponse(
        success=result.success,
        latency_ms=result.latency_ms,
        leader_status=result.leader_status,
        node_name=result.node_name,
        message=result.message,
    )


@router.post("/sync", response_model=SyncResponse, summary="Pull from the leader now")
def sync_now():
    outcome = get_puller().sync_once()
    return SyncResponse(
        imported=outcome.imported,
        hash=outcome.leader_hash,
        previous_hash=outcome.local_hash_before,
        changes=outcome.changes_applied,
        details=outcome.details,
        last_sync_at=outcome.last_sync_at,
    )
