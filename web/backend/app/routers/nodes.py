"""Slave node router -- registry CRUD for operators plus the node health probe."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from nodesync.cluster.models import NodeIdentity

from web.backend.app.middleware.auth import get_current_node, require_admin
from web.backend.app.models.api import (
    NodeHealthResponse,
    NodeResponse,
    RegisteredNodeResponse,
    RegisterNodeRequest,
    StaleCheckResponse,
    UpdateNodeRequest,
)
from web.backend.app.services import get_registry, get_status_checker

router = APIRouter(prefix="/api/slave", tags=["nodes"])


def _node_response(node: NodeIdentity) -> NodeResponse:
    return NodeResponse(
        id=node.id,
        name=node.name,
        host=node.host,
        port=node.port,
        status=node.status.value,
        sync_enabled=node.sync_enabled,
        sync_interval=node.sync_interval,
        last_seen=node.last_seen,
        config_hash=node.config_hash,
        api_key_prefix=node.key_prefix,
        created_at=node.created_at,
        updated_at=node.updated_at,
    )


@router.post(
    "/nodes",
    response_model=RegisteredNodeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a slave node",
    dependencies=[Depends(require_admin)],
)
def register_node(body: RegisterNodeRequest):
    """Register a follower. The response carries its API key, shown only once."""
    node = get_registry().register(body.name, body.host, body.port, body.sync_interval)
    return RegisteredNodeResponse(
        id=node.id,
        name=node.name,
        host=node.host,
        port=node.port,
        status=node.status.value,
        api_key=node.api_key,
    )


@router.get(
    "/nodes",
    response_model=list[NodeResponse],
    summary="List slave nodes",
    dependencies=[Depends(require_admin)],
)
def list_nodes():
    return [_node_response(n) for n in get_registry().list_all()]


@router.post(
    "/nodes/check-stale",
    response_model=StaleCheckResponse,
    summary="Mark silent nodes offline",
    dependencies=[Depends(require_admin)],
)
def check_stale_nodes():
    names = get_status_checker().mark_stale()
    return StaleCheckResponse(marked_offline=names, count=len(names))


@router.get(
    "/nodes/{node_id}",
    response_model=NodeResponse,
    summary="Get a slave node",
    dependencies=[Depends(require_admin)],
)
def get_node(node_id: str):
    return _node_response(get_registry().get(node_id))


@router.patch(
    "/nodes/{node_id}",
    response_model=NodeResponse,
    summary="Update a slave node",
    dependencies=[Depends(require_admin)],
)
def update_node(node_id: str, body: UpdateNodeRequest):
    """Change name, address, interval or the sync switch. The key is kept."""
    node = get_registry().update(
        node_id,
        name=body.name,
        host=body.host,
        port=body.port,
        sync_interval=body.sync_interval,
        sync_enabled=body.sync_enabled,
    )
    return _node_response(node)


@router.delete(
    "/nodes/{node_id}",
    summary="Delete a slave node",
    dependencies=[Depends(require_admin)],
)
def delete_node(node_id: str):
    get_registry().delete(node_id)
    return {"message": "Slave node deleted successfully"}


@router.get(
    "/health",
    response_model=NodeHealthResponse,
    summary="Authenticated liveness probe for follower nodes",
)
def node_health(node: NodeIdentity = Depends(get_current_node)):
    """Answer a follower's probe. Changes nothing on the leader."""
    record = get_registry().health(node)
    return NodeHealthResponse(
        status=record.status,
        timestamp=record.timestamp,
        node_id=record.node_id,
        node_name=record.node_name,
    )
