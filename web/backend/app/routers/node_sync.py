"""Node sync router -- snapshot export, import and the local digest."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from web.backend.app.middleware.auth import require_admin
from web.backend.app.models.api import (
    CurrentHashResponse,
    ExportResponse,
    ImportRequest,
    ImportResponse,
)
from web.backend.app.services import get_engine, get_puller

router = APIRouter(prefix="/api/node-sync", tags=["node-sync"])


@router.get(
    "/export",
    response_model=ExportResponse,
    summary="Export configuration to a follower",
)
def export_config(
    x_slave_api_key: Optional[str] = Header(None, alias="X-Slave-API-Key"),
):
    """Leader only. Authenticated by the follower's own API key."""
    result = get_engine().export_for_sync(x_slave_api_key)
    return ExportResponse(hash=result.hash, config=result.config)


@router.post(
    "/import",
    response_model=ImportResponse,
    response_model_exclude_none=True,
    summary="Import configuration from the leader",
    dependencies=[Depends(require_admin)],
)
def import_config(body: ImportRequest):
    """Follower only. A body whose hash matches local state changes nothing.

    Shares the pull loop's lock, so it answers 409 while a sync runs.
    """
    result = get_puller().apply(body.hash, body.config)
    return ImportResponse(**result.to_dict())


@router.get(
    "/current-hash",
    response_model=CurrentHashResponse,
    summary="Digest of the local configuration",
    dependencies=[Depends(require_admin)],
)
def current_hash():
    return CurrentHashResponse(hash=get_engine().report_local_digest())
