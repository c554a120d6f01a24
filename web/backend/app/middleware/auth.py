"""Auth middleware -- FastAPI dependencies for the two kinds of caller.

1. Operators: ``Authorization: Bearer <admin_token>`` when an admin token is
   configured. Without one the admin endpoints are open, which suits a
   deployment that sits behind its own authenticating proxy.
2. Follower nodes: their per-node API key, in ``X-API-Key`` for the health
   probe and ``X-Slave-API-Key`` for the export (read by that router).
"""

from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Header, HTTPException, status

from nodesync.cluster.models import NodeIdentity
from nodesync.config import get_settings

from web.backend.app.services import get_credentials


def require_admin(authorization: Optional[str] = Header(None)) -> None:
    """FastAPI dependency guarding operator endpoints.

    Raises ``401 Unauthorized`` when an admin token is configured and the
    request does not present it.
    """
    expected = get_settings().admin_token
    if not expected:
        return

    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and hmac.compare_digest(token.encode(), expected.encode()):
            return

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_node(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> NodeIdentity:
    """Resolve the calling follower from ``X-API-Key``.

    ``AuthError`` / ``SyncDisabledError`` propagate to the app's error
    handler and become 401 / 403.
    """
    return get_credentials().resolve(x_api_key)
