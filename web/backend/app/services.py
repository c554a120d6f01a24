"""Shared service instances for the routers.

Each getter builds its object on first use from the process-wide database and
settings. Tests call ``reset_services`` after swapping the database.
"""

from __future__ import annotations

from typing import Optional

from nodesync.auth.credentials import CredentialStore
from nodesync.cluster.registry import NodeRegistry
from nodesync.cluster.status_checker import StatusChecker
from nodesync.config import get_settings
from nodesync.db import get_database
from nodesync.sync.engine import SyncEngine
from nodesync.sync.puller import SyncPuller
from nodesync.system.role import ClientFactory, RoleStateMachine

_credentials: Optional[CredentialStore] = None
_roles: Optional[RoleStateMachine] = None
_registry: Optional[NodeRegistry] = None
_engine: Optional[SyncEngine] = None
_puller: Optional[SyncPuller] = None
_checker: Optional[StatusChecker] = None

# Tests inject a factory that routes leader calls to an in-process app.
_client_factory: Optional[ClientFactory] = None


def get_credentials() -> CredentialStore:
    global _credentials
    if _credentials is None:
        _credentials = CredentialStore(get_database())
    return _credentials


def get_roles() -> RoleStateMachine:
    global _roles
    if _roles is None:
        _roles = RoleStateMachine(get_database(), _client_factory, get_settings())
    return _roles


def get_registry() -> NodeRegistry:
    global _registry
    if _registry is None:
        _registry = NodeRegistry(get_database(), get_credentials(), is_leader=get_roles().is_leader)
    return _registry


def get_engine() -> SyncEngine:
    global _engine
    if _engine is None:
        _engine = SyncEngine(get_database(), get_credentials(), get_registry())
    return _engine


def get_puller() -> SyncPuller:
    global _puller
    if _puller is None:
        _puller = SyncPuller(get_database(), get_engine(), get_roles(), settings=get_settings())
    return _puller


def get_status_checker() -> StatusChecker:
    global _checker
    if _checker is None:
        settings = get_settings()
        _checker = StatusChecker(get_database(), settings.stale_factor, settings.stale_min_seconds)
    return _checker


def reset_services(client_factory: Optional[ClientFactory] = None) -> None:
    """Drop every cached service so the next request rebuilds them."""
    global _credentials, _roles, _registry, _engine, _puller, _checker, _client_factory
    _credentials = _roles = _registry = _engine = _puller = _checker = None
    _client_factory = client_factory
