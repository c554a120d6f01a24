"""Tests for the follower pull loop against an in-process leader API."""

import threading

import pytest
from sqlalchemy.exc import OperationalError
from fastapi.testclient import TestClient

from nodesync.cluster.registry import NodeRegistry
from nodesync.config import Settings, configure
from nodesync.db import reset_database
from nodesync.errors import (
    AuthError,
    RoleError,
    SyncInProgressError,
    TransientNetworkError,
    ValidationError,
)
from nodesync.sync.client import LeaderClient
from nodesync.sync.engine import SyncEngine
from nodesync.sync.puller import SyncPuller
from nodesync.system.role import RoleStateMachine, load_system_config
from web.backend.app.main import app
from web.backend.app.services import reset_services

from seed import add_domain


@pytest.fixture
def leader(leader_db):
    configure(Settings())
    reset_database(leader_db)
    reset_services()
    yield TestClient(app)
    reset_services()
    reset_database(None)


def _puller(follower_db, leader_client):
    def factory(host, port, api_key):
        return LeaderClient(host, port, api_key, http_client=leader_client)

    roles = RoleStateMachine(follower_db, factory, Settings())
    return SyncPuller(follower_db, roles=roles, settings=Settings()), roles


def _connected(follower_db, leader_db, leader_client):
    key = NodeRegistry(leader_db).register("edge-1", "10.0.0.5").api_key
    puller, roles = _puller(follower_db, leader_client)
    roles.become_follower()
    roles.connect_to_leader("leader", 3001, key, 60)
    return puller


def test_sync_once_applies_leader_config(leader, leader_db, follower_db):
    add_domain(leader_db, "a.com")
    puller = _connected(follower_db, leader_db, leader)

    outcome = puller.sync_once()

    assert outcome.imported is True
    assert outcome.changes_applied == 1
    assert outcome.last_sync_at is not None
    assert SyncEngine(follower_db).report_local_digest() == outcome.leader_hash
    assert outcome.local_hash_before != outcome.leader_hash


def test_sync_sequence(leader, leader_db, follower_db, write_counter):
    puller = _connected(follower_db, leader_db, leader)

    add_domain(leader_db, "a.com")
    first = puller.sync_once()
    assert (first.imported, first.changes_applied) == (True, 1)

    add_domain(leader_db, "b.com")
    second = puller.sync_once()
    assert (second.imported, second.changes_applied) == (True, 1)

    counter = write_counter(follower_db.engine)
    third = puller.sync_once()
    assert (third.imported, third.changes_applied) == (False, 0)
    assert third.leader_hash == second.leader_hash
    assert counter.count == 0


def test_sync_requires_connected_follower(leader, leader_db, follower_db):
    puller, roles = _puller(follower_db, leader)
    with pytest.raises(RoleError):
        puller.sync_once()

    roles.become_follower()
    with pytest.raises(ValidationError):
        puller.sync_once()


def test_sync_after_node_deleted_is_auth_error(leader, leader_db, follower_db):
    puller = _connected(follower_db, leader_db, leader)
    reg = NodeRegistry(leader_db)
    reg.delete(reg.list_all()[0].id)

    with pytest.raises(AuthError):
        puller.sync_once()


def test_overlapping_sync_is_rejected(leader, leader_db, follower_db):
    puller = _connected(follower_db, leader_db, leader)

    puller._lock.acquire()
    try:
        assert puller.busy
        with pytest.raises(SyncInProgressError):
            puller.sync_once()
    finally:
        puller._lock.release()


def test_run_forever_backs_off_on_network_errors(follower_db):
    calls = []
    stop = threading.Event()

    class Unreachable(SyncPuller):
        def sync_once(self):
            calls.append(1)
            if len(calls) >= 3:
                stop.set()
            raise TransientNetworkError("Leader unreachable")

    roles = RoleStateMachine(follower_db, settings=Settings())
    roles.become_follower()
    with follower_db.session_scope() as session:
        row = load_system_config(session)
        row.connected = True
        row.sync_interval = 10

    waits = []
    original_wait = stop.wait

    def record_wait(timeout=None):
        waits.append(timeout)
        return original_wait(0)

    stop.wait = record_wait
    Unreachable(follower_db, roles=roles, settings=Settings()).run_forever(stop, max_backoff=25)

    assert len(calls) == 3
    assert waits == [10, 20, 25]


def test_run_forever_idles_while_leader(database):
    stop = threading.Event()
    calls = []

    class Recording(SyncPuller):
        def sync_once(self):
            calls.append(1)

    def record_wait(timeout=None):
        stop.set()
        return True

    stop.wait = record_wait
    Recording(database, settings=Settings()).run_forever(stop)
    assert calls == []


def test_run_forever_survives_database_errors(follower_db):
    stop = threading.Event()
    gets = []
    ticks = []

    class FlakyRoles(RoleStateMachine):
        def get(self):
            gets.append(1)
            if len(gets) == 1:
                raise OperationalError("SELECT", {}, Exception("database is locked"))
            return super().get()

    class Recording(SyncPuller):
        def sync_once(self):
            ticks.append(1)
            stop.set()

    roles = FlakyRoles(follower_db, settings=Settings())
    roles.become_follower()
    with follower_db.session_scope() as session:
        row = load_system_config(session)
        row.connected = True
        row.sync_interval = 10

    waits = []
    original_wait = stop.wait

    def record_wait(timeout=None):
        waits.append(timeout)
        return original_wait(0)

    stop.wait = record_wait
    Recording(follower_db, roles=roles, settings=Settings()).run_forever(stop, max_backoff=25)

    assert len(gets) == 2
    assert ticks == [1]
    assert waits == [25, 10]


def test_apply_shares_the_sync_lock(follower_db):
    puller = SyncPuller(follower_db, settings=Settings())

    puller._lock.acquire()
    try:
        with pytest.raises(SyncInProgressError):
            puller.apply("0" * 64, {})
    finally:
        puller._lock.release()
