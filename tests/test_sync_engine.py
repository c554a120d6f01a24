"""Tests for export, import and reconciliation between two databases."""

import pytest
from sqlalchemy import select, text

from nodesync.cluster.models import NodeStatus
from nodesync.cluster.registry import NodeRegistry
from nodesync.db.models import AclRule, Domain, SystemConfig
from nodesync.errors import (
    AuthError,
    ConcurrentModificationError,
    ReconciliationError,
    RoleError,
    SyncDisabledError,
    ValidationError,
)
from nodesync.sync.engine import SyncEngine
from nodesync.sync.hasher import digest
from nodesync.sync.reconcile import Reconciler
from nodesync.sync.snapshot import Snapshot
from nodesync.system.role import RoleStateMachine

from seed import add_acl, add_certificate, add_domain, add_nlb, add_user


def _follower(db) -> SyncEngine:
    RoleStateMachine(db).become_follower()
    return SyncEngine(db)


def _register(db) -> str:
    return NodeRegistry(db).register("edge-1", "10.0.0.5").api_key


def _seed_full(db) -> None:
    add_domain(db, "a.com")
    add_domain(db, "b.com", upstreams=(("10.0.0.2", 80), ("10.0.0.3", 80)), with_lb=False)
    add_certificate(db, "a.com")
    add_acl(db, "block-bad-ip")
    add_user(db, "alice", role="admin")
    add_nlb(db, "pg")


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def test_export_returns_hash_of_config(leader_db):
    add_domain(leader_db, "a.com")
    key = _register(leader_db)

    result = SyncEngine(leader_db).export_for_sync(key)

    assert result.hash == digest(result.config)
    assert [d["name"] for d in result.config["domains"]] == ["a.com"]
    assert result.to_dict() == {"hash": result.hash, "config": result.config}


def test_export_records_contact(leader_db):
    reg = NodeRegistry(leader_db)
    node = reg.register("edge-1", "10.0.0.5")

    result = SyncEngine(leader_db).export_for_sync(node.api_key)

    seen = reg.get(node.id)
    assert seen.status == NodeStatus.online
    assert seen.config_hash == result.hash
    assert seen.last_seen is not None


def test_export_rejects_bad_keys_without_writing(leader_db, write_counter):
    node = NodeRegistry(leader_db).register("edge-1", "10.0.0.5")
    NodeRegistry(leader_db).update(node.id, sync_enabled=False)
    engine = SyncEngine(leader_db)
    counter = write_counter(leader_db.engine)

    with pytest.raises(AuthError) as exc:
        engine.export_for_sync(None)
    assert not isinstance(exc.value, SyncDisabledError)
    with pytest.raises(AuthError):
        engine.export_for_sync("not-a-key")
    with pytest.raises(SyncDisabledError):
        engine.export_for_sync(node.api_key)

    assert counter.count == 0


def test_export_requires_leader_role(leader_db):
    key = _register(leader_db)
    RoleStateMachine(leader_db).become_follower()

    with pytest.raises(RoleError):
        SyncEngine(leader_db).export_for_sync(key)


def test_bad_key_checked_before_role(leader_db):
    RoleStateMachine(leader_db).become_follower()
    with pytest.raises(AuthError):
        SyncEngine(leader_db).export_for_sync("not-a-key")


def test_current_hash_matches_export(leader_db):
    _seed_full(leader_db)
    key = _register(leader_db)
    engine = SyncEngine(leader_db)
    assert engine.report_local_digest() == engine.export_for_sync(key).hash


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


def test_import_converges_digest(leader_db, follower_db):
    _seed_full(leader_db)
    exported = SyncEngine(leader_db).export_for_sync(_register(leader_db))
    follower = _follower(follower_db)

    result = follower.import_from_leader(exported.hash, exported.config)

    assert result.imported is True
    assert result.hash == exported.hash
    assert result.changes == 6
    assert result.details["domains"]["created"] == 2
    assert result.details["ssl_certificates"]["created"] == 1
    assert follower.report_local_digest() == exported.hash

    with follower_db.read_scope() as session:
        system = session.get(SystemConfig, 1)
        assert system.last_sync_hash == exported.hash
        assert system.last_connected_at is not None


def test_import_with_matching_hash_writes_nothing(leader_db, follower_db, write_counter):
    _seed_full(leader_db)
    exported = SyncEngine(leader_db).export_for_sync(_register(leader_db))
    follower = _follower(follower_db)
    follower.import_from_leader(exported.hash, exported.config)

    counter = write_counter(follower_db.engine)
    result = follower.import_from_leader(exported.hash, exported.config)

    assert result.imported is False
    assert result.changes == 0
    assert result.hash == exported.hash
    assert counter.count == 0


def test_import_updates_changed_entities(leader_db, follower_db):
    add_domain(leader_db, "a.com")
    key = _register(leader_db)
    leader = SyncEngine(leader_db)
    follower = _follower(follower_db)
    first = leader.export_for_sync(key)
    follower.import_from_leader(first.hash, first.config)

    with leader_db.session_scope() as session:
        domain = session.execute(select(Domain).where(Domain.name == "a.com")).scalar_one()
        domain.ssl_enabled = True
        domain.load_balancer.algorithm = "least_conn"

    second = leader.export_for_sync(key)
    result = follower.import_from_leader(second.hash, second.config)

    assert result.changes == 1
    assert result.details["domains"] == {"created": 0, "updated": 1, "unchanged": 0, "skipped": 0}
    assert follower.report_local_digest() == second.hash


def test_import_never_deletes_local_entities(leader_db, follower_db):
    add_domain(leader_db, "a.com")
    add_acl(follower_db, "local-only")
    exported = SyncEngine(leader_db).export_for_sync(_register(leader_db))
    follower = _follower(follower_db)

    result = follower.import_from_leader(exported.hash, exported.config)

    assert result.imported is True
    with follower_db.read_scope() as session:
        names = list(session.execute(select(AclRule.name)).scalars())
    assert names == ["local-only"]


def test_import_rejects_hash_mismatch(follower_db, write_counter):
    follower = _follower(follower_db)
    counter = write_counter(follower_db.engine)

    with pytest.raises(ValidationError):
        follower.import_from_leader("0" * 64, {"domains": [{"name": "a.com"}]})
    assert counter.count == 0


def test_import_rejects_malformed_body(follower_db):
    follower = _follower(follower_db)
    with pytest.raises(ValidationError):
        follower.import_from_leader(None, {})
    with pytest.raises(ValidationError):
        follower.import_from_leader("abc", "not-an-object")


def test_import_requires_follower_role(leader_db):
    snapshot = Snapshot.from_dict({})
    with pytest.raises(RoleError):
        SyncEngine(leader_db).import_from_leader(digest(snapshot), snapshot.to_dict())


def test_certificate_for_unknown_domain_is_skipped(follower_db):
    cert = {
        "domain_name": "ghost.com",
        "common_name": "ghost.com",
        "certificate": "c",
        "private_key": "k",
        "valid_from": "2024-01-01T00:00:00",
        "valid_to": "2025-01-01T00:00:00",
    }
    config = Snapshot.from_dict({"ssl_certificates": [cert]}).to_dict()
    follower = _follower(follower_db)

    result = follower.import_from_leader(digest(config), config)

    assert result.details["ssl_certificates"]["skipped"] == 1
    assert result.changes == 0


def test_failed_reconcile_rolls_back(leader_db, follower_db):
    add_domain(leader_db, "a.com")
    add_acl(leader_db, "block-bad-ip")
    exported = SyncEngine(leader_db).export_for_sync(_register(leader_db))

    class FailingReconciler(Reconciler):
        def _apply_category(self, session, strategy, incoming):
            if strategy.name == "acl_rules":
                session.add(Domain(name="a.com"))
                session.flush()
            return super()._apply_category(session, strategy, incoming)

    RoleStateMachine(follower_db).become_follower()
    follower = SyncEngine(follower_db, reconciler=FailingReconciler())

    with pytest.raises(ReconciliationError):
        follower.import_from_leader(exported.hash, exported.config)

    with follower_db.read_scope() as session:
        assert list(session.execute(select(Domain)).scalars()) == []
        assert session.get(SystemConfig, 1).last_sync_hash is None


def test_role_switch_during_import_rolls_back(leader_db, follower_db):
    add_domain(leader_db, "a.com")
    key = _register(leader_db)
    leader = SyncEngine(leader_db)
    first = leader.export_for_sync(key)
    _follower(follower_db).import_from_leader(first.hash, first.config)

    add_domain(leader_db, "b.com")
    second = leader.export_for_sync(key)

    class SwitchingReconciler(Reconciler):
        def apply(self, session, snapshot):
            report = super().apply(session, snapshot)
            # Another writer flips the role after the role check.
            session.execute(text("UPDATE system_config SET role = 'leader', version = version + 1 WHERE id = 1"))
            return report

    follower = SyncEngine(follower_db, reconciler=SwitchingReconciler())
    with pytest.raises(ConcurrentModificationError):
        follower.import_from_leader(second.hash, second.config)

    with follower_db.read_scope() as session:
        names = [d.name for d in session.execute(select(Domain)).scalars()]
        assert names == ["a.com"]
        system = session.get(SystemConfig, 1)
        assert system.last_sync_hash == first.hash
        assert system.role == "follower"

def test_end_to_end_pull_sequence(leader_db, follower_db):
    key = _register(leader_db)
    leader = SyncEngine(leader_db)
    follower = _follower(follower_db)

    add_domain(leader_db, "a.com")
    first = leader.export_for_sync(key)
    r1 = follower.import_from_leader(first.hash, first.config)
    assert (r1.imported, r1.changes) == (True, 1)

    add_domain(leader_db, "b.com")
    second = leader.export_for_sync(key)
    r2 = follower.import_from_leader(second.hash, second.config)
    assert (r2.imported, r2.changes) == (True, 1)
    assert r2.details["domains"]["unchanged"] == 1

    third = leader.export_for_sync(key)
    r3 = follower.import_from_leader(third.hash, third.config)
    assert third.hash == second.hash
    assert (r3.imported, r3.changes) == (False, 0)
