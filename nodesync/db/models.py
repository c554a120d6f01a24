"""ORM rows for the node registry, the role singleton and the synchronizable
configuration entities.

The synchronizable tables carry node-local integer ids and timestamps. Neither
ever leaves the node: snapshots identify entities by the business key columns
marked ``unique=True`` below.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from nodesync.db.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class TimestampMixin:
    """created_at / updated_at bookkeeping, excluded from snapshots."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.current_timestamp(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.current_timestamp(),
        onupdate=func.current_timestamp(),
        nullable=False,
    )


# ---------------------------------------------------------------------------
# Node sync state
# ---------------------------------------------------------------------------


class SlaveNode(Base, TimestampMixin):
    """A follower registered on the leader."""

    __tablename__ = "slave_nodes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    port: Mapped[int] = mapped_column(Integer, nullable=False, default=3001)
    api_key_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    api_key_prefix: Mapped[str] = mapped_column(String(16), nullable=False, default="")
    sync_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sync_interval: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="offline")
    last_seen: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    config_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


class SystemConfig(Base, TimestampMixin):
    """The one role-configuration row of a deployment."""

    __tablename__ = "system_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="leader")
    leader_host: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    leader_port: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    leader_api_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sync_interval: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    connected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_connected_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_sync_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    connection_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


# ---------------------------------------------------------------------------
# Synchronizable configuration
# ---------------------------------------------------------------------------


class Domain(Base, TimestampMixin):
    __tablename__ = "domains"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    ssl_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    modsec_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    upstreams: Mapped[list["Upstream"]] = relationship(
        back_populates="domain", cascade="all, delete-orphan", order_by="Upstream.id"
    )
    load_balancer: Mapped[Optional["LoadBalancerConfig"]] = relationship(
        back_populates="domain", cascade="all, delete-orphan", uselist=False
    )
    ssl_certificate: Mapped[Optional["SSLCertificate"]] = relationship(
        back_populates="domain", cascade="all, delete-orphan", uselist=False
    )


class Upstream(Base):
    __tablename__ = "upstreams"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    domain_id: Mapped[int] = mapped_column(ForeignKey("domains.id", ondelete="CASCADE"), nullable=False)
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    port: Mapped[int] = mapped_column(Integer, nullable=False)
    protocol: Mapped[str] = mapped_column(String(16), nullable=False, default="http")
    ssl_verify: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    weight: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_fails: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    fail_timeout: Mapped[int] = mapped_column(Integer, nullable=False, default=10)

    domain: Mapped[Domain] = relationship(back_populates="upstreams")


class LoadBalancerConfig(Base):
    __tablename__ = "load_balancer_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    domain_id: Mapped[int] = mapped_column(
        ForeignKey("domains.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    algorithm: Mapped[str] = mapped_column(String(32), nullable=False, default="round_robin")
    health_check_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    health_check_path: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    health_check_interval: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    health_check_timeout: Mapped[int] = mapped_column(Integer, nullable=False, default=5)

    domain: Mapped[Domain] = relationship(back_populates="load_balancer")


class SSLCertificate(Base, TimestampMixin):
    __tablename__ = "ssl_certificates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    domain_id: Mapped[int] = mapped_column(
        ForeignKey("domains.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    common_name: Mapped[str] = mapped_column(String(255), nullable=False)
    sans: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    issuer: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    certificate: Mapped[str] = mapped_column(Text, nullable=False)
    private_key: Mapped[str] = mapped_column(Text, nullable=False)
    chain: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    valid_from: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    valid_to: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    domain: Mapped[Domain] = relationship(back_populates="ssl_certificate")


class ModSecCRSRule(Base, TimestampMixin):
    """A vendor (OWASP CRS) rule set toggle, keyed by its rule file."""

    __tablename__ = "modsec_crs_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_file: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    paranoia: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class ModSecRule(Base, TimestampMixin):
    """An operator-written WAF rule."""

    __tablename__ = "modsec_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_content: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class AclRule(Base, TimestampMixin):
    __tablename__ = "acl_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    condition_field: Mapped[str] = mapped_column(String(32), nullable=False)
    condition_operator: Mapped[str] = mapped_column(String(32), nullable=False)
    condition_value: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class User(Base, TimestampMixin):
    """Dashboard account. ``password`` is always a pre-computed hash."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    password: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="viewer")


class NetworkLoadBalancer(Base, TimestampMixin):
    """A layer-4 (stream) load balancer."""

    __tablename__ = "network_load_balancers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    port: Mapped[int] = mapped_column(Integer, nullable=False)
    protocol: Mapped[str] = mapped_column(String(16), nullable=False, default="tcp")
    algorithm: Mapped[str] = mapped_column(String(32), nullable=False, default="round_robin")
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    proxy_timeout: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    proxy_connect_timeout: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    proxy_next_upstream: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    proxy_next_upstream_timeout: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    proxy_next_upstream_tries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    health_check_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    health_check_interval: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    health_check_timeout: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    health_check_rises: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    health_check_falls: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    upstreams: Mapped[list["NLBUpstream"]] = relationship(
        back_populates="nlb", cascade="all, delete-orphan", order_by="NLBUpstream.id"
    )


class NLBUpstream(Base):
    __tablename__ = "nlb_upstreams"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    nlb_id: Mapped[int] = mapped_column(
        ForeignKey("network_load_balancers.id", ondelete="CASCADE"), nullable=False
    )
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    port: Mapped[int] = mapped_column(Integer, nullable=False)
    weight: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_fails: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    fail_timeout: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    max_conns: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    backup: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    down: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    nlb: Mapped[NetworkLoadBalancer] = relationship(back_populates="upstreams")
