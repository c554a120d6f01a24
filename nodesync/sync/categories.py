"""Synchronizable entity categories and their match-by-key strategies.

Each category knows four things:

- how to read its rows (``load``)
- the business key that identifies an entity on every node (``key``)
- how to turn a row into a snapshot entity, without local ids or timestamps
  (``serialize``)
- how to validate an incoming entity and write it to a new or existing row
  (``normalize`` / ``create`` / ``update``)

``serialize(row)`` after ``update(row, entity)`` must equal ``entity`` for a
normalized entity; that equality is what lets a follower's digest converge on
the leader's.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from nodesync.db.models import (
    AclRule,
    Domain,
    LoadBalancerConfig,
    ModSecCRSRule,
    ModSecRule,
    NetworkLoadBalancer,
    NLBUpstream,
    SSLCertificate,
    Upstream,
    User,
)
from nodesync.errors import ValidationError

logger = logging.getLogger(__name__)

REQUIRED = object()


@dataclass(frozen=True)
class FieldSpec:
    """One scalar attribute of an entity: column name, kind and default."""

    name: str
    kind: str  # str | opt_str | int | bool | str_list | datetime
    default: Any = REQUIRED


# ---------------------------------------------------------------------------
# Value conversion
# ---------------------------------------------------------------------------


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _to_snapshot(kind: str, value: Any) -> Any:
    if kind == "datetime":
        return to_naive_utc(value).isoformat() if value is not None else None
    if kind == "str_list":
        return list(value or [])
    return value


def _from_snapshot(kind: str, value: Any) -> Any:
    if kind == "datetime":
        return datetime.fromisoformat(value)
    if kind == "str_list":
        return list(value)
    return value


def _check(spec: FieldSpec, data: dict, where: str) -> Any:
    if spec.name in data:
        value = data[spec.name]
    elif spec.default is REQUIRED:
        raise ValidationError(f"{where}: missing field '{spec.name}'")
    else:
        return spec.default() if callable(spec.default) else spec.default

    kind = spec.kind
    ok = True
    if kind == "str":
        ok = isinstance(value, str)
    elif kind == "opt_str":
        ok = value is None or isinstance(value, str)
    elif kind == "int":
        ok = isinstance(value, int) and not isinstance(value, bool)
    elif kind == "bool":
        ok = isinstance(value, bool)
    elif kind == "str_list":
        ok = isinstance(value, list) and all(isinstance(v, str) for v in value)
    elif kind == "datetime":
        if not isinstance(value, str):
            ok = False
        else:
            try:
                value = to_naive_utc(datetime.fromisoformat(value)).isoformat()
            except ValueError:
                ok = False

    if not ok:
        raise ValidationError(f"{where}: field '{spec.name}' must be {kind}", details=repr(value))
    return value


def _serialize_fields(obj: Any, specs: tuple[FieldSpec, ...]) -> dict:
    return {s.name: _to_snapshot(s.kind, getattr(obj, s.name)) for s in specs}


def _normalize_fields(data: Any, specs: tuple[FieldSpec, ...], where: str) -> dict:
    if not isinstance(data, dict):
        raise ValidationError(f"{where}: expected an object", details=type(data).__name__)
    return {s.name: _check(s, data, where) for s in specs}


def _assign_fields(obj: Any, data: dict, specs: tuple[FieldSpec, ...]) -> None:
    for s in specs:
        setattr(obj, s.name, _from_snapshot(s.kind, data[s.name]))


def canonical_sort_key(item: dict) -> str:
    """Total order over child records that have no business key of their own."""
    return json.dumps(item, sort_keys=True, separators=(",", ":"))


def _normalize_children(items: Any, specs: tuple[FieldSpec, ...], where: str) -> list[dict]:
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValidationError(f"{where}: expected a list")
    return sorted((_normalize_fields(i, specs, where) for i in items), key=canonical_sort_key)


# ---------------------------------------------------------------------------
# Base strategy
# ---------------------------------------------------------------------------


class CategoryStrategy:
    """Match-by-key strategy for a flat entity category."""

    name: str = ""
    model: type = None
    key: str = ""
    fields: tuple[FieldSpec, ...] = ()

    def load(self, session: Session) -> list:
        return list(session.execute(select(self.model)).scalars())

    def row_key(self, row) -> str:
        return getattr(row, self.key)

    def serialize(self, row) -> dict:
        data = {self.key: self.row_key(row)}
        data.update(_serialize_fields(row, self.fields))
        return data

    def normalize(self, data: Any) -> dict:
        where = f"{self.name} entry"
        if not isinstance(data, dict):
            raise ValidationError(f"{where}: expected an object", details=type(data).__name__)
        key_value = _check(FieldSpec(self.key, "str"), data, where)
        if not key_value:
            raise ValidationError(f"{where}: '{self.key}' must not be empty")
        out = {self.key: key_value}
        out.update(_normalize_fields(data, self.fields, f"{self.name}[{key_value}]"))
        return out

    def create(self, session: Session, data: dict) -> Optional[Any]:
        """Insert a new row for ``data``. ``None`` means the entity was skipped."""
        row = self.model(**{self.key: data[self.key]})
        self.assign(session, row, data)
        session.add(row)
        return row

    def update(self, session: Session, row, data: dict) -> None:
        self.assign(session, row, data)

    def assign(self, session: Session, row, data: dict) -> None:
        _assign_fields(row, data, self.fields)


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

UPSTREAM_FIELDS = (
    FieldSpec("host", "str"),
    FieldSpec("port", "int"),
    FieldSpec("protocol", "str", "http"),
    FieldSpec("ssl_verify", "bool", True),
    FieldSpec("weight", "int", 1),
    FieldSpec("max_fails", "int", 3),
    FieldSpec("fail_timeout", "int", 10),
)

LOAD_BALANCER_FIELDS = (
    FieldSpec("algorithm", "str", "round_robin"),
    FieldSpec("health_check_enabled", "bool", True),
    FieldSpec("health_check_path", "opt_str", None),
    FieldSpec("health_check_interval", "int", 30),
    FieldSpec("health_check_timeout", "int", 5),
)


class DomainStrategy(CategoryStrategy):
    """Proxied domains with their backends and load-balancing policy."""

    name = "domains"
    model = Domain
    key = "name"
    fields = (
        FieldSpec("status", "str", "active"),
        FieldSpec("ssl_enabled", "bool", False),
        FieldSpec("modsec_enabled", "bool", True),
    )

    def serialize(self, row: Domain) -> dict:
        data = super().serialize(row)
        data["upstreams"] = sorted(
            (_serialize_fields(u, UPSTREAM_FIELDS) for u in row.upstreams),
            key=canonical_sort_key,
        )
        lb = row.load_balancer
        data["load_balancer"] = _serialize_fields(lb, LOAD_BALANCER_FIELDS) if lb else None
        return data

    def normalize(self, data: Any) -> dict:
        out = super().normalize(data)
        where = f"domains[{out['name']}]"
        out["upstreams"] = _normalize_children(data.get("upstreams"), UPSTREAM_FIELDS, f"{where}.upstreams")
        lb = data.get("load_balancer")
        out["load_balancer"] = (
            _normalize_fields(lb, LOAD_BALANCER_FIELDS, f"{where}.load_balancer") if lb is not None else None
        )
        return out

    def assign(self, session: Session, row: Domain, data: dict) -> None:
        super().assign(session, row, data)

        # The backend set is part of the domain's value: replace it wholesale.
        row.upstreams = [
            Upstream(**{s.name: u[s.name] for s in UPSTREAM_FIELDS}) for u in data["upstreams"]
        ]

        lb_data = data["load_balancer"]
        if lb_data is None:
            row.load_balancer = None
        else:
            if row.load_balancer is None:
                row.load_balancer = LoadBalancerConfig()
            _assign_fields(row.load_balancer, lb_data, LOAD_BALANCER_FIELDS)


class SSLCertificateStrategy(CategoryStrategy):
    """TLS material, keyed by the domain it belongs to."""

    name = "ssl_certificates"
    model = SSLCertificate
    key = "domain_name"
    fields = (
        FieldSpec("common_name", "str"),
        FieldSpec("sans", "str_list", list),
        FieldSpec("issuer", "str", ""),
        FieldSpec("certificate", "str"),
        FieldSpec("private_key", "str"),
        FieldSpec("chain", "opt_str", None),
        FieldSpec("auto_renew", "bool", False),
        FieldSpec("valid_from", "datetime"),
        FieldSpec("valid_to", "datetime"),
    )

    def load(self, session: Session) -> list:
        return list(session.execute(select(SSLCertificate).join(SSLCertificate.domain)).scalars())

    def row_key(self, row: SSLCertificate) -> str:
        return row.domain.name

    def create(self, session: Session, data: dict) -> Optional[SSLCertificate]:
        domain = session.execute(
            select(Domain).where(Domain.name == data["domain_name"])
        ).scalar_one_or_none()
        if domain is None:
            logger.warning("Skipping certificate for unknown domain %s", data["domain_name"])
            return None
        row = SSLCertificate(domain=domain)
        self.assign(session, row, data)
        session.add(row)
        return row


class ModSecCRSRuleStrategy(CategoryStrategy):
    """Vendor WAF rule sets."""

    name = "modsec_crs_rules"
    model = ModSecCRSRule
    key = "rule_file"
    fields = (
        FieldSpec("name", "str"),
        FieldSpec("category", "str"),
        FieldSpec("description", "str", ""),
        FieldSpec("enabled", "bool", True),
        FieldSpec("paranoia", "int", 1),
    )


class ModSecCustomRuleStrategy(CategoryStrategy):
    """Operator-written WAF rules."""

    name = "modsec_custom_rules"
    model = ModSecRule
    key = "name"
    fields = (
        FieldSpec("category", "str"),
        FieldSpec("rule_content", "str"),
        FieldSpec("description", "opt_str", None),
        FieldSpec("enabled", "bool", True),
    )


class AclRuleStrategy(CategoryStrategy):
    name = "acl_rules"
    model = AclRule
    key = "name"
    fields = (
        FieldSpec("type", "str"),
        FieldSpec("condition_field", "str"),
        FieldSpec("condition_operator", "str"),
        FieldSpec("condition_value", "str"),
        FieldSpec("action", "str"),
        FieldSpec("enabled", "bool", True),
    )


class UserStrategy(CategoryStrategy):
    """Dashboard accounts. Passwords travel as the hashes already stored."""

    name = "users"
    model = User
    key = "username"
    fields = (
        FieldSpec("email", "str"),
        FieldSpec("full_name", "str", ""),
        FieldSpec("password", "str"),
        FieldSpec("role", "str", "viewer"),
    )


NLB_UPSTREAM_FIELDS = (
    FieldSpec("host", "str"),
    FieldSpec("port", "int"),
    FieldSpec("weight", "int", 1),
    FieldSpec("max_fails", "int", 3),
    FieldSpec("fail_timeout", "int", 10),
    FieldSpec("max_conns", "int", 0),
    FieldSpec("backup", "bool", False),
    FieldSpec("down", "bool", False),
)


class NetworkLoadBalancerStrategy(CategoryStrategy):
    """Layer-4 load balancers with their upstream pools."""

    name = "network_load_balancers"
    model = NetworkLoadBalancer
    key = "name"
    fields = (
        FieldSpec("description", "opt_str", None),
        FieldSpec("port", "int"),
        FieldSpec("protocol", "str", "tcp"),
        FieldSpec("algorithm", "str", "round_robin"),
        FieldSpec("enabled", "bool", True),
        FieldSpec("proxy_timeout", "int", 3),
        FieldSpec("proxy_connect_timeout", "int", 1),
        FieldSpec("proxy_next_upstream", "bool", True),
        FieldSpec("proxy_next_upstream_timeout", "int", 0),
        FieldSpec("proxy_next_upstream_tries", "int", 0),
        FieldSpec("health_check_enabled", "bool", True),
        FieldSpec("health_check_interval", "int", 10),
        FieldSpec("health_check_timeout", "int", 5),
        FieldSpec("health_check_rises", "int", 2),
        FieldSpec("health_check_falls", "int", 3),
    )

    def serialize(self, row: NetworkLoadBalancer) -> dict:
        data = super().serialize(row)
        data["upstreams"] = sorted(
            (_serialize_fields(u, NLB_UPSTREAM_FIELDS) for u in row.upstreams),
            key=canonical_sort_key,
        )
        return data

    def normalize(self, data: Any) -> dict:
        out = super().normalize(data)
        out["upstreams"] = _normalize_children(
            data.get("upstreams"), NLB_UPSTREAM_FIELDS, f"network_load_balancers[{out['name']}].upstreams"
        )
        return out

    def assign(self, session: Session, row: NetworkLoadBalancer, data: dict) -> None:
        super().assign(session, row, data)
        row.upstreams = [
            NLBUpstream(**{s.name: u[s.name] for s in NLB_UPSTREAM_FIELDS}) for u in data["upstreams"]
        ]


# Application order matters: certificates resolve their domain by name.
CATEGORIES: tuple[CategoryStrategy, ...] = (
    DomainStrategy(),
    SSLCertificateStrategy(),
    ModSecCRSRuleStrategy(),
    ModSecCustomRuleStrategy(),
    AclRuleStrategy(),
    UserStrategy(),
    NetworkLoadBalancerStrategy(),
)

CATEGORY_NAMES = tuple(c.name for c in CATEGORIES)


def get_category(name: str) -> CategoryStrategy:
    for category in CATEGORIES:
        if category.name == name:
            return category
    raise KeyError(name)
