"""Credential store for follower API keys.

Keys are opaque 256-bit random tokens. Only their SHA-256 hash (plus an
8-character prefix for display) is stored, so a key can be shown exactly once
at issue time and never again. Lookup hashes the presented key and does an
indexed exact match on the hash column; the raw key is never compared
character by character against stored secrets.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from nodesync.cluster.models import NodeIdentity
from nodesync.db.database import Database
from nodesync.db.models import SlaveNode
from nodesync.errors import AuthError, SyncDisabledError
from nodesync.logging_setup import key_prefix

logger = logging.getLogger(__name__)

KEY_BYTES = 32
PREFIX_LENGTH = 8


@dataclass
class IssuedCredential:
    """A freshly minted key. ``raw_key`` must be handed out once and dropped."""

    raw_key: str
    key_hash: str
    prefix: str


class CredentialStore:
    """Issues and resolves per-node API keys."""

    def __init__(self, database: Database) -> None:
        self._db = database

    @staticmethod
    def hash_key(raw_key: str) -> str:
        return hashlib.sha256(raw_key.encode()).hexdigest()

    def issue(self, node_name: str) -> IssuedCredential:
        """Mint a new key for ``node_name``. Nothing is persisted here."""
        raw_key = secrets.token_hex(KEY_BYTES)
        logger.debug("Issued API key %s for node %s", key_prefix(raw_key), node_name)
        return IssuedCredential(
            raw_key=raw_key,
            key_hash=self.hash_key(raw_key),
            prefix=raw_key[:PREFIX_LENGTH],
        )

    def resolve(self, raw_key: Optional[str], session: Optional[Session] = None) -> NodeIdentity:
        """Return the identity owning ``raw_key``.

        Raises ``AuthError`` for a missing or unknown key and
        ``SyncDisabledError`` for a valid key whose node has sync disabled.
        Never writes.
        """
        if not raw_key:
            raise AuthError("API key required")

        key_hash = self.hash_key(raw_key)
        if session is not None:
            row = _find_by_hash(session, key_hash)
            identity = NodeIdentity.from_row(row) if row is not None else None
        else:
            with self._db.read_scope() as s:
                row = _find_by_hash(s, key_hash)
                identity = NodeIdentity.from_row(row) if row is not None else None

        if identity is None:
            logger.warning("Invalid node API key attempt: %s", key_prefix(raw_key))
            raise AuthError("Invalid API key")

        if not identity.sync_enabled:
            logger.info("Rejected node %s: sync disabled", identity.name)
            raise SyncDisabledError("Node sync is disabled", details=identity.name)

        return identity


def _find_by_hash(session: Session, key_hash: str) -> Optional[SlaveNode]:
    return session.execute(
        select(SlaveNode).where(SlaveNode.api_key_hash == key_hash)
    ).scalar_one_or_none()
