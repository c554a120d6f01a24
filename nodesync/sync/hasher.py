"""Content digests of snapshots.

The digest is SHA-256 over canonical JSON: sorted object keys, compact
separators, UTF-8. List order is preserved, so determinism relies on the
snapshot builder's sorting. A digest is a change detector, not a credential.
"""

from __future__ import annotations

import hashlib
import json
from typing import Union

from nodesync.sync.snapshot import Snapshot


def canonical_json(snapshot: Union[Snapshot, dict]) -> bytes:
    data = snapshot.to_dict() if isinstance(snapshot, Snapshot) else snapshot
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def digest(snapshot: Union[Snapshot, dict]) -> str:
    """Hex SHA-256 of the canonical serialization of ``snapshot``."""
    return hashlib.sha256(canonical_json(snapshot)).hexdigest()
