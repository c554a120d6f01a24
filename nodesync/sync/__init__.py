"""Node sync -- content-addressed snapshots and pull-based reconciliation.

This package provides:
- Snapshots: deterministic, identifier-free views of all synchronizable config
- Digests: SHA-256 over the canonical snapshot, the sole change signal
- Reconciliation: additive, match-by-business-key import on followers
- Export/import: the leader and follower halves of the pull protocol
"""
