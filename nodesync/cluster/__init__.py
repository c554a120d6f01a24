"""Cluster -- the leader's registry of follower nodes.

The registry provides:
- Registration: name-unique follower identities with a one-time API key
- Contact tracking: status, last-seen and last offered digest per follower
- Liveness: side-effect free health records and stale-node detection
"""
