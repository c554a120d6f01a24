"""Deployment role (leader or follower) and the leader connection."""
