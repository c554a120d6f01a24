"""nodesync -- leader/follower configuration sync for a reverse-proxy fleet."""

__version__ = "0.1.0"
