"""Authentication -- per-node API key issue and lookup."""
