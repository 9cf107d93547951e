"""HTTP API for serve mode."""
