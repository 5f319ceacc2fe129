"""HTTP API for Fidg."""
