"""Integration tests: SQLite-backed runs and the CLI end to end."""
