"""
GrantDB Test Suite.

This package contains:
- unit/: Unit tests (in-memory store, no filesystem)
- integration/: Integration tests (SQLite store, service wiring, CLI)
"""
