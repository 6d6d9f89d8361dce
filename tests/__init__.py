"""
Infinite Monkeys Test Suite.

This package contains:
- unit/: Unit tests (temporary SQLite files, no network)
- integration/: Integration tests (HTTP app, generator and archiver together)
"""
