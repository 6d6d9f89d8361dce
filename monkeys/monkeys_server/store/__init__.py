"""
Storage module for the Infinite Monkeys server.

The hot store keeps the most recent records in SQLite. Older records are
moved to archive segments by the archive module.

Invariants:
    - The store is the only allocator of record ids
    - Every acknowledged append is durable
"""

from .event_store import EventStore, Record, StoreUnavailable, sanitize_char

__all__ = ["EventStore", "Record", "StoreUnavailable", "sanitize_char"]
