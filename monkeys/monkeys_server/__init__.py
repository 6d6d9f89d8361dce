"""
Infinite Monkeys Server - a live, bounded, append-only character stream.

This package implements a server that types one random keyboard character
per second forever, built on:
- SQLite as the hot store of recent records
- Server-Sent Events for live fan-out to browsers
- gzip JSONL segment files as cold storage for older records

Architecture:
    ┌───────────┐     ┌─────────────┐     ┌───────────────┐     ┌─────────┐
    │ Generator │────▶│ Event Store │────▶│ Broadcast Hub │────▶│ Browser │
    │  (tick)   │     │  (SQLite)   │     │    (SSE)      │     │ clients │
    └───────────┘     └──────┬──────┘     └───────────────┘     └─────────┘
                             │ trigger
                             ▼
                       ┌──────────┐        ┌──────────────────────────┐
                       │ Archiver │───────▶│ archive-<lastId>-<ts>    │
                       └──────────┘        │        .json.gz          │
                                           └──────────────────────────┘

Invariants:
    - Record ids are assigned only by the event store and never reused
    - Archive segments followed by the hot store hold every record exactly
      once, in id order
    - Live subscribers see records in commit order, at most once

How to change safely:
    - Never write to the hot store from outside the generator
    - Run the verify tool after changing archive or store code
"""

from ._version import __version__

__all__ = ["__version__"]
