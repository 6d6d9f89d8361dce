"""
API module for the Infinite Monkeys server.

This module provides the external HTTP interface: the SSE live feed and
the small JSON endpoints browsers call on startup.

Invariants:
    - Reads come from the hot store via the query facade
    - Live records come only from the broadcast hub
"""

from .http_server import HttpServer, create_http_app

__all__ = [
    "HttpServer",
    "create_http_app",
]
