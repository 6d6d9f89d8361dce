"""
HTTP server implementation for the Infinite Monkeys server.

This module exposes the pipeline to browsers:
- GET /events  Server-Sent Events live feed of committed records
- GET /recent  Last `displayLimit` records, oldest first
- GET /config  Client tunables
- GET /health  Liveness probe

Invariants:
    - Each /events connection holds exactly one hub subscription, released
      on every exit path
    - Records are written to a connection in commit order
    - A slow or broken connection never blocks the generator

How to change safely:
    - Keep the SSE payload keys (id, char, ts) stable
    - Keep /config keys stable, browsers read them on startup
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable

from aiohttp import web

from ..broadcast.hub import BroadcastHub
from ..config import HttpConfig
from ..query import QueryFacade
from ..store.event_store import Record, StoreUnavailable

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def format_sse(record: Record) -> bytes:
    """Frame a record as one SSE data event."""
    payload = json.dumps(record.to_dict(), separators=(",", ":"), ensure_ascii=False)
    return f"data: {payload}\n\n".encode()


def create_http_app(
    facade: QueryFacade,
    hub: BroadcastHub,
    config: HttpConfig | None = None,
) -> web.Application:
    """Create the HTTP application.

    Args:
        facade: Read-side query facade
        hub: Broadcast hub for live subscriptions
        config: HTTP server configuration

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()
    app = web.Application()

    app.router.add_get("/events", lambda r: handle_events(r, hub, config.heartbeat_seconds))
    app.router.add_get("/recent", lambda r: handle_recent(r, facade))
    app.router.add_get("/config", lambda r: handle_config(r, facade))
    app.router.add_get("/health", lambda r: handle_health(r, facade))

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"error": str(e), "error_code": "INTERNAL"},
                status=500,
            )

    app.middlewares.append(error_middleware)

    return app


async def handle_events(
    request: web.Request,
    hub: BroadcastHub,
    heartbeat_seconds: float,
) -> web.StreamResponse:
    """Handle GET /events - Live SSE feed."""
    response = web.StreamResponse(headers=SSE_HEADERS)
    await response.prepare(request)

    try:
        await response.write(b": connected\n\n")

        async with hub.subscription() as subscriber:
            while True:
                try:
                    record = await asyncio.wait_for(subscriber.get(), timeout=heartbeat_seconds)
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                    continue

                if record is None:
                    # Dropped by the hub or server shutting down
                    break

                await response.write(format_sse(record))

    except ConnectionResetError:
        logger.debug("Live client disconnected", extra={"remote": request.remote})

    return response


async def handle_recent(request: web.Request, facade: QueryFacade) -> web.Response:
    """Handle GET /recent - Most recent records, oldest first."""
    try:
        rows = await facade.recent()
    except StoreUnavailable as e:
        logger.error(f"Recent query failed: {e}")
        return web.json_response({"error": "store unavailable"}, status=503)
    return web.json_response(rows)


async def handle_config(request: web.Request, facade: QueryFacade) -> web.Response:
    """Handle GET /config - Client tunables."""
    return web.json_response(facade.client_settings())


async def handle_health(request: web.Request, facade: QueryFacade) -> web.Response:
    """Handle GET /health - Liveness probe."""
    return web.json_response(facade.health())


class HttpServer:
    """Runs the HTTP application on a TCP site.

    Example:
        >>> server = HttpServer(app, host="0.0.0.0", port=3000)
        >>> await server.start()
        >>> await server.stop()
    """

    def __init__(self, app: web.Application, host: str = "0.0.0.0", port: int = 3000) -> None:
        self.app = app
        self.host = host
        self.port = port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start serving."""
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        logger.info(f"Server listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop serving and close open connections."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
