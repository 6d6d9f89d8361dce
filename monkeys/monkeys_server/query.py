"""
Read-side facade used by the HTTP layer.

Answers the questions a connecting client asks before it subscribes:
which tunables to use, and what the last `display_limit` characters were.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .store.event_store import EventStore

if TYPE_CHECKING:
    from .archive.archiver import Archiver
    from .broadcast.hub import BroadcastHub
    from .generator import Generator


class QueryFacade:
    """Thin read API over the event store and component stats."""

    def __init__(
        self,
        store: EventStore,
        settings: dict[str, Any],
        hub: BroadcastHub | None = None,
        generator: Generator | None = None,
        archiver: Archiver | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hub = hub
        self.generator = generator
        self.archiver = archiver

    @property
    def display_limit(self) -> int:
        return self.settings["displayLimit"]

    async def recent(self) -> list[dict[str, Any]]:
        """Most recent records, oldest first.

        Raises:
            StoreUnavailable: If the store cannot be read
        """
        records = await self.store.recent(self.display_limit)
        return [record.to_dict() for record in records]

    def client_settings(self) -> dict[str, Any]:
        return dict(self.settings)

    def health(self) -> dict[str, Any]:
        result: dict[str, Any] = {"ok": True}
        if self.hub is not None:
            result["broadcast"] = self.hub.stats
        if self.generator is not None:
            result["generator"] = self.generator.stats
        if self.archiver is not None:
            result["archiver"] = self.archiver.stats
        return result
