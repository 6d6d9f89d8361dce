"""
Character generator for the Infinite Monkeys server.

The Generator is the only writer to the event store. Once per tick it
picks a random keyboard character, commits it, and hands the committed
record to the broadcast hub.

Invariants:
    - Exactly one append per tick, never retried within the tick
    - A record is broadcast only after it is committed
    - A failed append skips the tick; it never stops the loop

How to change safely:
    - Keep the alphabet free of CR, LF and TAB
    - Do not add awaits between append and publish that could reorder records
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

from .broadcast.hub import BroadcastHub
from .store.event_store import EventStore, Record, StoreUnavailable, now_ms

logger = logging.getLogger(__name__)

# Printable US keyboard characters; no CR/LF/TAB
KEYBOARD = (
    "abcdefghijklmnopqrstuvwxyz"
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    "0123456789"
    "`~!@#$%^&*()-_=+[{]}\\|;:'\",<.>/? "
)


class Generator:
    """Produces one character event per fixed tick.

    Attributes:
        store: Event store to append to
        hub: Broadcast hub receiving committed records
        interval_ms: Tick period in milliseconds
        alphabet: Characters to choose from

    Example:
        >>> generator = Generator(store, hub, interval_ms=1000)
        >>> await generator.start()  # Runs until stopped
    """

    def __init__(
        self,
        store: EventStore,
        hub: BroadcastHub,
        interval_ms: int = 1000,
        alphabet: str = KEYBOARD,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the generator.

        Args:
            store: Event store to append to
            hub: Broadcast hub receiving committed records
            interval_ms: Tick period in milliseconds
            alphabet: Characters to choose from
            rng: Random source (module-level random if not provided)
        """
        if not alphabet:
            raise ValueError("Generator alphabet must not be empty")

        self.store = store
        self.hub = hub
        self.interval_ms = interval_ms
        self.alphabet = alphabet
        self.rng = rng or random.Random()

        self._running = False
        self._ticks = 0
        self._committed = 0
        self._failed = 0

    def random_char(self) -> str:
        return self.rng.choice(self.alphabet)

    async def tick(self) -> Record | None:
        """Generate, commit and broadcast one character.

        Returns:
            The committed record, or None if the store rejected the append
        """
        self._ticks += 1

        try:
            record = await self.store.append(self.random_char(), now_ms())
        except StoreUnavailable as e:
            self._failed += 1
            logger.warning(f"Skipping tick, append failed: {e}")
            return None

        self._committed += 1
        self.hub.publish(record)
        return record

    async def start(self) -> None:
        """Start the generation loop."""
        if self._running:
            logger.warning("Generator already running")
            return

        self._running = True
        logger.info("Starting generator", extra={"interval_ms": self.interval_ms})

        loop = asyncio.get_running_loop()
        interval = self.interval_ms / 1000.0
        next_fire = loop.time() + interval

        try:
            while self._running:
                await asyncio.sleep(max(0.0, next_fire - loop.time()))
                if not self._running:
                    break

                await self.tick()

                next_fire += interval
                now = loop.time()
                if next_fire < now:
                    # Fell behind (slow storage); skip missed ticks rather than bursting
                    missed = int((now - next_fire) // interval) + 1
                    next_fire += missed * interval

        except asyncio.CancelledError:
            logger.info("Generator cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the generation loop."""
        self._running = False
        logger.info("Stopping generator")

    @property
    def stats(self) -> dict[str, Any]:
        """Get generator statistics."""
        return {
            "running": self._running,
            "ticks": self._ticks,
            "committed": self._committed,
            "failed": self._failed,
        }
