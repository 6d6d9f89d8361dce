"""
Integration tests for the full generate -> store -> broadcast -> archive flow.

Tests cover:
- Generator and archiver running together keep history continuous
- Live subscribers see every committed id in order
- Server start and graceful shutdown
"""

import asyncio
import tempfile
from pathlib import Path

import pytest

from monkeys.monkeys_server.archive.archiver import (
    Archiver,
    ArchiveTrigger,
    list_archive_segments,
)
from monkeys.monkeys_server.broadcast.hub import BroadcastHub
from monkeys.monkeys_server.config import (
    ArchiverConfig,
    GeneratorConfig,
    HttpConfig,
    ServerConfig,
    StorageConfig,
)
from monkeys.monkeys_server.generator import Generator
from monkeys.monkeys_server.main import Server
from monkeys.monkeys_server.store.event_store import EventStore
from monkeys.monkeys_server.tools.verify import VerifyTool


class TestPipeline:
    """Generator and archiver running concurrently."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.mark.asyncio
    async def test_history_continuous_under_compaction(self, data_dir):
        """Archive plus hot store holds every committed id exactly once."""
        trigger = ArchiveTrigger()
        store = EventStore(data_dir / "monkeys.db", archive_trigger=trigger)
        await store.initialize()
        hub = BroadcastHub()
        subscriber = hub.subscribe()
        generator = Generator(store, hub, interval_ms=5)
        archiver = Archiver(store, data_dir / "archive", max_keep=5, trigger=trigger)

        archiver_task = asyncio.create_task(archiver.start())
        generator_task = asyncio.create_task(generator.start())
        await asyncio.sleep(0.3)

        await generator.stop()
        await asyncio.wait_for(generator_task, timeout=2)
        await archiver.stop()
        await asyncio.wait_for(archiver_task, timeout=5)
        await archiver.compact()

        committed = generator.stats["committed"]
        assert committed > 5
        assert list_archive_segments(data_dir / "archive")

        count, min_id, max_id = await store.count_and_range()
        assert count == 5
        assert max_id == committed

        result = await VerifyTool(data_dir / "monkeys.db", data_dir / "archive").verify()
        assert result.continuous
        assert result.pending_reconcile == 0
        assert result.total_records == committed
        assert (result.first_id, result.last_id) == (1, committed)

        received = []
        while subscriber.pending:
            received.append((await subscriber.get()).id)
        assert received == list(range(1, committed + 1))


class TestServer:
    """Server lifecycle."""

    @pytest.fixture
    def data_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    def make_config(self, data_dir, **generator):
        return ServerConfig(
            storage=StorageConfig(data_dir=data_dir, wal_mode=False),
            generator=GeneratorConfig(**generator),
            archiver=ArchiverConfig(max_keep=3),
            http=HttpConfig(host="127.0.0.1", port=0),
        )

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, data_dir):
        """The server runs until shutdown is requested and stops cleanly."""
        server = Server(self.make_config(data_dir, interval_ms=10))

        task = asyncio.create_task(server.start())
        for _ in range(500):
            if server.generator.stats["committed"] >= 5:
                break
            await asyncio.sleep(0.01)

        server.request_shutdown()
        await asyncio.wait_for(task, timeout=5)
        await server.stop()

        assert not server.generator.stats["running"]
        assert server.generator.stats["committed"] >= 5
        assert server.archiver.stats["passes"] >= 1

        result = await VerifyTool(
            server.config.storage.db_path, server.config.storage.archive_path
        ).verify()
        assert result.continuous
        assert result.total_records == server.generator.stats["committed"]

    @pytest.mark.asyncio
    async def test_generator_disabled(self, data_dir):
        server = Server(self.make_config(data_dir, enabled=False))

        task = asyncio.create_task(server.start())
        await asyncio.sleep(0.05)
        server.request_shutdown()
        await asyncio.wait_for(task, timeout=5)
        await server.stop()

        count, _, _ = await server.store.count_and_range()
        assert count == 0
