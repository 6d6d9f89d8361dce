"""
Hot store archiver for the Infinite Monkeys server.

The Archiver keeps the hot store bounded to `max_keep` rows by moving the
oldest excess rows into compressed segment files. This provides:
- A bounded SQLite database regardless of uptime
- A complete, ordered history of every generated character on disk

Archive format:
    <archive_dir>/archive-<lastId>-<createdAtMs>.json.gz

Each line in the archive is a JSON object:
    {"id": 1, "char": "a", "ts": 1700000000000}

Invariants:
    - Archives are append-only and immutable
    - A segment is complete once it has its final name; it is written under
      a ".partial" name, fsynced, then renamed
    - Hot rows are deleted only after their segment is complete
    - At most one compaction pass runs at a time
    - A failed delete is retried on the next pass (delete by id range is
      idempotent), so each record ends up archived exactly once
    - Leftover hot rows are deleted only after they are matched, row by row,
      against the newest segment; a mismatch halts compaction instead

How to change safely:
    - Archive format changes require a new filename pattern
    - Never modify existing archive files
    - Run the verify tool against a copy of production data before changes
"""

from __future__ import annotations

import asyncio
import gzip
import json
import logging
import os
import re
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from ..store.event_store import EventStore, Record, StoreUnavailable, now_ms

logger = logging.getLogger(__name__)

SEGMENT_PATTERN = re.compile(r"^archive-(\d+)-(\d+)\.json\.gz$")
PARTIAL_SUFFIX = ".partial"


class ArchiverError(Exception):
    """Base exception for archive operations."""

    pass


class ArchiveWriteFailed(ArchiverError):
    """Segment could not be fully written; hot store left untouched."""

    pass


class ArchiveDeleteFailed(ArchiverError):
    """Segment written but archived hot rows could not be deleted."""

    pass


class ArchiveInconsistent(ArchiverError):
    """Hot rows overlap a segment that does not hold them."""

    pass


class ArchiverState(Enum):
    """Phase of the current compaction pass."""

    IDLE = "idle"
    DRAINING = "draining"
    WRITING = "writing"
    DELETING = "deleting"


class CompactionStatus(Enum):
    """Outcome of a compaction pass."""

    NOOP = "noop"
    BUSY = "busy"
    ARCHIVED = "archived"
    STORE_UNAVAILABLE = "store_unavailable"
    WRITE_FAILED = "write_failed"
    DELETE_FAILED = "delete_failed"
    INCONSISTENT = "inconsistent"


@dataclass
class ArchiveSegment:
    """Represents an archive segment file.

    Attributes:
        last_id: Highest record id in segment
        created_at: Creation timestamp (Unix ms) from the filename
        path: Segment file path
        size_bytes: Compressed size in bytes
        first_id: Lowest record id (None when only the filename was read)
        record_count: Number of records (None when only the filename was read)
    """

    last_id: int
    created_at: int
    path: Path
    size_bytes: int
    first_id: int | None = None
    record_count: int | None = None


@dataclass
class CompactionResult:
    """Result of a single compaction pass.

    Attributes:
        status: What the pass did
        segment: Segment written during the pass, if any
        reconciled: Hot rows removed because an earlier segment already held them
        error: Failure reported by the pass, if any
    """

    status: CompactionStatus
    segment: ArchiveSegment | None = None
    reconciled: int = 0
    error: Exception | None = None


class ArchiveTrigger:
    """Coalescing compaction request from the append path to the Archiver.

    submit() never blocks. Any number of submissions made while the
    archiver is busy collapse into a single pending request.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.submitted = 0

    @property
    def pending(self) -> bool:
        return self._event.is_set()

    def submit(self) -> None:
        self.submitted += 1
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()
        self._event.clear()


def segment_filename(last_id: int, created_at: int) -> str:
    """Build the file name for a segment ending at last_id."""
    return f"archive-{last_id}-{created_at}.json.gz"


def encode_record(record: Record) -> str:
    """Serialize one record as a JSON line."""
    return json.dumps(record.to_dict(), separators=(",", ":"), ensure_ascii=False) + "\n"


def _fsync_dir(directory: Path) -> None:
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def write_segment(path: Path, records: Iterable[Record]) -> int:
    """Write records to a gzip JSONL segment and publish it atomically.

    The data is written to `<path>.partial`, flushed and fsynced, then
    renamed to `path`. On failure the partial file is removed and the
    error propagates.

    Args:
        path: Final segment path
        records: Records in ascending id order

    Returns:
        Compressed size in bytes
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    partial = path.with_name(path.name + PARTIAL_SUFFIX)

    try:
        with open(partial, "wb") as raw:
            with gzip.GzipFile(fileobj=raw, mode="wb") as gz:
                for record in records:
                    gz.write(encode_record(record).encode("utf-8"))
            raw.flush()
            os.fsync(raw.fileno())
        os.replace(partial, path)
    except Exception:
        partial.unlink(missing_ok=True)
        raise

    _fsync_dir(path.parent)
    return path.stat().st_size


def read_segment(path: Path) -> Iterator[Record]:
    """Yield the records stored in a segment, in file order."""
    with gzip.open(path, "rt", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            yield Record.from_dict(json.loads(line))


def list_archive_segments(archive_dir: str | Path) -> list[ArchiveSegment]:
    """List completed archive segments.

    Partial files and files not matching the segment pattern are ignored.

    Args:
        archive_dir: Directory holding segments

    Returns:
        Segments sorted by last id
    """
    archive_dir = Path(archive_dir)
    if not archive_dir.is_dir():
        return []

    segments = []
    for entry in archive_dir.iterdir():
        match = SEGMENT_PATTERN.match(entry.name)
        if not match or not entry.is_file():
            continue
        segments.append(
            ArchiveSegment(
                last_id=int(match.group(1)),
                created_at=int(match.group(2)),
                path=entry,
                size_bytes=entry.stat().st_size,
            )
        )

    return sorted(segments, key=lambda s: (s.last_id, s.created_at))


def index_segment(path: Path) -> dict[int, Record]:
    """Load a segment keyed by record id."""
    return {record.id: record for record in read_segment(path)}


class Archiver:
    """Moves the oldest hot-store rows into archive segments.

    The Archiver runs as a background loop that:
    1. Waits for a compaction request from the ArchiveTrigger
    2. Runs one compaction pass (skipped if one is already running)
    3. Logs and contains every failure so the loop keeps running

    Attributes:
        store: Event store to drain
        archive_dir: Directory for segment files
        max_keep: Maximum rows kept in the hot store
        trigger: Compaction request channel

    Example:
        >>> archiver = Archiver(store, "/var/lib/monkeys/archive", max_keep=1_000_000)
        >>> store.archive_trigger = archiver.trigger
        >>> await archiver.start()  # Runs until stopped
    """

    def __init__(
        self,
        store: EventStore,
        archive_dir: str | Path,
        max_keep: int,
        trigger: ArchiveTrigger | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """Initialize the archiver.

        Args:
            store: Event store to drain
            archive_dir: Directory for segment files
            max_keep: Maximum rows kept in the hot store
            trigger: Compaction request channel (created if not provided)
            clock: Source of segment creation timestamps (Unix ms)
        """
        self.store = store
        self.archive_dir = Path(archive_dir)
        self.max_keep = max_keep
        self.trigger = trigger or ArchiveTrigger()
        self.clock = clock

        self._running = False
        self._compacting = False
        self._state = ArchiverState.IDLE
        # Newest completed segment; None until first looked up on disk
        self._last_segment: ArchiveSegment | None = None
        self._segment_scanned = False
        self._last_segment_records: dict[int, Record] | None = None
        self._passes = 0
        self._archived_count = 0
        self._last_error: str | None = None

    @property
    def state(self) -> ArchiverState:
        return self._state

    @property
    def compacting(self) -> bool:
        return self._compacting

    async def start(self) -> None:
        """Start the archiver loop."""
        if self._running:
            logger.warning("Archiver already running")
            return

        self._running = True
        logger.info(
            "Starting archiver",
            extra={"archive_dir": str(self.archive_dir), "max_keep": self.max_keep},
        )

        try:
            while self._running:
                await self.trigger.wait()
                if not self._running:
                    break

                try:
                    await self.compact()
                except Exception as e:
                    logger.error(f"Unexpected archiver error: {e}", exc_info=True)

        except asyncio.CancelledError:
            logger.info("Archiver cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the archiver loop."""
        self._running = False
        # Wake the loop so it can observe the flag
        self.trigger.submit()
        logger.info("Stopping archiver")

    async def compact(self) -> CompactionResult:
        """Run one compaction pass.

        Returns immediately with status BUSY if a pass is already running.

        Returns:
            CompactionResult describing what the pass did
        """
        if self._compacting:
            logger.debug("Compaction already running, request ignored")
            return CompactionResult(status=CompactionStatus.BUSY)

        self._compacting = True
        try:
            result = await self._compact()
            self._passes += 1
            if result.error is not None:
                self._last_error = str(result.error)
            return result
        finally:
            self._state = ArchiverState.IDLE
            self._compacting = False

    async def _compact(self) -> CompactionResult:
        self._state = ArchiverState.DRAINING

        try:
            reconciled = await self._reconcile()
        except StoreUnavailable as e:
            logger.error(f"Cannot read hot store for reconciliation: {e}")
            return CompactionResult(status=CompactionStatus.STORE_UNAVAILABLE, error=e)
        except ArchiveDeleteFailed as e:
            logger.error(
                "Archived rows still present in hot store",
                extra={"archived_through": self.archived_through},
            )
            return CompactionResult(status=CompactionStatus.DELETE_FAILED, error=e)
        except ArchiveInconsistent as e:
            # Nothing is deleted or written until an operator resolves it
            logger.error(
                f"Hot store does not match archive, compaction halted: {e}",
                extra={"archived_through": self.archived_through},
            )
            return CompactionResult(status=CompactionStatus.INCONSISTENT, error=e)

        try:
            count, _, _ = await self.store.count_and_range()
            if count <= self.max_keep:
                return CompactionResult(status=CompactionStatus.NOOP, reconciled=reconciled)

            num_to_archive = count - self.max_keep
            records = await self.store.oldest(num_to_archive)
        except StoreUnavailable as e:
            logger.error(f"Cannot read hot store for archiving: {e}")
            return CompactionResult(
                status=CompactionStatus.STORE_UNAVAILABLE, reconciled=reconciled, error=e
            )

        if not records:
            return CompactionResult(status=CompactionStatus.NOOP, reconciled=reconciled)

        self._state = ArchiverState.WRITING
        last_id = records[-1].id
        created_at = self.clock()
        path = self.archive_dir / segment_filename(last_id, created_at)

        loop = asyncio.get_running_loop()
        try:
            size_bytes = await loop.run_in_executor(None, write_segment, path, records)
        except Exception as e:
            error = ArchiveWriteFailed(f"Failed to write {path.name}: {e}")
            logger.error(f"Archive file write error: {e}", exc_info=True)
            return CompactionResult(
                status=CompactionStatus.WRITE_FAILED, reconciled=reconciled, error=error
            )

        segment = ArchiveSegment(
            last_id=last_id,
            created_at=created_at,
            path=path,
            size_bytes=size_bytes,
            first_id=records[0].id,
            record_count=len(records),
        )
        self._last_segment = segment
        self._segment_scanned = True
        self._last_segment_records = None

        self._state = ArchiverState.DELETING
        try:
            await self.store.delete_up_to(last_id)
        except StoreUnavailable as e:
            # The segment is durable, so its rows count as archived
            self._archived_count += len(records)
            error = ArchiveDeleteFailed(f"Segment {path.name} written but hot rows kept: {e}")
            logger.error(
                "Failed to delete archived rows, will reconcile on next pass",
                extra={"segment": path.name, "last_id": last_id},
            )
            return CompactionResult(
                status=CompactionStatus.DELETE_FAILED,
                segment=segment,
                reconciled=reconciled,
                error=error,
            )

        self._archived_count += len(records)
        logger.info(
            f"Archived {len(records)} rows to {path.name} and removed from hot store",
            extra={
                "first_id": segment.first_id,
                "last_id": last_id,
                "size_bytes": size_bytes,
            },
        )

        return CompactionResult(
            status=CompactionStatus.ARCHIVED, segment=segment, reconciled=reconciled
        )

    async def _reconcile(self) -> int:
        """Remove hot rows that the newest segment already holds.

        Only the newest segment can overlap the hot store, since a pass
        never writes a new segment before the previous one is reconciled.
        Every overlapping hot row must be present in that segment with
        identical contents; otherwise nothing is deleted.

        Returns:
            Number of hot rows removed

        Raises:
            StoreUnavailable: If the hot store cannot be read
            ArchiveInconsistent: If hot rows overlap the segment but are not in it
            ArchiveDeleteFailed: If verified rows could not be deleted
        """
        loop = asyncio.get_running_loop()
        if not self._segment_scanned:
            segments = await loop.run_in_executor(None, list_archive_segments, self.archive_dir)
            self._last_segment = segments[-1] if segments else None
            self._segment_scanned = True

        segment = self._last_segment
        if segment is None:
            return 0

        _, min_id, _ = await self.store.count_and_range()
        if min_id is None or min_id > segment.last_id:
            return 0

        overlapping = [
            record
            for record in await self.store.oldest(segment.last_id - min_id + 1)
            if record.id <= segment.last_id
        ]

        if self._last_segment_records is None:
            try:
                self._last_segment_records = await loop.run_in_executor(
                    None, index_segment, segment.path
                )
            except (OSError, EOFError, ValueError, KeyError) as e:
                raise ArchiveInconsistent(f"Cannot read {segment.path.name}: {e}") from e

        archived = self._last_segment_records
        mismatched = [r.id for r in overlapping if archived.get(r.id) != r]
        if mismatched:
            raise ArchiveInconsistent(
                f"{len(mismatched)} hot rows between {mismatched[0]} and {mismatched[-1]} "
                f"are not in {segment.path.name}"
            )

        through = overlapping[-1].id
        try:
            removed = await self.store.delete_up_to(through)
        except StoreUnavailable as e:
            raise ArchiveDeleteFailed(f"Could not remove hot rows up to {through}: {e}") from e

        self._last_segment_records = None
        logger.warning(
            f"Removed {removed} hot rows already present in archive",
            extra={"segment": segment.path.name, "archived_through": through},
        )
        return removed

    @property
    def archived_through(self) -> int | None:
        """Highest id held by the newest known segment."""
        return self._last_segment.last_id if self._last_segment else None

    @property
    def stats(self) -> dict[str, Any]:
        """Get archiver statistics."""
        return {
            "running": self._running,
            "state": self._state.value,
            "passes": self._passes,
            "archived_count": self._archived_count,
            "archived_through": self.archived_through,
            "last_error": self._last_error,
        }
