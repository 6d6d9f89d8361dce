"""
Verify CLI tool for the Infinite Monkeys server.

This tool reads every completed archive segment followed by the hot store
and checks that together they hold each record id exactly once, in order.
It can also replay the full character history.

Usage:
    monkeys-verify --data-dir <path> [--archive-dir <path>] [--print]

Invariants:
    - Read-only: never modifies segments or the hot store
    - Partial segment files are ignored, like the archiver ignores them
    - Hot rows already present in a segment are reported as pending
      reconciliation, not as corruption

How to change safely:
    - Keep in step with the archive format in archive/archiver.py
    - Maintain backward compatibility with old archives
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path

from ..archive.archiver import list_archive_segments, read_segment
from ..store.event_store import EventStore, Record, StoreUnavailable

logger = logging.getLogger(__name__)


@dataclass
class VerifyResult:
    """Result of a verify run.

    Attributes:
        segments: Number of completed segments read
        archived_records: Records read from segments
        hot_records: Records read from the hot store (excluding pending duplicates)
        first_id: Lowest record id seen
        last_id: Highest record id seen
        gaps: Missing id ranges as (first, last) inclusive
        overlaps: Ids seen more than once inside the archive
        pending_reconcile: Hot rows that a segment already holds
        errors: Unreadable segments or store failures
        text: Reconstructed character stream, when requested
        duration_ms: Total verify duration
    """

    segments: int = 0
    archived_records: int = 0
    hot_records: int = 0
    first_id: int | None = None
    last_id: int | None = None
    gaps: list[tuple[int, int]] = field(default_factory=list)
    overlaps: list[int] = field(default_factory=list)
    pending_reconcile: int = 0
    errors: list[str] = field(default_factory=list)
    text: str | None = None
    duration_ms: int = 0

    @property
    def continuous(self) -> bool:
        return not self.gaps and not self.overlaps and not self.errors

    @property
    def total_records(self) -> int:
        return self.archived_records + self.hot_records


class _Sequence:
    """Tracks the expected next id while records are fed in order."""

    def __init__(self, result: VerifyResult, collect_text: bool) -> None:
        self.result = result
        self.next_id = 1
        self.chars: list[str] | None = [] if collect_text else None

    def accept(self, record: Record) -> bool:
        """Feed one record; False if it repeats an id already seen."""
        if record.id < self.next_id:
            return False
        if record.id > self.next_id:
            self.result.gaps.append((self.next_id, record.id - 1))

        if self.result.first_id is None:
            self.result.first_id = record.id
        self.result.last_id = record.id
        self.next_id = record.id + 1
        if self.chars is not None:
            self.chars.append(record.char)
        return True


class VerifyTool:
    """Checks archive and hot store continuity.

    Example:
        >>> tool = VerifyTool(db_path, archive_dir)
        >>> result = await tool.verify()
        >>> result.continuous
        True
    """

    def __init__(self, db_path: str | Path, archive_dir: str | Path) -> None:
        self.db_path = Path(db_path)
        self.archive_dir = Path(archive_dir)

    async def verify(self, collect_text: bool = False) -> VerifyResult:
        """Execute the verification.

        Args:
            collect_text: Also rebuild the full character stream

        Returns:
            VerifyResult describing the data set
        """
        start_time = time.time()
        result = VerifyResult()
        sequence = _Sequence(result, collect_text)

        for segment in list_archive_segments(self.archive_dir):
            result.segments += 1
            try:
                for record in read_segment(segment.path):
                    if sequence.accept(record):
                        result.archived_records += 1
                    else:
                        result.overlaps.append(record.id)
            except (OSError, EOFError, ValueError, KeyError) as e:
                logger.error(f"Unreadable segment {segment.path.name}: {e}")
                result.errors.append(f"{segment.path.name}: {e}")

        archived_through = sequence.next_id - 1

        if self.db_path.exists():
            store = EventStore(self.db_path, wal_mode=False)
            try:
                count, _, _ = await store.count_and_range()
                for record in await store.oldest(count):
                    if record.id <= archived_through:
                        result.pending_reconcile += 1
                    elif sequence.accept(record):
                        result.hot_records += 1
            except StoreUnavailable as e:
                logger.error(f"Cannot read hot store: {e}")
                result.errors.append(f"hot store: {e}")
        else:
            logger.warning(f"Hot store not found: {self.db_path}")

        if sequence.chars is not None:
            result.text = "".join(sequence.chars)
        result.duration_ms = int((time.time() - start_time) * 1000)
        return result


def main() -> None:
    """CLI entry point for verify tool."""
    parser = argparse.ArgumentParser(
        description="Verify Infinite Monkeys archive segments and hot store continuity"
    )
    parser.add_argument("--data-dir", required=True, help="Directory holding the database")
    parser.add_argument("--db-filename", default="monkeys.db", help="Database file name")
    parser.add_argument("--archive-dir", help="Archive directory (default: <data-dir>/archive)")
    parser.add_argument(
        "--print", dest="print_text", action="store_true", help="Write full history to stdout"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    data_dir = Path(args.data_dir)
    archive_dir = Path(args.archive_dir) if args.archive_dir else data_dir / "archive"

    tool = VerifyTool(data_dir / args.db_filename, archive_dir)
    result = asyncio.run(tool.verify(collect_text=args.print_text))

    report = sys.stderr if args.print_text else sys.stdout
    print(f"  Segments: {result.segments}", file=report)
    print(f"  Archived records: {result.archived_records}", file=report)
    print(f"  Hot records: {result.hot_records}", file=report)
    print(f"  Id range: {result.first_id or '-'}..{result.last_id or '-'}", file=report)
    print(f"  Pending reconcile: {result.pending_reconcile}", file=report)
    for first, last in result.gaps:
        print(f"  Gap: {first}..{last}", file=report)
    if result.overlaps:
        print(f"  Duplicated ids in archive: {len(result.overlaps)}", file=report)
    for error in result.errors:
        print(f"  Error: {error}", file=report)

    if args.print_text and result.text is not None:
        sys.stdout.write(result.text + "\n")

    if result.continuous:
        print("Verify completed: history is continuous", file=report)
        sys.exit(0)
    else:
        print("Verify failed: history is not continuous", file=report)
        sys.exit(1)


if __name__ == "__main__":
    main()
