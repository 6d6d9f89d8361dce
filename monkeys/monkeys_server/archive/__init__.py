"""
Archive module for the Infinite Monkeys server.

This module moves old records out of the hot store into gzip JSONL
segment files so the database stays bounded.

Invariants:
    - Archives are immutable once written
    - Hot rows are deleted only after their segment is durable
    - Segment filenames carry the highest archived id
"""

from .archiver import (
    ArchiveDeleteFailed,
    ArchiveInconsistent,
    Archiver,
    ArchiverError,
    ArchiverState,
    ArchiveSegment,
    ArchiveTrigger,
    ArchiveWriteFailed,
    CompactionResult,
    CompactionStatus,
    list_archive_segments,
    read_segment,
)

__all__ = [
    "Archiver",
    "ArchiveSegment",
    "ArchiveTrigger",
    "ArchiverState",
    "CompactionResult",
    "CompactionStatus",
    "ArchiverError",
    "ArchiveWriteFailed",
    "ArchiveDeleteFailed",
    "ArchiveInconsistent",
    "list_archive_segments",
    "read_segment",
]
