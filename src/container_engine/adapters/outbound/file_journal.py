"""File-based journal of resource store mutations.

This adapter implements the JournalPort protocol with a single
append-only file. Records are JSON documents encoded from the entity
dataclasses with pydantic TypeAdapters.

File Format:
    - Header (12 bytes): magic, version
    - Entries: [length(4) + json_bytes + CRC32(4)] ...

A torn or corrupt tail (partial write during a crash) ends replay; the
file is truncated back to the last intact entry when it is reopened.

Thread Safety:
    All methods are serialized internally.
"""

from __future__ import annotations

import json
import logging
import os
import struct
import threading
import zlib
from pathlib import Path
from typing import Any, BinaryIO, Iterator, Sequence

from pydantic import TypeAdapter, ValidationError

from container_engine.domain.entities import RECORD_TYPES, ResourceKind
from container_engine.ports.outbound import JournalEntry, JournalError, JournalOp

logger = logging.getLogger(__name__)

JOURNAL_MAGIC = b"CEJRNL\x00\x00"
JOURNAL_VERSION = 1
HEADER_FORMAT = ">8sI"  # magic, version
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

# Entry wrapper format: length(4) + data + crc32(4)
ENTRY_LENGTH_FORMAT = ">I"
ENTRY_CRC_FORMAT = ">I"
ENTRY_OVERHEAD = 8

_ADAPTERS: dict[ResourceKind, TypeAdapter] = {
    kind: TypeAdapter(record_type) for kind, record_type in RECORD_TYPES.items()
}


def encode_entry(entry: JournalEntry) -> bytes:
    """Serialize an entry to JSON bytes."""
    document: dict[str, Any] = {
        "op": entry.op.value,
        "kind": entry.kind,
        "id": entry.record_id,
    }
    if entry.op == JournalOp.PUT:
        adapter = _ADAPTERS[ResourceKind(entry.kind)]
        document["record"] = adapter.dump_python(entry.record, mode="json")
    return json.dumps(document, separators=(",", ":")).encode("utf-8")


def decode_entry(data: bytes) -> JournalEntry:
    """Deserialize an entry from JSON bytes.

    Raises:
        ValueError: If the document is malformed.
    """
    try:
        document = json.loads(data.decode("utf-8"))
        op = JournalOp(document["op"])
        kind = ResourceKind(document["kind"])
        record = None
        if op == JournalOp.PUT:
            record = _ADAPTERS[kind].validate_python(document["record"])
        return JournalEntry(op, kind.value, document["id"], record)
    except (KeyError, UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
        raise ValueError(f"Malformed journal entry: {e}") from e


def wrap(payload: bytes) -> bytes:
    crc = zlib.crc32(payload) & 0xFFFFFFFF
    return (
        struct.pack(ENTRY_LENGTH_FORMAT, len(payload))
        + payload
        + struct.pack(ENTRY_CRC_FORMAT, crc)
    )


class FileJournal:
    """Append-only journal file.

    Attributes:
        path: Journal file.
        fsync: Whether every append is synced to disk.
    """

    def __init__(self, path: str | Path, fsync: bool = True) -> None:
        """Open (or create) the journal.

        Args:
            path: Journal file path.
            fsync: Sync every append to disk.

        Raises:
            JournalError: If the file exists but is not a journal.
        """
        self.path = Path(path)
        self.fsync = fsync
        self._lock = threading.Lock()
        self._closed = False
        self._appended = 0

        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists() or self.path.stat().st_size == 0:
            self._file = self._create(self.path)
        else:
            self._check_header(self.path)
            good_offset = self._scan_extent()
            self._file = open(self.path, "r+b")
            if good_offset < self.path.stat().st_size:
                logger.warning(
                    f"Truncating torn journal tail at offset {good_offset} of {self.path}"
                )
                self._file.truncate(good_offset)
            self._file.seek(0, os.SEEK_END)

    @property
    def appended(self) -> int:
        """Entries appended since the journal was opened."""
        return self._appended

    def append(self, entry: JournalEntry) -> None:
        """Append an entry.

        Raises:
            JournalError: If the journal is closed or the write fails.
        """
        data = wrap(encode_entry(entry))
        with self._lock:
            if self._closed:
                raise JournalError("Journal is closed")
            try:
                self._file.write(data)
                self._file.flush()
                if self.fsync:
                    os.fsync(self._file.fileno())
            except OSError as e:
                raise JournalError(f"Journal write failed: {e}") from e
            self._appended += 1

    def replay(self) -> Iterator[JournalEntry]:
        """Yield entries in append order, stopping at a torn tail."""
        with self._lock:
            if not self._closed:
                self._file.flush()
        for _, payload in self._scan(self.path):
            try:
                yield decode_entry(payload)
            except ValueError as e:
                logger.warning(f"Stopping replay at undecodable entry: {e}")
                return

    def compact(self, entries: Sequence[JournalEntry]) -> None:
        """Atomically replace the journal with the given entries.

        Raises:
            JournalError: If the rewrite fails.
        """
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with self._lock:
            if self._closed:
                raise JournalError("Journal is closed")
            try:
                with open(tmp_path, "wb") as f:
                    f.write(struct.pack(HEADER_FORMAT, JOURNAL_MAGIC, JOURNAL_VERSION))
                    for entry in entries:
                        f.write(wrap(encode_entry(entry)))
                    f.flush()
                    os.fsync(f.fileno())
                self._file.close()
                os.replace(tmp_path, self.path)
                self._file = open(self.path, "r+b")
                self._file.seek(0, os.SEEK_END)
            except OSError as e:
                raise JournalError(f"Journal compaction failed: {e}") from e
        logger.info(f"Compacted journal {self.path} to {len(entries)} entries")

    def close(self) -> None:
        """Flush and close the journal."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._file.flush()
            if self.fsync:
                os.fsync(self._file.fileno())
            self._file.close()

    @staticmethod
    def _create(path: Path) -> BinaryIO:
        f = open(path, "w+b")
        f.write(struct.pack(HEADER_FORMAT, JOURNAL_MAGIC, JOURNAL_VERSION))
        f.flush()
        return f

    @staticmethod
    def _check_header(path: Path) -> None:
        with open(path, "rb") as f:
            header = f.read(HEADER_SIZE)
        if len(header) < HEADER_SIZE:
            raise JournalError(f"Journal header too short: {path}")
        magic, version = struct.unpack(HEADER_FORMAT, header)
        if magic != JOURNAL_MAGIC:
            raise JournalError(f"Invalid journal magic in {path}: {magic!r}")
        if version != JOURNAL_VERSION:
            raise JournalError(f"Unsupported journal version {version} in {path}")

    def _scan_extent(self) -> int:
        end = HEADER_SIZE
        for end, _ in self._scan(self.path):
            pass
        return end

    @staticmethod
    def _scan(path: Path) -> Iterator[tuple[int, bytes]]:
        """Yield (end_offset, payload) for every intact entry."""
        with open(path, "rb") as f:
            f.seek(HEADER_SIZE)
            while True:
                length_data = f.read(4)
                if len(length_data) < 4:
                    return
                (length,) = struct.unpack(ENTRY_LENGTH_FORMAT, length_data)
                if length == 0:
                    return
                payload = f.read(length)
                if len(payload) < length:
                    return
                crc_data = f.read(4)
                if len(crc_data) < 4:
                    return
                (stored_crc,) = struct.unpack(ENTRY_CRC_FORMAT, crc_data)
                if stored_crc != zlib.crc32(payload) & 0xFFFFFFFF:
                    logger.warning(f"CRC mismatch in {path} at offset {f.tell() - length - ENTRY_OVERHEAD}")
                    return
                yield f.tell(), payload
