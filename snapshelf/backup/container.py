"""
Binary archive container.

Layout (all lengths are big-endian u32):

    [headerLen][header JSON]
    repeat entryCount times:
        [metaLen][entry meta JSON][dataLen][raw bytes]

The writer frames one entry at a time into whatever stream it is given
(normally a compressor), so peak memory is bounded by the largest entry.
"""

import json
import struct
from datetime import datetime, timezone
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Optional, Tuple

from snapshelf.exceptions import IntegrityError
from snapshelf.models import Entry


CONTAINER_VERSION = '1.0'

_LENGTH = struct.Struct('>I')
_SKIP_CHUNK_SIZE = 64 * 1024
_REQUIRED_META = ('name', 'path', 'type')


def _encode_json(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, separators=(',', ':'), default=str).encode('utf-8')


class ContainerWriter:
    """
    Streams a header and framed entries into a binary stream.

    The header is written up front, so the entry count and total size must
    be known before the first entry goes out.
    """

    def __init__(self, stream: BinaryIO):
        self.stream = stream
        self.bytes_written = 0
        self.entries_written = 0
        self.expected_entries = None

    def _write(self, data: bytes):
        self.stream.write(data)
        self.bytes_written += len(data)

    def _write_frame(self, payload: bytes):
        self._write(_LENGTH.pack(len(payload)))
        self._write(payload)

    def write_header(self, entry_count: int, total_size: int,
                     created_at: Optional[datetime] = None) -> Dict[str, Any]:
        header = {
            'version': CONTAINER_VERSION,
            'createdAt': (created_at or datetime.now(timezone.utc)).isoformat(),
            'entryCount': entry_count,
            'totalSize': total_size,
        }
        self._write_frame(_encode_json(header))
        self.expected_entries = entry_count
        return header

    def write_entry(self, entry: Entry):
        if self.expected_entries is None:
            raise IntegrityError("Container header must be written before entries")
        if self.entries_written >= self.expected_entries:
            raise IntegrityError(
                f"Container header declares {self.expected_entries} entries, refusing to write more"
            )
        if entry.size != len(entry.data):
            raise IntegrityError(
                f"Entry {entry.path} declares {entry.size} bytes but carries {len(entry.data)}"
            )

        self._write_frame(_encode_json(entry.meta()))
        self._write_frame(entry.data)
        self.entries_written += 1

    def finish(self):
        """Check that every declared entry was written."""
        if self.entries_written != self.expected_entries:
            raise IntegrityError(
                f"Container header declares {self.expected_entries} entries "
                f"but {self.entries_written} were written"
            )


def write_container(stream: BinaryIO, entries: List[Entry],
                    created_at: Optional[datetime] = None) -> Tuple[Dict[str, Any], int]:
    """
    Write a complete container.

    Args:
        stream: Writable binary stream
        entries: Entries in the order they should be read back
        created_at: Optional creation time for the header

    Returns:
        Tuple of (header dict, uncompressed container length in bytes)
    """
    writer = ContainerWriter(stream)
    header = writer.write_header(
        entry_count=len(entries),
        total_size=sum(entry.size for entry in entries),
        created_at=created_at
    )
    for entry in entries:
        writer.write_entry(entry)
    writer.finish()
    return header, writer.bytes_written


class ContainerReader:
    """
    Reads a container back from a binary stream.

    Iterating yields ``Entry`` objects in the order they were written.
    Entries rejected by ``accept`` are skipped without reading their
    payload into memory; the reader yields ``None`` in their place so
    callers can count them.
    """

    def __init__(self, stream: BinaryIO):
        self.stream = stream
        self.bytes_read = 0
        self.header = None

    def _read_exact(self, size: int, what: str) -> bytes:
        chunks = []
        remaining = size
        while remaining > 0:
            chunk = self.stream.read(remaining)
            if not chunk:
                raise IntegrityError(
                    f"Truncated container: {what} needs {size} bytes, "
                    f"only {size - remaining} available"
                )
            chunks.append(chunk)
            remaining -= len(chunk)
        self.bytes_read += size
        return b''.join(chunks)

    def _skip_exact(self, size: int, what: str):
        remaining = size
        while remaining > 0:
            chunk = self.stream.read(min(remaining, _SKIP_CHUNK_SIZE))
            if not chunk:
                raise IntegrityError(
                    f"Truncated container: {what} needs {size} bytes, "
                    f"only {size - remaining} available"
                )
            remaining -= len(chunk)
        self.bytes_read += size

    def _read_length(self, what: str) -> int:
        return _LENGTH.unpack(self._read_exact(_LENGTH.size, f"{what} length"))[0]

    def _read_json(self, what: str) -> Dict[str, Any]:
        payload = self._read_exact(self._read_length(what), what)
        try:
            value = json.loads(payload.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise IntegrityError(f"Corrupt container: {what} is not valid JSON ({e})")
        if not isinstance(value, dict):
            raise IntegrityError(f"Corrupt container: {what} is not a JSON object")
        return value

    def read_header(self) -> Dict[str, Any]:
        if self.header is None:
            header = self._read_json('header')
            if not isinstance(header.get('entryCount'), int) or header['entryCount'] < 0:
                raise IntegrityError("Corrupt container: header has no valid entryCount")
            self.header = header
        return self.header

    def iter_entries(self, accept: Optional[Callable[[Dict[str, Any]], bool]] = None) -> Iterator[Optional[Entry]]:
        header = self.read_header()

        for index in range(header['entryCount']):
            meta = self._read_json(f"entry {index} metadata")
            missing = [key for key in _REQUIRED_META if not isinstance(meta.get(key), str)]
            if missing:
                raise IntegrityError(
                    f"Corrupt container: entry {index} metadata is missing {', '.join(missing)}"
                )
            data_length = self._read_length(f"entry {index} data")

            declared = meta.get('size')
            if declared != data_length:
                raise IntegrityError(
                    f"Entry {meta.get('path')} declares {declared} bytes "
                    f"but its frame holds {data_length}"
                )

            if accept is not None and not accept(meta):
                self._skip_exact(data_length, f"entry {index} data")
                yield None
                continue

            data = self._read_exact(data_length, f"entry {index} data")
            yield Entry(
                name=meta['name'],
                path=meta['path'],
                type=meta['type'],
                data=data,
                metadata=meta.get('metadata') or {},
                size=data_length
            )

        if self.stream.read(1):
            raise IntegrityError(
                f"Corrupt container: trailing data after {header['entryCount']} entries"
            )

    def __iter__(self):
        return (entry for entry in self.iter_entries() if entry is not None)


def read_container(stream: BinaryIO) -> Tuple[Dict[str, Any], List[Entry]]:
    """
    Read a whole container into memory.

    Returns:
        Tuple of (header dict, list of entries)

    Raises:
        IntegrityError: If the container is truncated or inconsistent
    """
    reader = ContainerReader(stream)
    entries = list(reader)
    return reader.header, entries
