"""
Unit tests for the archive container (snapshelf/backup/container.py).

Tests framing, read-back order, selective skipping and corruption detection.
"""

import io
import json
import struct

import pytest

from snapshelf.backup.container import (
    CONTAINER_VERSION,
    ContainerReader,
    ContainerWriter,
    read_container,
    write_container,
)
from snapshelf.exceptions import IntegrityError
from snapshelf.models import Entry


def _frame(payload: bytes) -> bytes:
    return struct.pack('>I', len(payload)) + payload


@pytest.fixture
def mixed_entries():
    return [
        Entry(name='users', path='database/users.json', type='database', data=b'{"id": 1}'),
        Entry(name='a.txt', path='files/docs/a.txt', type='file', data=b'\x00\x01binary\xff'),
        Entry(name='idx', path='search-index/idx.json', type='search-index', data=b''),
        Entry(name='sessions', path='cache/sessions.dump', type='cache', data=b'x' * 5000,
              metadata={'keys': 12}),
    ]


class TestContainerRoundTrip:
    """Test writing and reading a container back."""

    def test_round_trip_preserves_entries_and_order(self, mixed_entries):
        """Test entries come back with the same fields, bytes and order."""
        buffer = io.BytesIO()
        write_container(buffer, mixed_entries)

        buffer.seek(0)
        header, entries = read_container(buffer)

        assert header['entryCount'] == 4
        assert [e.path for e in entries] == [e.path for e in mixed_entries]
        for original, restored in zip(mixed_entries, entries):
            assert restored.name == original.name
            assert restored.type == original.type
            assert restored.size == original.size
            assert restored.data == original.data
            assert restored.metadata == original.metadata

    def test_header_fields(self, mixed_entries):
        """Test header records version, entry count and total payload size."""
        buffer = io.BytesIO()
        header, written = write_container(buffer, mixed_entries)

        assert header['version'] == CONTAINER_VERSION
        assert header['totalSize'] == sum(e.size for e in mixed_entries)
        assert 'createdAt' in header
        assert written == len(buffer.getvalue())

    def test_big_endian_framing(self):
        """Test the header length prefix is a big-endian u32."""
        buffer = io.BytesIO()
        write_container(buffer, [])

        raw = buffer.getvalue()
        header_length = struct.unpack('>I', raw[:4])[0]
        header = json.loads(raw[4:4 + header_length])

        assert header['entryCount'] == 0
        assert len(raw) == 4 + header_length

    def test_empty_container(self):
        """Test a container with no entries reads back empty."""
        buffer = io.BytesIO()
        write_container(buffer, [])
        buffer.seek(0)

        header, entries = read_container(buffer)

        assert header['entryCount'] == 0
        assert entries == []


class TestContainerWriter:
    """Test writer invariants."""

    def test_entry_before_header_rejected(self):
        """Test entries cannot be written before the header."""
        writer = ContainerWriter(io.BytesIO())

        with pytest.raises(IntegrityError, match="header"):
            writer.write_entry(Entry(name='a', path='a', type='file', data=b'a'))

    def test_declared_size_must_match_payload(self):
        """Test an entry with a wrong declared size is refused."""
        writer = ContainerWriter(io.BytesIO())
        writer.write_header(entry_count=1, total_size=10)

        with pytest.raises(IntegrityError, match="declares 10 bytes"):
            writer.write_entry(Entry(name='a', path='a', type='file', data=b'abc', size=10))

    def test_more_entries_than_declared_rejected(self):
        """Test writing past the declared entry count fails."""
        writer = ContainerWriter(io.BytesIO())
        writer.write_header(entry_count=1, total_size=2)
        writer.write_entry(Entry(name='a', path='a', type='file', data=b'a'))

        with pytest.raises(IntegrityError):
            writer.write_entry(Entry(name='b', path='b', type='file', data=b'b'))

    def test_finish_detects_missing_entries(self):
        """Test finish() fails when fewer entries were written than declared."""
        writer = ContainerWriter(io.BytesIO())
        writer.write_header(entry_count=2, total_size=1)
        writer.write_entry(Entry(name='a', path='a', type='file', data=b'a'))

        with pytest.raises(IntegrityError, match="2 entries but 1 were written"):
            writer.finish()


class TestContainerReader:
    """Test reader corruption handling and selective skipping."""

    def test_truncated_payload(self, mixed_entries):
        """Test a container cut short raises IntegrityError."""
        buffer = io.BytesIO()
        write_container(buffer, mixed_entries)
        truncated = io.BytesIO(buffer.getvalue()[:-100])

        with pytest.raises(IntegrityError, match="Truncated"):
            read_container(truncated)

    def test_missing_entries(self):
        """Test fewer frames than the header declares raises IntegrityError."""
        header = json.dumps({'version': '1.0', 'createdAt': 'x', 'entryCount': 2, 'totalSize': 1}).encode()
        meta = json.dumps({'name': 'a', 'path': 'a', 'type': 'file', 'size': 1, 'metadata': {}}).encode()
        raw = _frame(header) + _frame(meta) + _frame(b'a')

        with pytest.raises(IntegrityError, match="Truncated"):
            read_container(io.BytesIO(raw))

    def test_trailing_data(self):
        """Test bytes after the last declared entry raise IntegrityError."""
        buffer = io.BytesIO()
        write_container(buffer, [Entry(name='a', path='a', type='file', data=b'a')])
        raw = buffer.getvalue() + b'extra'

        with pytest.raises(IntegrityError, match="trailing data"):
            read_container(io.BytesIO(raw))

    def test_declared_size_mismatch(self):
        """Test an entry whose metadata size differs from its frame length."""
        header = json.dumps({'version': '1.0', 'createdAt': 'x', 'entryCount': 1, 'totalSize': 5}).encode()
        meta = json.dumps({'name': 'a', 'path': 'a', 'type': 'file', 'size': 5, 'metadata': {}}).encode()
        raw = _frame(header) + _frame(meta) + _frame(b'abc')

        with pytest.raises(IntegrityError, match="declares 5 bytes"):
            read_container(io.BytesIO(raw))

    def test_corrupt_header_json(self):
        """Test a header that is not JSON raises IntegrityError."""
        with pytest.raises(IntegrityError, match="not valid JSON"):
            read_container(io.BytesIO(_frame(b'{not json')))

    def test_header_not_an_object(self):
        """Test a header that is valid JSON but not an object raises IntegrityError."""
        with pytest.raises(IntegrityError, match="header is not a JSON object"):
            read_container(io.BytesIO(_frame(b'[1, 2, 3]')))

    def test_entry_metadata_not_an_object(self):
        header = json.dumps({'version': '1.0', 'createdAt': 'x', 'entryCount': 1, 'totalSize': 1}).encode()
        raw = _frame(header) + _frame(b'"users"') + _frame(b'a')

        with pytest.raises(IntegrityError, match="entry 0 metadata is not a JSON object"):
            read_container(io.BytesIO(raw))

    @pytest.mark.parametrize("missing", ['name', 'path', 'type'])
    def test_entry_metadata_missing_field(self, missing):
        """Test entry metadata without name, path or type raises IntegrityError."""
        header = json.dumps({'version': '1.0', 'createdAt': 'x', 'entryCount': 1, 'totalSize': 1}).encode()
        meta = {'name': 'a', 'path': 'a', 'type': 'file', 'size': 1, 'metadata': {}}
        del meta[missing]
        raw = _frame(header) + _frame(json.dumps(meta).encode()) + _frame(b'a')

        with pytest.raises(IntegrityError, match=f"missing {missing}"):
            read_container(io.BytesIO(raw))

    def test_frame_length_exceeds_buffer(self):
        """Test a length prefix larger than the remaining bytes."""
        raw = struct.pack('>I', 1000) + b'{}'

        with pytest.raises(IntegrityError, match="Truncated"):
            read_container(io.BytesIO(raw))

    def test_rejected_entries_are_skipped(self, mixed_entries):
        """Test entries rejected by accept() yield None and keep the stream aligned."""
        buffer = io.BytesIO()
        write_container(buffer, mixed_entries)
        buffer.seek(0)

        reader = ContainerReader(buffer)
        results = list(reader.iter_entries(lambda meta: meta['type'] != 'cache'))

        assert results[3] is None
        assert [e.path for e in results if e is not None] == [
            'database/users.json', 'files/docs/a.txt', 'search-index/idx.json'
        ]
        assert reader.bytes_read == len(buffer.getvalue())
