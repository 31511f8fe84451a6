"""
Unit tests for data source providers (snapshelf/backup/sources.py).

Tests FileSource, DatabaseSource and DumpSource.
"""

import os
import json
from datetime import datetime, timezone

import pytest

from snapshelf.backup.sources import (
    DatabaseSource,
    DumpSource,
    FileSource,
    SourceError,
    create_default_providers,
    parse_timestamp,
)


def _set_mtime(path, when: datetime):
    stamp = when.timestamp()
    os.utime(path, (stamp, stamp))


class TestFileSource:
    """Test FileSource for local filesystem sources."""

    @pytest.mark.asyncio
    async def test_fetch_directory(self, temp_files):
        """Test a directory is walked and paths keep the directory name."""
        source = FileSource()

        entries = await source.fetch('docs', {'type': 'file', 'paths': [str(temp_files)]})

        paths = sorted(e.path for e in entries)
        assert 'files/docs/data/test_file1.txt' in paths
        assert 'files/docs/data/nested/test_file3.txt' in paths
        assert all(e.type == 'file' for e in entries)

    @pytest.mark.asyncio
    async def test_fetch_single_file(self, temp_files):
        """Test a single file lands directly under the source name."""
        source = FileSource()

        entries = await source.fetch('one', {'paths': str(temp_files / 'test_file1.txt')})

        assert len(entries) == 1
        assert entries[0].path == 'files/one/test_file1.txt'
        assert entries[0].data == b'Test content 1'
        assert entries[0].metadata['mimeType'] == 'text/plain'
        assert entries[0].metadata['originalPath'].endswith('test_file1.txt')

    @pytest.mark.asyncio
    async def test_exclude_patterns(self, temp_files):
        """Test exclude patterns from the provider and the descriptor both apply."""
        source = FileSource(exclude_patterns=['*.pyc'])

        entries = await source.fetch('docs', {
            'paths': [str(temp_files)],
            'exclude_patterns': ['*.log', 'nested']
        })

        names = {e.name for e in entries}
        assert names == {'test_file1.txt'}

    @pytest.mark.asyncio
    async def test_since_skips_unchanged_files(self, temp_files):
        """Test only files modified after since are returned."""
        old = datetime(2024, 1, 1, tzinfo=timezone.utc)
        new = datetime(2024, 3, 1, tzinfo=timezone.utc)
        for path in temp_files.rglob('*'):
            if path.is_file():
                _set_mtime(path, old)
        _set_mtime(temp_files / 'test_file2.log', new)

        source = FileSource()
        entries = await source.fetch('docs', {
            'paths': [str(temp_files)],
            'since': datetime(2024, 2, 1, tzinfo=timezone.utc)
        })

        assert [e.name for e in entries] == ['test_file2.log']

    @pytest.mark.asyncio
    async def test_date_range_criteria(self, temp_files):
        """Test selective date_range criteria filter by modification time."""
        for path in temp_files.rglob('*'):
            if path.is_file():
                _set_mtime(path, datetime(2023, 6, 1, tzinfo=timezone.utc))
        _set_mtime(temp_files / 'test_file1.txt', datetime(2024, 5, 15, tzinfo=timezone.utc))

        source = FileSource()
        entries = await source.fetch('docs', {
            'paths': [str(temp_files)],
            'criteria': {'date_range': {'from': '2024-05-01', 'to': '2024-05-31T23:59:59Z'}}
        })

        assert [e.name for e in entries] == ['test_file1.txt']

    @pytest.mark.asyncio
    async def test_missing_path(self, tmp_path):
        """Test a missing path raises SourceError."""
        source = FileSource()

        with pytest.raises(SourceError, match="does not exist"):
            await source.fetch('docs', {'paths': [str(tmp_path / 'nope')]})

    @pytest.mark.asyncio
    async def test_no_paths(self):
        with pytest.raises(SourceError, match="no paths"):
            await FileSource().fetch('docs', {'type': 'file'})


class TestDatabaseSource:
    """Test DatabaseSource table exports."""

    @pytest.mark.asyncio
    async def test_export_table(self, sqlite_engine):
        """Test all rows are exported as one JSON entry."""
        source = DatabaseSource(sqlite_engine)

        entries = await source.fetch('notes', {'type': 'database'})

        assert len(entries) == 1
        entry = entries[0]
        assert entry.path == 'database/notes.json'
        assert entry.metadata['recordCount'] == 3
        assert entry.metadata['primaryKey'] == ['id']

        payload = json.loads(entry.data)
        assert payload['table'] == 'notes'
        assert [r['id'] for r in payload['records']] == [1, 2, 3]
        assert payload['records'][0]['updated_at'].startswith('2024-01-10')

    @pytest.mark.asyncio
    async def test_table_name_from_descriptor(self, sqlite_engine):
        source = DatabaseSource(sqlite_engine)

        entries = await source.fetch('user_notes', {'table': 'notes'})

        assert entries[0].path == 'database/user_notes.json'
        assert entries[0].metadata['table'] == 'notes'

    @pytest.mark.asyncio
    async def test_since_with_updated_column(self, sqlite_engine):
        """Test incremental export only includes rows updated after since."""
        source = DatabaseSource(sqlite_engine)

        entries = await source.fetch('notes', {
            'updated_column': 'updated_at',
            'since': datetime(2024, 2, 1, tzinfo=timezone.utc)
        })

        assert entries[0].metadata['recordCount'] == 2

    @pytest.mark.asyncio
    async def test_since_without_changes_returns_nothing(self, sqlite_engine):
        """Test no entry is produced when no row changed."""
        source = DatabaseSource(sqlite_engine)

        entries = await source.fetch('notes', {
            'updated_column': 'updated_at',
            'since': datetime(2024, 6, 1, tzinfo=timezone.utc)
        })

        assert entries == []

    @pytest.mark.asyncio
    async def test_owner_criteria(self, sqlite_engine):
        """Test selective user_id criteria filter on the owner column."""
        source = DatabaseSource(sqlite_engine)

        entries = await source.fetch('notes', {
            'owner_column': 'user_id',
            'criteria': {'user_id': 1}
        })

        records = json.loads(entries[0].data)['records']
        assert {r['user_id'] for r in records} == {1}
        assert len(records) == 2

    @pytest.mark.asyncio
    async def test_date_criteria(self, sqlite_engine):
        source = DatabaseSource(sqlite_engine)

        entries = await source.fetch('notes', {
            'date_column': 'updated_at',
            'criteria': {'date_range': {'from': '2024-02-01', 'to': '2024-02-28'}}
        })

        records = json.loads(entries[0].data)['records']
        assert [r['id'] for r in records] == [2]

    @pytest.mark.asyncio
    async def test_where_clause(self, sqlite_engine):
        source = DatabaseSource(sqlite_engine)

        entries = await source.fetch('notes', {'where': "body = 'third'"})

        assert entries[0].metadata['recordCount'] == 1

    @pytest.mark.asyncio
    async def test_engine_from_url(self, sqlite_engine):
        """Test a descriptor url is used when the provider has no engine."""
        source = DatabaseSource()

        entries = await source.fetch('notes', {'url': str(sqlite_engine.url)})

        assert entries[0].metadata['recordCount'] == 3

    @pytest.mark.asyncio
    async def test_no_engine(self):
        with pytest.raises(SourceError, match="no engine"):
            await DatabaseSource().fetch('notes', {})

    @pytest.mark.asyncio
    async def test_unknown_table(self, sqlite_engine):
        """Test a missing table raises SourceError."""
        with pytest.raises(SourceError, match="missing_table"):
            await DatabaseSource(sqlite_engine).fetch('missing_table', {})

    @pytest.mark.asyncio
    async def test_unknown_column(self, sqlite_engine):
        with pytest.raises(SourceError, match="Unknown column"):
            await DatabaseSource(sqlite_engine).fetch('notes', {
                'updated_column': 'modified',
                'since': datetime(2024, 1, 1, tzinfo=timezone.utc)
            })


class TestDumpSource:
    """Test DumpSource for search-index and cache exports."""

    @pytest.mark.asyncio
    async def test_exporter_returning_object(self):
        """Test a JSON-serializable export becomes a .json entry."""
        source = DumpSource('search-index', exporter=lambda name, descriptor: {'docs': [1, 2]})

        entries = await source.fetch('products', {'type': 'search-index'})

        assert entries[0].path == 'search-index/products.json'
        assert entries[0].type == 'search-index'
        assert json.loads(entries[0].data) == {'docs': [1, 2]}

    @pytest.mark.asyncio
    async def test_async_exporter_returning_bytes(self):
        async def export(name, descriptor):
            return b'\x00redis-dump'

        source = DumpSource('cache', exporter=export)
        entries = await source.fetch('sessions', {})

        assert entries[0].path == 'cache/sessions.dump'
        assert entries[0].data == b'\x00redis-dump'

    @pytest.mark.asyncio
    async def test_exporter_returning_none(self):
        """Test an exporter reporting no changes yields no entries."""
        source = DumpSource('cache', exporter=lambda name, descriptor: None)

        assert await source.fetch('sessions', {}) == []

    @pytest.mark.asyncio
    async def test_exporter_failure(self):
        def export(name, descriptor):
            raise RuntimeError("connection refused")

        source = DumpSource('cache', exporter=export)

        with pytest.raises(SourceError, match="connection refused"):
            await source.fetch('sessions', {})

    @pytest.mark.asyncio
    async def test_dump_path(self, tmp_path):
        """Test a dump file on disk is read as-is."""
        dump = tmp_path / 'dump.rdb'
        dump.write_bytes(b'REDIS0009')

        entries = await DumpSource('cache').fetch('sessions', {'dump_path': str(dump)})

        assert entries[0].path == 'cache/sessions.rdb'
        assert entries[0].data == b'REDIS0009'

    @pytest.mark.asyncio
    async def test_dump_path_unchanged_since(self, tmp_path):
        dump = tmp_path / 'dump.rdb'
        dump.write_bytes(b'REDIS0009')
        _set_mtime(dump, datetime(2024, 1, 1, tzinfo=timezone.utc))

        entries = await DumpSource('cache').fetch('sessions', {
            'dump_path': str(dump),
            'since': datetime(2024, 2, 1, tzinfo=timezone.utc)
        })

        assert entries == []

    @pytest.mark.asyncio
    async def test_no_exporter_or_path(self):
        with pytest.raises(SourceError, match="no exporter"):
            await DumpSource('cache').fetch('sessions', {})


class TestHelpers:
    """Test module helpers."""

    def test_parse_timestamp_naive_is_utc(self):
        assert parse_timestamp('2024-01-01T12:00:00') == datetime(2024, 1, 1, 12, tzinfo=timezone.utc)

    def test_parse_timestamp_z_suffix(self):
        assert parse_timestamp('2024-01-01T12:00:00Z').tzinfo is not None

    def test_parse_timestamp_invalid(self):
        with pytest.raises(SourceError, match="Invalid timestamp"):
            parse_timestamp('yesterday')

    def test_create_default_providers(self, sqlite_engine):
        providers = create_default_providers(sqlite_engine)

        assert set(providers) == {'file', 'database', 'search-index', 'cache'}
        assert providers['database'].engine is sqlite_engine
