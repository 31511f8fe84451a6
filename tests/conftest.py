"""
Shared pytest fixtures for snapshelf tests.

This module provides fixtures for:
- Test configuration rooted in a temporary directory
- In-memory data source providers and recording sinks
- Archiver, Restorer and BackupManager wired to the fakes
- SQLite engine with a sample table
- Mock fixtures for external services (S3, scheduler)
- Temporary file fixtures
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws
from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, create_engine, insert

from snapshelf.backup.archiver import Archiver
from snapshelf.backup.manager import BackupManager
from snapshelf.backup.restore import Restorer
from snapshelf.backup.sinks import DataSink, FileSink, SinkError
from snapshelf.backup.sources import DataSourceProvider, SourceError
from snapshelf.backup.storage import BackupStore
from snapshelf.config import TestingConfig
from snapshelf.models import Entry
from snapshelf.utils.crypto import CryptoManager


class MemorySource(DataSourceProvider):
    """
    Provider serving entries from memory.

    Honors ``since`` by comparing each item's modification time, and fails
    any source whose descriptor sets ``fail``.
    """

    def __init__(self, entry_type: str = 'database'):
        self.entry_type = entry_type
        self.items = {}
        self.calls = []

    def put(self, source: str, path: str, data: bytes, entry_type: str = None, modified: datetime = None):
        self.items.setdefault(source, []).append({
            'path': path,
            'data': data,
            'type': entry_type or self.entry_type,
            'modified': modified or datetime.now(timezone.utc) - timedelta(minutes=1),
        })

    async def fetch(self, name, descriptor):
        self.calls.append((name, dict(descriptor)))
        if descriptor.get('fail'):
            raise SourceError(f"Source {name} is unavailable")

        since = descriptor.get('since')
        return [
            Entry(
                name=name,
                path=item['path'],
                type=item['type'],
                data=item['data'],
                metadata={'modified': item['modified'].isoformat()}
            )
            for item in self.items.get(name, [])
            if since is None or item['modified'] > since
        ]


class RecordingSink(DataSink):
    """Sink that records entries and fails those whose path is in ``fail_paths``."""

    def __init__(self, fail_paths=None):
        self.fail_paths = set(fail_paths or [])
        self.restored = []

    async def restore(self, entry, options):
        if entry.path in self.fail_paths:
            raise SinkError(f"Induced failure for {entry.path}")
        self.restored.append(entry)
        return {
            'type': entry.type,
            'name': entry.name,
            'destination': f"memory://{entry.path}",
            'restored': True,
            'size': entry.size,
        }


@pytest.fixture
def test_config(tmp_path):
    """
    Testing configuration rooted in tmp_path.

    Incremental backups are off so create_backup() defaults to full.
    """
    return TestingConfig(
        backup_path=str(tmp_path / 'backups'),
        restore_path=str(tmp_path / 'restore'),
        enable_incremental_backup=False,
        retention_days=30,
        kdf_iterations=1000
    )


@pytest.fixture
def crypto():
    """CryptoManager with a low iteration count for fast tests."""
    return CryptoManager(iterations=1000)


@pytest.fixture
def memory_source():
    """Empty in-memory provider for database entries."""
    return MemorySource('database')


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def make_sink():
    """Factory for RecordingSink instances that fail the given entry paths."""
    return RecordingSink


@pytest.fixture
def archiver(memory_source, crypto):
    """Archiver that reads every entry type from memory_source."""
    return Archiver(
        {
            'database': memory_source,
            'file': memory_source,
            'search-index': memory_source,
            'cache': memory_source,
        },
        crypto=crypto
    )


@pytest.fixture
def restorer(recording_sink, crypto, tmp_path):
    """Restorer writing files to disk and recording everything else."""
    return Restorer(
        {
            'file': FileSink(),
            'database': recording_sink,
            'search-index': recording_sink,
            'cache': recording_sink,
        },
        crypto=crypto,
        default_restore_path=str(tmp_path / 'restore')
    )


@pytest.fixture
def manager(test_config, archiver, restorer):
    """BackupManager wired to the in-memory fakes."""
    return BackupManager(
        test_config,
        archiver,
        restorer,
        store=BackupStore(test_config.backup_path)
    )


@pytest.fixture
def three_sources(memory_source):
    """
    Three sources of known sizes: users, notes, config.

    Returns the source descriptors for create_backup().
    """
    memory_source.put('users', 'database/users.json', b'{"users": [1, 2, 3]}' * 10)
    memory_source.put('notes', 'database/notes.json', b'note ' * 200)
    memory_source.put('config', 'cache/config.json', b'{"debug": false}', entry_type='cache')

    return {
        'users': {'type': 'database'},
        'notes': {'type': 'database'},
        'config': {'type': 'cache'},
    }


@pytest.fixture
def sqlite_engine(tmp_path):
    """
    SQLite engine with a populated ``notes`` table.

    Rows: 3 notes, two owned by user 1 and one by user 2, last updated
    on 2024-01-10, 2024-02-10 and 2024-03-10.
    """
    engine = create_engine(f"sqlite:///{tmp_path / 'app.db'}")
    metadata = MetaData()
    notes = Table(
        'notes', metadata,
        Column('id', Integer, primary_key=True),
        Column('user_id', Integer, nullable=False),
        Column('body', String(200)),
        Column('updated_at', DateTime, nullable=False),
    )
    metadata.create_all(engine)

    with engine.begin() as conn:
        conn.execute(insert(notes), [
            {'id': 1, 'user_id': 1, 'body': 'first', 'updated_at': datetime(2024, 1, 10)},
            {'id': 2, 'user_id': 1, 'body': 'second', 'updated_at': datetime(2024, 2, 10)},
            {'id': 3, 'user_id': 2, 'body': 'third', 'updated_at': datetime(2024, 3, 10)},
        ])

    yield engine
    engine.dispose()


@pytest.fixture
def empty_sqlite_engine(tmp_path):
    """SQLite engine with an empty ``notes`` table of the same shape."""
    engine = create_engine(f"sqlite:///{tmp_path / 'restored.db'}")
    metadata = MetaData()
    Table(
        'notes', metadata,
        Column('id', Integer, primary_key=True),
        Column('user_id', Integer, nullable=False),
        Column('body', String(200)),
        Column('updated_at', DateTime, nullable=False),
    )
    metadata.create_all(engine)

    yield engine
    engine.dispose()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        # Create mock S3 resource
        s3 = boto3.resource('s3', region_name='us-east-1')

        # Create test bucket
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates under tmp_path/data:
    - test_file1.txt
    - test_file2.log
    - nested/test_file3.txt
    - test_file.pyc (should be excluded in tests)
    """
    data_dir = tmp_path / 'data'
    data_dir.mkdir()

    # Create files
    (data_dir / 'test_file1.txt').write_text('Test content 1')
    (data_dir / 'test_file2.log').write_text('Test log content')

    # Create nested directory
    nested_dir = data_dir / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    # Create file that should be excluded
    (data_dir / 'test_file.pyc').write_bytes(b'compiled python')

    return data_dir


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('snapshelf.scheduler.AsyncIOScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        # Mock scheduler methods
        scheduler_instance.running = False
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
