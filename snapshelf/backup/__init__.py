"""
Backup module for snapshelf.

This module handles the core backup functionality including:
- Source acquisition (files, databases, search-index and cache dumps)
- Container encoding, compression and encryption
- Restore into type-specific sinks
- Storage (local backup tree and S3)
- Orchestration and retention
"""

from .archiver import Archiver
from .restore import Restorer
from .manager import BackupManager
from .sources import DataSourceProvider, FileSource, DatabaseSource, DumpSource
from .sinks import DataSink, FileSink, DatabaseSink, DumpSink
from .storage import BackupStore, S3Storage
from .retention import RetentionManager, RetentionPolicy

__all__ = [
    'Archiver',
    'Restorer',
    'BackupManager',
    'DataSourceProvider',
    'FileSource',
    'DatabaseSource',
    'DumpSource',
    'DataSink',
    'FileSink',
    'DatabaseSink',
    'DumpSink',
    'BackupStore',
    'S3Storage',
    'RetentionManager',
    'RetentionPolicy'
]
