"""
Data source providers for backup operations.

Supports:
- FileSource: files and directories on the local filesystem
- DatabaseSource: tables exported through SQLAlchemy
- DumpSource: opaque search-index or cache exports

Every provider implements ``fetch(name, descriptor)`` and returns the
entries for one source. A descriptor may carry ``since`` (only return data
changed after that time) and ``criteria`` (selective backup filters such as
``user_id`` and ``date_range``).
"""

import json
import asyncio
import logging
import mimetypes
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from decimal import Decimal
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import MetaData, Table, create_engine, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from snapshelf.exceptions import BackupError
from snapshelf.models import Entry


logger = logging.getLogger(__name__)


class SourceError(BackupError):
    """Raised when source acquisition fails."""
    pass


async def run_callable(func: Callable, *args):
    """Await ``func`` if it is a coroutine function, otherwise run it in a thread."""
    if asyncio.iscoroutinefunction(func):
        return await func(*args)
    return await asyncio.to_thread(func, *args)


def parse_timestamp(value) -> Optional[datetime]:
    """
    Parse an ISO timestamp or datetime into an aware UTC datetime.

    Naive values are taken to be UTC.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError:
            raise SourceError(f"Invalid timestamp: {value}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _date_range(criteria: Dict[str, Any]):
    date_range = (criteria or {}).get('date_range') or {}
    return parse_timestamp(date_range.get('from')), parse_timestamp(date_range.get('to'))


class DataSourceProvider(ABC):
    """Supplies backup entries for one kind of data store."""

    entry_type = None

    @abstractmethod
    async def fetch(self, name: str, descriptor: Dict[str, Any]) -> List[Entry]:
        """
        Fetch the entries for a source.

        Args:
            name: Source name from the catalogue
            descriptor: Source descriptor, including optional ``since`` and ``criteria``

        Returns:
            List of entries; empty when nothing changed since ``since``

        Raises:
            SourceError: If the source cannot be read
        """


class FileSource(DataSourceProvider):
    """
    Handler for local filesystem sources.

    Descriptor keys:
        paths: List of file/directory paths to backup
        exclude_patterns: List of glob patterns to exclude (e.g., *.pyc, __pycache__, .venv)
    """

    entry_type = 'file'

    def __init__(self, exclude_patterns: List[str] = None):
        """
        Initialize file source handler.

        Args:
            exclude_patterns: Glob patterns excluded from every file source
        """
        self.exclude_patterns = exclude_patterns or []

    def _should_exclude(self, path: Path, patterns: List[str]) -> bool:
        """
        Check if a path should be excluded based on exclude patterns.

        Args:
            path: Path to check
            patterns: Glob patterns

        Returns:
            True if path matches any exclude pattern, False otherwise
        """
        path_str = str(path)
        path_name = path.name

        for pattern in patterns:
            # Match against full path or just the name
            if fnmatch(path_str, pattern) or fnmatch(path_name, pattern):
                return True
            # Also match against relative path patterns
            if pattern.startswith('**/') and fnmatch(path_name, pattern[3:]):
                return True
            # Excluded directory anywhere above the file
            if any(fnmatch(part, pattern) for part in path.parts[:-1]):
                return True

        return False

    async def fetch(self, name: str, descriptor: Dict[str, Any]) -> List[Entry]:
        return await asyncio.to_thread(self._collect, name, descriptor)

    def _collect(self, name: str, descriptor: Dict[str, Any]) -> List[Entry]:
        paths = descriptor.get('paths') or []
        if isinstance(paths, str):
            paths = [paths]
        if not paths:
            raise SourceError(f"File source {name} has no paths")

        patterns = self.exclude_patterns + list(descriptor.get('exclude_patterns') or [])
        since = parse_timestamp(descriptor.get('since'))
        date_from, date_to = _date_range(descriptor.get('criteria'))

        entries = []
        for path in paths:
            source_path = Path(path).expanduser().resolve()

            if not source_path.exists():
                raise SourceError(f"Path does not exist: {path}")

            if source_path.is_file():
                candidates = [(source_path, source_path.name)]
            elif source_path.is_dir():
                # Keep the directory name so two sources never collide
                candidates = [
                    (item, str(item.relative_to(source_path.parent)))
                    for item in sorted(source_path.rglob('*'))
                    if item.is_file()
                ]
            else:
                raise SourceError(f"Unsupported path type: {path}")

            for file_path, relative in candidates:
                if self._should_exclude(file_path, patterns):
                    continue

                try:
                    stat = file_path.stat()
                    modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)

                    if since and modified <= since:
                        continue
                    if date_from and modified < date_from:
                        continue
                    if date_to and modified > date_to:
                        continue

                    data = file_path.read_bytes()
                except PermissionError as e:
                    raise SourceError(f"Permission denied accessing {file_path}: {e}")
                except OSError as e:
                    raise SourceError(f"Failed to read {file_path}: {e}")

                entries.append(Entry(
                    name=file_path.name,
                    path=f"files/{name}/{Path(relative).as_posix()}",
                    type='file',
                    data=data,
                    metadata={
                        'source': name,
                        'originalPath': str(file_path),
                        'mimeType': mimetypes.guess_type(file_path.name)[0] or 'application/octet-stream',
                        'modified': modified.isoformat(),
                        'mode': stat.st_mode & 0o777,
                    }
                ))

        logger.debug(f"File source {name}: {len(entries)} files")
        return entries


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bytes):
        return value.hex()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class DatabaseSource(DataSourceProvider):
    """
    Exports one table per source through SQLAlchemy.

    Descriptor keys:
        table: Table name (defaults to the source name)
        url: Database URL, used when no engine was given to the provider
        where: Optional SQL filter applied to every export
        updated_column: Column compared against ``since`` for incremental backups
        owner_column: Column compared against ``criteria['user_id']``
        date_column: Column compared against ``criteria['date_range']``
    """

    entry_type = 'database'

    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine
        self._engines = {}

    def _engine_for(self, descriptor: Dict[str, Any]) -> Engine:
        url = descriptor.get('url')
        if url:
            if url not in self._engines:
                self._engines[url] = create_engine(url)
            return self._engines[url]
        if self.engine is None:
            raise SourceError("Database source has no engine and no url")
        return self.engine

    async def fetch(self, name: str, descriptor: Dict[str, Any]) -> List[Entry]:
        return await asyncio.to_thread(self._export, name, descriptor)

    def _export(self, name: str, descriptor: Dict[str, Any]) -> List[Entry]:
        table_name = descriptor.get('table') or name
        engine = self._engine_for(descriptor)
        since = parse_timestamp(descriptor.get('since'))
        criteria = descriptor.get('criteria') or {}
        date_from, date_to = _date_range(criteria)

        try:
            table = Table(table_name, MetaData(), autoload_with=engine)
            stmt = select(table)

            if descriptor.get('where'):
                stmt = stmt.where(text(descriptor['where']))

            updated_column = descriptor.get('updated_column')
            if since and updated_column:
                stmt = stmt.where(table.c[updated_column] > _naive_utc(since))
            elif since:
                logger.debug(f"Database source {name} has no updated_column, exporting all rows")

            owner_column = descriptor.get('owner_column')
            if criteria.get('user_id') is not None and owner_column:
                stmt = stmt.where(table.c[owner_column] == criteria['user_id'])

            date_column = descriptor.get('date_column')
            if date_column and date_from:
                stmt = stmt.where(table.c[date_column] >= _naive_utc(date_from))
            if date_column and date_to:
                stmt = stmt.where(table.c[date_column] <= _naive_utc(date_to))

            primary_key = [column.name for column in table.primary_key.columns]
            if primary_key:
                stmt = stmt.order_by(*[table.c[column] for column in primary_key])

            with engine.connect() as conn:
                records = [dict(row._mapping) for row in conn.execute(stmt)]
        except KeyError as e:
            raise SourceError(f"Unknown column {e} in database source {name}")
        except SQLAlchemyError as e:
            raise SourceError(f"Failed to export table {table_name}: {e}")

        if since and updated_column and not records:
            return []

        payload = json.dumps({
            'table': table_name,
            'columns': [column.name for column in table.columns],
            'records': records,
        }, default=_json_default).encode('utf-8')

        logger.debug(f"Database source {name}: {len(records)} records from {table_name}")

        return [Entry(
            name=name,
            path=f"database/{name}.json",
            type='database',
            data=payload,
            metadata={
                'table': table_name,
                'recordCount': len(records),
                'primaryKey': primary_key,
                'exportedAt': datetime.now(timezone.utc).isoformat(),
            }
        )]


def _naive_utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class DumpSource(DataSourceProvider):
    """
    Opaque export of a search index or cache.

    Either an ``exporter`` callable (sync or async, called with the source
    name and descriptor, returning bytes, a JSON-serializable object, or
    None when nothing changed) or a descriptor ``dump_path`` pointing at a
    dump file on disk.
    """

    def __init__(self, entry_type: str, exporter: Optional[Callable] = None):
        self.entry_type = entry_type
        self.exporter = exporter

    async def fetch(self, name: str, descriptor: Dict[str, Any]) -> List[Entry]:
        if self.exporter is not None:
            try:
                exported = await run_callable(self.exporter, name, descriptor)
            except SourceError:
                raise
            except Exception as e:
                raise SourceError(f"Exporter for {name} failed: {e}")
            extension = 'dump'
        elif descriptor.get('dump_path'):
            exported = await asyncio.to_thread(self._read_dump, name, descriptor)
            extension = Path(descriptor['dump_path']).suffix.lstrip('.') or 'dump'
        else:
            raise SourceError(f"{self.entry_type} source {name} has no exporter or dump_path")

        if exported is None:
            return []

        if not isinstance(exported, bytes):
            exported = json.dumps(exported, default=_json_default).encode('utf-8')
            extension = 'json'

        return [Entry(
            name=name,
            path=f"{self.entry_type}/{name}.{extension}",
            type=self.entry_type,
            data=exported,
            metadata={
                'source': name,
                'exportedAt': datetime.now(timezone.utc).isoformat(),
            }
        )]

    def _read_dump(self, name: str, descriptor: Dict[str, Any]) -> Optional[bytes]:
        dump_path = Path(descriptor['dump_path']).expanduser()
        since = parse_timestamp(descriptor.get('since'))

        try:
            if since:
                modified = datetime.fromtimestamp(dump_path.stat().st_mtime, tz=timezone.utc)
                if modified <= since:
                    return None
            return dump_path.read_bytes()
        except FileNotFoundError:
            raise SourceError(f"Dump file not found for {name}: {dump_path}")
        except OSError as e:
            raise SourceError(f"Failed to read dump for {name}: {e}")


def create_default_providers(engine: Optional[Engine] = None,
                             exclude_patterns: List[str] = None) -> Dict[str, DataSourceProvider]:
    """
    Factory for the standard provider set, keyed by entry type.

    Args:
        engine: Optional SQLAlchemy engine for database sources
        exclude_patterns: Glob patterns excluded from every file source

    Returns:
        Dict mapping entry type to provider
    """
    return {
        'file': FileSource(exclude_patterns),
        'database': DatabaseSource(engine),
        'search-index': DumpSource('search-index'),
        'cache': DumpSource('cache'),
    }
