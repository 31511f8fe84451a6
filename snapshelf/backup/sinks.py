"""
Restore sinks, one per entry type.

Every sink implements ``restore(entry, options)`` and returns a dict with
``type``, ``name``, ``destination`` and ``restored``.
"""

import os
import json
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from sqlalchemy import MetaData, Table, and_, delete, insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from snapshelf.exceptions import BackupError
from snapshelf.models import Entry
from .sources import run_callable


logger = logging.getLogger(__name__)


class SinkError(BackupError):
    """Raised when an entry cannot be restored."""
    pass


def resolve_destination(restore_path: str, entry_path: str) -> Path:
    """
    Resolve where an entry lands under the restore root.

    Raises:
        SinkError: If the entry path escapes the restore root
    """
    root = Path(restore_path).expanduser().resolve()
    destination = (root / entry_path).resolve()
    if destination != root and root not in destination.parents:
        raise SinkError(f"Entry path escapes restore directory: {entry_path}")
    return destination


def _write_file(destination: Path, data: bytes, overwrite: bool):
    if destination.exists() and not overwrite:
        raise SinkError(f"File already exists: {destination}")
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(data)


class DataSink(ABC):
    """Receives restored entries of one type."""

    @abstractmethod
    async def restore(self, entry: Entry, options: Dict[str, Any]) -> Dict[str, Any]:
        """
        Restore a single entry.

        Args:
            entry: Entry read from the archive
            options: Restore options (restore_path, overwrite_existing, ...)

        Returns:
            Dict with type, name, destination and restored keys

        Raises:
            SinkError: If the entry cannot be restored
        """


class FileSink(DataSink):
    """Writes file entries under the restore directory, keeping their archive path."""

    async def restore(self, entry: Entry, options: Dict[str, Any]) -> Dict[str, Any]:
        destination = resolve_destination(options['restore_path'], entry.path)
        overwrite = options.get('overwrite_existing', False)

        try:
            await asyncio.to_thread(_write_file, destination, entry.data, overwrite)
            mode = entry.metadata.get('mode')
            if mode is not None:
                os.chmod(destination, mode)
        except PermissionError as e:
            raise SinkError(f"Permission denied writing {destination}: {e}")
        except OSError as e:
            raise SinkError(f"Failed to write {destination}: {e}")

        return {
            'type': entry.type,
            'name': entry.name,
            'destination': str(destination),
            'restored': True,
            'size': entry.size,
        }


def _coerce_record(table: Table, record: Dict[str, Any]) -> Dict[str, Any]:
    """Turn ISO strings back into datetime/date values for temporal columns."""
    coerced = {}
    for key, value in record.items():
        if key not in table.c:
            continue
        if isinstance(value, str):
            try:
                python_type = table.c[key].type.python_type
            except NotImplementedError:
                python_type = None
            if python_type is datetime:
                value = datetime.fromisoformat(value)
            elif python_type is date:
                value = date.fromisoformat(value)
        coerced[key] = value
    return coerced


class DatabaseSink(DataSink):
    """
    Inserts exported records back into their table.

    With ``overwrite_existing`` rows sharing a primary key are deleted first;
    otherwise a conflicting row fails the entry.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    async def restore(self, entry: Entry, options: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._load, entry, options)

    def _load(self, entry: Entry, options: Dict[str, Any]) -> Dict[str, Any]:
        try:
            payload = json.loads(entry.data.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SinkError(f"Database entry {entry.path} is not valid JSON: {e}")

        table_name = payload.get('table') or entry.metadata.get('table') or entry.name
        records = payload.get('records') or []

        try:
            table = Table(table_name, MetaData(), autoload_with=self.engine)
            rows = [_coerce_record(table, record) for record in records]
            primary_key = [column.name for column in table.primary_key.columns]

            with self.engine.begin() as conn:
                if options.get('overwrite_existing') and primary_key:
                    for row in rows:
                        conn.execute(delete(table).where(and_(
                            *[table.c[column] == row.get(column) for column in primary_key]
                        )))
                if rows:
                    conn.execute(insert(table), rows)
        except ValueError as e:
            raise SinkError(f"Bad value in {table_name} records: {e}")
        except SQLAlchemyError as e:
            raise SinkError(f"Failed to restore table {table_name}: {e}")

        logger.debug(f"Restored {len(rows)} records into {table_name}")

        return {
            'type': entry.type,
            'name': entry.name,
            'destination': table_name,
            'restored': True,
            'records': len(rows),
            'size': entry.size,
        }


class DumpSink(DataSink):
    """
    Restores a search-index or cache export.

    Hands the entry to ``importer`` when one is given, otherwise writes the
    dump under the restore directory for an operator to load.
    """

    def __init__(self, importer: Optional[Callable] = None):
        self.importer = importer

    async def restore(self, entry: Entry, options: Dict[str, Any]) -> Dict[str, Any]:
        if self.importer is not None:
            try:
                destination = await run_callable(self.importer, entry, options)
            except SinkError:
                raise
            except Exception as e:
                raise SinkError(f"Importer for {entry.name} failed: {e}")
            destination = destination or entry.name
        else:
            path = resolve_destination(options['restore_path'], entry.path)
            try:
                await asyncio.to_thread(
                    _write_file, path, entry.data, options.get('overwrite_existing', False)
                )
            except OSError as e:
                raise SinkError(f"Failed to write {path}: {e}")
            destination = str(path)

        return {
            'type': entry.type,
            'name': entry.name,
            'destination': str(destination),
            'restored': True,
            'size': entry.size,
        }


def create_default_sinks(engine: Optional[Engine] = None) -> Dict[str, DataSink]:
    """
    Factory for the standard sink set, keyed by entry type.

    The database sink is only registered when an engine is given.
    """
    sinks = {
        'file': FileSink(),
        'search-index': DumpSink(),
        'cache': DumpSink(),
    }
    if engine is not None:
        sinks['database'] = DatabaseSink(engine)
    return sinks
