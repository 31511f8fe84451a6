"""
Restore codec.

Reverses the archiver: decrypts, decompresses, parses the container,
filters entries and hands each one to the sink registered for its type.
"""

import io
import os
import json
import time
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from snapshelf.exceptions import (
    BackupError,
    BackupIOError,
    CryptoError,
    IntegrityError,
    RestoreThresholdError,
    ValidationError,
)
from snapshelf.models import ENTRY_TYPE_ALIASES, Entry, normalize_entry_type
from snapshelf.utils.crypto import CryptoManager
from snapshelf.utils.locks import KeyedLocks
from .archiver import sidecar_path
from .compression import ENCRYPTED_EXTENSION, detect_compression_method, open_decompressor
from .container import ContainerReader
from .sinks import DataSink, SinkError


logger = logging.getLogger(__name__)

SUCCESS_THRESHOLD = 0.9

DEFAULT_OPTIONS = {
    'restore_path': './restore',
    'overwrite_existing': False,
    'allow_partial_restore': False,
    'encryption_key': None,
    'selective_restore': None,
    'continue_on_error': True,
    'validate': True,
}


def build_entry_filter(selective: Optional[Dict[str, Any]]):
    """
    Build a predicate over entry metadata from selective restore options.

    Types accept aliases; path filters are prefix matches on the entry path.
    Returns None when no filter applies.
    """
    if not selective:
        return None

    def _types(key):
        return {ENTRY_TYPE_ALIASES.get(t, t) for t in selective.get(key) or []}

    include_types = _types('include_types')
    exclude_types = _types('exclude_types')
    include_paths = list(selective.get('include_paths') or [])
    exclude_paths = list(selective.get('exclude_paths') or [])

    def accept(meta: Dict[str, Any]) -> bool:
        entry_type = ENTRY_TYPE_ALIASES.get(meta.get('type'), meta.get('type'))
        path = meta.get('path') or ''

        if include_types and entry_type not in include_types:
            return False
        if entry_type in exclude_types:
            return False
        if include_paths and not any(path.startswith(prefix) for prefix in include_paths):
            return False
        if any(path.startswith(prefix) for prefix in exclude_paths):
            return False
        return True

    return accept


class Restorer:
    """
    Restores backup archives into registered sinks.

    Restores into the same restore path are serialized; restores into
    different paths run concurrently.
    """

    def __init__(self, sinks: Dict[str, DataSink], crypto: Optional[CryptoManager] = None,
                 default_restore_path: str = './restore'):
        """
        Initialize restorer.

        Args:
            sinks: Dict mapping entry type to sink
            crypto: CryptoManager used for encrypted backups
            default_restore_path: Restore directory used when options give none
        """
        self.sinks = {normalize_entry_type(key): value for key, value in sinks.items()}
        self.crypto = crypto or CryptoManager()
        self.default_restore_path = default_restore_path
        self.active_restores = {}
        self._path_locks = KeyedLocks()
        self.stats = {
            'total_restores': 0,
            'successful_restores': 0,
            'failed_restores': 0,
            'total_bytes_restored': 0,
            'average_restore_time': 0.0,
        }

    async def restore_backup(self, backup_info: Dict[str, Any],
                             options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Restore a backup file.

        Args:
            backup_info: Dict with id, path and size of the backup file
            options: restore_path, overwrite_existing, allow_partial_restore,
                encryption_key, selective_restore, continue_on_error, validate

        Returns:
            Dict with success, restore_id, backup_id, restored_entries,
            failed_entries, total_size, success_count, failure_count, duration

        Raises:
            BackupIOError: If the backup file is missing or unreadable
            CryptoError: If the key is missing or wrong
            IntegrityError: On size mismatches or a corrupt container
            ValidationError: On an unknown entry type when continue_on_error is False
            RestoreThresholdError: If fewer than 90% of entries were restored
        """
        options = {**DEFAULT_OPTIONS, 'restore_path': self.default_restore_path, **(options or {})}
        restore_id = f"restore_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}_{os.urandom(3).hex()}"
        backup_id = backup_info.get('id')
        path = backup_info.get('path')

        if not path or not os.path.isfile(path):
            self._record(False, 0, 0.0)
            raise BackupIOError(f"Backup file not found: {path}")

        restore_path = os.path.abspath(options['restore_path'])
        options['restore_path'] = restore_path

        self.active_restores[restore_id] = {
            'restore_id': restore_id,
            'backup_id': backup_id,
            'status': 'pending',
            'started_at': datetime.now(timezone.utc).isoformat(),
        }
        started = time.monotonic()
        logger.info(f"Starting restore {restore_id} of backup {backup_id}")

        try:
            async with self._path_locks.hold(restore_path):
                self.active_restores[restore_id]['status'] = 'running'
                result = await self._restore(restore_id, backup_info, options, started)
        except BackupError as e:
            self._record(False, 0, time.monotonic() - started)
            logger.error(f"Restore {restore_id} failed: {e}")
            raise
        finally:
            self.active_restores.pop(restore_id, None)

        self._record(True, result['total_size'], result['duration'])
        logger.info(
            f"Restore {restore_id} completed: {result['success_count']} restored, "
            f"{result['failure_count']} failed"
        )
        return result

    async def _restore(self, restore_id: str, backup_info: Dict[str, Any],
                       options: Dict[str, Any], started: float) -> Dict[str, Any]:
        path = backup_info['path']
        validate = options.get('validate', True)

        raw = await asyncio.to_thread(self._read_file, path)
        sidecar = await asyncio.to_thread(self._read_sidecar, path)

        if validate:
            self._validate_size(path, raw, backup_info, sidecar)

        if path.endswith(ENCRYPTED_EXTENSION):
            key = options.get('encryption_key')
            if not key:
                raise CryptoError(f"Backup {backup_info.get('id')} is encrypted and no key was given")
            raw = await asyncio.to_thread(self.crypto.decrypt, raw, key)

        method = detect_compression_method(os.path.basename(path))
        if method is None:
            method = ((sidecar or {}).get('archive', {}).get('compression') or {}).get('method', 'none')

        header, entries, skipped = await asyncio.to_thread(
            self._read_entries, raw, method, build_entry_filter(options.get('selective_restore'))
        )
        logger.debug(
            f"Restore {restore_id}: {header['entryCount']} entries in archive, "
            f"{len(entries)} selected, {skipped} skipped"
        )

        restored, failed = await self._dispatch(entries, options)

        success_count = len(restored)
        failure_count = len(failed)
        result = {
            'success': True,
            'restore_id': restore_id,
            'backup_id': backup_info.get('id'),
            'restored_entries': restored,
            'failed_entries': failed,
            'skipped_entries': skipped,
            'total_size': sum(item.get('size', 0) for item in restored),
            'success_count': success_count,
            'failure_count': failure_count,
            'duration': time.monotonic() - started,
        }

        if validate:
            attempted = success_count + failure_count
            if attempted and success_count / attempted < SUCCESS_THRESHOLD and not options.get('allow_partial_restore'):
                result['success'] = False
                raise RestoreThresholdError(
                    f"Only {success_count} of {attempted} entries restored "
                    f"(below {SUCCESS_THRESHOLD:.0%} threshold)",
                    result=result
                )
            self._verify_files(restored)

        return result

    async def _dispatch(self, entries: List[Entry],
                        options: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        restored = []
        failed = []

        # Sequential so entries land in archive order
        for entry in entries:
            try:
                sink = self.sinks.get(entry.type)
                if sink is None:
                    raise ValidationError(f"No sink registered for entry type {entry.type}")
                restored.append(await sink.restore(entry, options))
            except Exception as e:
                if not options.get('continue_on_error', True):
                    if isinstance(e, BackupError):
                        raise
                    raise SinkError(f"Failed to restore {entry.path}: {e}")
                logger.warning(f"Failed to restore {entry.path}: {e}")
                failed.append({
                    'name': entry.name,
                    'path': entry.path,
                    'type': entry.type,
                    'error': str(e),
                })

        return restored, failed

    def _read_file(self, path: str) -> bytes:
        try:
            with open(path, 'rb') as f:
                return f.read()
        except FileNotFoundError:
            raise BackupIOError(f"Backup file not found: {path}")
        except OSError as e:
            raise BackupIOError(f"Failed to read backup {path}: {e}")

    def _read_sidecar(self, path: str) -> Optional[Dict[str, Any]]:
        meta_path = sidecar_path(path)
        if not os.path.exists(meta_path):
            return None
        try:
            with open(meta_path, 'r') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable metadata {meta_path}: {e}")
            return None

    def _validate_size(self, path: str, raw: bytes, backup_info: Dict[str, Any],
                       sidecar: Optional[Dict[str, Any]]):
        expected = backup_info.get('size')
        if expected is not None and len(raw) != expected:
            raise IntegrityError(
                f"Backup {os.path.basename(path)} is {len(raw)} bytes, expected {expected}"
            )
        recorded = ((sidecar or {}).get('archive') or {}).get('size')
        if recorded is not None and len(raw) != recorded:
            raise IntegrityError(
                f"Backup {os.path.basename(path)} is {len(raw)} bytes, metadata records {recorded}"
            )

    def _read_entries(self, data: bytes, method: str, accept) -> Tuple[Dict[str, Any], List[Entry], int]:
        stream = open_decompressor(io.BytesIO(data), method)
        try:
            reader = ContainerReader(stream)
            header = reader.read_header()
            entries = []
            skipped = 0
            for entry in reader.iter_entries(accept):
                if entry is None:
                    skipped += 1
                else:
                    entries.append(entry)
            return header, entries, skipped
        finally:
            stream.close()

    def _verify_files(self, restored: List[Dict[str, Any]]):
        for item in restored:
            if item.get('type') == 'file' and not os.path.exists(item['destination']):
                raise IntegrityError(f"Restored file missing at {item['destination']}")

    def _record(self, success: bool, size: int, duration: float):
        stats = self.stats
        count = stats['total_restores']
        stats['average_restore_time'] = (stats['average_restore_time'] * count + duration) / (count + 1)
        stats['total_restores'] = count + 1
        if success:
            stats['successful_restores'] += 1
            stats['total_bytes_restored'] += size
        else:
            stats['failed_restores'] += 1

    def get_active_restores(self) -> List[Dict[str, Any]]:
        return list(self.active_restores.values())

    def get_statistics(self) -> Dict[str, Any]:
        stats = dict(self.stats)
        total = stats['total_restores']
        stats['success_rate'] = stats['successful_restores'] / total if total else 0.0
        return stats
