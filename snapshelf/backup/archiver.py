"""
Archive codec.

Collects entries from data source providers, frames them into a container,
streams the container through the configured compressor, optionally
encrypts the result and writes a ``<archive>.meta.json`` sidecar.
"""

import os
import json
import time
import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from snapshelf.exceptions import BackupError, BackupIOError, ValidationError
from snapshelf.models import Entry, normalize_entry_type
from snapshelf.utils.crypto import ALGORITHM, CryptoManager
from .compression import ENCRYPTED_EXTENSION, archive_path_for, open_compressor, validate_compression
from .container import CONTAINER_VERSION, write_container
from .sources import DataSourceProvider, SourceError


logger = logging.getLogger(__name__)

SIDECAR_SUFFIX = '.meta.json'


def sidecar_path(archive_path: str) -> str:
    return f"{archive_path}{SIDECAR_SUFFIX}"


class Archiver:
    """
    Builds backup archives from registered data source providers.

    Providers are keyed by entry type; a source descriptor's ``type``
    selects which provider fetches it.
    """

    def __init__(self, providers: Dict[str, DataSourceProvider],
                 crypto: Optional[CryptoManager] = None, max_concurrency: int = 3):
        """
        Initialize archiver.

        Args:
            providers: Dict mapping entry type to provider
            crypto: CryptoManager used when an encryption key is given
            max_concurrency: Maximum number of sources fetched at once
        """
        self.providers = {normalize_entry_type(key): value for key, value in providers.items()}
        self.crypto = crypto or CryptoManager()
        self.max_concurrency = max(1, max_concurrency)
        self.stats = {
            'total_archives': 0,
            'total_bytes_processed': 0,
            'average_compression_ratio': 0.0,
            'average_processing_time': 0.0,
        }

    async def create_archive(self, data_sources: Dict[str, Dict[str, Any]], output_path: str,
                             options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Collect sources and write them into one archive.

        Args:
            data_sources: Dict mapping source name to descriptor
            output_path: Archive path without compression extension
            options: compression_method, compression_level, encryption_key,
                continue_on_error (default True), metadata

        Returns:
            Dict with success, path, original_size, compressed_size,
            compression_ratio, metadata, processing_time and warnings

        Raises:
            ValidationError: If there are no sources or nothing was collected
            BackupIOError: If the output directory is missing
            ConfigurationError: If compression settings are invalid
            SourceError: If a source fails and continue_on_error is False
        """
        if not data_sources:
            raise ValidationError("No data sources provided")

        options = options or {}
        self._check_output(output_path, options)

        started = time.monotonic()
        entries, warnings = await self.collect(data_sources, options)
        if not entries:
            raise ValidationError("No entries collected from any data source")

        result = await self.write_archive(entries, output_path, options, started=started)
        result['warnings'] = warnings + result['warnings']
        return result

    async def collect(self, data_sources: Dict[str, Dict[str, Any]],
                      options: Optional[Dict[str, Any]] = None) -> Tuple[List[Entry], List[str]]:
        """
        Fetch entries from every source, keeping source order.

        Args:
            data_sources: Dict mapping source name to descriptor
            options: continue_on_error (default True)

        Returns:
            Tuple of (entries, warnings)

        Raises:
            ValidationError: If data_sources is empty
            BackupError: The first source failure when continue_on_error is False
        """
        if not data_sources:
            raise ValidationError("No data sources provided")

        options = options or {}
        continue_on_error = options.get('continue_on_error', True)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def fetch_bounded(name, descriptor):
            async with semaphore:
                return await self._fetch_source(name, descriptor)

        names = list(data_sources.keys())
        results = await asyncio.gather(
            *[fetch_bounded(name, data_sources[name]) for name in names],
            return_exceptions=True
        )

        entries = []
        warnings = []
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                if not continue_on_error:
                    logger.error(f"Source {name} failed, aborting archive: {result}")
                    raise result
                warning = f"Source {name} failed: {result}"
                logger.warning(warning)
                warnings.append(warning)
                continue
            entries.extend(result)

        return entries, warnings

    async def _fetch_source(self, name: str, descriptor: Dict[str, Any]) -> List[Entry]:
        entry_type = normalize_entry_type(descriptor.get('type', ''))
        provider = self.providers.get(entry_type)
        if provider is None:
            raise ValidationError(f"No data source provider registered for type {entry_type}")

        try:
            entries = await provider.fetch(name, descriptor)
        except BackupError:
            raise
        except Exception as e:
            raise SourceError(f"Failed to fetch source {name}: {e}")

        for entry in entries:
            normalize_entry_type(entry.type)
        logger.debug(f"Fetched {len(entries)} entries from {name}")
        return list(entries)

    def _check_output(self, output_path: str, options: Dict[str, Any]):
        if not output_path:
            raise ValidationError("Output path is required")

        validate_compression(
            options.get('compression_method', 'gzip'),
            options.get('compression_level', 6)
        )

        output_dir = os.path.dirname(os.path.abspath(output_path))
        if not os.path.isdir(output_dir):
            raise BackupIOError(f"Output directory does not exist: {output_dir}")

    async def write_archive(self, entries: List[Entry], output_path: str,
                            options: Optional[Dict[str, Any]] = None,
                            started: Optional[float] = None) -> Dict[str, Any]:
        """
        Write already collected entries into an archive.

        Args:
            entries: Entries in archive order
            output_path: Archive path without compression extension
            options: See create_archive()
            started: monotonic start time, when collection was timed by the caller

        Returns:
            Same shape as create_archive()
        """
        options = options or {}
        self._check_output(output_path, options)
        if not entries:
            raise ValidationError("No entries to archive")

        started = started if started is not None else time.monotonic()
        method = options.get('compression_method', 'gzip')
        level = options.get('compression_level', 6)
        encryption_key = options.get('encryption_key')

        archive_path = archive_path_for(output_path, method)
        header, original_size = await asyncio.to_thread(
            self._write_container, archive_path, entries, method, level
        )
        compressed_size = os.path.getsize(archive_path)
        ratio = compressed_size / original_size if original_size else 1.0

        final_path = archive_path
        try:
            if encryption_key:
                final_path = await asyncio.to_thread(self.crypto.encrypt_file, archive_path, encryption_key)
            final_size = os.path.getsize(final_path)

            metadata = dict(options.get('metadata') or {})
            metadata['archive'] = {
                'version': CONTAINER_VERSION,
                'created': header['createdAt'],
                'path': final_path,
                'size': final_size,
                'originalSize': original_size,
                'compressedSize': compressed_size,
                'entryCount': len(entries),
                'fileCount': sum(1 for entry in entries if entry.type == 'file'),
                'compression': {
                    'method': method,
                    'level': level,
                    'ratio': round(ratio, 4),
                },
                'encryption': {
                    'enabled': bool(encryption_key),
                    'algorithm': ALGORITHM if encryption_key else None,
                },
            }
            metadata['entries'] = [entry.meta() for entry in entries]

            await asyncio.to_thread(self._write_sidecar, sidecar_path(final_path), metadata)
        except Exception as e:
            # A half-finished archive must not show up as a backup
            await asyncio.to_thread(self._discard, archive_path, f"{archive_path}{ENCRYPTED_EXTENSION}")
            if isinstance(e, BackupError):
                raise
            raise BackupIOError(f"Failed to finish archive {final_path}: {e}")

        warnings = []
        if ratio > 1.0:
            warnings.append(f"Compression grew the archive (ratio {ratio:.2f})")

        processing_time = time.monotonic() - started
        self._update_stats(original_size, ratio, processing_time)

        logger.info(
            f"Archive created: {os.path.basename(final_path)} "
            f"({len(entries)} entries, {original_size} -> {final_size} bytes, ratio {ratio:.2f})"
        )

        return {
            'success': True,
            'path': final_path,
            'original_size': original_size,
            'compressed_size': compressed_size,
            'compression_ratio': ratio,
            'metadata': metadata,
            'processing_time': processing_time,
            'warnings': warnings,
        }

    def _write_container(self, archive_path: str, entries: List[Entry], method: str, level: int):
        try:
            with open(archive_path, 'wb') as f:
                compressor = open_compressor(f, method, level)
                try:
                    return write_container(compressor, entries)
                finally:
                    compressor.close()
        except Exception as e:
            # Clean up partial archive on failure
            if os.path.exists(archive_path):
                os.remove(archive_path)
            if isinstance(e, BackupError):
                raise
            raise BackupIOError(f"Failed to write archive {archive_path}: {e}")

    def _write_sidecar(self, path: str, metadata: Dict[str, Any]):
        with open(path, 'w') as f:
            json.dump(metadata, f, indent=2, default=str)

    def _discard(self, *paths: str):
        for path in paths:
            for candidate in (path, sidecar_path(path)):
                if os.path.exists(candidate):
                    os.remove(candidate)

    def _update_stats(self, original_size: int, ratio: float, processing_time: float):
        stats = self.stats
        count = stats['total_archives']
        stats['average_compression_ratio'] = (stats['average_compression_ratio'] * count + ratio) / (count + 1)
        stats['average_processing_time'] = (stats['average_processing_time'] * count + processing_time) / (count + 1)
        stats['total_archives'] = count + 1
        stats['total_bytes_processed'] += original_size

    def get_statistics(self) -> Dict[str, Any]:
        return dict(self.stats)
