"""
Backup orchestrator.

Workflow for create_backup():
1. Register the job (status: pending)
2. Decide the backup type and select sources
3. Collect entries (incremental backups only ask for changes since the last backup)
4. Write the archive into full/ or incremental/
5. Verify the file and flag oversize backups
6. Copy off-site to S3 (if configured)
7. Update statistics and the job status (completed/failed)

Failures from the codecs are caught here and returned as result dicts.
"""

import os
import time
import shutil
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from snapshelf.config import BackupConfig
from snapshelf.exceptions import (
    BackupError,
    BackupIOError,
    ConfigurationError,
    IntegrityError,
    RestoreThresholdError,
    ValidationError,
)
from snapshelf.models import BACKUP_TYPES
from snapshelf.scheduler import BackupScheduler
from snapshelf.utils.locks import KeyedLocks
from .archiver import Archiver
from .compression import generate_archive_filename, generate_backup_id, get_archive_size
from .restore import Restorer
from .retention import RetentionManager
from .storage import BackupStore, S3Storage, StorageError


logger = logging.getLogger(__name__)

NO_CHANGES_MESSAGE = "No changes detected since last backup"

SORT_KEYS = {
    'timestamp': (lambda record: record.created_at, True),
    'size': (lambda record: record.size, True),
    'type': (lambda record: (record.type, record.created_at), False),
}

# Category flags and whether each category is included by default
CATEGORY_FLAGS = {
    'user': ('include_user_data', True),
    'system': ('include_system_data', True),
    'logs': ('include_logs', False),
}


def _failure(error: Exception, **extra) -> Dict[str, Any]:
    result = {
        'success': False,
        'error': str(error),
        'error_type': type(error).__name__,
    }
    result.update(extra)
    return result


class BackupManager:
    """
    Owns the backup record lifecycle, the job table and running statistics.

    Construct one per configuration and pass the codecs in.
    """

    BACKUP_JOB_ID = 'snapshelf_scheduled_backup'
    ARCHIVE_JOB_ID = 'snapshelf_scheduled_archive'

    def __init__(self, config: BackupConfig, archiver: Archiver, restorer: Restorer,
                 store: Optional[BackupStore] = None,
                 scheduler: Optional[BackupScheduler] = None,
                 s3: Optional[S3Storage] = None):
        """
        Initialize backup manager.

        Args:
            config: Backup configuration
            archiver: Archive codec
            restorer: Restore codec
            store: Backup store (defaults to one at config.backup_path)
            scheduler: Scheduler used by enable_scheduled_backups()
            s3: Off-site storage (defaults to one built from config when cloud storage is enabled)
        """
        self.config = config
        self.archiver = archiver
        self.restorer = restorer
        self.store = store or BackupStore(config.backup_path)
        self.scheduler = scheduler

        if s3 is None and config.cloud_enabled:
            s3 = S3Storage(
                bucket_name=config.cloud_bucket,
                access_key=config.cloud_access_key,
                secret_key=config.cloud_secret_key,
                region=config.cloud_region
            )
        self.s3 = s3

        self.active_jobs = {}
        self._scope_locks = KeyedLocks()
        self.stats = {
            'total_backups': 0,
            'successful_backups': 0,
            'failed_backups': 0,
            'total_size': 0,
            'last_backup_time': None,
            'archive_sweeps': 0,
            'last_archive_time': None,
            'next_scheduled_backup': None,
        }

    # Job table

    def _start_job(self, kind: str) -> str:
        job_id = f"{kind}_job_{os.urandom(4).hex()}"
        self.active_jobs[job_id] = {
            'id': job_id,
            'kind': kind,
            'status': 'pending',
            'started_at': datetime.now(timezone.utc).isoformat(),
        }
        return job_id

    def _set_status(self, job_id: str, status: str):
        if job_id in self.active_jobs:
            self.active_jobs[job_id]['status'] = status

    def get_active_jobs(self) -> List[Dict[str, Any]]:
        return [dict(job) for job in self.active_jobs.values()]

    # Backup creation

    async def create_backup(self, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Create a backup.

        Args:
            options: type, sources, criteria, encryption, compression_method,
                compression_level, continue_on_error, include_user_data,
                include_system_data, include_logs, automated, description,
                verify_after_creation

        Returns:
            Result dict; ``success`` is False with ``error`` and
            ``error_type`` when the backup failed
        """
        options = options or {}
        job_id = self._start_job('backup')
        started = time.monotonic()
        backup_type = options.get('type')

        try:
            backup_type = self._determine_type(options)
            sources = self._select_sources(options)
            async with self._scope_locks.hold(frozenset(sources)):
                self._set_status(job_id, 'running')
                logger.info(f"Starting {backup_type} backup ({job_id}) of {len(sources)} sources")
                result = await self._run_backup(backup_type, sources, options, started)

            if options.get('verify_after_creation') and result['path']:
                result['verification'] = await asyncio.to_thread(self.verify_backup, result['backup_id'])

            self._set_status(job_id, 'completed')
            result['job_id'] = job_id
            self._record_backup(True, result.get('size', 0), wrote_file=result['path'] is not None)
            return result

        except Exception as e:
            self._set_status(job_id, 'failed')
            self._record_backup(False)
            if isinstance(e, BackupError):
                logger.error(f"Backup {job_id} failed: {e}")
            else:
                logger.exception(f"Backup {job_id} failed unexpectedly")
            return _failure(
                e,
                backup_id=None,
                job_id=job_id,
                type=backup_type,
                duration=time.monotonic() - started
            )
        finally:
            self.active_jobs.pop(job_id, None)

    def _determine_type(self, options: Dict[str, Any]) -> str:
        backup_type = options.get('type')
        if backup_type:
            if backup_type not in BACKUP_TYPES:
                raise ValidationError(
                    f"Invalid backup type: {backup_type}. Valid options: {list(BACKUP_TYPES)}"
                )
            return backup_type
        if options.get('criteria'):
            return 'selective'
        if self.config.enable_incremental_backup:
            return 'incremental'
        return 'full'

    def _select_sources(self, options: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        requested = options.get('sources')
        catalogue = self.config.data_sources or {}

        if isinstance(requested, dict) and requested:
            selected = {name: dict(descriptor) for name, descriptor in requested.items()}
        elif isinstance(requested, (list, tuple)) and requested:
            unknown = [name for name in requested if name not in catalogue]
            if unknown:
                raise ValidationError(f"Unknown data sources: {unknown}")
            selected = {name: dict(catalogue[name]) for name in requested}
        else:
            selected = {}
            for name, descriptor in catalogue.items():
                category = descriptor.get('category', 'user')
                flag, default = CATEGORY_FLAGS.get(category, (None, True))
                if flag is None or options.get(flag, default):
                    selected[name] = dict(descriptor)

        if not selected:
            raise ValidationError("No data sources selected for backup")
        return selected

    async def _run_backup(self, backup_type: str, sources: Dict[str, Dict[str, Any]],
                          options: Dict[str, Any], started: float) -> Dict[str, Any]:
        backup_id = generate_backup_id()
        timestamp = datetime.now(timezone.utc)
        criteria = options.get('criteria') or {}

        since = None
        if backup_type == 'incremental':
            latest = await asyncio.to_thread(self.store.latest)
            since = latest.created_at if latest else None
            if since is None:
                logger.info("No previous backup found, incremental backup will include all data")

        if backup_type == 'selective' and criteria.get('sources'):
            sources = {name: sources[name] for name in criteria['sources'] if name in sources}
            if not sources:
                raise ValidationError(f"Selective criteria matched no sources: {criteria['sources']}")

        descriptors = {}
        for name, descriptor in sources.items():
            descriptor = dict(descriptor)
            descriptor['since'] = since
            if backup_type == 'selective':
                descriptor['criteria'] = criteria
            descriptors[name] = descriptor

        location = 'incremental' if backup_type == 'incremental' else 'full'
        suffix = '_selective' if backup_type == 'selective' else ''
        output_base = self.store.output_base(location, generate_archive_filename(backup_id, suffix))

        encryption_key = options.get('encryption')
        if not encryption_key and self.config.enable_encryption:
            encryption_key = self.config.encryption_key

        archive_options = {
            'compression_method': options.get('compression_method', self.config.compression_method),
            'compression_level': options.get('compression_level', self.config.compression_level),
            'encryption_key': encryption_key,
            'continue_on_error': options.get('continue_on_error', True),
            'metadata': {
                'backup_id': backup_id,
                'type': backup_type,
                'timestamp': timestamp.isoformat(),
                'since': since.isoformat() if since else None,
                'sources': list(descriptors.keys()),
                'criteria': criteria or None,
                'automated': bool(options.get('automated', False)),
                'description': options.get('description'),
            },
        }

        entries, warnings = await self.archiver.collect(descriptors, archive_options)

        if not entries:
            if backup_type == 'incremental' and since is not None:
                logger.info(NO_CHANGES_MESSAGE)
                return {
                    'success': True,
                    'backup_id': None,
                    'type': backup_type,
                    'path': None,
                    'size': 0,
                    'message': NO_CHANGES_MESSAGE,
                    'since': since.isoformat(),
                    'warnings': warnings,
                    'duration': time.monotonic() - started,
                }
            raise ValidationError("No data collected from any source")

        archive = await self.archiver.write_archive(entries, output_base, archive_options, started=started)
        warnings.extend(archive['warnings'])

        verification = await asyncio.to_thread(self._post_process, archive['path'])
        offsite_key = await self._copy_offsite(archive['path'], warnings)

        logger.info(
            f"Backup {backup_id} completed: {os.path.basename(archive['path'])} "
            f"({verification['size'] / 1024 / 1024:.2f} MB)"
        )

        return {
            'success': True,
            'backup_id': backup_id,
            'type': backup_type,
            'path': archive['path'],
            'size': verification['size'],
            'original_size': archive['original_size'],
            'compression_ratio': archive['compression_ratio'],
            'verified': verification['verified'],
            'size_exceeded': verification['size_exceeded'],
            'offsite_key': offsite_key,
            'metadata': archive['metadata'],
            'warnings': warnings,
            'duration': time.monotonic() - started,
        }

    def _post_process(self, path: str) -> Dict[str, Any]:
        if not os.path.exists(path):
            raise BackupIOError(f"Backup file missing after write: {path}")

        size = os.path.getsize(path)
        size_exceeded = size > self.config.max_backup_size
        if size_exceeded:
            logger.warning(
                f"Backup {os.path.basename(path)} is {size} bytes, "
                f"above the configured maximum of {self.config.max_backup_size}"
            )
        return {'size': size, 'verified': True, 'size_exceeded': size_exceeded}

    async def _copy_offsite(self, path: str, warnings: List[str]) -> Optional[str]:
        if self.s3 is None:
            return None

        try:
            key = await asyncio.to_thread(self.s3.upload, path, self.config.cloud_prefix)
        except StorageError as e:
            warning = f"Off-site copy failed: {e}"
            logger.warning(warning)
            warnings.append(warning)
            return None

        metadata = self.store.read_metadata(path)
        if metadata is not None:
            metadata['offsite'] = {'bucket': self.s3.bucket_name, 'key': key}
            self.store.write_metadata(path, metadata)

        logger.info(f"Uploaded off-site copy to s3://{self.s3.bucket_name}/{key}")
        return key

    def _record_backup(self, success: bool, size: int = 0, wrote_file: bool = False):
        self.stats['total_backups'] += 1
        if success:
            self.stats['successful_backups'] += 1
            self.stats['total_size'] += size
            if wrote_file:
                self.stats['last_backup_time'] = datetime.now(timezone.utc).isoformat()
        else:
            self.stats['failed_backups'] += 1

    # Restore

    async def restore_backup(self, backup_id: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Restore a backup by id from full/, incremental/ or archived/.

        Args:
            backup_id: Backup id
            options: Restore options passed to the Restorer

        Returns:
            The restore report, or a failure dict with ``error`` and
            ``error_type`` (threshold failures keep their partial counts)
        """
        options = dict(options or {})
        job_id = self._start_job('restore')

        try:
            record = await asyncio.to_thread(self.store.find, backup_id)
            if record is None:
                raise BackupIOError(f"Backup not found: {backup_id}")

            options.setdefault('restore_path', self.config.restore_path)
            if not options.get('encryption_key') and self.config.encryption_key:
                options['encryption_key'] = self.config.encryption_key

            self._set_status(job_id, 'running')
            result = await self.restorer.restore_backup(
                {'id': record.id, 'path': record.path, 'size': record.size},
                options
            )
            self._set_status(job_id, 'completed')
            result['job_id'] = job_id
            return result

        except RestoreThresholdError as e:
            self._set_status(job_id, 'failed')
            logger.error(f"Restore of {backup_id} below threshold: {e}")
            partial = dict(e.result or {})
            partial.update(_failure(e, backup_id=backup_id, job_id=job_id))
            return partial
        except Exception as e:
            self._set_status(job_id, 'failed')
            if isinstance(e, BackupError):
                logger.error(f"Restore of {backup_id} failed: {e}")
            else:
                logger.exception(f"Restore of {backup_id} failed unexpectedly")
            return _failure(e, backup_id=backup_id, job_id=job_id)
        finally:
            self.active_jobs.pop(job_id, None)

    # Listing and deletion

    def list_backups(self, type: str = 'all', limit: int = 50, sort_by: str = 'timestamp') -> Dict[str, Any]:
        """
        List backups.

        Args:
            type: 'all' (full and incremental), 'archived', or a backup type
            limit: Maximum number of records returned
            sort_by: 'timestamp' (newest first), 'size' (largest first) or 'type'

        Returns:
            Dict with success, backups (list of record dicts) and total
        """
        try:
            if sort_by not in SORT_KEYS:
                raise ValidationError(f"Invalid sort key: {sort_by}. Valid options: {list(SORT_KEYS)}")

            if type == 'all':
                records = self.store.list_records(('full', 'incremental'))
            elif type == 'archived':
                records = self.store.list_records(('archived',))
            elif type in BACKUP_TYPES:
                records = [
                    record for record in self.store.list_records(('full', 'incremental'))
                    if record.type == type
                ]
            else:
                raise ValidationError(f"Invalid backup type filter: {type}")
        except BackupError as e:
            logger.error(f"Failed to list backups: {e}")
            return _failure(e, backups=[], total=0)

        key, reverse = SORT_KEYS[sort_by]
        records.sort(key=key, reverse=reverse)

        return {
            'success': True,
            'backups': [record.to_dict() for record in records[:limit]],
            'total': len(records),
        }

    def delete_backup(self, backup_id: str) -> Dict[str, Any]:
        """
        Delete a backup file, its sidecar and its off-site copy.

        Returns:
            Dict with success, backup_id and path
        """
        try:
            record = self.store.find(backup_id)
            if record is None:
                raise BackupIOError(f"Backup not found: {backup_id}")

            metadata = self.store.read_metadata(record.path) or {}
            self.store.delete(record)
        except BackupError as e:
            logger.error(f"Failed to delete backup {backup_id}: {e}")
            return _failure(e, backup_id=backup_id)

        result = {'success': True, 'backup_id': backup_id, 'path': record.path}

        offsite = metadata.get('offsite') or {}
        if self.s3 is not None and offsite.get('key'):
            try:
                self.s3.delete(offsite['key'])
            except StorageError as e:
                logger.warning(f"Failed to delete off-site copy {offsite['key']}: {e}")
                result['warnings'] = [f"Off-site copy not deleted: {e}"]

        logger.info(f"Deleted backup {backup_id}")
        return result

    # Inspection

    def verify_backup(self, backup_id: str) -> Dict[str, Any]:
        """
        Check a stored backup without restoring it.

        The file must exist, be readable and match the size recorded in
        its sidecar.

        Returns:
            Dict with success, file_exists, file_size, expected_size,
            size_match, file_readable, last_modified and integrity_check
            ('passed' or 'failed')
        """
        try:
            record = self.store.find(backup_id)
            if record is None:
                raise BackupIOError(f"Backup not found: {backup_id}")
            size = get_archive_size(record.path)
        except BackupError as e:
            logger.error(f"Verification of {backup_id} failed: {e}")
            return _failure(e, backup_id=backup_id, integrity_check='failed')

        metadata = self.store.read_metadata(record.path) or {}
        expected = (metadata.get('archive') or {}).get('size')

        verification = {
            'success': True,
            'backup_id': backup_id,
            'path': record.path,
            'location': record.location,
            'file_exists': True,
            'file_size': size,
            'expected_size': expected,
            'size_match': expected is None or size == expected,
            'has_metadata': bool(metadata),
            'file_readable': True,
            'last_modified': record.modified_at.isoformat(),
            'integrity_check': 'passed',
        }

        try:
            with open(record.path, 'rb') as f:
                f.read(1)
        except OSError as e:
            verification['file_readable'] = False
            verification.update(_failure(BackupIOError(f"Backup file is not readable: {e}")))

        if verification['file_readable'] and not verification['size_match']:
            verification.update(_failure(IntegrityError(
                f"Backup {backup_id} is {size} bytes, metadata records {expected}"
            )))

        if not verification['success']:
            verification['integrity_check'] = 'failed'
            logger.warning(f"Backup {backup_id} failed verification: {verification['error']}")
        else:
            logger.info(f"Backup {backup_id} verified ({size} bytes)")
        return verification

    def get_backup_details(self, backup_id: str) -> Dict[str, Any]:
        """
        A backup record together with its sidecar metadata.

        When the backup was copied off-site, ``offsite.present`` tells
        whether the S3 object still exists (None if S3 could not be asked).
        """
        try:
            record = self.store.find(backup_id)
            if record is None:
                raise BackupIOError(f"Backup not found: {backup_id}")
        except BackupError as e:
            logger.error(f"Failed to get details of {backup_id}: {e}")
            return _failure(e, backup_id=backup_id)

        metadata = self.store.read_metadata(record.path) or {}
        details = record.to_dict()
        details.update({
            'success': True,
            'backup_id': record.id,
            'file_path': record.path,
            'metadata': metadata,
        })

        offsite = metadata.get('offsite')
        if offsite:
            details['offsite'] = dict(offsite, present=None)
            if self.s3 is not None:
                try:
                    keys = [obj['Key'] for obj in self.s3.list_objects(offsite['key'])]
                    details['offsite']['present'] = offsite['key'] in keys
                except StorageError as e:
                    logger.warning(f"Could not check off-site copy {offsite['key']}: {e}")

        return details

    async def run_round_trip(self, backup_type: str = 'full', cleanup: bool = True,
                             sources: Optional[Any] = None) -> Dict[str, Any]:
        """
        Create a backup of the user data sources and restore it into temp/.

        Args:
            backup_type: Backup type to exercise
            cleanup: Delete the backup and the restored files afterwards
            sources: Source names or descriptors; defaults to the user data catalogue

        Returns:
            Dict with success, backup and restore summaries and, with
            cleanup, what was removed
        """
        options = {
            'type': backup_type,
            'include_user_data': True,
            'include_system_data': False,
            'include_logs': False,
        }
        if sources:
            options['sources'] = sources
        backup = await self.create_backup(options)
        summary = {
            'success': False,
            'backup': {
                'success': backup['success'],
                'backup_id': backup.get('backup_id'),
                'size': backup.get('size', 0),
                'duration': backup.get('duration'),
            },
        }
        if not backup['success']:
            summary.update(error=f"Backup creation failed: {backup['error']}", error_type=backup['error_type'])
            return summary
        if backup['path'] is None:
            summary['error'] = f"Backup wrote no archive: {backup.get('message')}"
            summary['error_type'] = 'ValidationError'
            return summary

        restore_path = self.store.location_path('temp') / f"round_trip_{backup['backup_id']}"
        restore = await self.restore_backup(backup['backup_id'], {'restore_path': str(restore_path)})
        summary['restore'] = {
            'success': restore['success'],
            'restore_id': restore.get('restore_id'),
            'success_count': restore.get('success_count', 0),
            'failure_count': restore.get('failure_count', 0),
            'duration': restore.get('duration'),
        }
        if restore['success']:
            summary['success'] = True
        else:
            summary.update(error=f"Restore failed: {restore['error']}", error_type=restore['error_type'])

        if cleanup:
            deleted = self.delete_backup(backup['backup_id'])
            shutil.rmtree(restore_path, ignore_errors=True)
            summary['cleanup'] = {
                'backup_deleted': deleted['success'],
                'restore_path_removed': not restore_path.exists(),
            }

        logger.info(f"Round trip of {backup_type} backup {'passed' if summary['success'] else 'failed'}")
        return summary

    # Retention

    async def archive_old_backups(self) -> Dict[str, Any]:
        """
        Move backups older than the retention period into archived/.

        Returns:
            RetentionManager summary plus success
        """
        retention = RetentionManager(self.store, self.config.retention_days)
        summary = await asyncio.to_thread(retention.enforce)

        self.stats['archive_sweeps'] += 1
        self.stats['last_archive_time'] = datetime.now(timezone.utc).isoformat()

        summary['success'] = summary['failed'] == 0 and 'error' not in summary
        if summary['failed'] and 'error' not in summary:
            summary['error'] = f"Failed to archive {summary['failed']} of {summary['total_processed']} backups"
        return summary

    # Scheduling

    async def _scheduled_backup(self) -> Dict[str, Any]:
        result = await self.create_backup({'type': 'incremental', 'automated': True})
        if result['success']:
            logger.info(f"Scheduled backup finished: {result.get('message') or result.get('path')}")
        else:
            logger.error(f"Scheduled backup failed: {result['error']}")
        self._refresh_next_run()
        return result

    async def _scheduled_archive(self) -> Dict[str, Any]:
        summary = await self.archive_old_backups()
        logger.info(f"Scheduled archival moved {summary['successful']} backups")
        return summary

    def _refresh_next_run(self):
        next_run = self.scheduler.next_run_time(self.BACKUP_JOB_ID) if self.scheduler else None
        self.stats['next_scheduled_backup'] = next_run.isoformat() if next_run else None

    def enable_scheduled_backups(self) -> List[str]:
        """
        Register the recurring incremental backup (and archival sweep, if configured).

        Does nothing when scheduled backups are disabled in the configuration.

        Returns:
            Registered job ids

        Raises:
            ConfigurationError: If no scheduler was given or a schedule is invalid
        """
        if not self.config.enable_scheduled_backups:
            logger.info("Scheduled backups are disabled in the configuration")
            return []
        if self.scheduler is None:
            raise ConfigurationError("No scheduler configured")

        job_ids = [self.scheduler.register_schedule(
            self.config.backup_schedule,
            self._scheduled_backup,
            self.BACKUP_JOB_ID,
            name='Scheduled incremental backup'
        )]

        if self.config.archive_schedule:
            job_ids.append(self.scheduler.register_schedule(
                self.config.archive_schedule,
                self._scheduled_archive,
                self.ARCHIVE_JOB_ID,
                name='Scheduled archival sweep'
            ))

        self._refresh_next_run()
        logger.info(f"Scheduled backups enabled ({self.config.backup_schedule})")
        return job_ids

    def disable_scheduled_backups(self):
        """Unregister the recurring triggers."""
        if self.scheduler is None:
            return
        self.scheduler.unregister(self.BACKUP_JOB_ID)
        self.scheduler.unregister(self.ARCHIVE_JOB_ID)
        self.stats['next_scheduled_backup'] = None
        logger.info("Scheduled backups disabled")

    def stop(self):
        """Unregister triggers and stop the scheduler."""
        self.disable_scheduled_backups()
        if self.scheduler is not None:
            self.scheduler.stop()

    # Statistics

    def get_statistics(self) -> Dict[str, Any]:
        stats = dict(self.stats)
        total = stats['total_backups']
        stats['success_rate'] = stats['successful_backups'] / total if total else 0.0
        stats['active_jobs'] = len(self.active_jobs)
        stats['archiver'] = self.archiver.get_statistics()
        stats['restorer'] = self.restorer.get_statistics()

        try:
            stats['stored'] = {
                location: len(self.store.list_records((location,)))
                for location in ('full', 'incremental', 'archived')
            }
        except StorageError as e:
            logger.warning(f"Failed to count stored backups: {e}")
            stats['stored'] = None

        try:
            stats['disk_usage'] = self.store.disk_usage()
        except StorageError as e:
            logger.warning(f"Failed to measure disk usage: {e}")
            stats['disk_usage'] = None

        stats['retention_info'] = self._retention_info()

        return stats

    def _retention_info(self) -> Dict[str, Any]:
        """Retention period and when the oldest live backup becomes archival-eligible."""
        retention = timedelta(days=self.config.retention_days)
        info = {
            'retention_period_days': self.config.retention_days,
            'next_archival': None,
            'next_scheduled_archival': None,
        }

        try:
            records = self.store.list_records(('full', 'incremental'))
        except StorageError as e:
            logger.warning(f"Failed to list backups for retention info: {e}")
            records = []
        if records:
            oldest = min(record.modified_at for record in records)
            info['next_archival'] = (oldest + retention).isoformat()

        if self.scheduler is not None:
            next_run = self.scheduler.next_run_time(self.ARCHIVE_JOB_ID)
            info['next_scheduled_archival'] = next_run.isoformat() if next_run else None

        return info
