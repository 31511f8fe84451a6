"""
Retention policy enforcement for backups.

Moves backups older than the retention period from full/ and incremental/
into archived/.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from snapshelf.models import BackupRecord
from .storage import BackupStore, StorageError


logger = logging.getLogger(__name__)


class RetentionPolicy:
    """Decides archival eligibility from a backup's file-modification time."""

    def __init__(self, retention_days: int):
        self.retention_days = retention_days

    def cutoff(self, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.now(timezone.utc)
        return now - timedelta(days=self.retention_days)

    def is_expired(self, record: BackupRecord, now: Optional[datetime] = None) -> bool:
        return record.modified_at < self.cutoff(now)


class RetentionManager:
    """
    Manages archival of old backups.

    Individual failures are reported per backup and never stop the sweep.
    """

    def __init__(self, store: BackupStore, retention_days: int):
        """
        Initialize retention manager.

        Args:
            store: Backup store to sweep
            retention_days: Age in days after which a backup is archived
        """
        self.store = store
        self.policy = RetentionPolicy(retention_days)
        self.logs = []

    def enforce(self) -> Dict[str, Any]:
        """
        Archive every backup older than the retention period.

        Returns:
            Dict with summary of the sweep:
            {
                'total_processed': int,
                'successful': int,
                'failed': int,
                'cutoff': str,
                'results': List[dict],
                'logs': List[str]
            }
        """
        now = datetime.now(timezone.utc)
        cutoff = self.policy.cutoff(now)
        self._log(f"Starting archival sweep (retention: {self.policy.retention_days} days, cutoff: {cutoff.isoformat()})")

        summary = {
            'total_processed': 0,
            'successful': 0,
            'failed': 0,
            'cutoff': cutoff.isoformat(),
            'results': []
        }

        try:
            records = self.store.list_records(('full', 'incremental'))
        except StorageError as e:
            self._log(f"Failed to list backups: {e}", logging.ERROR)
            summary['error'] = f"Failed to list backups: {e}"
            summary['error_type'] = type(e).__name__
            summary['logs'] = self.logs
            return summary

        for record in records:
            if not self.policy.is_expired(record, now):
                continue

            summary['total_processed'] += 1
            previous_location = record.location

            try:
                self.store.move(record, 'archived')
                summary['successful'] += 1
                summary['results'].append({
                    'backup_id': record.id,
                    'success': True,
                    'from': previous_location,
                    'path': record.path
                })
                self._log(f"Archived {record.id} from {previous_location}")
            except StorageError as e:
                summary['failed'] += 1
                summary['results'].append({
                    'backup_id': record.id,
                    'success': False,
                    'from': previous_location,
                    'error': str(e)
                })
                self._log(f"Failed to archive {record.id}: {e}", logging.ERROR)

        self._log(
            f"Archival sweep complete. "
            f"Processed: {summary['total_processed']}, "
            f"Archived: {summary['successful']}, "
            f"Failed: {summary['failed']}"
        )

        summary['logs'] = self.logs
        return summary

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
