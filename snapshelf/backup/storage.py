"""
Storage handlers for backup archives.

Supports:
- BackupStore: the local backup tree (full/, incremental/, archived/, temp/)
- S3Storage: off-site copies in AWS S3
"""

import os
import json
import shutil
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from snapshelf.exceptions import BackupIOError
from snapshelf.models import BackupRecord, LOCATIONS
from .archiver import SIDECAR_SUFFIX, sidecar_path
from .compression import detect_compression_method, strip_archive_extension


logger = logging.getLogger(__name__)

# Locations a backup record can live in
RECORD_LOCATIONS = ('full', 'incremental', 'archived')


class StorageError(BackupIOError):
    """Raised when storage operation fails."""
    pass


def _parse_created(value: Optional[str], fallback: datetime) -> datetime:
    if not value:
        return fallback
    try:
        created = datetime.fromisoformat(value)
    except ValueError:
        return fallback
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return created


class BackupStore:
    """
    Handler for the local backup tree.

    Backup files live in one of full/, incremental/ or archived/ under the
    base path, each next to its ``.meta.json`` sidecar. temp/ holds scratch
    files.
    """

    def __init__(self, base_path: str):
        """
        Initialize backup store and create its directories.

        Args:
            base_path: Backup root directory

        Raises:
            StorageError: If the directories cannot be created
        """
        self.base_path = Path(base_path)

        try:
            for location in LOCATIONS:
                (self.base_path / location).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create backup directories under {base_path}: {e}")

    def location_path(self, location: str) -> Path:
        if location not in LOCATIONS:
            raise StorageError(f"Unknown backup location: {location}")
        return self.base_path / location

    def output_base(self, location: str, filename: str) -> str:
        """Full path for a new archive in ``location``."""
        return str(self.location_path(location) / filename)

    def list_records(self, locations: Iterable[str] = ('full', 'incremental')) -> List[BackupRecord]:
        """
        List backup records in the given locations.

        Args:
            locations: Locations to scan

        Returns:
            List of BackupRecord, unsorted

        Raises:
            StorageError: If listing fails
        """
        records = []
        for location in locations:
            directory = self.location_path(location)
            if not directory.exists():
                continue

            try:
                for file_path in directory.iterdir():
                    if not file_path.is_file() or file_path.name.endswith(SIDECAR_SUFFIX):
                        continue
                    if detect_compression_method(file_path.name) is None:
                        continue
                    records.append(self._build_record(file_path, location))
            except OSError as e:
                raise StorageError(f"Failed to list backups in {directory}: {e}")

        return records

    def _build_record(self, file_path: Path, location: str) -> BackupRecord:
        stat = file_path.stat()
        modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
        metadata = self.read_metadata(str(file_path)) or {}
        archive = metadata.get('archive') or {}

        backup_type = metadata.get('type')
        if not backup_type:
            if '_selective' in file_path.name:
                backup_type = 'selective'
            elif location == 'incremental':
                backup_type = 'incremental'
            else:
                backup_type = 'full'

        return BackupRecord(
            id=metadata.get('backup_id') or strip_archive_extension(file_path.name),
            type=backup_type,
            location=location,
            path=str(file_path),
            size=stat.st_size,
            created_at=_parse_created(metadata.get('timestamp') or archive.get('created'), modified),
            modified_at=modified,
            sources_included=list(metadata.get('sources') or []),
            compression=dict(archive.get('compression') or {}),
            encryption=dict(archive.get('encryption') or {'enabled': file_path.name.endswith('.enc')}),
        )

    def disk_usage(self) -> Dict[str, Any]:
        """
        Bytes used under the backup root, sidecars included.

        Returns:
            Dict with total_bytes and a per-location breakdown

        Raises:
            StorageError: If the tree cannot be walked
        """
        usage = {location: 0 for location in LOCATIONS}
        total = 0

        try:
            for root, _dirs, files in os.walk(self.base_path):
                relative = Path(root).relative_to(self.base_path)
                location = relative.parts[0] if relative.parts else None
                for name in files:
                    size = os.path.getsize(os.path.join(root, name))
                    total += size
                    if location in usage:
                        usage[location] += size
        except OSError as e:
            raise StorageError(f"Failed to measure disk usage under {self.base_path}: {e}")

        return {'total_bytes': total, 'locations': usage}

    def read_metadata(self, archive_path: str) -> Optional[Dict[str, Any]]:
        """Load a backup's sidecar, or None if it is missing or unreadable."""
        meta_path = sidecar_path(archive_path)
        if not os.path.exists(meta_path):
            return None
        try:
            with open(meta_path, 'r') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable metadata {meta_path}: {e}")
            return None

    def write_metadata(self, archive_path: str, metadata: Dict[str, Any]):
        try:
            with open(sidecar_path(archive_path), 'w') as f:
                json.dump(metadata, f, indent=2, default=str)
        except OSError as e:
            raise StorageError(f"Failed to write metadata for {archive_path}: {e}")

    def find(self, backup_id: str, locations: Iterable[str] = RECORD_LOCATIONS) -> Optional[BackupRecord]:
        """
        Locate a backup by id.

        Args:
            backup_id: Backup id
            locations: Locations to search, in order

        Returns:
            BackupRecord or None if not found
        """
        for record in self.list_records(locations):
            if record.id == backup_id:
                return record
        return None

    def latest(self, locations: Iterable[str] = ('full', 'incremental')) -> Optional[BackupRecord]:
        """Most recently created backup in the given locations."""
        records = self.list_records(locations)
        if not records:
            return None
        return max(records, key=lambda record: record.created_at)

    def move(self, record: BackupRecord, location: str) -> BackupRecord:
        """
        Move a backup and its sidecar into another location.

        Args:
            record: Backup to move
            location: Target location

        Returns:
            The record updated with its new path and location

        Raises:
            StorageError: If the move fails
        """
        target_dir = self.location_path(location)
        source = Path(record.path)
        destination = target_dir / source.name

        if destination.exists():
            raise StorageError(f"Backup already exists in {location}: {source.name}")

        try:
            shutil.move(str(source), str(destination))
            if os.path.exists(sidecar_path(str(source))):
                shutil.move(sidecar_path(str(source)), sidecar_path(str(destination)))
        except OSError as e:
            raise StorageError(f"Failed to move {source.name} to {location}: {e}")

        metadata = self.read_metadata(str(destination))
        if metadata is not None:
            metadata.setdefault('archive', {})['path'] = str(destination)
            metadata['location'] = location
            self.write_metadata(str(destination), metadata)

        record.path = str(destination)
        record.location = location
        return record

    def delete(self, record: BackupRecord):
        """
        Delete a backup file and its sidecar.

        Raises:
            StorageError: If deletion fails
        """
        try:
            for path in (Path(record.path), Path(sidecar_path(record.path))):
                if path.exists():
                    path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {record.path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete backup file: {e}")


class S3Storage:
    """
    Handler for off-site copies in AWS S3.

    Uploads archives with a structured key format:
    {prefix}/{YYYY}/{MM}/{filename}
    """

    def __init__(self, bucket_name: str, access_key: Optional[str] = None,
                 secret_key: Optional[str] = None, region: str = 'us-east-1'):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            access_key: AWS access key ID (falls back to the default credential chain)
            secret_key: AWS secret access key
            region: AWS region (default: us-east-1)
        """
        self.bucket_name = bucket_name
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def upload(self, local_path: str, prefix: str) -> str:
        """
        Upload archive to S3.

        Args:
            local_path: Path to local archive file
            prefix: Key prefix

        Returns:
            S3 key of uploaded file

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        # Generate S3 key: {prefix}/{YYYY}/{MM}/{filename}
        filename = os.path.basename(local_path)
        now = datetime.now(timezone.utc)
        s3_key = f"{prefix}/{now.year}/{now.month:02d}/{filename}"

        try:
            with open(local_path, 'rb') as f:
                self.s3_client.put_object(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    Body=f
                )
            return s3_key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")

    def delete(self, s3_key: str):
        """
        Delete an object from S3.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=s3_key
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def list_objects(self, prefix: str) -> list:
        """
        List objects in S3 with given prefix.

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys

        Raises:
            StorageError: If listing fails
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append({
                        'Key': obj['Key'],
                        'LastModified': obj['LastModified'],
                        'Size': obj['Size']
                    })

            return objects

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")
