import os
import json
import logging

from snapshelf.exceptions import ConfigurationError


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


class BackupConfig:
    """Base configuration"""

    COMPRESSION_METHODS = ('gzip', 'deflate', 'none')

    def __init__(self, **overrides):
        # Storage
        self.backup_path = os.environ.get('BACKUP_PATH') or './backups'
        self.restore_path = os.environ.get('RESTORE_PATH') or './restore'
        self.retention_days = _env_int('BACKUP_RETENTION_DAYS', 180)
        self.max_backup_size = _env_int('MAX_BACKUP_SIZE', 1024 * 1024 * 1024)  # 1GB

        # Archive codec
        self.compression_method = os.environ.get('BACKUP_COMPRESSION_METHOD') or 'gzip'
        self.compression_level = _env_int('BACKUP_COMPRESSION_LEVEL', 6)
        self.max_concurrency = _env_int('BACKUP_MAX_CONCURRENCY', 3)

        # Encryption
        self.enable_encryption = _env_bool('BACKUP_ENABLE_ENCRYPTION', False)
        self.encryption_key = os.environ.get('BACKUP_ENCRYPTION_KEY')
        self.kdf_iterations = _env_int('BACKUP_KDF_ITERATIONS', 480000)

        # Scheduling
        self.enable_scheduled_backups = _env_bool('BACKUP_ENABLE_SCHEDULED', True)
        self.backup_schedule = os.environ.get('BACKUP_SCHEDULE') or '0 2 * * *'
        self.archive_schedule = os.environ.get('BACKUP_ARCHIVE_SCHEDULE')
        self.enable_incremental_backup = _env_bool('BACKUP_ENABLE_INCREMENTAL', True)

        # Off-site copy
        self.cloud_enabled = _env_bool('BACKUP_CLOUD_ENABLED', False)
        self.cloud_bucket = os.environ.get('BACKUP_CLOUD_BUCKET')
        self.cloud_region = os.environ.get('BACKUP_CLOUD_REGION') or 'us-east-1'
        self.cloud_access_key = os.environ.get('BACKUP_CLOUD_ACCESS_KEY')
        self.cloud_secret_key = os.environ.get('BACKUP_CLOUD_SECRET_KEY')
        self.cloud_prefix = os.environ.get('BACKUP_CLOUD_PREFIX') or 'snapshelf'

        # Source catalogue: name -> descriptor
        self.sources_file = os.environ.get('BACKUP_SOURCES_FILE')
        self.data_sources = {}

        # Logging
        self.log_dir = os.environ.get('LOG_DIR')
        self.log_level = os.environ.get('LOG_LEVEL') or self.default_log_level()

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise ConfigurationError(f"Unknown configuration option: {key}")
            setattr(self, key, value)

        if self.sources_file and not self.data_sources:
            self.data_sources = load_sources_file(self.sources_file)

    def default_log_level(self) -> str:
        return 'INFO'

    def validate(self):
        """
        Check settings that would otherwise fail deep inside a backup run.

        Raises:
            ConfigurationError: If a setting is invalid
        """
        if self.compression_method not in self.COMPRESSION_METHODS:
            raise ConfigurationError(
                f"Invalid compression method: {self.compression_method}. "
                f"Valid options: {list(self.COMPRESSION_METHODS)}"
            )
        if not 0 <= self.compression_level <= 9:
            raise ConfigurationError(
                f"Compression level must be between 0 and 9, got {self.compression_level}"
            )
        if self.retention_days < 1:
            raise ConfigurationError("Retention period must be at least one day")
        if self.max_concurrency < 1:
            raise ConfigurationError("Max concurrency must be at least 1")
        if self.enable_encryption and not self.encryption_key:
            raise ConfigurationError("Encryption is enabled but BACKUP_ENCRYPTION_KEY is not set")
        if self.enable_scheduled_backups and not self.backup_schedule:
            raise ConfigurationError("Scheduled backups are enabled but no schedule is set")
        if self.cloud_enabled and not self.cloud_bucket:
            raise ConfigurationError("Cloud storage is enabled but BACKUP_CLOUD_BUCKET is not set")
        return self

    def __repr__(self):
        return f'<{type(self).__name__} path={self.backup_path}>'


class DevelopmentConfig(BackupConfig):
    """Development configuration"""

    def default_log_level(self) -> str:
        return 'DEBUG'


class ProductionConfig(BackupConfig):
    """Production configuration"""
    pass


class TestingConfig(BackupConfig):
    """Testing configuration"""

    def __init__(self, **overrides):
        overrides.setdefault('enable_scheduled_backups', False)
        overrides.setdefault('kdf_iterations', 1000)
        super().__init__(**overrides)


def load_sources_file(path: str) -> dict:
    """
    Load a JSON source catalogue.

    Args:
        path: Path to a JSON object mapping source name to descriptor

    Returns:
        Dict of source descriptors

    Raises:
        ConfigurationError: If the file is missing or malformed
    """
    try:
        with open(path, 'r') as f:
            sources = json.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Sources file not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Sources file is not valid JSON: {e}")

    if not isinstance(sources, dict):
        raise ConfigurationError("Sources file must contain a JSON object")

    logging.getLogger(__name__).debug(f"Loaded {len(sources)} sources from {path}")
    return sources


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
