import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '0.1.0'


def configure_logging(level=None, log_dir=None):
    """Configure package logging"""

    if level is None:
        level = logging.INFO
    elif isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'snapshelf.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    package_logger = logging.getLogger(__name__)
    package_logger.setLevel(level)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
    for handler in handlers:
        package_logger.addHandler(handler)

    package_logger.info(f"Logging configured (level: {logging.getLevelName(level)})")
    return package_logger


def create_manager(config=None, engine=None, scheduler=None, providers=None, sinks=None):
    """
    Backup manager factory.

    Builds the default providers, sinks, codecs and store from a
    configuration object or preset name.

    Args:
        config: BackupConfig instance or preset name ('development', 'production', 'testing')
        engine: Optional SQLAlchemy engine for database sources and sinks
        scheduler: Optional BackupScheduler
        providers: Providers keyed by entry type, replacing the defaults
        sinks: Sinks keyed by entry type, replacing the defaults

    Returns:
        BackupManager
    """
    from snapshelf.config import config as config_presets
    from snapshelf.utils.crypto import CryptoManager
    from snapshelf.backup.archiver import Archiver
    from snapshelf.backup.manager import BackupManager
    from snapshelf.backup.restore import Restorer
    from snapshelf.backup.sinks import create_default_sinks
    from snapshelf.backup.sources import create_default_providers
    from snapshelf.backup.storage import BackupStore

    # Load configuration
    if config is None:
        config = os.environ.get('SNAPSHELF_ENV', 'production')
    if isinstance(config, str):
        config = config_presets[config]()
    config.validate()

    crypto = CryptoManager(iterations=config.kdf_iterations)

    archiver = Archiver(
        providers if providers is not None else create_default_providers(engine),
        crypto=crypto,
        max_concurrency=config.max_concurrency
    )
    restorer = Restorer(
        sinks if sinks is not None else create_default_sinks(engine),
        crypto=crypto,
        default_restore_path=config.restore_path
    )

    return BackupManager(
        config,
        archiver,
        restorer,
        store=BackupStore(config.backup_path),
        scheduler=scheduler
    )
