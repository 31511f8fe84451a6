"""
Exception hierarchy for snapshelf.

Codecs raise these; BackupManager converts them into result dicts carrying
``error`` and ``error_type``.
"""


class BackupError(Exception):
    """Base class for all backup/restore failures."""
    pass


class ValidationError(BackupError):
    """Raised for empty or invalid inputs (no sources, unknown types)."""
    pass


class BackupIOError(BackupError):
    """Raised when a directory or backup file is missing or unusable."""
    pass


class CryptoError(BackupError):
    """Raised when an encryption key is missing or decryption fails."""
    pass


class IntegrityError(BackupError):
    """Raised on size mismatches and truncated or corrupt container framing."""
    pass


class ConfigurationError(BackupError):
    """Raised for unsupported compression settings and bad configuration."""
    pass


class RestoreThresholdError(BackupError):
    """
    Raised when too few entries were restored.

    The partial RestoreResult is kept on ``result`` so callers can still
    report what was restored.
    """

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result
