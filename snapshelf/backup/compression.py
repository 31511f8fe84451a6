"""
Streaming compression for backup archives.

Supports:
- gzip: gzip member stream (.gz)
- deflate: zlib-wrapped deflate stream (.deflate)
- none: container written as-is
"""

import io
import os
import gzip
import zlib
from datetime import datetime, timezone
from typing import BinaryIO, Optional

from snapshelf.exceptions import BackupIOError, ConfigurationError, IntegrityError


class CompressionError(IntegrityError):
    """Raised when compressed data cannot be decoded."""
    pass


# Map method to file extension
COMPRESSION_EXTENSIONS = {
    'gzip': '.gz',
    'deflate': '.deflate',
    'none': ''
}

ARCHIVE_EXTENSION = '.snap'
ENCRYPTED_EXTENSION = '.enc'
READ_CHUNK_SIZE = 64 * 1024


def validate_compression(method: str, level: int = 6):
    """
    Check a compression method and level.

    Raises:
        ConfigurationError: If the method is unsupported or the level is out of range
    """
    if method not in COMPRESSION_EXTENSIONS:
        raise ConfigurationError(
            f"Invalid compression method: {method}. "
            f"Valid options: {list(COMPRESSION_EXTENSIONS.keys())}"
        )
    if not isinstance(level, int) or not 0 <= level <= 9:
        raise ConfigurationError(f"Compression level must be between 0 and 9, got {level}")


class _PassthroughWriter(io.RawIOBase):
    """Writes straight to the target without closing it."""

    def __init__(self, fileobj: BinaryIO):
        self._fileobj = fileobj

    def writable(self):
        return True

    def write(self, data):
        self._fileobj.write(data)
        return len(data)


class _DeflateWriter(io.RawIOBase):
    """Streams zlib-compressed output into the target file."""

    def __init__(self, fileobj: BinaryIO, level: int):
        self._fileobj = fileobj
        self._compressor = zlib.compressobj(level, zlib.DEFLATED, zlib.MAX_WBITS)

    def writable(self):
        return True

    def write(self, data):
        self._fileobj.write(self._compressor.compress(data))
        return len(data)

    def close(self):
        if not self.closed:
            self._fileobj.write(self._compressor.flush())
        super().close()


class _DeflateReader(io.RawIOBase):
    """Inflates a zlib stream chunk by chunk."""

    def __init__(self, fileobj: BinaryIO):
        self._fileobj = fileobj
        self._decompressor = zlib.decompressobj(zlib.MAX_WBITS)
        self._buffer = b''

    def readable(self):
        return True

    def readinto(self, b):
        while not self._buffer:
            if self._decompressor.eof:
                return 0
            chunk = self._fileobj.read(READ_CHUNK_SIZE)
            try:
                if chunk:
                    self._buffer = self._decompressor.decompress(chunk)
                else:
                    self._buffer = self._decompressor.flush()
                    if not self._buffer and not self._decompressor.eof:
                        raise CompressionError("Deflate stream ended unexpectedly")
                    if not self._buffer:
                        return 0
            except zlib.error as e:
                raise CompressionError(f"Corrupt deflate stream: {e}")

        size = min(len(b), len(self._buffer))
        b[:size] = self._buffer[:size]
        self._buffer = self._buffer[size:]
        return size


class _GzipReader(io.RawIOBase):
    """Wraps GzipFile so decode failures surface as CompressionError."""

    def __init__(self, fileobj: BinaryIO):
        self._gzip = gzip.GzipFile(fileobj=fileobj, mode='rb')

    def readable(self):
        return True

    def readinto(self, b):
        try:
            return self._gzip.readinto(b)
        except (OSError, EOFError, zlib.error) as e:
            raise CompressionError(f"Corrupt gzip stream: {e}")

    def close(self):
        self._gzip.close()
        super().close()


def open_compressor(fileobj: BinaryIO, method: str = 'gzip', level: int = 6) -> BinaryIO:
    """
    Wrap a binary file for compressed writing.

    Closing the returned stream flushes the compressor but leaves
    ``fileobj`` open.

    Args:
        fileobj: Binary file opened for writing
        method: Compression method ('gzip', 'deflate', 'none')
        level: Compression level 0-9

    Returns:
        Writable binary stream

    Raises:
        ConfigurationError: If method or level is invalid
    """
    validate_compression(method, level)

    if method == 'gzip':
        return gzip.GzipFile(fileobj=fileobj, mode='wb', compresslevel=level)
    elif method == 'deflate':
        return _DeflateWriter(fileobj, level)
    return _PassthroughWriter(fileobj)


def open_decompressor(fileobj: BinaryIO, method: str = 'gzip') -> BinaryIO:
    """
    Wrap a binary file for decompressed reading.

    Args:
        fileobj: Binary file opened for reading
        method: Compression method the data was written with

    Returns:
        Readable buffered binary stream

    Raises:
        ConfigurationError: If method is invalid
    """
    validate_compression(method)

    if method == 'gzip':
        return io.BufferedReader(_GzipReader(fileobj), READ_CHUNK_SIZE)
    elif method == 'deflate':
        return io.BufferedReader(_DeflateReader(fileobj), READ_CHUNK_SIZE)
    return fileobj


def detect_compression_method(filename: str) -> Optional[str]:
    """
    Work out the compression method from an archive filename.

    Args:
        filename: Archive filename, optionally ending in .enc

    Returns:
        'gzip', 'deflate', 'none' for a bare .snap file, or None if unknown
    """
    if filename.endswith(ENCRYPTED_EXTENSION):
        filename = filename[:-len(ENCRYPTED_EXTENSION)]

    if filename.endswith('.gz'):
        return 'gzip'
    elif filename.endswith('.deflate'):
        return 'deflate'
    elif filename.endswith(ARCHIVE_EXTENSION):
        return 'none'
    return None


def archive_path_for(output_base: str, method: str) -> str:
    """Append the compression extension for ``method`` to an output base path."""
    return f"{output_base}{COMPRESSION_EXTENSIONS[method]}"


def generate_backup_id(now: Optional[datetime] = None) -> str:
    """
    Generate a backup id.

    Format: backup_{YYYYMMDD_HHMMSS_ffffff}_{6 hex chars}
    """
    now = now or datetime.now(timezone.utc)
    return f"backup_{now.strftime('%Y%m%d_%H%M%S_%f')}_{os.urandom(3).hex()}"


def generate_archive_filename(backup_id: str, suffix: str = '') -> str:
    """
    Generate the archive base filename for a backup.

    The archiver appends the compression extension (and .enc when encrypting).

    Args:
        backup_id: Backup id
        suffix: Optional suffix such as '_selective'

    Returns:
        Filename (without path)
    """
    return f"{backup_id}{suffix}{ARCHIVE_EXTENSION}"


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive extensions from filename.

    Handles .enc, the compression extension and .snap in that order, and
    a trailing _selective suffix, leaving the backup id.

    Args:
        filename: Archive filename with extension

    Returns:
        Backup id
    """
    if filename.endswith(ENCRYPTED_EXTENSION):
        filename = filename[:-len(ENCRYPTED_EXTENSION)]
    for extension in ('.gz', '.deflate'):
        if filename.endswith(extension):
            filename = filename[:-len(extension)]
            break
    if filename.endswith(ARCHIVE_EXTENSION):
        filename = filename[:-len(ARCHIVE_EXTENSION)]
    else:
        # Fallback to standard splitext
        filename = os.path.splitext(filename)[0]
    if filename.endswith('_selective'):
        filename = filename[:-len('_selective')]
    return filename


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Args:
        archive_path: Path to the archive file

    Returns:
        File size in bytes

    Raises:
        BackupIOError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise BackupIOError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise BackupIOError(f"Failed to get archive size: {e}")
