"""
Encryption utilities for backup archives.

Uses AES-256-GCM with a key derived from the backup passphrase. Encrypted
files are laid out as IV (16 bytes) || ciphertext || GCM tag (16 bytes).
"""

import os
import logging
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from snapshelf.exceptions import BackupIOError, CryptoError


logger = logging.getLogger(__name__)

ALGORITHM = 'aes-256-gcm'
IV_SIZE = 16
TAG_SIZE = 16
KEY_SIZE = 32
DEFAULT_ITERATIONS = 480000  # OWASP recommended iterations for 2023+


class CryptoManager:
    """Handles encryption and decryption of backup archives."""

    def __init__(self, iterations: int = DEFAULT_ITERATIONS):
        self.iterations = iterations

    def derive_key(self, key: Union[str, bytes], salt: bytes) -> bytes:
        """
        Turn a passphrase into a 32-byte AES key.

        A raw 32-byte key is used as-is; anything else goes through PBKDF2
        with the IV as salt, so every archive gets its own key.

        Args:
            key: Passphrase or raw key
            salt: Per-archive salt (the IV)

        Returns:
            32-byte key

        Raises:
            CryptoError: If no key was given
        """
        if not key:
            raise CryptoError("Encryption key is required")

        if isinstance(key, bytes) and len(key) == KEY_SIZE:
            return key

        if isinstance(key, str):
            key = key.encode()

        # Derive a 32-byte key from password using PBKDF2
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(key)

    def encrypt(self, plaintext: bytes, key: Union[str, bytes]) -> bytes:
        """
        Encrypt bytes with a fresh random IV.

        Args:
            plaintext: Data to encrypt
            key: Passphrase or raw key

        Returns:
            IV || ciphertext || tag
        """
        iv = os.urandom(IV_SIZE)
        aesgcm = AESGCM(self.derive_key(key, iv))
        # AESGCM appends the 16-byte tag to the ciphertext
        return iv + aesgcm.encrypt(iv, plaintext, None)

    def decrypt(self, blob: bytes, key: Union[str, bytes]) -> bytes:
        """
        Decrypt and authenticate bytes produced by encrypt().

        Args:
            blob: IV || ciphertext || tag
            key: Passphrase or raw key

        Returns:
            Plaintext bytes

        Raises:
            CryptoError: If the key is missing or wrong, or the data was tampered with
        """
        if len(blob) < IV_SIZE + TAG_SIZE:
            raise CryptoError("Encrypted data is too short to hold an IV and tag")

        iv = blob[:IV_SIZE]
        aesgcm = AESGCM(self.derive_key(key, iv))

        try:
            return aesgcm.decrypt(iv, blob[IV_SIZE:], None)
        except InvalidTag:
            raise CryptoError("Decryption failed: wrong key or corrupted backup")

    def encrypt_file(self, path: str, key: Union[str, bytes]) -> str:
        """
        Encrypt a file into ``<path>.enc`` and remove the original.

        Args:
            path: Path to the plaintext file
            key: Passphrase or raw key

        Returns:
            Path of the encrypted file

        Raises:
            BackupIOError: If the file cannot be read or written
        """
        encrypted_path = f"{path}.enc"

        try:
            with open(path, 'rb') as f:
                plaintext = f.read()
            with open(encrypted_path, 'wb') as f:
                f.write(self.encrypt(plaintext, key))
            os.remove(path)
        except OSError as e:
            if os.path.exists(encrypted_path):
                os.remove(encrypted_path)
            raise BackupIOError(f"Failed to encrypt {path}: {e}")

        logger.debug(f"Encrypted {path} -> {encrypted_path}")
        return encrypted_path

    def decrypt_file(self, path: str, key: Union[str, bytes]) -> bytes:
        """
        Read and decrypt an encrypted file.

        Args:
            path: Path to the .enc file
            key: Passphrase or raw key

        Returns:
            Decrypted file contents

        Raises:
            BackupIOError: If the file cannot be read
            CryptoError: If decryption fails
        """
        try:
            with open(path, 'rb') as f:
                blob = f.read()
        except OSError as e:
            raise BackupIOError(f"Failed to read {path}: {e}")

        return self.decrypt(blob, key)
