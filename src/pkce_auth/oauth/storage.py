"""Persisted key-value storage for PKCE parameters.

The storage is the only channel across the authorization redirect:
whatever begin_sign_in writes here must be readable by a freshly
constructed process at callback time.
"""

from __future__ import annotations

import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from pkce_auth.errors import StorageUnavailableError
from pkce_auth.logging_config import get_logger

logger = get_logger(__name__)


class StorageError(StorageUnavailableError):
    """Error during a storage operation."""


class KeyValueStorage(ABC):
    """Synchronous string key-value storage.

    Implementations raise StorageError when the backing medium
    cannot be read or written.
    """

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the value for key, or None if absent."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store value under key, replacing any previous value."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove key. Missing keys are ignored."""

    @abstractmethod
    def keys(self) -> list[str]:
        """Return all stored keys."""


class InMemoryStorage(KeyValueStorage):
    """In-memory storage.

    Values are lost when the process exits. Suitable for tests and
    callers whose redirect never leaves the process.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)

    def clear(self) -> None:
        """Remove every key."""
        self._data.clear()


class EncryptedFileStorage(KeyValueStorage):
    """Encrypted file-based storage.

    Values are kept in a JSON object encrypted with Fernet. The file
    is re-read on every operation so that another instance, or another
    process, always sees the latest writes. Writes are atomic.
    """

    def __init__(self, encryption_key: str, file_path: str | Path) -> None:
        """Initialize encrypted file storage.

        Args:
            encryption_key: Fernet-compatible encryption key
            file_path: Path to the storage file

        Raises:
            StorageError: If encryption key is invalid
        """
        try:
            self._fernet = Fernet(encryption_key.encode())
        except Exception as e:
            raise StorageError(f"Invalid encryption key: {e}") from e

        self._file_path = Path(file_path)

    @property
    def file_path(self) -> Path:
        return self._file_path

    def _load(self) -> dict[str, str]:
        """Read and decrypt the storage file."""
        if not self._file_path.exists():
            return {}

        try:
            encrypted_data = self._file_path.read_bytes()
            decrypted_data = self._fernet.decrypt(encrypted_data)
            data = json.loads(decrypted_data.decode())
        except InvalidToken:
            logger.error("Failed to decrypt storage file %s - wrong key?", self._file_path)
            raise StorageError("Failed to decrypt storage file") from None
        except json.JSONDecodeError as e:
            logger.error("Failed to parse storage file: %s", e)
            raise StorageError(f"Failed to parse storage file: {e}") from e
        except OSError as e:
            logger.error("Failed to read storage file %s: %s", self._file_path, e)
            raise StorageError(f"Failed to read storage file: {e}") from e

        if not isinstance(data, dict):
            raise StorageError("Storage file does not contain an object")
        return {str(k): str(v) for k, v in data.items()}

    def _save(self, data: dict[str, str]) -> None:
        """Encrypt and write the storage file atomically."""
        encrypted_data = self._fernet.encrypt(json.dumps(data).encode())

        try:
            dir_path = self._file_path.parent
            dir_path.mkdir(parents=True, exist_ok=True)
            fd, temp_path_str = tempfile.mkstemp(dir=dir_path)
        except OSError as e:
            raise StorageError(f"Failed to write storage file: {e}") from e

        temp_path = Path(temp_path_str)
        fd_open = True
        try:
            os.write(fd, encrypted_data)
            os.close(fd)
            fd_open = False
            temp_path.replace(self._file_path)
        except OSError as e:
            if fd_open:
                os.close(fd)
            if temp_path.exists():
                temp_path.unlink()
            raise StorageError(f"Failed to write storage file: {e}") from e

    def get(self, key: str) -> str | None:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def remove(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)

    def keys(self) -> list[str]:
        return list(self._load())


def create_storage(
    encryption_key: str | None = None,
    file_path: str | Path | None = None,
) -> KeyValueStorage:
    """Create appropriate storage based on configuration.

    Args:
        encryption_key: Optional Fernet encryption key
        file_path: Optional path for persistent storage

    Returns:
        Configured KeyValueStorage instance
    """
    if file_path and encryption_key:
        return EncryptedFileStorage(encryption_key, file_path)
    logger.warning(
        "Using in-memory PKCE storage; parameters will not survive a process restart"
    )
    return InMemoryStorage()
