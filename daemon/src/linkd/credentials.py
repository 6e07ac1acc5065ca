"""Credential storage for linking sessions.

This module provides:
- CredentialStore: protocol consumed by the linking core
- FileCredentialStore: one directory per session key on disk
- MemoryCredentialStore: in-process store

Security features of the file store:
- File permissions (600 for files, 700 for directories)
- Session key validation (prevent path traversal)
- Atomic writes, so a partially written credential is never loaded
"""

import asyncio
import json
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Callable, Optional, Protocol

from linkd.errors import StorageError, ValidationError
from linkd.keys import validate_session_key

__all__ = [
    "CREDENTIAL_FILE_NAME",
    "CredentialStore",
    "FileCredentialStore",
    "MemoryCredentialStore",
    "StorageError",
]

logger = logging.getLogger(__name__)

CREDENTIAL_FILE_NAME = "creds.json"

UpdateCallback = Callable[[str], None]
Unsubscribe = Callable[[], None]


class CredentialStore(Protocol):
    """Protocol for credential persistence."""

    async def load(self, key: str) -> Optional[bytes]:
        """Return the credential for key, or None if absent or incomplete."""
        ...

    async def save(self, key: str, data: bytes) -> None:
        """Persist the credential for key."""
        ...

    def on_update(self, key: str, callback: UpdateCallback) -> Unsubscribe:
        """Register a callback fired after each save for key."""
        ...

    async def erase(self, key: str) -> bool:
        """Erase the credential. Returns False if nothing was stored."""
        ...

    async def purge_stale(self, max_age: float) -> int:
        """Erase credentials untouched for max_age seconds."""
        ...


class _UpdateListeners:
    """Per-key callback lists shared by the store implementations."""

    def __init__(self) -> None:
        self._callbacks: dict[str, list[UpdateCallback]] = {}

    def add(self, key: str, callback: UpdateCallback) -> Unsubscribe:
        self._callbacks.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._callbacks.get(key)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._callbacks[key]

        return unsubscribe

    def notify(self, key: str) -> None:
        for callback in list(self._callbacks.get(key, [])):
            try:
                callback(key)
            except Exception as e:
                logger.warning(f"Credential update callback failed: {e}")


class FileCredentialStore:
    """File-based credential storage.

    Layout: <directory>/<session key>/creds.json

    Attributes:
        directory: Storage directory path.
    """

    def __init__(self, directory: Path) -> None:
        """Initialize storage.

        Creates directory if it doesn't exist, with secure permissions.

        Args:
            directory: Path to storage directory.
        """
        self.directory = Path(directory).expanduser()
        self.directory.mkdir(parents=True, exist_ok=True)
        os.chmod(self.directory, 0o700)
        self._listeners = _UpdateListeners()

    def _key_dir(self, key: str) -> Path:
        """Get the directory for a session key.

        Raises:
            StorageError: If the key is not a safe path component.
        """
        try:
            validate_session_key(key)
        except ValidationError as e:
            raise StorageError(str(e)) from e
        return self.directory / key

    def _path(self, key: str) -> Path:
        return self._key_dir(key) / CREDENTIAL_FILE_NAME

    async def load(self, key: str) -> Optional[bytes]:
        """Load the credential for key.

        Returns:
            Raw credential bytes, or None if missing, empty or not valid JSON.
        """
        # Run blocking I/O in thread pool
        return await asyncio.to_thread(self._load_sync, self._path(key))

    def _load_sync(self, path: Path) -> Optional[bytes]:
        if not path.exists():
            return None

        try:
            data = path.read_bytes()
        except OSError as e:
            logger.warning(f"Failed to read credential {path}: {e}")
            return None

        if not data.strip():
            return None

        try:
            json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning(f"Ignoring incomplete credential at {path}")
            return None

        return data

    async def save(self, key: str, data: bytes) -> None:
        """Save the credential with secure permissions.

        Raises:
            StorageError: If the key is invalid or the write fails.
        """
        key_dir = self._key_dir(key)
        try:
            await asyncio.to_thread(self._save_sync, key_dir, data)
        except OSError as e:
            raise StorageError(f"Failed to save credential for {key}: {e}") from e

        self._listeners.notify(key)

    def _save_sync(self, key_dir: Path, data: bytes) -> None:
        path = key_dir / CREDENTIAL_FILE_NAME
        tmp_path = key_dir / f".{CREDENTIAL_FILE_NAME}.tmp"

        key_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(key_dir, 0o700)

        # Write with restricted permissions (owner read/write only)
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            os.write(fd, data)
        finally:
            os.close(fd)
        os.replace(tmp_path, path)

    def on_update(self, key: str, callback: UpdateCallback) -> Unsubscribe:
        """Register a callback fired after each save for key."""
        return self._listeners.add(key, callback)

    async def erase(self, key: str) -> bool:
        """Erase everything stored for key.

        Returns:
            True if something was erased, False if nothing was stored.

        Raises:
            StorageError: If the directory exists but cannot be removed.
        """
        key_dir = self._key_dir(key)
        try:
            return await asyncio.to_thread(self._erase_sync, key_dir)
        except OSError as e:
            raise StorageError(f"Failed to erase credential for {key}: {e}") from e

    def _erase_sync(self, key_dir: Path) -> bool:
        if not key_dir.exists():
            return False
        shutil.rmtree(key_dir)
        return True

    async def purge_stale(self, max_age: float) -> int:
        """Erase credential directories not modified for max_age seconds.

        Returns:
            Number of directories removed.
        """
        return await asyncio.to_thread(self._purge_stale_sync, time.time() - max_age)

    def _purge_stale_sync(self, cutoff: float) -> int:
        removed = 0

        for key_dir in self.directory.iterdir():
            if not key_dir.is_dir():
                continue
            try:
                if key_dir.stat().st_mtime > cutoff:
                    continue
                shutil.rmtree(key_dir)
                removed += 1
                logger.info(f"Deleted stale credential: {key_dir.name}")
            except OSError as e:
                logger.warning(f"Failed to delete stale credential {key_dir}: {e}")

        return removed

    def keys(self) -> list[str]:
        """List keys that currently have a credential directory."""
        return sorted(p.name for p in self.directory.iterdir() if p.is_dir())


class MemoryCredentialStore:
    """In-memory credential storage with the same contract as the file store."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._saved_at: dict[str, float] = {}
        self._listeners = _UpdateListeners()

    async def load(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    async def save(self, key: str, data: bytes) -> None:
        self._data[key] = bytes(data)
        self._saved_at[key] = time.time()
        self._listeners.notify(key)

    def on_update(self, key: str, callback: UpdateCallback) -> Unsubscribe:
        return self._listeners.add(key, callback)

    async def erase(self, key: str) -> bool:
        self._saved_at.pop(key, None)
        return self._data.pop(key, None) is not None

    async def purge_stale(self, max_age: float) -> int:
        cutoff = time.time() - max_age
        stale = [key for key, saved_at in self._saved_at.items() if saved_at <= cutoff]
        for key in stale:
            await self.erase(key)
        return len(stale)

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)
