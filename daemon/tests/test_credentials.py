"""Tests for credential stores."""

import os
import stat
import threading
import time
from pathlib import Path

import pytest

from linkd.credentials import (
    CREDENTIAL_FILE_NAME,
    FileCredentialStore,
    MemoryCredentialStore,
)
from linkd.errors import StorageError

KEY = "session_15551234567"
CREDS = b'{"noiseKey": "abc", "me": {"id": "15551234567"}}'


@pytest.fixture
def file_store(tmp_path: Path) -> FileCredentialStore:
    return FileCredentialStore(tmp_path / "sessions")


class TestFileCredentialStore:
    """Test the on-disk store."""

    def test_directory_created_with_secure_permissions(self, tmp_path: Path):
        """Storage directory is created with 700 permissions."""
        directory = tmp_path / "nested" / "sessions"

        FileCredentialStore(directory)

        assert directory.is_dir()
        assert stat.S_IMODE(os.stat(directory).st_mode) == 0o700

    @pytest.mark.asyncio
    async def test_save_and_load(self, file_store):
        """Saved bytes load back unchanged."""
        await file_store.save(KEY, CREDS)

        assert await file_store.load(KEY) == CREDS

    @pytest.mark.asyncio
    async def test_file_permissions(self, file_store):
        """Credential file is owner read/write only."""
        await file_store.save(KEY, CREDS)

        path = file_store.directory / KEY / CREDENTIAL_FILE_NAME
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert stat.S_IMODE(os.stat(path.parent).st_mode) == 0o700

    @pytest.mark.asyncio
    async def test_no_temp_file_left_behind(self, file_store):
        await file_store.save(KEY, CREDS)

        assert sorted(p.name for p in (file_store.directory / KEY).iterdir()) == [
            CREDENTIAL_FILE_NAME
        ]

    @pytest.mark.asyncio
    async def test_load_missing_returns_none(self, file_store):
        assert await file_store.load(KEY) is None

    @pytest.mark.asyncio
    async def test_load_incomplete_returns_none(self, file_store):
        """A truncated or empty credential file is treated as absent."""
        key_dir = file_store.directory / KEY
        key_dir.mkdir()
        (key_dir / CREDENTIAL_FILE_NAME).write_bytes(b'{"noiseKey": ')

        assert await file_store.load(KEY) is None

        (key_dir / CREDENTIAL_FILE_NAME).write_bytes(b"  \n")
        assert await file_store.load(KEY) is None

    @pytest.mark.asyncio
    async def test_invalid_key_rejected(self, file_store):
        """Keys that would escape the directory are refused."""
        with pytest.raises(StorageError):
            await file_store.save("../escape", CREDS)
        with pytest.raises(StorageError):
            await file_store.load("a/b")

    @pytest.mark.asyncio
    async def test_erase(self, file_store):
        """erase() removes the key directory and reports whether it existed."""
        await file_store.save(KEY, CREDS)

        assert await file_store.erase(KEY) is True
        assert not (file_store.directory / KEY).exists()
        assert await file_store.load(KEY) is None
        assert await file_store.erase(KEY) is False

    @pytest.mark.asyncio
    async def test_file_io_runs_in_worker_threads(self, file_store, monkeypatch):
        """Disk access happens off the event loop thread."""
        loop_thread = threading.get_ident()
        threads = {}

        for name in ("_save_sync", "_load_sync", "_erase_sync", "_purge_stale_sync"):
            original = getattr(file_store, name)

            def recording(*args, _name=name, _original=original):
                threads[_name] = threading.get_ident()
                return _original(*args)

            monkeypatch.setattr(file_store, name, recording)

        await file_store.save(KEY, CREDS)
        assert await file_store.load(KEY) == CREDS
        assert await file_store.erase(KEY) is True
        assert await file_store.purge_stale(0) == 0

        assert len(threads) == 4
        assert loop_thread not in threads.values()

    @pytest.mark.asyncio
    async def test_on_update_fires_after_save(self, file_store):
        """Subscribers are told about each save until they unsubscribe."""
        updates = []
        unsubscribe = file_store.on_update(KEY, updates.append)

        await file_store.save(KEY, CREDS)
        await file_store.save("session_other", CREDS)
        unsubscribe()
        await file_store.save(KEY, CREDS)

        assert updates == [KEY]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_save(self, file_store):
        def boom(key):
            raise RuntimeError("listener bug")

        file_store.on_update(KEY, boom)

        await file_store.save(KEY, CREDS)

        assert await file_store.load(KEY) == CREDS

    @pytest.mark.asyncio
    async def test_purge_stale(self, file_store):
        """Only directories older than max_age are removed."""
        await file_store.save("session_old", CREDS)
        await file_store.save("session_new", CREDS)
        old_dir = file_store.directory / "session_old"
        an_hour_ago = time.time() - 3600
        os.utime(old_dir, (an_hour_ago, an_hour_ago))

        removed = await file_store.purge_stale(600)

        assert removed == 1
        assert file_store.keys() == ["session_new"]

    @pytest.mark.asyncio
    async def test_purge_ignores_plain_files(self, file_store):
        (file_store.directory / "README").write_text("not a session")

        assert await file_store.purge_stale(0) == 0
        assert (file_store.directory / "README").exists()


class TestMemoryCredentialStore:
    """Test the in-process store."""

    @pytest.mark.asyncio
    async def test_save_load_erase(self):
        store = MemoryCredentialStore()

        await store.save(KEY, CREDS)
        assert KEY in store
        assert await store.load(KEY) == CREDS

        assert await store.erase(KEY) is True
        assert await store.erase(KEY) is False
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_on_update(self):
        store = MemoryCredentialStore()
        updates = []
        store.on_update(KEY, updates.append)

        await store.save(KEY, CREDS)

        assert updates == [KEY]

    @pytest.mark.asyncio
    async def test_purge_stale(self):
        store = MemoryCredentialStore()
        await store.save(KEY, CREDS)

        assert await store.purge_stale(3600) == 0
        assert await store.purge_stale(0) == 1
        assert KEY not in store
