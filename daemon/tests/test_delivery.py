"""Tests for credential delivery."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from linkd.config import DEFAULT_CONFIRMATION_MESSAGE
from linkd.credentials import MemoryCredentialStore
from linkd.errors import StorageError, TransportError
from linkd.linking.delivery import (
    DEFAULT_FAILURE_NOTICE,
    CredentialDelivery,
    DeliveryStatus,
    credential_metadata,
)

KEY = "session_15551234567"
IDENTITY = "15551234567"
CREDS = b'{"me": {"id": "15551234567"}}'


@pytest.fixture
def transport():
    """Transport mock recording sends."""
    mock = MagicMock()
    mock.send_document = AsyncMock()
    mock.send_text = AsyncMock()
    return mock


class TestCredentialMetadata:
    def test_metadata(self):
        now = datetime(2025, 1, 27, 10, 30, tzinfo=timezone.utc)

        metadata = credential_metadata(KEY, now)

        assert metadata.file_name == f"{KEY}.json"
        assert metadata.mimetype == "application/json"
        assert metadata.caption.startswith(f"Session credential for {KEY}")
        assert "2025-01-27T10:30:00+00:00" in metadata.caption


class TestCredentialDelivery:
    """Test the delivery sequence."""

    @pytest.mark.asyncio
    async def test_delivers_document_then_confirmation(self, transport):
        store = MemoryCredentialStore()
        await store.save(KEY, CREDS)
        delivery = CredentialDelivery(store, grace_period=7.0)
        cleanup = MagicMock()

        outcome = await delivery.run(KEY, transport, IDENTITY, cleanup)

        assert outcome.status == DeliveryStatus.DELIVERED
        target, data, metadata = transport.send_document.await_args.args
        assert (target, data) == (IDENTITY, CREDS)
        assert metadata.file_name == f"{KEY}.json"
        transport.send_text.assert_awaited_once_with(IDENTITY, DEFAULT_CONFIRMATION_MESSAGE)
        cleanup.assert_called_once_with(7.0)

    @pytest.mark.asyncio
    async def test_custom_confirmation(self, transport):
        store = MemoryCredentialStore()
        await store.save(KEY, CREDS)
        delivery = CredentialDelivery(store, confirmation_message="done!")

        await delivery.run(KEY, transport, IDENTITY, MagicMock())

        transport.send_text.assert_awaited_once_with(IDENTITY, "done!")

    @pytest.mark.asyncio
    async def test_missing_credential_skips_sends(self, transport):
        """Nothing stored: no messages, cleanup still scheduled."""
        delivery = CredentialDelivery(MemoryCredentialStore(), grace_period=3.0)
        cleanup = MagicMock()

        outcome = await delivery.run(KEY, transport, IDENTITY, cleanup)

        assert outcome.status == DeliveryStatus.SKIPPED
        transport.send_document.assert_not_awaited()
        transport.send_text.assert_not_awaited()
        cleanup.assert_called_once_with(3.0)

    @pytest.mark.asyncio
    async def test_unreadable_credential_skips_sends(self, transport):
        store = MagicMock()
        store.load = AsyncMock(side_effect=StorageError("disk gone"))
        cleanup = MagicMock()

        outcome = await CredentialDelivery(store).run(KEY, transport, IDENTITY, cleanup)

        assert outcome.status == DeliveryStatus.SKIPPED
        assert outcome.error == "disk gone"
        transport.send_document.assert_not_awaited()
        cleanup.assert_called_once()

    @pytest.mark.asyncio
    async def test_document_failure_sends_notice(self, transport):
        """Upload failure: no confirmation, failure notice, cleanup scheduled."""
        store = MemoryCredentialStore()
        await store.save(KEY, CREDS)
        transport.send_document.side_effect = TransportError("upload failed")
        cleanup = MagicMock()

        outcome = await CredentialDelivery(store).run(KEY, transport, IDENTITY, cleanup)

        assert outcome.status == DeliveryStatus.FAILED
        assert outcome.error == "upload failed"
        transport.send_text.assert_awaited_once_with(IDENTITY, DEFAULT_FAILURE_NOTICE)
        cleanup.assert_called_once_with(10.0)

    @pytest.mark.asyncio
    async def test_confirmation_failure_is_reported(self, transport):
        store = MemoryCredentialStore()
        await store.save(KEY, CREDS)
        transport.send_text.side_effect = TransportError("text failed")
        cleanup = MagicMock()

        outcome = await CredentialDelivery(store).run(KEY, transport, IDENTITY, cleanup)

        assert outcome.status == DeliveryStatus.FAILED
        # Confirmation attempt plus failure notice attempt
        assert transport.send_text.await_count == 2
        cleanup.assert_called_once()

    @pytest.mark.asyncio
    async def test_delivery_does_not_erase(self, transport):
        """Erasing belongs to session teardown, not delivery."""
        store = MemoryCredentialStore()
        await store.save(KEY, CREDS)

        await CredentialDelivery(store).run(KEY, transport, IDENTITY, MagicMock())

        assert KEY in store
