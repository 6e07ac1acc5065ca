"""Credential delivery once a session is linked.

Sequence, each step strictly after the previous one resolves:
1. Load the credential for the session key (absent -> skip to 4)
2. Send it as a document to the linked identity
3. Send a confirmation message
4. Schedule cleanup after a grace period

If step 2 or 3 fails, a failure notice is attempted and cleanup is still
scheduled. Delivery is never retried.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from linkd.config import DEFAULT_CONFIRMATION_MESSAGE
from linkd.credentials import CredentialStore
from linkd.logging import short_key
from linkd.transport import DocumentMetadata, TransportClient

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_NOTICE = (
    "Sending your session credential failed. "
    "Please start a new linking session."
)


class DeliveryStatus(Enum):
    """How a delivery run ended."""

    DELIVERED = "delivered"
    SKIPPED = "skipped"  # nothing stored to deliver
    FAILED = "failed"


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of one delivery run."""

    status: DeliveryStatus
    error: Optional[str] = None


# Called with the grace period in seconds
ScheduleCleanup = Callable[[float], None]


def credential_metadata(key: str, now: Optional[datetime] = None) -> DocumentMetadata:
    """Build the document metadata for a session's credential."""
    now = now or datetime.now(timezone.utc)
    return DocumentMetadata(
        file_name=f"{key}.json",
        mimetype="application/json",
        caption=f"Session credential for {key}\nGenerated on: {now.isoformat()}",
    )


class CredentialDelivery:
    """Delivers the stored credential to the linked identity."""

    def __init__(
        self,
        store: CredentialStore,
        grace_period: float = 10.0,
        confirmation_message: str = DEFAULT_CONFIRMATION_MESSAGE,
        failure_notice: str = DEFAULT_FAILURE_NOTICE,
    ):
        """Initialize delivery.

        Args:
            store: Credential store to read from.
            grace_period: Seconds between the last send and cleanup, so that
                queued messages leave the transport before it is torn down.
            confirmation_message: Text sent after the credential document.
            failure_notice: Text sent if delivery fails.
        """
        self._store = store
        self.grace_period = grace_period
        self._confirmation_message = confirmation_message
        self._failure_notice = failure_notice

    async def run(
        self,
        key: str,
        transport: TransportClient,
        identity: str,
        schedule_cleanup: ScheduleCleanup,
    ) -> DeliveryOutcome:
        """Run the delivery sequence.

        Args:
            key: Session key whose credential is delivered.
            transport: Open transport of the linked session.
            identity: Linked identity to deliver to.
            schedule_cleanup: Called once with the grace period at the end.

        Returns:
            The outcome. Exceptions from the store or transport never escape.
        """
        try:
            outcome = await self._deliver(key, transport, identity)
        except Exception as e:
            logger.error(f"Credential delivery failed for {short_key(key)}: {e}")
            await self._notify_failure(transport, identity, key)
            outcome = DeliveryOutcome(DeliveryStatus.FAILED, error=str(e))

        schedule_cleanup(self.grace_period)
        return outcome

    async def _deliver(
        self, key: str, transport: TransportClient, identity: str
    ) -> DeliveryOutcome:
        try:
            credential = await self._store.load(key)
        except Exception as e:
            logger.warning(f"Could not read credential for {short_key(key)}: {e}")
            return DeliveryOutcome(DeliveryStatus.SKIPPED, error=str(e))

        if credential is None:
            logger.info(f"No credential stored for {short_key(key)}, nothing to deliver")
            return DeliveryOutcome(DeliveryStatus.SKIPPED)

        logger.info(f"Sending credential for {short_key(key)} to {identity}")
        await transport.send_document(identity, credential, credential_metadata(key))
        await transport.send_text(identity, self._confirmation_message)

        logger.info(f"Credential delivered for {short_key(key)}")
        return DeliveryOutcome(DeliveryStatus.DELIVERED)

    async def _notify_failure(
        self, transport: TransportClient, identity: str, key: str
    ) -> None:
        try:
            await transport.send_text(identity, self._failure_notice)
        except Exception as e:
            logger.warning(f"Failure notice not sent for {short_key(key)}: {e}")
