"""Registry of linking sessions.

The registry is the only mutation point visible to the HTTP layer. It
guarantees at most one live session per key and hands out snapshots,
never the live LinkSession objects.
"""

import asyncio
import logging
import time
from typing import Optional

from linkd.config import Config
from linkd.credentials import CredentialStore
from linkd.errors import LinkError, SessionNotFoundError, ValidationError
from linkd.keys import validate_session_key
from linkd.linking.delivery import CredentialDelivery
from linkd.linking.policy import ReconnectPolicy
from linkd.linking.session import LinkSession
from linkd.linking.state import LinkingMethod, SessionState, SessionStatus
from linkd.logging import short_key
from linkd.transport import TransportFactory

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Maps session keys to linking sessions.

    Check-then-create runs under a lock, so concurrent requests for the
    same key never start two transports. Sessions that end in FAILED or
    LOGGED_OUT stay visible (for their last_error) until the next request
    for the key replaces them, or sweep() retires them.
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        store: CredentialStore,
        policy: Optional[ReconnectPolicy] = None,
        delivery: Optional[CredentialDelivery] = None,
        linking_timeout: Optional[float] = 300.0,
    ):
        """Initialize empty registry.

        Args:
            transport_factory: Builds transport clients for new sessions.
            store: Credential store shared by all sessions.
            policy: Reconnection policy. Defaults to ReconnectPolicy().
            delivery: Delivery orchestrator. Defaults to one over `store`.
            linking_timeout: Per-session linking deadline in seconds.
        """
        self._factory = transport_factory
        self._store = store
        self._policy = policy or ReconnectPolicy()
        self._delivery = delivery or CredentialDelivery(store)
        self._linking_timeout = linking_timeout

        self._sessions: dict[str, LinkSession] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    @classmethod
    def from_config(
        cls,
        config: Config,
        transport_factory: TransportFactory,
        store: CredentialStore,
    ) -> "SessionRegistry":
        """Build a registry with policy and delivery taken from config."""
        return cls(
            transport_factory=transport_factory,
            store=store,
            policy=ReconnectPolicy.from_config(config.reconnect),
            delivery=CredentialDelivery(
                store,
                grace_period=config.delivery.grace_period,
                confirmation_message=config.delivery.confirmation_message,
            ),
            linking_timeout=config.linking_timeout,
        )

    async def get_or_create(
        self,
        key: str,
        method: LinkingMethod,
        phone: Optional[str] = None,
    ) -> SessionStatus:
        """Return the live session for key, creating and starting one if needed.

        An existing live session is returned unchanged, whatever its state
        and whatever method the caller asked for. An ended session that is
        still terminating its transport or erasing its credential is waited
        for before the replacement starts.

        Args:
            key: Session key.
            method: Linking method for a new session.
            phone: Normalized phone digits (required for PAIRING_CODE).

        Returns:
            Snapshot of the session.

        Raises:
            ValidationError: If the key or method arguments are invalid.
            LinkError: If the registry has been closed.
        """
        validate_session_key(key)
        if method is LinkingMethod.PAIRING_CODE and not phone:
            raise ValidationError("Phone number is required for pairing code linking")

        while True:
            async with self._lock:
                if self._closed:
                    raise LinkError("Session registry is closed")

                existing = self._sessions.get(key)
                if existing is not None and not existing.is_terminal:
                    logger.debug(f"Reusing session {short_key(key)} ({existing.state.value})")
                    return existing.status()

                if existing is None or existing.is_retired:
                    return self._create(key, method, phone)

            # Released outside the lock so other keys are not held up
            logger.debug(f"Waiting for ended session {short_key(key)} to retire")
            await existing.wait_retired()

    def _create(
        self, key: str, method: LinkingMethod, phone: Optional[str]
    ) -> SessionStatus:
        session = LinkSession(
            key=key,
            method=method,
            transport_factory=self._factory,
            store=self._store,
            policy=self._policy,
            delivery=self._delivery,
            phone=phone,
            linking_timeout=self._linking_timeout,
            on_retired=self._on_retired,
        )
        self._sessions[key] = session
        session.start()
        return session.status()

    def get(self, key: str) -> Optional[SessionStatus]:
        """Get session snapshot by key.

        Returns:
            SessionStatus if found, None otherwise.
        """
        session = self._sessions.get(key)
        if session is None:
            return None
        return session.status()

    def require(self, key: str) -> SessionStatus:
        """Get session snapshot by key.

        Raises:
            SessionNotFoundError: If no session is registered for key.
        """
        status = self.get(key)
        if status is None:
            raise SessionNotFoundError(key)
        return status

    async def wait_for_linking(self, key: str, timeout: float) -> SessionStatus:
        """Wait until the session has a linking artifact or has moved on.

        Args:
            key: Session key.
            timeout: Maximum seconds to wait.

        Returns:
            Latest snapshot.

        Raises:
            SessionNotFoundError: If no session is registered for key.
        """
        session = self._sessions.get(key)
        if session is None:
            raise SessionNotFoundError(key)

        return await session.wait_until(_past_initializing, timeout)

    def remove(self, key: str) -> None:
        """Drop the entry for key. Idempotent; does not tear anything down."""
        self._sessions.pop(key, None)

    async def delete(self, key: str) -> bool:
        """Explicitly delete the session for key.

        Terminates the transport, erases the credential and removes the
        entry. Deleting an absent or already-ended session is a no-op.

        Returns:
            True if a live session was terminated.
        """
        session = self._sessions.get(key)
        if session is None:
            return False

        terminated = await session.delete()
        if self._sessions.get(key) is session:
            del self._sessions[key]
        return terminated

    def list_all(self) -> list[SessionStatus]:
        """Get snapshots of all registered sessions."""
        return [session.status() for session in self._sessions.values()]

    def stats(self) -> dict[str, int]:
        """Counts of registered sessions by lifecycle phase."""
        statuses = self.list_all()
        by_state: dict[str, int] = {}
        for status in statuses:
            by_state[status.state.value] = by_state.get(status.state.value, 0) + 1

        return {
            "total": len(statuses),
            "linked": sum(1 for s in statuses if s.is_linked),
            "pending": sum(
                1 for s in statuses if not s.is_linked and not s.is_terminal
            ),
            "ended": sum(1 for s in statuses if s.is_terminal),
            **by_state,
        }

    def sweep(self, retention: float) -> int:
        """Drop ended sessions whose last event is older than retention seconds.

        Returns:
            Number of entries dropped.
        """
        cutoff = time.time() - retention
        stale = [
            key
            for key, session in self._sessions.items()
            if session.is_retired and session.status().last_event_at <= cutoff
        ]
        for key in stale:
            del self._sessions[key]
        if stale:
            logger.info(f"Swept {len(stale)} ended sessions")
        return len(stale)

    async def close(self) -> None:
        """Delete every live session and refuse new ones."""
        async with self._lock:
            self._closed = True

        sessions = list(self._sessions.values())
        for session in sessions:
            try:
                await session.delete()
            except Exception as e:
                logger.warning(f"Error deleting session {short_key(session.key)}: {e}")
        self._sessions.clear()
        logger.info("Session registry closed")

    def _on_retired(self, session: LinkSession) -> None:
        if session.state != SessionState.TERMINATED:
            return
        if self._sessions.get(session.key) is session:
            del self._sessions[session.key]
            logger.debug(f"Removed session {short_key(session.key)} from registry")

    def __len__(self) -> int:
        """Return number of sessions in registry."""
        return len(self._sessions)

    def __contains__(self, key: str) -> bool:
        """Check if session exists in registry."""
        return key in self._sessions


def _past_initializing(status: SessionStatus) -> bool:
    return status.linking_artifact_value is not None or status.state not in (
        SessionState.INITIALIZING,
        SessionState.RECONNECTING,
    )
