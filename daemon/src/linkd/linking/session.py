"""Linking session state machine.

A LinkSession owns one transport client at a time and moves through

    INITIALIZING -> AWAITING_LINKING -> LINKED -> DELIVERING_CREDENTIAL -> TERMINATED

with RECONNECTING as a side path and FAILED / LOGGED_OUT / TERMINATED as
terminal states.

Concurrency model: every input (transport events, timers, results of
background work, explicit deletion) is posted to the session's queue and
applied by a single consumer task, in arrival order. Nothing else writes
session fields. Slow operations (starting the transport, requesting a
pairing code, delivering the credential) run as separate tasks and report
back through the queue, so one session never blocks another.

Each transport incarnation gets a generation number. Events and timers
carry the generation they were created for and are discarded once a newer
transport has replaced it.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from linkd.credentials import CredentialStore
from linkd.keys import format_pairing_code
from linkd.linking.delivery import CredentialDelivery, DeliveryOutcome, DeliveryStatus
from linkd.linking.policy import GiveUp, ReconnectPolicy
from linkd.linking.state import (
    LinkingMethod,
    SessionState,
    SessionStatus,
    check_transition,
)
from linkd.logging import short_key
from linkd.transport import (
    Closed,
    DisconnectReason,
    Opened,
    PairingCodeAvailable,
    QrIssued,
    TransportClient,
    TransportEvent,
    TransportFactory,
)

logger = logging.getLogger(__name__)

# (key, old_state, new_state)
TransitionListener = Callable[[str, SessionState, SessionState], None]
RetiredCallback = Callable[["LinkSession"], None]

# Seconds to wait for a transport to shut down before giving up on it
TERMINATE_TIMEOUT = 10.0


# =============================================================================
# Queue items
# =============================================================================

@dataclass(frozen=True)
class _Start:
    pass


@dataclass(frozen=True)
class _TransportStarted:
    generation: int


@dataclass(frozen=True)
class _FromTransport:
    generation: int
    event: TransportEvent


@dataclass(frozen=True)
class _PairingCodeReady:
    generation: int
    code: str


@dataclass(frozen=True)
class _PairingCodeFailed:
    generation: int
    error: str


@dataclass(frozen=True)
class _RetryDue:
    generation: int


@dataclass(frozen=True)
class _CleanupRequested:
    delay: float


@dataclass(frozen=True)
class _CleanupDue:
    pass


@dataclass(frozen=True)
class _DeliveryFinished:
    outcome: DeliveryOutcome


@dataclass(frozen=True)
class _LinkingExpired:
    pass


@dataclass(frozen=True)
class _CredentialsUpdated:
    pass


@dataclass(frozen=True)
class _Delete:
    done: asyncio.Future


# =============================================================================
# Session
# =============================================================================

class LinkSession:
    """One device-linking lifecycle for one session key.

    Outside code never reads the live fields; it calls status() for a
    snapshot, or delete() to tear the session down.
    """

    def __init__(
        self,
        key: str,
        method: LinkingMethod,
        transport_factory: TransportFactory,
        store: CredentialStore,
        policy: ReconnectPolicy,
        delivery: CredentialDelivery,
        phone: Optional[str] = None,
        linking_timeout: Optional[float] = 300.0,
        on_retired: Optional[RetiredCallback] = None,
    ):
        """Initialize session. Nothing runs until start() is called.

        Args:
            key: Session key.
            method: Linking method, fixed for the session lifetime.
            transport_factory: Builds a transport client per incarnation.
            store: Credential store for the key.
            policy: Reconnection policy consulted on every disconnect.
            delivery: Orchestrator run once the session is linked.
            phone: Normalized phone digits (required for PAIRING_CODE).
            linking_timeout: Fail if not linked within this many seconds.
                None disables the deadline.
            on_retired: Called once the session reaches a terminal state.
        """
        if method is LinkingMethod.PAIRING_CODE and not phone:
            raise ValueError("pairing code sessions require a phone identity")

        self.key = key
        self.method = method
        self.phone = phone

        self._factory = transport_factory
        self._store = store
        self._policy = policy
        self._delivery = delivery
        self._linking_timeout = linking_timeout
        self._on_retired = on_retired

        self._state = SessionState.INITIALIZING
        self._linking_artifact: Optional[str] = None
        self._raw_pairing_code: Optional[str] = None
        self._linked_identity: Optional[str] = None
        self._reconnect_attempts = 0
        self._last_error: Optional[str] = None
        self.created_at = time.time()
        self._last_event_at = self.created_at

        self._generation = 0
        self._transport: Optional[TransportClient] = None
        self._was_linked = False
        self._delivery_task: Optional[asyncio.Task] = None
        self._delivery_resolved = False

        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._closed = False
        self._changed = asyncio.Event()
        # Set once teardown has released the transport and the credential
        self._retired = asyncio.Event()

        self._retry_timer: Optional[asyncio.Task] = None
        self._cleanup_timer: Optional[asyncio.Task] = None
        self._deadline_timer: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()
        # Terminations of replaced transports; never cancelled
        self._closing: set[asyncio.Task] = set()

        self._listeners: list[TransitionListener] = []
        self._unsubscribe_credentials: Optional[Callable[[], None]] = None

    # =========================================================================
    # Public API
    # =========================================================================

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    @property
    def is_retired(self) -> bool:
        """True once a terminal session has finished releasing its resources."""
        return self._retired.is_set()

    @property
    def raw_pairing_code(self) -> Optional[str]:
        """Pairing code exactly as the transport returned it."""
        return self._raw_pairing_code

    def add_listener(self, listener: TransitionListener) -> None:
        """Register a callback for every state transition."""
        self._listeners.append(listener)

    def start(self) -> None:
        """Start the consumer task and the first transport."""
        if self._consumer is not None:
            return

        self._unsubscribe_credentials = self._store.on_update(
            self.key, lambda _key: self._post(_CredentialsUpdated())
        )
        self._consumer = asyncio.create_task(self._run())
        if self._linking_timeout is not None:
            self._deadline_timer = asyncio.create_task(
                self._fire_after(self._linking_timeout, _LinkingExpired())
            )
        self._post(_Start())
        logger.info(f"Session started: {short_key(self.key)} ({self.method.value})")

    async def delete(self) -> bool:
        """Explicitly delete the session.

        Cancels pending reconnect, cleanup and deadline timers, then
        tears the session down.

        Returns:
            True if this call terminated the session, False if it was
            already terminal.
        """
        if self._closed or self.is_terminal:
            return False

        self._cancel_timers()

        if self._consumer is None:
            await self._teardown(SessionState.TERMINATED)
            self._closed = True
            return True

        done = asyncio.get_running_loop().create_future()
        self._post(_Delete(done))
        return await done

    def status(self) -> SessionStatus:
        """Point-in-time snapshot of the session."""
        artifact = self._linking_artifact
        return SessionStatus(
            key=self.key,
            method=self.method,
            state=self._state,
            linking_artifact_kind=self.method.artifact_kind if artifact else None,
            linking_artifact_value=artifact,
            linked_identity=self._linked_identity,
            last_error=self._last_error,
            reconnect_attempts=self._reconnect_attempts,
            created_at=self.created_at,
            last_event_at=self._last_event_at,
        )

    async def wait_until(
        self,
        predicate: Callable[[SessionStatus], bool],
        timeout: float,
    ) -> SessionStatus:
        """Wait until predicate holds for the status, or timeout.

        Returns:
            The latest snapshot, whether or not the predicate holds.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        status = self.status()
        while not predicate(status) and not status.is_terminal:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            changed = self._changed
            try:
                await asyncio.wait_for(changed.wait(), remaining)
            except asyncio.TimeoutError:
                pass
            status = self.status()
        return status

    async def wait_closed(self) -> None:
        """Wait for the consumer task to finish."""
        if self._consumer is not None:
            await asyncio.shield(self._consumer)

    async def wait_retired(self) -> None:
        """Wait until teardown has terminated the transport and erased the credential."""
        await self._retired.wait()

    # =========================================================================
    # Queue plumbing
    # =========================================================================

    def _post(self, item: Any) -> None:
        if self._closed:
            if isinstance(item, _Delete) and not item.done.done():
                item.done.set_result(False)
            return
        self._queue.put_nowait(item)

    def _sink_for(self, generation: int) -> Callable[[TransportEvent], None]:
        def sink(event: TransportEvent) -> None:
            self._post(_FromTransport(generation, event))

        return sink

    async def _run(self) -> None:
        try:
            while not self.is_terminal:
                item = await self._queue.get()
                self._last_event_at = time.time()
                try:
                    await self._handle(item)
                except Exception:
                    logger.exception(f"Session {short_key(self.key)} event handler error")
                    if not self.is_terminal:
                        await self._teardown(SessionState.FAILED, "internal error")
        finally:
            self._closed = True
            self._drain()

    def _drain(self) -> None:
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if isinstance(item, _Delete) and not item.done.done():
                item.done.set_result(False)

    async def _handle(self, item: Any) -> None:
        if isinstance(item, _FromTransport):
            if item.generation != self._generation:
                logger.debug(f"Dropping stale event for {short_key(self.key)}: {item.event}")
                return
            await self._handle_transport_event(item.event)
        elif isinstance(item, _Start):
            await self._start_transport()
        elif isinstance(item, _TransportStarted):
            self._on_transport_started(item.generation)
        elif isinstance(item, _PairingCodeReady):
            if item.generation == self._generation:
                self._on_pairing_code(item.code)
        elif isinstance(item, _PairingCodeFailed):
            if item.generation == self._generation:
                await self._on_pairing_code_failed(item.error)
        elif isinstance(item, _RetryDue):
            await self._on_retry_due(item.generation)
        elif isinstance(item, _CleanupRequested):
            self._on_cleanup_requested(item.delay)
        elif isinstance(item, _CleanupDue):
            logger.info(f"Cleaning up session {short_key(self.key)}")
            await self._teardown(SessionState.TERMINATED)
        elif isinstance(item, _DeliveryFinished):
            self._on_delivery_finished(item.outcome)
        elif isinstance(item, _LinkingExpired):
            await self._on_linking_expired()
        elif isinstance(item, _CredentialsUpdated):
            logger.debug(f"Credentials updated for {short_key(self.key)}")
        elif isinstance(item, _Delete):
            await self._teardown(SessionState.TERMINATED)
            if not item.done.done():
                item.done.set_result(True)
            logger.info(f"Session deleted: {short_key(self.key)}")

    # =========================================================================
    # Transitions
    # =========================================================================

    def _transition(self, new_state: SessionState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        check_transition(old_state, new_state)

        self._state = new_state
        if new_state != SessionState.AWAITING_LINKING:
            self._linking_artifact = None
        if new_state not in (SessionState.LINKED, SessionState.DELIVERING_CREDENTIAL):
            self._linked_identity = None
        if new_state in (SessionState.AWAITING_LINKING, SessionState.LINKED):
            self._last_error = None

        logger.debug(f"Session {short_key(self.key)}: {old_state.value} -> {new_state.value}")

        for listener in list(self._listeners):
            try:
                listener(self.key, old_state, new_state)
            except Exception as e:
                logger.warning(f"Transition listener failed: {e}")

        self._notify_changed()

    def _notify_changed(self) -> None:
        # Wake everyone in wait_until() and arm a fresh event
        self._changed.set()
        self._changed = asyncio.Event()

    async def _start_transport(self) -> None:
        self._generation += 1
        generation = self._generation

        try:
            transport = self._factory(self.key, self.method, self._sink_for(generation))
        except Exception as e:
            logger.error(f"Transport factory failed for {short_key(self.key)}: {e}")
            await self._teardown(SessionState.FAILED, f"transport unavailable: {e}")
            return

        self._transport = transport
        self._spawn(self._run_transport_start(generation, transport))

    async def _run_transport_start(
        self, generation: int, transport: TransportClient
    ) -> None:
        try:
            await transport.start()
        except Exception as e:
            logger.warning(f"Transport start failed for {short_key(self.key)}: {e}")
            self._post(
                _FromTransport(
                    generation, Closed(DisconnectReason.CONNECTION_FAILED, str(e))
                )
            )
            return
        self._post(_TransportStarted(generation))

    def _on_transport_started(self, generation: int) -> None:
        if generation != self._generation or self._state != SessionState.INITIALIZING:
            return
        if self.method is not LinkingMethod.PAIRING_CODE or self._was_linked:
            return

        transport = self._transport
        self._spawn(self._run_pairing_code_request(generation, transport))

    async def _run_pairing_code_request(
        self, generation: int, transport: TransportClient
    ) -> None:
        try:
            code = await transport.request_pairing_code(self.phone)
        except Exception as e:
            logger.warning(f"Pairing code request failed for {short_key(self.key)}: {e}")
            self._post(_PairingCodeFailed(generation, str(e)))
            return
        self._post(_PairingCodeReady(generation, code))

    def _on_pairing_code(self, code: str) -> None:
        if self.method is not LinkingMethod.PAIRING_CODE:
            return
        if self._state not in (SessionState.INITIALIZING, SessionState.AWAITING_LINKING):
            return
        if not code:
            return

        self._transition(SessionState.AWAITING_LINKING)
        self._raw_pairing_code = code
        self._linking_artifact = format_pairing_code(code)
        self._notify_changed()
        logger.info(f"Pairing code ready for {short_key(self.key)}")

    async def _on_pairing_code_failed(self, error: str) -> None:
        if self._state != SessionState.INITIALIZING:
            return
        await self._teardown(SessionState.FAILED, f"pairing code request failed: {error}")

    async def _handle_transport_event(self, event: TransportEvent) -> None:
        if isinstance(event, QrIssued):
            self._on_qr(event.payload)
        elif isinstance(event, PairingCodeAvailable):
            self._on_pairing_code(event.code)
        elif isinstance(event, Opened):
            self._on_opened(event.identity)
        elif isinstance(event, Closed):
            await self._on_closed(event.reason, event.detail)

    def _on_qr(self, payload: str) -> None:
        if self.method is not LinkingMethod.QR:
            return
        if self._state not in (SessionState.INITIALIZING, SessionState.AWAITING_LINKING):
            return

        first = self._state == SessionState.INITIALIZING
        self._transition(SessionState.AWAITING_LINKING)
        self._linking_artifact = payload
        if first:
            logger.info(f"QR code received for {short_key(self.key)}")
        else:
            logger.debug(f"QR code rotated for {short_key(self.key)}")
        self._notify_changed()

    def _on_opened(self, identity: str) -> None:
        if self._state not in (SessionState.INITIALIZING, SessionState.AWAITING_LINKING):
            logger.debug(f"Ignoring open in {self._state.value} for {short_key(self.key)}")
            return

        self._transition(SessionState.LINKED)
        self._linked_identity = identity
        self._reconnect_attempts = 0
        self._was_linked = True
        self._cancel(self._deadline_timer)
        self._deadline_timer = None
        logger.info(f"Session linked: {short_key(self.key)} as {identity}")

        if self._delivery_resolved:
            return

        self._transition(SessionState.DELIVERING_CREDENTIAL)
        self._delivery_task = self._spawn(self._run_delivery(self._transport, identity))

    async def _on_closed(self, reason: DisconnectReason, detail: str) -> None:
        state = self._state
        description = f"{reason.value}: {detail}" if detail else reason.value
        logger.info(f"Transport closed for {short_key(self.key)} ({description})")

        if state == SessionState.RECONNECTING:
            if reason == DisconnectReason.LOGGED_OUT:
                await self._teardown(SessionState.LOGGED_OUT, description)
            return

        linked = state in (SessionState.LINKED, SessionState.DELIVERING_CREDENTIAL)

        if reason == DisconnectReason.LOGGED_OUT and linked:
            await self._teardown(SessionState.LOGGED_OUT, description)
            return

        if reason.is_terminal:
            await self._teardown(SessionState.FAILED, description)
            return

        self._reconnect_attempts += 1
        decision = self._policy.decide(reason, self._reconnect_attempts)

        if isinstance(decision, GiveUp):
            logger.warning(f"Giving up on {short_key(self.key)}: {decision.reason}")
            await self._teardown(SessionState.FAILED, f"{description} ({decision.reason})")
            return

        self._transition(SessionState.RECONNECTING)
        self._last_error = description
        self._interrupt_delivery()
        if self._transport is not None:
            task = asyncio.create_task(self._terminate_quietly(self._transport))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)
            self._transport = None

        logger.info(
            f"Reconnecting {short_key(self.key)} in {decision.delay:.1f}s "
            f"(attempt {self._reconnect_attempts}/{self._policy.max_attempts})"
        )
        self._cancel(self._retry_timer)
        self._retry_timer = asyncio.create_task(
            self._fire_after(decision.delay, _RetryDue(self._generation))
        )

    async def _on_retry_due(self, generation: int) -> None:
        if self._state != SessionState.RECONNECTING or generation != self._generation:
            return
        self._retry_timer = None
        self._transition(SessionState.INITIALIZING)
        await self._start_transport()

    async def _on_linking_expired(self) -> None:
        self._deadline_timer = None
        if self._was_linked or self.is_terminal:
            return
        logger.warning(f"Linking timed out for {short_key(self.key)}")
        await self._teardown(SessionState.FAILED, "linking timed out")

    # =========================================================================
    # Delivery and cleanup
    # =========================================================================

    async def _run_delivery(self, transport: TransportClient, identity: str) -> None:
        outcome = await self._delivery.run(
            self.key,
            transport,
            identity,
            lambda delay: self._post(_CleanupRequested(delay)),
        )
        self._post(_DeliveryFinished(outcome))

    def _on_cleanup_requested(self, delay: float) -> None:
        if self.is_terminal:
            return
        self._cancel(self._cleanup_timer)
        self._cleanup_timer = asyncio.create_task(self._fire_after(delay, _CleanupDue()))
        logger.debug(f"Cleanup of {short_key(self.key)} scheduled in {delay:.1f}s")

    def _interrupt_delivery(self) -> None:
        # The transport is about to go away; the next Opened starts delivery again
        task = self._delivery_task
        self._delivery_task = None
        if task is not None and not task.done():
            task.cancel()
            logger.info(f"Delivery for {short_key(self.key)} interrupted, resuming after reconnect")

    def _on_delivery_finished(self, outcome: DeliveryOutcome) -> None:
        self._delivery_resolved = True
        self._delivery_task = None
        if outcome.status == DeliveryStatus.FAILED:
            self._last_error = f"delivery failed: {outcome.error}"

    async def _teardown(self, final_state: SessionState, error: Optional[str] = None) -> None:
        """Move to a terminal state and release everything the session holds.

        Storage and transport failures are logged, never raised, so the
        session cannot get stuck short of its terminal state.
        """
        if self.is_terminal:
            return

        self._cancel_timers()
        current = asyncio.current_task()
        for task in list(self._background):
            if task is not current:
                task.cancel()

        if error is not None:
            self._last_error = error
        self._transition(final_state)

        try:
            await self._release()
        finally:
            self._retired.set()

        logger.info(f"Session {short_key(self.key)} ended: {final_state.value}")

        if self._on_retired is not None:
            try:
                self._on_retired(self)
            except Exception as e:
                logger.warning(f"Retired callback failed for {short_key(self.key)}: {e}")

    async def _release(self) -> None:
        if self._unsubscribe_credentials is not None:
            self._unsubscribe_credentials()
            self._unsubscribe_credentials = None

        if self._transport is not None:
            await self._terminate_quietly(self._transport)
            self._transport = None

        try:
            await self._store.erase(self.key)
        except Exception as e:
            logger.error(f"Failed to erase credential for {short_key(self.key)}: {e}")

    # =========================================================================
    # Tasks and timers
    # =========================================================================

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _fire_after(self, delay: float, item: Any) -> None:
        await asyncio.sleep(delay)
        self._post(item)

    async def _terminate_quietly(self, transport: TransportClient) -> None:
        try:
            await asyncio.wait_for(transport.terminate(), TERMINATE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(
                f"Transport for {short_key(self.key)} did not terminate "
                f"within {TERMINATE_TIMEOUT:g}s"
            )
        except Exception as e:
            logger.warning(f"Error terminating transport for {short_key(self.key)}: {e}")

    def _cancel_timers(self) -> None:
        for timer in (self._retry_timer, self._cleanup_timer, self._deadline_timer):
            self._cancel(timer)
        self._retry_timer = None
        self._cleanup_timer = None
        self._deadline_timer = None

    @staticmethod
    def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done():
            task.cancel()

    def __repr__(self) -> str:
        return f"LinkSession({self.key!r}, {self.method.value}, {self._state.value})"
