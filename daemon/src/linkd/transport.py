"""Transport client contract.

The wire client that talks to the messaging service is supplied by the
deployment. linkd only depends on the protocol below: a client emits
connection events into a sink and exposes pairing and send operations.

A factory is resolved from a "package.module:attribute" string, the same
way ASGI servers locate an application.
"""

import importlib
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Protocol, Union

from linkd.errors import ValidationError

if TYPE_CHECKING:
    from linkd.linking.state import LinkingMethod


class DisconnectReason(Enum):
    """Why the transport connection closed."""

    LOGGED_OUT = "logged_out"  # account unlinked the device
    AUTH_FAILURE = "auth_failure"  # service rejected the session
    RESTART_REQUIRED = "restart_required"
    CONNECTION_LOST = "connection_lost"
    CONNECTION_FAILED = "connection_failed"  # start() raised
    TIMED_OUT = "timed_out"
    STREAM_ERROR = "stream_error"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        """Terminal reasons invalidate the credential."""
        return self in (DisconnectReason.LOGGED_OUT, DisconnectReason.AUTH_FAILURE)


@dataclass(frozen=True)
class QrIssued:
    """Transport produced (or rotated) a QR payload to scan."""

    payload: str


@dataclass(frozen=True)
class PairingCodeAvailable:
    """Transport announced a pairing code."""

    code: str


@dataclass(frozen=True)
class Opened:
    """Connection is open and authenticated as `identity`."""

    identity: str


@dataclass(frozen=True)
class Closed:
    """Connection closed."""

    reason: DisconnectReason
    detail: str = ""


TransportEvent = Union[QrIssued, PairingCodeAvailable, Opened, Closed]

# Transport -> session event callback. Must not block.
EventSink = Callable[[TransportEvent], None]


@dataclass(frozen=True)
class DocumentMetadata:
    """Attributes of a document message."""

    file_name: str
    mimetype: str = "application/json"
    caption: str = ""


class TransportClient(Protocol):
    """Protocol for the messaging transport client."""

    async def start(self) -> None:
        """Open the connection. Events are reported through the sink."""
        ...

    async def request_pairing_code(self, phone: str) -> str:
        """Request a pairing code for the phone identity (digits only)."""
        ...

    async def send_document(
        self, target: str, data: bytes, metadata: DocumentMetadata
    ) -> None:
        """Send a document message. Raises on failure."""
        ...

    async def send_text(self, target: str, text: str) -> None:
        """Send a plain text message. Raises on failure."""
        ...

    async def terminate(self) -> None:
        """Close the connection and release resources."""
        ...


class TransportFactory(Protocol):
    """Builds one transport client per session incarnation."""

    def __call__(
        self, key: str, method: "LinkingMethod", sink: EventSink
    ) -> TransportClient:
        ...


def load_transport_factory(target: str) -> TransportFactory:
    """Import a transport factory from "package.module:attribute".

    Args:
        target: Import path of a callable matching TransportFactory.

    Returns:
        The factory.

    Raises:
        ValidationError: If the path is malformed or cannot be imported.
    """
    module_name, sep, attr_path = target.partition(":")
    if not sep or not module_name or not attr_path:
        raise ValidationError(
            f"Transport must be given as 'package.module:factory', got {target!r}"
        )

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValidationError(f"Cannot import transport module {module_name!r}: {e}")

    obj: Any = module
    for part in attr_path.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError:
            raise ValidationError(
                f"Transport factory {attr_path!r} not found in {module_name!r}"
            )

    if not callable(obj):
        raise ValidationError(f"Transport factory {target!r} is not callable")
    return obj
