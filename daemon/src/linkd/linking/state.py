"""Linking session states and the outward status snapshot."""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Optional

from linkd.errors import ValidationError


class LinkingMethod(Enum):
    """How the device is linked to the account."""

    QR = "qr"
    PAIRING_CODE = "code"

    @classmethod
    def parse(cls, value: Optional[str]) -> "LinkingMethod":
        """Parse a method name from a request ("qr", "code", "pairing_code").

        Raises:
            ValidationError: If the method is not supported.
        """
        normalized = (value or "").strip().lower()
        if normalized == "qr":
            return cls.QR
        if normalized in ("code", "pairing_code", "pairing-code"):
            return cls.PAIRING_CODE
        raise ValidationError(f"Unsupported linking method: {value!r}")

    @property
    def artifact_kind(self) -> str:
        """Kind of linking artifact this method produces."""
        return "qr" if self is LinkingMethod.QR else "pairing_code"


class SessionState(Enum):
    """Linking session states."""

    INITIALIZING = "initializing"
    AWAITING_LINKING = "awaiting_linking"
    LINKED = "linked"
    DELIVERING_CREDENTIAL = "delivering_credential"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    LOGGED_OUT = "logged_out"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {SessionState.FAILED, SessionState.LOGGED_OUT, SessionState.TERMINATED}
)

# Every terminal state is reachable from every live state through explicit
# deletion, cleanup or the linking deadline.
VALID_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.INITIALIZING: frozenset(
        {SessionState.AWAITING_LINKING, SessionState.LINKED, SessionState.RECONNECTING}
    )
    | TERMINAL_STATES,
    SessionState.AWAITING_LINKING: frozenset(
        {SessionState.LINKED, SessionState.RECONNECTING}
    )
    | TERMINAL_STATES,
    SessionState.LINKED: frozenset(
        {SessionState.DELIVERING_CREDENTIAL, SessionState.RECONNECTING}
    )
    | TERMINAL_STATES,
    SessionState.DELIVERING_CREDENTIAL: frozenset({SessionState.RECONNECTING})
    | TERMINAL_STATES,
    SessionState.RECONNECTING: frozenset({SessionState.INITIALIZING})
    | TERMINAL_STATES,
    SessionState.FAILED: frozenset(),
    SessionState.LOGGED_OUT: frozenset(),
    SessionState.TERMINATED: frozenset(),
}


def check_transition(current: SessionState, new_state: SessionState) -> None:
    """Validate a state transition.

    Raises:
        ValueError: If the transition is not valid from the current state.
    """
    if new_state not in VALID_TRANSITIONS.get(current, frozenset()):
        raise ValueError(f"Invalid transition: {current} -> {new_state}")


@dataclass(frozen=True)
class SessionStatus:
    """Point-in-time copy of a session, safe to hand to outside callers."""

    key: str
    method: LinkingMethod
    state: SessionState
    linking_artifact_kind: Optional[str] = None
    linking_artifact_value: Optional[str] = None
    linked_identity: Optional[str] = None
    last_error: Optional[str] = None
    reconnect_attempts: int = 0
    created_at: float = 0.0
    last_event_at: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def is_linked(self) -> bool:
        return self.linked_identity is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["method"] = self.method.value
        data["state"] = self.state.value
        return data
