"""Linking module for linkd.

Provides the device-linking session lifecycle:
- Session states and status snapshots
- Reconnection policy
- Credential delivery after linking
- Per-key linking session state machine
- Session registry
"""

from .delivery import CredentialDelivery, DeliveryOutcome, DeliveryStatus
from .policy import GiveUp, ReconnectPolicy, Retry
from .registry import SessionRegistry
from .session import LinkSession
from .state import LinkingMethod, SessionState, SessionStatus

__all__ = [
    "CredentialDelivery",
    "DeliveryOutcome",
    "DeliveryStatus",
    "GiveUp",
    "LinkSession",
    "LinkingMethod",
    "ReconnectPolicy",
    "Retry",
    "SessionRegistry",
    "SessionState",
    "SessionStatus",
]
