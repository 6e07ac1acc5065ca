"""Base exceptions for linkd."""


class LinkError(Exception):
    """Base exception for all linkd errors."""

    pass


class ValidationError(LinkError):
    """Request rejected before any session was created."""

    pass


class SessionNotFoundError(LinkError):
    """No session is registered under the requested key."""

    def __init__(self, key: str):
        super().__init__(f"Session not found: {key}")
        self.key = key


class TransportError(LinkError):
    """Transport client operation failed."""

    pass


class PairingCodeError(TransportError):
    """Pairing code could not be obtained from the transport."""

    pass


class StorageError(LinkError):
    """Credential storage operation error."""

    pass
