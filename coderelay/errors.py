"""Exceptions shared by the relay runtime."""


class RelayError(Exception):
    """Base class for relay runtime errors."""


class TransportError(RelayError):
    """Raised when the messaging platform cannot be reached or rejects a call."""


class MalformedUpdate(RelayError):
    """Raised when an inbound update lacks a chat id or a text body."""
