"""Exceptions raised by the chat relay."""


class RelayError(Exception):
    pass


class DecodeError(RelayError, ValueError):
    """Inbound payload is empty, not a JSON object, or lacks an envelope field."""


class TransportError(RelayError, OSError):
    """Host could not be resolved or the socket failed."""


class TransportClosed(TransportError):
    """The transport was closed while (or before) waiting for a datagram."""


class StorageError(RelayError):
    """The database rejected an operation."""


class InactiveRelay(RelayError):
    """The relay is not running."""
