class RelayError(Exception):
    """Base class for relay failures."""


class AuthenticationError(RelayError):
    """Handshake did not carry both a tenant and a principal."""


class TenantIsolationViolation(RelayError):
    """A connection addressed a room outside its own tenant."""


class InvalidRoomError(RelayError):
    """A room key could not be derived from the given identifiers."""


class PersistenceError(RelayError):
    """The history store failed to write or read."""


class BrokerError(RelayError):
    """The pub/sub broker failed to publish or subscribe."""
