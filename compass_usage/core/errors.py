"""
Error types raised by the portal session, decoder and cache.

Nothing in this package retries: every error propagates to the immediate
caller, which decides how to report it.
"""


class CompassError(Exception):
    """Base class for all Compass Usage errors."""


class TransportError(CompassError):
    """Network failure or an HTTP error status from the portal."""


class FormatError(CompassError):
    """Markup or CSV from the portal could not be parsed as expected."""


class CachePersistError(CompassError):
    """Decoded usage is valid but could not be written to the cache directory."""


class AuthenticationError(CompassError):
    """The portal did not accept the sign-in attempt."""


class InvalidCredentialsError(AuthenticationError):
    """The portal rejected the username or password."""


class SessionStateError(CompassError):
    """An operation was attempted from a session state that does not allow it."""
    def __init__(self, message: str, state):
        super().__init__(message)
        self.state = state
