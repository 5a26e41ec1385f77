"""
Errors raised by the connection and sync services.
"""


class ConnectionNotFoundError(LookupError):
    """No connection with the given id."""


class ConnectionUnavailableError(Exception):
    """The connection is DISCONNECTED and accepts no further processing."""


class ConnectionExistsError(Exception):
    """The project already has a live connection to the repository."""


class RecordNotFoundError(LookupError):
    """A commit or pull request id does not exist."""
