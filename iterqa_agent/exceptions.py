class IterQAError(Exception):
    """Base class for all errors raised by iterqa_agent."""


class TransportError(IterQAError):
    """The backend channel is unreachable or refused the connection."""


class ChannelTimeoutError(TransportError):
    """The transport exceeded its deadline."""


class SessionLostError(TransportError):
    """The backend reports that the previous handshake is no longer valid."""


class ProtocolError(IterQAError):
    """A decoded response was empty or structurally invalid."""


class BackendError(IterQAError):
    """The backend answered with a JSON-RPC error or a failed tool result."""

    def __init__(self, message, code=None, data=None):
        super().__init__(message)
        self.code = code
        self.data = data


class SessionInitializationError(IterQAError):
    """The handshake with the automation backend could not be completed."""


class ValidationError(IterQAError, ValueError):
    """Input is missing required fields or names an unsupported kind.

    Raised synchronously before any backend call and never retried.
    """
