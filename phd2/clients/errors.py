"""Exceptions raised by the PHD2 clients.

Some names intentionally shadow builtins inside this package; import them
from here (or from ``phd2``) to catch client failures specifically.
"""


class PHD2ClientError(Exception):
    """Base exception for PHD2 client errors."""

    pass


class ConnectionError(PHD2ClientError):
    """Raised when dialing fails or the connection is lost."""

    pass


class NotConnectedError(PHD2ClientError):
    """Raised when an operation is attempted before connect()."""

    def __init__(self, message: str = "not connected"):
        super().__init__(message)


class ProtocolError(PHD2ClientError):
    """Raised when the server sends something the protocol does not allow."""

    pass


class CommandError(PHD2ClientError):
    """Raised when a JSON-RPC method returns an error object."""

    def __init__(self, method: str, code: int, message: str):
        self.method = method
        self.code = code
        self.message = message
        super().__init__(f"{method} failed: {message} (code {code})")


class UnexpectedResponseError(PHD2ClientError):
    """Raised when a socket server reply has the wrong size or value."""

    pass


class NotImplementedError(PHD2ClientError):
    """Raised by operations that are intentionally not implemented."""

    def __init__(self, message: str = "not implemented"):
        super().__init__(message)


class TimeoutError(PHD2ClientError):
    """Raised when a method call times out."""

    pass
