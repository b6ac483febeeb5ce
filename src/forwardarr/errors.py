class ForwardarrError(Exception):
    """Base error for the port sync service."""


class ConfigError(ForwardarrError):
    pass


class ClientError(ForwardarrError):
    """Failure talking to the qBittorrent Web API."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation


class AuthError(ClientError):
    """Credentials were rejected by the login endpoint."""


class AuthExpired(ClientError):
    """The session cookie was rejected by an authenticated endpoint."""


class TransportError(ClientError):
    """Network failure, timeout or server-side (5xx) error."""


class ProtocolError(ClientError):
    """Response did not have the expected status or shape."""


class PortFileError(ForwardarrError):
    pass


class ParseError(PortFileError):
    pass


class RangeError(PortFileError):
    pass


class PortFileUnavailable(PortFileError):
    pass


class WebhookError(ForwardarrError):
    pass
