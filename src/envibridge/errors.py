"""Exception hierarchy shared by the authenticators, the client and the bridge."""

from __future__ import annotations

import enum


class HandshakeStep(str, enum.Enum):
    """Named steps of the browser-emulating login handshake."""

    INIT_PAGE = "InitPage"
    EXTRACT_FORM = "ExtractForm"
    SUBMIT_LOGIN = "SubmitLogin"
    EXTRACT_CODE = "ExtractCode"
    EXCHANGE_TOKEN = "ExchangeToken"


class BridgeError(Exception):
    """Base class for every error raised by :mod:`envibridge`."""


class CommunicationFailure(BridgeError, ConnectionError):
    """Raised on transport failures and non-2xx responses that are not auth related.

    *status* is the HTTP status code when the server answered, ``None`` when
    the request never completed (DNS, refused connection, timeout).
    """

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class AuthorizationFailure(BridgeError):
    """Raised when the API keeps rejecting the credential after re-authenticating."""


class AuthorizationExpired(AuthorizationFailure):
    """Raised when the refresh token is rejected; a full login is required."""


class AuthenticationError(BridgeError):
    """Raised when the direct form login fails."""


class ProtocolError(BridgeError):
    """Raised when a vendor response deviates from the expected shape.

    For handshake failures *step* names the step that failed, which usually
    means the vendor changed its login page.
    """

    def __init__(self, message: str, *, step: HandshakeStep | None = None) -> None:
        if step is not None:
            message = f"[{step.value}] {message}"
        super().__init__(message)
        self.step = step


class ConfigError(BridgeError):
    """Raised when required configuration values are missing."""
