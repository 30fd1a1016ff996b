from __future__ import annotations


class HyperwaError(Exception):
    """Base error for the hyperwa userbot."""


class ConfigError(HyperwaError):
    """Invalid or unreadable configuration."""


class StartupError(HyperwaError):
    """
    Required infrastructure was unreachable during initialization.

    Unlike later transient I/O errors this one is fatal: the bot must not run
    without its persistence backend.
    """


class AuthError(HyperwaError):
    """Authentication / credential store failure."""


class NotConnectedError(HyperwaError):
    """An outbound operation was attempted while no connection is open."""


class ConnectionClosedError(HyperwaError):
    """The WhatsApp connection was closed with a protocol status code."""

    def __init__(self, message: str = "connection closed", *, status_code: int = 0) -> None:
        super().__init__(f"{message} (status={status_code})")
        self.status_code = status_code


class LoggedOutError(HyperwaError):
    """
    The session was logged out from the phone.

    Terminal: persisted credentials have been cleared and a new QR pairing is
    required.
    """
