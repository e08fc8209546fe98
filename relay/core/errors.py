"""Relay error taxonomy."""

from typing import Any, Optional


class RelayError(Exception):
    """Base class for relay errors."""


class BrokerError(RelayError):
    """Session establishment with the assistant provider failed.

    Fatal to the Call Session being set up; other calls are unaffected.
    """

    def __init__(self, message: str, payload: Optional[Any] = None) -> None:
        super().__init__(message)
        self.payload = payload


class TranscodeError(RelayError):
    """A single frame could not be resampled. The frame is dropped."""


class ConfigError(RelayError):
    """Process configuration is unusable. Raised before the server binds."""


class BindError(RelayError):
    """Listening socket could not be bound."""

    def __init__(self, host: str, port: int, cause: Optional[BaseException] = None) -> None:
        detail = f": {cause}" if cause else ""
        super().__init__(f"Cannot bind relay on {host}:{port}{detail}")
        self.host = host
        self.port = port
        self.cause = cause
