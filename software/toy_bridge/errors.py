"""Exception types shared across the toy bridge."""

from __future__ import annotations

from typing import Iterable, List, Optional


class BridgeError(Exception):
    """Base class for everything the bridge raises on purpose."""


class ConnectorError(BridgeError):
    """The control-server link could not be opened, kept, or handshaken."""


class ProtocolError(BridgeError):
    """The server sent something we can't parse as a Buttplug message."""


class CommandSendError(BridgeError):
    """A command to one device failed.

    ``errors`` keeps every underlying failure so callers can log each one
    instead of only the first.
    """

    def __init__(
        self,
        message: str,
        *,
        device=None,
        motor_index: Optional[int] = None,
        errors: Iterable[BaseException] = (),
    ):
        super().__init__(message)
        self.device = device
        self.motor_index = motor_index
        self.errors: List[BaseException] = list(errors)


class ServerError(BridgeError):
    """An ``Error`` message answered one of our requests."""

    code = 0
    kind = "unknown"

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        if code is not None:
            self.code = code

    @staticmethod
    def from_error(code, message: str) -> "ServerError":
        """Pick the exception type matching a Buttplug ``ErrorCode``."""

        try:
            code = int(code)
        except (TypeError, ValueError):
            return UnknownServerError(f"Unknown error type: {code} | Message: {message}")
        cls = _ERROR_TYPES.get(code)
        if cls is None:
            return UnknownServerError(
                f"Unknown error type: {code} | Message: {message}", code=code
            )
        return cls(message)


class UnknownServerError(ServerError):
    code = 0
    kind = "unknown"


class HandshakeError(ServerError, ConnectorError):
    code = 1
    kind = "handshake"


class PingError(ServerError, ConnectorError):
    code = 2
    kind = "ping"


class MessageError(ServerError):
    code = 3
    kind = "message"


class DeviceError(ServerError):
    code = 4
    kind = "device"


_ERROR_TYPES = {
    cls.code: cls
    for cls in (UnknownServerError, HandshakeError, PingError, MessageError, DeviceError)
}


def flatten_errors(exc: BaseException) -> List[BaseException]:
    """Unpack aggregated failures into a flat list of leaf exceptions."""

    nested = getattr(exc, "errors", None)
    if not isinstance(nested, list) or not nested:
        nested = getattr(exc, "exceptions", None)
    if not nested:
        return [exc]
    flat: List[BaseException] = []
    for inner in nested:
        if isinstance(inner, BaseException):
            flat.extend(flatten_errors(inner))
    return flat or [exc]
