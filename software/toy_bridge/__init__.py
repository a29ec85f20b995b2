"""Bridge rhythm-game telemetry to vibration toys through Intiface."""

from .binding import (
    Behavior,
    BindingEngine,
    BridgeSettings,
    MotorBinding,
    SpeedCommand,
    TelemetryKind,
    TelemetrySample,
)
from .connection import ConnectionManager, ConnectionState
from .devices import Device, DeviceRegistry
from .dispatcher import CommandDispatcher
from .errors import BridgeError, CommandSendError, ConnectorError, ProtocolError
from .session import BridgeSession

__all__ = [
    "Behavior",
    "BindingEngine",
    "BridgeError",
    "BridgeSession",
    "BridgeSettings",
    "CommandDispatcher",
    "CommandSendError",
    "ConnectionManager",
    "ConnectionState",
    "ConnectorError",
    "Device",
    "DeviceRegistry",
    "MotorBinding",
    "ProtocolError",
    "SpeedCommand",
    "TelemetryKind",
    "TelemetrySample",
]
