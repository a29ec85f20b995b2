"""Buttplug v2 message helpers (JSON over WebSocket).

Only the subset the bridge needs lives here.  Every frame on the wire is a
JSON array of single-key objects::

    [{"VibrateCmd": {"Id": 7, "DeviceIndex": 0,
                     "Speeds": [{"Index": 1, "Speed": 0.5}]}}]

``Id`` 0 is reserved for events the server pushes on its own
(``DeviceAdded``, ``DeviceRemoved``, ``ScanningFinished``).  Any other ``Id``
echoes the request it answers.

Protocol docs: https://buttplug-spec.docs.buttplug.io/
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .errors import ProtocolError

MESSAGE_VERSION = 2
SYSTEM_ID = 0

# Client -> server
REQUEST_SERVER_INFO = "RequestServerInfo"
REQUEST_DEVICE_LIST = "RequestDeviceList"
START_SCANNING = "StartScanning"
STOP_SCANNING = "StopScanning"
VIBRATE_CMD = "VibrateCmd"
STOP_ALL_DEVICES = "StopAllDevices"
PING = "Ping"

# Server -> client
SERVER_INFO = "ServerInfo"
OK = "Ok"
ERROR = "Error"
DEVICE_LIST = "DeviceList"
DEVICE_ADDED = "DeviceAdded"
DEVICE_REMOVED = "DeviceRemoved"
SCANNING_FINISHED = "ScanningFinished"

SERVER_MESSAGES = {
    SERVER_INFO,
    OK,
    ERROR,
    DEVICE_LIST,
    DEVICE_ADDED,
    DEVICE_REMOVED,
    SCANNING_FINISHED,
}


@dataclass
class Message:
    """One decoded server message."""

    kind: str
    id: int
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_event(self) -> bool:
        return self.id == SYSTEM_ID


def encode(kind: str, msg_id: int, **fields) -> str:
    body = {"Id": msg_id}
    body.update(fields)
    return json.dumps([{kind: body}])


def request_server_info(msg_id: int, client_name: str) -> str:
    return encode(
        REQUEST_SERVER_INFO,
        msg_id,
        ClientName=client_name,
        MessageVersion=MESSAGE_VERSION,
    )


def request_device_list(msg_id: int) -> str:
    return encode(REQUEST_DEVICE_LIST, msg_id)


def start_scanning(msg_id: int) -> str:
    return encode(START_SCANNING, msg_id)


def stop_scanning(msg_id: int) -> str:
    return encode(STOP_SCANNING, msg_id)


def stop_all_devices(msg_id: int) -> str:
    return encode(STOP_ALL_DEVICES, msg_id)


def ping(msg_id: int) -> str:
    return encode(PING, msg_id)


def vibrate_cmd(msg_id: int, device_index: int, speeds: Mapping[int, float]) -> str:
    """Build a ``VibrateCmd`` for ``{motor_index: speed}`` pairs."""

    return encode(
        VIBRATE_CMD,
        msg_id,
        DeviceIndex=int(device_index),
        Speeds=[
            {"Index": int(index), "Speed": float(speed)}
            for index, speed in sorted(speeds.items())
        ],
    )


def decode(raw) -> List[Message]:
    """Parse one WebSocket frame into :class:`Message` objects.

    Raises :class:`ProtocolError` for anything that isn't a list of
    single-key objects with an integer ``Id``.
    """

    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError(f"frame is not UTF-8: {exc}") from exc
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"frame is not JSON: {exc}") from exc
    if not isinstance(payload, list):
        raise ProtocolError("frame must be a JSON array of messages")

    messages: List[Message] = []
    for entry in payload:
        if not isinstance(entry, dict) or len(entry) != 1:
            raise ProtocolError(f"message must be a single-key object, got {entry!r}")
        ((kind, body),) = entry.items()
        if not isinstance(body, dict):
            raise ProtocolError(f"{kind} body must be an object")
        msg_id = body.get("Id")
        if not isinstance(msg_id, int) or isinstance(msg_id, bool) or msg_id < 0:
            raise ProtocolError(f"{kind} is missing a valid Id")
        fields = {key: value for key, value in body.items() if key != "Id"}
        messages.append(Message(kind=kind, id=msg_id, fields=fields))
    return messages


def vibrate_feature_count(device_messages: Any) -> Optional[int]:
    """Return how many vibration motors a device advertises, or ``None``."""

    if not isinstance(device_messages, dict):
        raise ProtocolError("DeviceMessages must be an object")
    vibrate = device_messages.get(VIBRATE_CMD)
    if vibrate is None:
        return None
    if not isinstance(vibrate, dict):
        raise ProtocolError("VibrateCmd attributes must be an object")
    count = vibrate.get("FeatureCount")
    if not isinstance(count, int) or isinstance(count, bool) or count < 1:
        raise ProtocolError("VibrateCmd.FeatureCount must be a positive integer")
    return count
