"""Config validation helpers for the OSC→Intiface toy bridge."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Mapping, MutableMapping

from .binding import MOTOR_COUNT, Behavior, BridgeSettings, MotorBinding
from .connection import DEFAULT_ADDRESS, DEFAULT_CLIENT_NAME, DEFAULT_SCAN_TIMEOUT
from .mapping_loader import load_recipe, load_yaml


class ValidationError(Exception):
    """Aggregates config validation failures."""

    def __init__(self, errors: Iterable[str]):
        messages = list(errors)
        super().__init__("; ".join(messages))
        self.errors = messages


REQUIRED_OSC_PATHS = {"health", "combo", "accuracy", "hit", "playing", "beatmap_loaded"}
VALID_BEHAVIORS = {behavior.value for behavior in Behavior}
VALID_SCHEMES = ("ws://", "wss://")


# ---- validation primitives -------------------------------------------------


def _require_mapping(
    section: Mapping, key: str, path: str, errors: list[str]
) -> Mapping:
    if key not in section:
        errors.append(f"missing required key '{path}.{key}'")
        return {}
    if not isinstance(section[key], Mapping):
        errors.append(f"'{path}.{key}' must be a mapping")
        return {}
    return section[key]


def _require_number(
    section: Mapping,
    key: str,
    path: str,
    *,
    minimum=None,
    maximum=None,
    errors: list[str],
):
    if key not in section:
        errors.append(f"missing required key '{path}.{key}'")
        return None
    value = section[key]
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        errors.append(f"'{path}.{key}' must be a number")
        return None
    if minimum is not None and value < minimum:
        errors.append(f"'{path}.{key}' must be >= {minimum}")
    if maximum is not None and value > maximum:
        errors.append(f"'{path}.{key}' must be <= {maximum}")
    return value


def _check_motors(motors, path: str, errors: list[str]) -> None:
    if not isinstance(motors, list):
        errors.append(f"'{path}' must be a list of {MOTOR_COUNT} motor entries")
        return
    if len(motors) != MOTOR_COUNT:
        errors.append(f"'{path}' needs exactly {MOTOR_COUNT} entries, got {len(motors)}")
    for idx, motor in enumerate(motors):
        motor_path = f"{path}[{idx}]"
        if not isinstance(motor, Mapping):
            errors.append(f"{motor_path} must be a mapping")
            continue
        behavior = motor.get("behavior", "none")
        if not isinstance(behavior, str) or behavior not in VALID_BEHAVIORS:
            allowed = sorted(VALID_BEHAVIORS)
            errors.append(f"{motor_path}.behavior must be one of {allowed}")
        invert = motor.get("invert", False)
        if not isinstance(invert, bool):
            errors.append(f"{motor_path}.invert must be boolean")


def validate_bridge_config(cfg: Mapping, source: str = "mapping") -> None:
    errors: list[str] = []
    if not isinstance(cfg, Mapping):
        raise ValidationError([f"{source}: config must be a mapping"])

    intiface = cfg.get("intiface", {})
    if intiface and not isinstance(intiface, Mapping):
        errors.append(f"{source}.intiface must be a mapping")
    elif intiface:
        address = intiface.get("address", DEFAULT_ADDRESS)
        if not isinstance(address, str) or not address.startswith(VALID_SCHEMES):
            errors.append(f"{source}.intiface.address must be a ws:// or wss:// URL")
        client_name = intiface.get("client_name", DEFAULT_CLIENT_NAME)
        if not isinstance(client_name, str) or not client_name.strip():
            errors.append(f"{source}.intiface.client_name must be a non-empty string")
        scan_timeout = intiface.get("scan_timeout", DEFAULT_SCAN_TIMEOUT)
        if not isinstance(scan_timeout, (int, float)) or scan_timeout <= 0:
            errors.append(f"{source}.intiface.scan_timeout must be > 0")

    osc = _require_mapping(cfg, "osc", source, errors)
    if "port" in osc:
        port = osc["port"]
        if not isinstance(port, int) or isinstance(port, bool) or not 0 <= port <= 65535:
            errors.append(f"{source}.osc.port must be an integer 0-65535")
    address_space = _require_mapping(
        osc,
        "address_space",
        f"{source}.osc",
        errors,
    )
    for path_name in sorted(REQUIRED_OSC_PATHS):
        if path_name not in address_space:
            errors.append(
                f"{source}: osc.address_space missing '{path_name}' path"
            )
        elif not isinstance(address_space[path_name], str):
            errors.append(
                f"{source}: osc.address_space.{path_name} must be a string"
            )

    mapping = _require_mapping(cfg, "mapping", source, errors)
    if mapping:
        _require_number(
            mapping,
            "speed_cap",
            f"{source}.mapping",
            minimum=0,
            maximum=1,
            errors=errors,
        )
        _require_number(
            mapping,
            "max_combo_factor",
            f"{source}.mapping",
            minimum=0,
            maximum=1,
            errors=errors,
        )
        if "motors" not in mapping:
            errors.append(f"missing required key '{source}.mapping.motors'")
        else:
            _check_motors(mapping["motors"], f"{source}.mapping.motors", errors)

    consent_cfg = cfg.get("consent", {})
    if consent_cfg:
        if not isinstance(consent_cfg, Mapping):
            errors.append(f"{source}.consent must be a mapping")
        elif not isinstance(consent_cfg.get("acknowledged", False), bool):
            errors.append(f"{source}.consent.acknowledged must be boolean")

    if errors:
        raise ValidationError(errors)


def settings_from_config(cfg: Mapping) -> BridgeSettings:
    """Build the immutable engine settings from a validated config."""

    mapping = cfg.get("mapping", {}) or {}
    motors = mapping.get("motors") or []
    bindings = tuple(
        MotorBinding(
            motor_index=idx,
            behavior=Behavior(motor.get("behavior", "none")),
            invert=bool(motor.get("invert", False)),
        )
        for idx, motor in enumerate(motors)
    )
    return BridgeSettings(
        bindings=bindings,
        speed_cap=float(mapping.get("speed_cap", 1.0)),
        max_combo_factor=float(mapping.get("max_combo_factor", 0.3)),
    )


def validate_file(
    path: Path, *, source_label: str | None = None
) -> MutableMapping:
    cfg = load_yaml(path)
    validate_bridge_config(cfg, source_label or path.name)
    return cfg


def validate_recipe(path: Path, loader=load_recipe) -> MutableMapping:
    cfg, _meta = loader(path)
    validate_bridge_config(cfg, path.name)
    return cfg
