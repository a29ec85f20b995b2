#!/usr/bin/env python3
"""End-to-end control stack check for the toy bridge.

This harness pretends to be the whole rig: the game pushing telemetry over
OSC, and an Intiface server with a couple of toys attached.  Run it before a
session to catch broken OSC paths or config drift without plugging anything
in.
"""
from __future__ import annotations

import argparse
import json
import sys
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from pythonosc import udp_client

from software.toy_bridge import protocol
from software.toy_bridge.audit import AuditLogger
from software.toy_bridge.config_validation import ValidationError, validate_bridge_config
from software.toy_bridge.connection import ConnectionState
from software.toy_bridge.dry_run import DryRunTransport, VirtualDevice
from software.toy_bridge.mapping_loader import load_recipe, load_yaml
from software.toy_bridge.session import BridgeSession

DEFAULT_FIXTURE = REPO_ROOT / "config" / "test-fixtures" / "play_session.json"
DEFAULT_MAPPING = REPO_ROOT / "config" / "mapping.yaml"


@dataclass
class FixtureFrame:
    health: float
    combo: int
    accuracy: float
    hit: float


@dataclass
class PlaySession:
    max_combo: int
    frames: List[FixtureFrame]


def load_fixture(path: Path) -> PlaySession:
    """Turn the recorded play session JSON into telemetry frames."""

    payload = json.loads(Path(path).read_text())
    weights = payload["meta"]["hit_weights"]
    frames = [
        FixtureFrame(
            health=float(frame["health"]),
            combo=int(frame["combo"]),
            accuracy=float(frame["accuracy"]),
            hit=float(weights[frame["hit"]]),
        )
        for frame in payload["frames"]
    ]
    return PlaySession(max_combo=int(payload["meta"]["max_combo"]), frames=frames)


def default_toys() -> List[VirtualDevice]:
    # One full four-motor toy plus a single-motor one, so the capability
    # filter gets exercised on every run.
    return [
        VirtualDevice(0, "Stack Check Quad", motors=4),
        VirtualDevice(1, "Stack Check Solo", motors=1),
    ]


def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def replay(client: udp_client.SimpleUDPClient, addresses, session: PlaySession, send_interval: float) -> None:
    client.send_message(addresses["beatmap_loaded"], session.max_combo)
    client.send_message(addresses["playing"], 1)
    time.sleep(max(0.0, min(send_interval, 0.05)))
    for frame in session.frames:
        client.send_message(addresses["health"], frame.health)
        client.send_message(addresses["combo"], frame.combo)
        client.send_message(addresses["accuracy"], frame.accuracy)
        client.send_message(addresses["hit"], frame.hit)
        time.sleep(max(0.0, send_interval))
    client.send_message(addresses["playing"], 0)


def assert_bridge_activity(transport: DryRunTransport) -> None:
    rows = transport.vibrations()
    if not rows:
        raise AssertionError("Bridge never sent VibrateCmd — check OSC input")
    for device_index, motor_index, speed in rows:
        if not 0.0 <= speed <= 1.0:
            raise AssertionError(f"Speed outside [0, 1]: {speed}")
        device = next(d for d in transport.devices if d.index == device_index)
        if motor_index >= device.motors:
            raise AssertionError(
                f"Motor {motor_index} sent to {device.name} which only has {device.motors}"
            )
    if not transport.commands(protocol.STOP_ALL_DEVICES):
        raise AssertionError("Play end never stopped the toys")


def load_bridge_config(mapping_path: Path, recipe_path: Path | None = None):
    """Load the mapping (or a recipe on top of it) and validate it."""

    if recipe_path is not None:
        cfg, _meta = load_recipe(recipe_path)
        source = recipe_path.name
    else:
        cfg = load_yaml(mapping_path)
        source = mapping_path.name
    validate_bridge_config(cfg, source)
    return cfg


def run_check(
    cfg,
    fixture_path: Path,
    *,
    osc_port: int,
    max_frames: int,
    send_interval: float,
    warmup: float,
    cooldown: float,
    audit: AuditLogger,
) -> DryRunTransport:
    play = load_fixture(fixture_path)
    if max_frames:
        play.frames = play.frames[:max_frames]

    transport = DryRunTransport(default_toys(), quiet=True)
    session = BridgeSession(
        cfg,
        audit=audit,
        open_transport=transport.open,
        osc_host="127.0.0.1",
        osc_port=osc_port,
    )
    with session:
        session.start()
        if not wait_until(lambda: session.connection.state is ConnectionState.CONNECTED):
            raise AssertionError(f"Link never settled, state={session.connection.state}")
        time.sleep(max(0.0, warmup))
        client = udp_client.SimpleUDPClient("127.0.0.1", session.telemetry.listening_port)
        replay(client, session.telemetry.addresses, play, send_interval)
        wait_until(lambda: transport.commands(protocol.STOP_ALL_DEVICES), timeout=max(cooldown, 0.5))
        time.sleep(max(0.0, cooldown))
    assert_bridge_activity(transport)
    return transport


def main(argv: Iterable[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Spin up a toy bridge loopback smoke test.")
    parser.add_argument(
        "--mapping",
        default=str(DEFAULT_MAPPING),
        help="Path to the mapping YAML. Relative paths are resolved from the repo root.",
    )
    parser.add_argument(
        "--fixture",
        default=str(DEFAULT_FIXTURE),
        help="Recorded play session JSON. Relative paths are resolved from the repo root.",
    )
    parser.add_argument(
        "--recipe",
        help="Recipe YAML to layer over the mapping. Relative paths are resolved from the repo root.",
    )
    parser.add_argument("--osc-port", type=int, default=9100, help="OSC port for the harness (0 = auto)")
    parser.add_argument(
        "--max-frames",
        type=int,
        default=0,
        help="Limit how many fixture frames get replayed (handy for fast CI runs)",
    )
    parser.add_argument(
        "--send-interval",
        type=float,
        default=0.02,
        help="Delay between fixture frames in seconds",
    )
    parser.add_argument(
        "--warmup",
        type=float,
        default=0.1,
        help="Warmup sleep after the harness boots so the OSC server is ready",
    )
    parser.add_argument(
        "--cooldown",
        type=float,
        default=0.2,
        help="Post-stream pause to let the last commands drain",
    )
    parser.add_argument(
        "--log-events",
        action="store_true",
        help="Write audit events to the ops log instead of a throwaway directory",
    )
    args = parser.parse_args(list(argv) if argv is not None else None)

    def resolve_repo_path(value: str) -> Path:
        path = Path(value)
        if path.is_absolute():
            return path
        return (REPO_ROOT / path).resolve()

    fixture_path = resolve_repo_path(args.fixture)
    mapping_path = resolve_repo_path(args.mapping)
    if not fixture_path.is_file():
        print(f"Fixture file not found: {fixture_path}", file=sys.stderr)
        return 2
    if not mapping_path.is_file():
        print(f"Mapping file not found: {mapping_path}", file=sys.stderr)
        return 2
    recipe_path = resolve_repo_path(args.recipe) if args.recipe else None
    if recipe_path is not None and not recipe_path.is_file():
        print(f"Recipe file not found: {recipe_path}", file=sys.stderr)
        return 2
    try:
        cfg = load_bridge_config(mapping_path, recipe_path)
    except (ValidationError, ValueError) as exc:
        print(f"Config rejected: {exc}", file=sys.stderr)
        return 2

    with tempfile.TemporaryDirectory() as scratch:
        audit = AuditLogger() if args.log_events else AuditLogger(Path(scratch))
        transport = run_check(
            cfg,
            fixture_path,
            osc_port=args.osc_port,
            max_frames=args.max_frames,
            send_interval=args.send_interval,
            warmup=args.warmup,
            cooldown=args.cooldown,
            audit=audit,
        )

    print(f"✅ Bridge sent {len(transport.vibrations())} vibrate commands, all within [0, 1].")
    print("✅ Single-motor toy never got commands for motors it doesn't have.")
    print("✅ Play end stopped every toy.")
    print("All green. Go plug in the real toys.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
