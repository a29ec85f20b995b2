#!/usr/bin/env python3
"""OSC-to-Intiface bridge: gameplay telemetry in, toy vibrations out.

The game side pushes health/combo/accuracy/hit/play-state over OSC; this
process maps them onto up to four motors and forwards the speeds to every toy
an Intiface (Buttplug) server knows about.

References worth opening in a browser tab while you read this file:

* Buttplug protocol docs — https://buttplug-spec.docs.buttplug.io/
* Intiface Central — https://intiface.com/central/
* python-osc docs — https://pypi.org/project/python-osc/

Edit ``config/mapping.yaml`` (or pick a recipe) to rebind motors.  Send
SIGHUP to reload the config without restarting; a changed server address is
only used after the link drops and reconnects.
"""

from __future__ import annotations

import argparse
import signal
import sys
import threading
from pathlib import Path
from typing import Iterable

from .audit import AuditLogger
from .config_validation import ValidationError, validate_bridge_config
from .dry_run import DryRunTransport
from .mapping_loader import DEFAULT_MAPPING_PATH, load_recipe, load_yaml
from .session import BridgeSession

EXIT_CONFIG_ERROR = 1
EXIT_NO_CONSENT = 3

CONSENT_NOTICE = (
    "Please do not use this bridge while playing on public servers with "
    "unsuspecting players.\nIt is meant for single player and/or matches with "
    "consenting participants.\nSet consent.acknowledged: true in the config or "
    "pass --acknowledge to continue."
)


def load_config(args, audit: AuditLogger):
    """Load + validate the config named by ``--recipe`` or ``--config``."""

    if args.recipe:
        recipe_path = Path(args.recipe).expanduser().resolve()
        try:
            cfg, meta = load_recipe(recipe_path)
        except Exception as exc:  # noqa: BLE001
            audit.write(
                "recipe_load",
                status="error",
                message=f"Failed to load recipe from {recipe_path}",
                details={"path": str(recipe_path), "error": str(exc)},
            )
            raise
        source = recipe_path.name
        print(
            "[toy-bridge] loaded recipe '{name}' — {intent}".format(
                name=meta.get("name", recipe_path.stem),
                intent=meta.get("intent", ""),
            ).strip()
        )
    else:
        config_path = Path(args.config).expanduser()
        if not config_path.is_absolute():
            config_path = (Path.cwd() / config_path).resolve()
        try:
            cfg = load_yaml(config_path)
        except Exception as exc:  # noqa: BLE001
            audit.write(
                "mapping_load",
                status="error",
                message=f"Failed to load mapping config {config_path}",
                details={"path": str(config_path), "error": str(exc)},
            )
            raise
        source = config_path.name
    try:
        validate_bridge_config(cfg, source)
    except ValidationError as exc:
        audit.write(
            "mapping_validation",
            status="error",
            message=f"Config validation failed for {source}",
            details={"errors": exc.errors},
        )
        raise
    if args.address:
        cfg.setdefault("intiface", {})["address"] = args.address
    audit.write("mapping_load", status="info", message=f"Loaded {source}")
    return cfg


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description=(
            "Listen for OSC gameplay telemetry and drive vibration toys "
            "through an Intiface server."
        )
    )
    ap.add_argument(
        "--config",
        default=str(DEFAULT_MAPPING_PATH),
        help=f"Path to the bridge mapping YAML (default: {DEFAULT_MAPPING_PATH}).",
    )
    ap.add_argument(
        "--recipe",
        help="Path to a recipe YAML overlaying the mapping. Overrides --config.",
    )
    ap.add_argument("--address", help="Intiface server URL, overrides intiface.address")
    ap.add_argument("--osc-port", type=int, help="OSC listen port, overrides osc.port")
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Skip the real Intiface server and log commands locally.",
    )
    ap.add_argument(
        "--acknowledge",
        action="store_true",
        help="Acknowledge the consent notice for this run.",
    )
    return ap


def main(argv: Iterable[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    audit = AuditLogger()

    try:
        cfg = load_config(args, audit)
    except (ValidationError, ValueError, FileNotFoundError) as exc:
        print(f"[toy-bridge] ✖ {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    acknowledged = args.acknowledge or bool((cfg.get("consent") or {}).get("acknowledged"))
    if not acknowledged:
        print(CONSENT_NOTICE, file=sys.stderr)
        audit.write("consent_missing", status="error", message="Consent notice not acknowledged")
        return EXIT_NO_CONSENT
    audit.write(
        "consent_acknowledged",
        status="info",
        details={"source": "cli" if args.acknowledge else "config"},
    )

    open_transport = None
    if args.dry_run:
        open_transport = DryRunTransport().open
        print("[dry-run] Intiface link mocked; commands logged locally.")

    session = BridgeSession(cfg, audit=audit, open_transport=open_transport, osc_port=args.osc_port)

    reload_requested = threading.Event()
    stop_requested = threading.Event()
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, lambda *_: reload_requested.set())
    signal.signal(signal.SIGTERM, lambda *_: stop_requested.set())

    with session:
        session.start()
        print(
            f"[toy-bridge] OSC listening on port {session.telemetry.listening_port}, "
            f"Intiface at {session.connection.address}"
        )
        try:
            while not stop_requested.wait(0.25):
                if reload_requested.is_set():
                    reload_requested.clear()
                    try:
                        session.reload(load_config(args, audit))
                        print("[toy-bridge] config reloaded")
                    except (ValidationError, ValueError, FileNotFoundError) as exc:
                        print(f"[toy-bridge] ✖ reload failed, keeping old config: {exc}")
        except KeyboardInterrupt:
            audit.write(
                "toy_bridge_shutdown",
                status="info",
                message="Operator interrupted bridge (Ctrl+C).",
            )
    audit.write("toy_bridge_shutdown", status="closed", message="Toys stopped, link closed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
