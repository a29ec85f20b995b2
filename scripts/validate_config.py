#!/usr/bin/env python3
"""Check mapping.yaml and every recipe, then show what each motor will do.

Prints one line per file with the motor bindings a session would load, so a
wrong recipe shows up as "motor1=none" here instead of a silent toy later.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Mapping

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

import software.toy_bridge.config_validation as cv
from software.toy_bridge.binding import Behavior
from software.toy_bridge.mapping_loader import DEFAULT_MAPPING_PATH, DEFAULT_RECIPES_DIR


def _iter_recipe_paths(recipe_dir: Path) -> Iterable[Path]:
    if not recipe_dir.exists():
        return []
    return sorted(p for p in recipe_dir.iterdir() if p.suffix.lower() in {".yaml", ".yml"})


def describe_bindings(cfg: Mapping) -> str:
    """One-line summary of the motor bindings, e.g. ``motor0=health motor1=combo``."""

    settings = cv.settings_from_config(cfg)
    motors = " ".join(
        f"motor{b.motor_index}={b.behavior.value}{'(inverted)' if b.invert else ''}"
        for b in settings.bindings
    )
    summary = f"{motors} | cap {settings.speed_cap:g}"
    if any(b.behavior is Behavior.COMBO for b in settings.bindings):
        summary += f", combo factor {settings.max_combo_factor:g}"
    if all(b.behavior is Behavior.NONE for b in settings.bindings):
        summary += " | no motor is bound"
    return summary


def validate(mapping_path: Path, recipe_dir: Path, *, verbose: bool = False) -> Dict[str, str]:
    """Validate everything; returns ``{file name: bindings summary}``."""

    mapping_path = mapping_path.resolve()
    recipe_dir = recipe_dir.resolve()
    summaries: Dict[str, str] = {}

    cfg = cv.validate_file(mapping_path, source_label="mapping")
    summaries[mapping_path.name] = describe_bindings(cfg)
    if verbose:
        print(f"[validate] ✔ {mapping_path.name}: {summaries[mapping_path.name]}")

    failures: List[Path] = []
    for recipe in _iter_recipe_paths(recipe_dir):
        try:
            cfg = cv.validate_recipe(recipe)
        except (cv.ValidationError, ValueError, FileNotFoundError) as exc:
            failures.append(recipe)
            print(f"[validate] ✖ {recipe.name}: {exc}")
            continue
        summaries[recipe.name] = describe_bindings(cfg)
        if verbose:
            print(f"[validate] ✔ {recipe.name}: {summaries[recipe.name]}")
    if failures:
        raise cv.ValidationError([f"{len(failures)} recipe(s) failed validation"])
    return summaries


def main(argv: Iterable[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Sanity-check toy bridge mapping and recipes")
    ap.add_argument("--mapping", type=Path, default=DEFAULT_MAPPING_PATH, help="Path to mapping.yaml")
    ap.add_argument("--recipes", type=Path, default=DEFAULT_RECIPES_DIR, help="Directory containing recipes")
    ap.add_argument("--quiet", action="store_true", help="Only print problems")
    args = ap.parse_args(list(argv) if argv is not None else None)

    try:
        validate(args.mapping, args.recipes, verbose=not args.quiet)
    except cv.ValidationError as exc:
        if not args.quiet:
            print("[validate] config errors detected")
        for line in exc.errors:
            print(f"[validate] ✖ {line}")
        return 1
    except (ValueError, FileNotFoundError) as exc:
        print(f"[validate] ✖ {exc}")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
