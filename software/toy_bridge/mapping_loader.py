"""Utility helpers for loading base/recipe bridge configs.

A "recipe" is a lightweight overlay patch that tweaks the default motor
bindings without having to clone or rewrite the full base mapping.  Recipes
live in ``config/recipes`` next to the canonical ``config/mapping.yaml`` and
only override the keys they care about, e.g. a "combo only" recipe that sets
every motor to ``combo`` and leaves the OSC address space alone.
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

REPO_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_MAPPING_PATH = (REPO_ROOT / "config" / "mapping.yaml").resolve()
DEFAULT_RECIPES_DIR = (REPO_ROOT / "config" / "recipes").resolve()


def _validate_mapping(obj: Any, label: str) -> Dict[str, Any]:
    """Ensure the loaded YAML object is a dict.

    Parameters
    ----------
    obj: Any
        Parsed YAML content.
    label: str
        Human-readable label for error messages (e.g., a file path).

    Returns
    -------
    Dict[str, Any]
        The validated mapping content.

    Raises
    ------
    ValueError
        If the parsed YAML is not a mapping/dictionary.
    """

    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ValueError(f"Mapping file {label} must contain a top-level dictionary; got {type(obj)}")
    return obj


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``overlay`` on top of ``base``.

    - Nested dictionaries are merged so that only the touched keys change.
    - Scalars and lists are replaced entirely by the recipe, so a recipe that
      touches ``mapping.motors`` must list all four motors.
    - ``base`` is not mutated; a merged copy is returned.
    """

    merged = copy.deepcopy(base)
    for key, overlay_value in overlay.items():
        base_value = merged.get(key)
        if isinstance(base_value, dict) and isinstance(overlay_value, dict):
            merged[key] = deep_merge(base_value, overlay_value)
        else:
            merged[key] = copy.deepcopy(overlay_value)
    return merged


def load_yaml(path: Path, label: str | None = None) -> Dict[str, Any]:
    """Read YAML from ``path``; parse errors surface as ``ValueError``."""

    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ValueError(f"Unable to parse YAML at {path}: {exc}") from exc
    return _validate_mapping(data, label or str(path))


def load_recipe(recipe_path) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Load a recipe file and return (bridge_cfg, metadata dict).

    The recipe's ``toy_bridge`` section may name a base config via
    ``extends`` (relative to the recipe file); the rest of the section is
    deep-merged on top of it.
    """

    recipe_path = Path(recipe_path).expanduser().resolve()
    data = load_yaml(recipe_path)

    bridge_section = data.get("toy_bridge") or {
        k: v for k, v in data.items() if k in {"intiface", "osc", "mapping", "consent", "extends"}
    }
    if not bridge_section:
        raise ValueError(
            "Recipe {path} needs a 'toy_bridge' section describing "
            "the motor mapping".format(path=recipe_path)
        )

    base_cfg: Dict[str, Any] = {}
    extends = bridge_section.get("extends")
    if extends:
        base_cfg = load_yaml((recipe_path.parent / extends).resolve())

    overlay = {k: v for k, v in bridge_section.items() if k != "extends"}
    cfg = deep_merge(base_cfg, overlay)

    metadata = {
        "name": data.get("name", recipe_path.stem),
        "slug": data.get("slug"),
        "description": data.get("description", ""),
        "intent": data.get("intent", ""),
    }
    return cfg, metadata
