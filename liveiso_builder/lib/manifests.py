from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

import yaml

DATA_DIR = Path(__file__).resolve().parents[1] / "data"


def load_yaml_file(path: Path | str) -> Dict[str, Any]:
    """Load a YAML mapping; an empty file is an empty mapping."""

    p = Path(path)
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {p}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"YAML document must be a mapping/dict: {p}")
    return data


def load_data_file(name: str) -> Dict[str, Any]:
    """Load a YAML file shipped in the package's data/ directory."""
    return load_yaml_file(DATA_DIR / name)
