from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml


def load_yaml_mapping(
    path: str | Path,
    *,
    label: str,
    missing_hint: str | None = None,
) -> dict[str, Any]:
    """Load a YAML document that must be a mapping; an empty file is ``{}``."""
    resolved = Path(path)
    if not resolved.is_file():
        message = f"{label} not found at '{path}'."
        if missing_hint:
            message = f"{message} {missing_hint}"
        raise FileNotFoundError(message)
    with resolved.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    if not isinstance(payload, dict):
        raise ValueError(f"{label} at '{path}' must be a YAML mapping.")
    return payload
