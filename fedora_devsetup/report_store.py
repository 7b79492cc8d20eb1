from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"json", "yaml", "yml"}:
        return ext
    # Default to JSON for unknown extensions.
    return "json"


def _dumps(path: Path, data: Dict[str, Any]) -> str:
    if _detect_format(path) in {"yaml", "yml"}:
        return yaml.safe_dump(data, sort_keys=False)
    return json.dumps(data, indent=2) + "\n"


def load_report(path: str) -> Dict[str, Any]:
    """Load a report/state mapping; a missing file is an empty mapping."""
    p = Path(path)
    if not p.exists():
        return {}

    text = p.read_text(encoding="utf-8")
    if _detect_format(p) in {"yaml", "yml"}:
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text) if text.strip() else {}

    if not isinstance(data, dict):
        raise ValueError(f"Report file must be an object/dict, got {type(data)}")

    return data


def save_report(path: str, data: Dict[str, Any]) -> None:
    """Write the whole mapping atomically.

    The content goes to a temp file in the same directory which then replaces
    the target, so readers only ever see the previous or the new version.
    """

    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp = tempfile.mkstemp(prefix=f".{p.name}.", suffix=".tmp", dir=str(p.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(_dumps(p, data))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, p)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
