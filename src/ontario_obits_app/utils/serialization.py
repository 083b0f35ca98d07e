#!filepath: src/ontario_obits_app/utils/serialization.py
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from ontario_obits_app.utils.logger import get_logger

logger = get_logger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class LoadResult:
    """Structured result for config file loads.

    Args:
        data: Parsed payload when successful.
        path: File path attempted.
        ok: Whether parsing succeeded.
    """

    data: dict[str, Any]
    path: Path
    ok: bool


def load_yaml_dict(path: Path) -> LoadResult:
    """Load a YAML file and return a dictionary payload.

    Args:
        path: Path to a YAML file.

    Returns:
        LoadResult: Parsed data and status.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.error(f"Failed to read YAML, path={path}, err={exc}")
        return LoadResult(data={}, path=path, ok=False)

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        logger.error(f"Failed to parse YAML, path={path}, err={exc}")
        return LoadResult(data={}, path=path, ok=False)

    if raw is None:
        return LoadResult(data={}, path=path, ok=True)

    if not isinstance(raw, Mapping):
        logger.error(
            f"Invalid YAML, expected mapping, path={path}, got={type(raw).__name__}"
        )
        return LoadResult(data={}, path=path, ok=False)

    return LoadResult(data=dict(raw), path=path, ok=True)


def parse_json_object(text: str | None) -> dict[str, Any] | None:
    """Parse a JSON object from text, tolerating code fences.

    Args:
        text: Raw text, possibly wrapped in ``` fences.

    Returns:
        The decoded object, or None when the text is not a JSON object.
    """
    s = _FENCE_RE.sub("", str(text or "").strip()).strip()
    if not s:
        return None
    try:
        raw = json.loads(s)
    except json.JSONDecodeError:
        start = s.find("{")
        end = s.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            raw = json.loads(s[start : end + 1])
        except json.JSONDecodeError:
            return None
    return dict(raw) if isinstance(raw, dict) else None

