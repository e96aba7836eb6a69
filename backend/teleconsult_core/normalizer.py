"""Display normalization for clinical payloads.

The AI output and doctor diagnosis schemas are not fixed: a field can be a plain
string in one consultation and a structured object in the next. Everything shown
to a physician goes through ``normalize``, which accepts any JSON-like value and
always returns a string.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any, Iterable

from pydantic import BaseModel

NOT_AVAILABLE = "Not available"
EMPTY_SEQUENCE = "None"
EMPTY_OBJECT = "[Empty Object]"
CIRCULAR = "[Circular]"
TOO_DEEP = "[Nested too deeply]"
UNRENDERABLE = "[Unrenderable value]"

SHAPE_ITEM = "item"
SHAPE_DIAGNOSIS = "diagnosis"
SHAPE_GENERIC = "generic"

_ITEM_FIELDS = ("dosage", "frequency", "duration", "reason", "notes", "severity")
_MAX_DEPTH = 100


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, tuple, dict)) and len(value) == 0:
        return False
    return True


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _number_text(value: int | float) -> str:
    if isinstance(value, int):
        return str(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value.is_integer() and abs(value) < 1e16:
        return str(int(value))
    return repr(value)


def _percent(score: float) -> int | None:
    # Half-up: 0.125 -> 13.
    try:
        scaled = float(score) * 100 + 0.5
    except OverflowError:
        return None
    if not math.isfinite(scaled):
        return None
    return math.floor(scaled)


def mapping_shape(value: Mapping[str, Any]) -> str:
    """Classify a mapping as one of the known clinical shapes."""
    if not isinstance(value.get("name"), str):
        return SHAPE_GENERIC
    if any(_is_present(value.get(key)) for key in _ITEM_FIELDS):
        return SHAPE_ITEM
    return SHAPE_DIAGNOSIS


def normalize(value: Any) -> str:
    return _render(value, (), 0)


def normalize_sections(payload: Mapping[str, Any] | BaseModel | None) -> dict[str, str]:
    """Normalize each top-level field of a payload for display."""
    if payload is None:
        return {}
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    return {str(key): normalize(value) for key, value in payload.items()}


def _render(value: Any, path: tuple[int, ...], depth: int) -> str:
    if value is None:
        return NOT_AVAILABLE
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if _is_number(value):
        return _number_text(value)
    if isinstance(value, str):
        return value
    if depth >= _MAX_DEPTH:
        return TOO_DEEP
    if isinstance(value, BaseModel):
        return _render(value.model_dump(mode="json"), path, depth + 1)
    if id(value) in path:
        return CIRCULAR
    if isinstance(value, Mapping):
        return _render_mapping(value, path + (id(value),), depth + 1)
    if isinstance(value, (list, tuple)):
        return _render_sequence(value, path + (id(value),), depth + 1)
    if isinstance(value, (set, frozenset)):
        rendered = sorted(_render(item, path + (id(value),), depth + 1) for item in value)
        return "\n".join(rendered) if rendered else EMPTY_SEQUENCE
    try:
        return str(value)
    except Exception:
        return UNRENDERABLE


def _render_sequence(items: Iterable[Any], path: tuple[int, ...], depth: int) -> str:
    rendered = [_render(item, path, depth) for item in items]
    if not rendered:
        return EMPTY_SEQUENCE
    return "\n".join(rendered)


def _render_mapping(value: Mapping[str, Any], path: tuple[int, ...], depth: int) -> str:
    shape = mapping_shape(value)
    if shape == SHAPE_ITEM:
        parts = [value["name"]]
        for key in _ITEM_FIELDS:
            field_value = value.get(key)
            if _is_present(field_value):
                parts.append(f"{key.capitalize()}: {_render(field_value, path, depth)}")
        return " | ".join(parts)

    if shape == SHAPE_DIAGNOSIS:
        text = value["name"]
        description = value.get("description")
        if _is_present(description):
            text += f" - {_render(description, path, depth)}"
        score = value.get("confidence_score")
        percent = _percent(score) if _is_number(score) else None
        if percent is not None:
            text += f" (Confidence: {percent}%)"
        return text

    parts = [
        f"{key}: {_render(field_value, path, depth)}"
        for key, field_value in value.items()
        if _is_present(field_value)
    ]
    if not parts:
        return EMPTY_OBJECT
    return " | ".join(parts)
