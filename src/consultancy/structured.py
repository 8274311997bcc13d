"""Helpers for pulling structured fields out of free-form generated text."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any


def _object_end(raw_text: str, start: int) -> int:
    """Index just past the brace closing the object opened at ``start``, or -1."""
    depth = 0
    in_string = False
    escaped = False
    for position in range(start, len(raw_text)):
        char = raw_text[position]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return position + 1
    return -1


def extract_first_json_object(raw_text: str) -> dict[str, Any] | None:
    """Return the first decodable top-level JSON object embedded in free text.

    A candidate that never closes means the reply was cut off, so nothing is
    returned rather than one of its nested objects.
    """
    if not isinstance(raw_text, str):
        return None
    index = raw_text.find("{")
    while index != -1:
        end = _object_end(raw_text, index)
        if end == -1:
            return None
        try:
            parsed = json.loads(raw_text[index:end])
        except json.JSONDecodeError:
            index = raw_text.find("{", end)
            continue
        if isinstance(parsed, dict):
            return parsed
        index = raw_text.find("{", end)
    return None


def string_list(value: Any, filler: str | None = None) -> list[str]:
    if isinstance(value, list):
        items = [item if isinstance(item, str) else json.dumps(item, default=str) for item in value]
        items = [item for item in items if item]
    elif isinstance(value, str) and value.strip():
        items = [value]
    else:
        items = []
    if not items and filler is not None:
        return [filler]
    return items


def text_field(value: Any, filler: str) -> str:
    if isinstance(value, str) and value.strip():
        return value
    if isinstance(value, (dict, list)) and value:
        return json.dumps(value, ensure_ascii=False, default=str)
    return filler


def first_key(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload:
            return payload[key]
    return None
