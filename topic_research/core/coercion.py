"""Coerce loosely-typed model output into plain strings.

Completion output sometimes returns ``[{"text": "..."}]`` where a list of
strings was asked for. Items are either scalars or mappings carrying a named
text field; anything else is JSON-encoded.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any, TypeAlias

Scalar: TypeAlias = str | int | float | bool
NamedText: TypeAlias = Mapping[str, Any]

# Checked in this order
TEXT_FIELDS: tuple[str, ...] = ("text", "content", "title", "description")


def coerce_text(item: Scalar | NamedText | None) -> str:
    if item is None:
        return ""
    if isinstance(item, str):
        return item
    if isinstance(item, Mapping):
        for key in TEXT_FIELDS:
            value = item.get(key)
            if isinstance(value, str) and value.strip():
                return value
        return json.dumps(item, default=str)
    if isinstance(item, (list, tuple)):
        return json.dumps(list(item), default=str)
    return str(item)


def coerce_string_list(value: Any) -> list[str]:
    """Return the non-blank string form of every item; non-lists become ``[]``."""
    if not isinstance(value, (list, tuple)):
        return []
    coerced = (coerce_text(item) for item in value)
    return [text for text in coerced if text.strip()]
