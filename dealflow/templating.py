"""Placeholder substitution for action text."""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def _stringify(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def substitute(text: str | None, data: Mapping[str, Any]) -> str | None:
    """Replace ``{{key}}`` placeholders in ``text`` with values from ``data``.

    Placeholders whose key is missing from ``data`` are left untouched so a
    partially populated payload still produces readable output.
    """
    if not text:
        return text

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in data:
            return match.group(0)
        return _stringify(data[key])

    return _PLACEHOLDER.sub(_replace, text)
