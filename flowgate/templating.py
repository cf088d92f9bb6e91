"""``{{path}}`` placeholder rendering against an execution scope."""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")

_MISSING = object()


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Resolve a dotted ``path`` inside nested mappings and sequences.

    Numeric segments index into lists. Any missing segment yields ``default``.
    """
    if not path:
        return default
    current = data
    for part in path.strip().split("."):
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return default
    return current


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def render(template: str, scope: Mapping[str, Any]) -> str:
    """Replace every placeholder in ``template``; unresolved ones become ''."""
    return PLACEHOLDER.sub(lambda m: _stringify(get_path(scope, m.group(1))), template)


def render_value(value: Any, scope: Mapping[str, Any]) -> Any:
    """Render templates nested inside dicts and lists.

    A string that is exactly one placeholder keeps the resolved value's type,
    so ``"{{search.results}}"`` renders to the list rather than its JSON text.
    """
    if isinstance(value, str):
        match = PLACEHOLDER.fullmatch(value.strip())
        if match:
            return get_path(scope, match.group(1))
        return render(value, scope)
    if isinstance(value, Mapping):
        return {key: render_value(item, scope) for key, item in value.items()}
    if isinstance(value, list):
        return [render_value(item, scope) for item in value]
    return value
