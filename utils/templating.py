"""
Template renderer — `${name}` substitution against a flat state bag.

Rules:
  - `${name}` references a top-level key; no dotted paths, no arithmetic
  - `$` not followed by `{` is a literal dollar sign
  - an unterminated `${` or an unknown variable is a TemplateError
  - values are rendered in canonical form (true/false, null, JSON for
    containers) so templated strings read the same as JSON payloads

Structured payloads go through render_value / render_json: keys and string
leaves are rendered, and a string that is exactly one `${name}` token is
replaced by the raw state value, so numbers (including big integers),
booleans and objects keep their type.
"""
from __future__ import annotations

import json
from functools import lru_cache
from typing import Any, Mapping, Optional

from utils.errors import TemplateError

_FORBIDDEN_NAME_CHARS = set("${} \t\r\n")


def stringify(value: Any) -> str:
    """Canonical string form of a state value."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return str(value)


@lru_cache(maxsize=1024)
def _parse(template: str) -> tuple[tuple[bool, str], ...]:
    """Split a template into (is_var, text) parts."""
    parts: list[tuple[bool, str]] = []
    literal: list[str] = []
    i, n = 0, len(template)
    while i < n:
        ch = template[i]
        if ch == "$" and i + 1 < n and template[i + 1] == "{":
            end = template.find("}", i + 2)
            if end == -1:
                raise TemplateError(f"unterminated '${{' at offset {i} in {template!r}")
            name = template[i + 2:end]
            if not name or any(c in _FORBIDDEN_NAME_CHARS for c in name):
                raise TemplateError(f"invalid variable name {name!r} at offset {i}")
            if literal:
                parts.append((False, "".join(literal)))
                literal = []
            parts.append((True, name))
            i = end + 1
            continue
        literal.append(ch)
        i += 1
    if literal:
        parts.append((False, "".join(literal)))
    return tuple(parts)


def variables(template: str) -> list[str]:
    """Names referenced by a template, in order of appearance."""
    return [text for is_var, text in _parse(template) if is_var]


def single_token(template: str) -> Optional[str]:
    """Return the variable name if the whole string is exactly one `${name}`."""
    if not isinstance(template, str) or not template.startswith("${"):
        return None
    parts = _parse(template)
    if len(parts) == 1 and parts[0][0]:
        return parts[0][1]
    return None


def _lookup(name: str, state: Mapping[str, Any]) -> Any:
    try:
        return state[name]
    except KeyError:
        raise TemplateError(f"variable {name} not found in state") from None


def render(template: str, state: Mapping[str, Any]) -> str:
    """Literal substitution of every `${name}` in a string."""
    if "$" not in template:
        return template
    out: list[str] = []
    for is_var, text in _parse(template):
        out.append(stringify(_lookup(text, state)) if is_var else text)
    return "".join(out)


def render_value(value: Any, state: Mapping[str, Any]) -> Any:
    """Render a JSON-able structure, preserving the type of whole-token values."""
    if isinstance(value, str):
        name = single_token(value)
        if name is not None:
            return _lookup(name, state)
        return render(value, state)
    if isinstance(value, dict):
        return {
            render(str(k), state): render_value(v, state)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [render_value(v, state) for v in value]
    return value


def render_json(value: Any, state: Mapping[str, Any]) -> bytes:
    """Render a structured body and serialize it to JSON bytes."""
    rendered = render_value(value, state)
    try:
        return json.dumps(rendered).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise TemplateError(f"rendered body is not JSON-serializable: {e}") from e
