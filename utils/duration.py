"""Duration strings for delay steps: "300ms", "5s", "1m30s", "1.5h"."""
from __future__ import annotations

import re
from typing import Any

from utils.errors import ConfigError

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: Any) -> float:
    """Return seconds. Bare numbers are seconds; strings use unit suffixes."""
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ConfigError("invalid duration: empty string")
        if text == "0":
            return 0.0
        if text.startswith("-"):
            raise ConfigError(f"negative duration: {value!r}")
        pos, seconds = 0, 0.0
        text = text.lstrip("+")
        while pos < len(text):
            m = _PART_RE.match(text, pos)
            if not m:
                raise ConfigError(f"invalid duration: {value!r}")
            seconds += float(m.group(1)) * _UNITS[m.group(2)]
            pos = m.end()
    else:
        raise ConfigError(f"invalid duration: {value!r}")
    if seconds < 0:
        raise ConfigError(f"negative duration: {value!r}")
    return seconds
