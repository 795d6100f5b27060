"""Heuristic parsers for free-form Home Assistant sensor values.

None of these functions raise. Unparsable input collapses to a typed zero
value, so a caller that needs to tell "genuinely zero" apart from "could not
parse" has to look at the raw string itself.
"""

import math
import re
from collections.abc import Mapping
from typing import Any, Iterator, Optional

# Grams of filament per meter for 1.75 mm PLA (~1.24 g/cm3). This is a
# simplification: other materials and diameters weigh differently.
FILAMENT_GRAMS_PER_METER = 2.96

# Bambu Lab speed profile names and the percentage each one maps to.
SPEED_PROFILES = {
    "silent": 50,
    "standard": 100,
    "sport": 124,
    "ludicrous": 166,
}

_COMPOSITE_DURATION = re.compile(r"^(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?$")
_MASS = re.compile(r"^(-?(?:\d+(?:\.\d*)?|\.\d+))\s*(grams|gram|g|mm|m)?$")

_TRUE_STRINGS = {"true", "1", "on"}
_FALSE_STRINGS = {"false", "0", "off"}


def parse_number(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None
    if isinstance(value, str):
        s = value.strip()
        # Try exact numeric first
        try:
            number = float(s)
            return number if math.isfinite(number) else None
        except ValueError:
            pass
        # Try to extract a leading numeric (e.g., "-59dBm")
        sign = 1.0
        if s.startswith("-"):
            sign = -1.0
            s = s[1:]
        num = []
        dot_seen = False
        for ch in s:
            if ch.isdigit():
                num.append(ch)
            elif ch == "." and not dot_seen:
                dot_seen = True
                num.append(ch)
            else:
                break
        if num and not (len(num) == 1 and num[0] == "."):
            number = float("".join(num)) * sign
            return number if math.isfinite(number) else None
    return None


def to_float(value: Any, default: float = 0.0) -> float:
    number = parse_number(value)
    return default if number is None else number


def to_int(value: Any, default: int = 0) -> int:
    number = parse_number(value)
    return default if number is None else int(number)


def parse_duration_minutes(raw: Optional[str]) -> int:
    """Parse "90", "45.7", "1h 30m", "1h30m", "2h" or "15m" into whole minutes.

    Decimal minutes truncate toward zero. Anything else yields 0, which
    callers must read as "unknown or none" rather than an authoritative value.
    """
    if raw is None:
        return 0
    text = str(raw).strip().lower()
    if not text:
        return 0

    try:
        minutes = float(text)
    except ValueError:
        minutes = None
    if minutes is not None:
        if not math.isfinite(minutes):
            return 0
        return max(0, int(minutes))

    match = _COMPOSITE_DURATION.match(text)
    if not match or (match.group(1) is None and match.group(2) is None):
        return 0
    hours = int(match.group(1) or 0)
    mins = int(match.group(2) or 0)
    return hours * 60 + mins


def parse_mass_grams(raw: Optional[str]) -> float:
    """Parse filament usage in grams.

    Accepts "12.5", "12.5g", "12.5 grams" as grams and "10m" as meters of
    filament converted with FILAMENT_GRAMS_PER_METER. A millimeter suffix
    ("100mm") is not a length conversion: the number is taken as-is.
    """
    if raw is None:
        return 0.0
    text = str(raw).strip().lower()
    match = _MASS.match(text)
    if not match:
        return 0.0
    value = float(match.group(1))
    if match.group(2) == "m":
        return value * FILAMENT_GRAMS_PER_METER
    return value


def coerce_bool(value: Any) -> Optional[bool]:
    """Three-valued boolean coercion: None means "not reported"."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return None


def parse_speed_percent(raw: Optional[str]) -> int:
    if raw is None:
        return 100
    text = str(raw).strip().lower()
    if text in SPEED_PROFILES:
        return SPEED_PROFILES[text]
    try:
        return int(float(text))
    except (ValueError, OverflowError):
        return 100


def is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


class Attributes(Mapping):
    """Read-only view over an entity's attribute map with fail-soft typed getters."""

    def __init__(self, data: Optional[Mapping[str, Any]] = None) -> None:
        self._data = dict(data or {})

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"Attributes({self._data!r})"

    def get_str(self, key: str) -> Optional[str]:
        value = self._data.get(key)
        return value if isinstance(value, str) else None

    def get_int(self, key: str) -> Optional[int]:
        value = self._data.get(key)
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        number = self.get_float(key)
        return None if number is None else int(number)

    def get_float(self, key: str) -> Optional[float]:
        value = self._data.get(key)
        if isinstance(value, bool) or value is None:
            return None
        if isinstance(value, (int, float)):
            return float(value) if math.isfinite(value) else None
        if isinstance(value, str):
            try:
                number = float(value.strip())
            except ValueError:
                return None
            return number if math.isfinite(number) else None
        return None

    def get_bool(self, key: str) -> Optional[bool]:
        return coerce_bool(self._data.get(key))
