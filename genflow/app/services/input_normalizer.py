"""
Coercion of untrusted request parameters into provider-safe values.
Every helper returns its fallback instead of raising.
"""
from __future__ import annotations

import math
import re
from typing import Any, Iterable, Optional, Sequence, TypeVar

T = TypeVar("T", bound=str)

_ASPECT_PATTERN = re.compile(r"^\d+:\d+$")
_WHITESPACE = re.compile(r"\s+")
_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off"}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def clamp_number(
    value: Any,
    fallback: float,
    minimum: float,
    maximum: float,
    step: Optional[float] = None,
) -> float:
    """
    Clamp into [minimum, maximum], then snap onto the step grid anchored at minimum.

    Non-numeric input returns fallback unchanged. Applying the function to its
    own output returns the same value.
    """
    number = _to_number(value)
    if number is None:
        return fallback

    clamped = min(maximum, max(minimum, number))
    if not step or step <= 0:
        return clamped

    steps = _round_half_up((clamped - minimum) / step)
    # float noise from the multiplication would break idempotence
    return min(maximum, round(minimum + steps * step, 10))


def parse_integer(value: Any, fallback: int, minimum: int, maximum: int) -> int:
    return _round_half_up(clamp_number(value, fallback, minimum, maximum))


def snap_to_allowed(value: Any, allowed: Iterable[float], fallback: float) -> float:
    """
    Nearest allowed value to the input (or to fallback when the input is not numeric).
    Ties go to the lower value.
    """
    number = _to_number(value)
    base = number if number is not None else fallback

    candidates = sorted({number for number in map(_to_number, allowed) if number is not None})
    if not candidates:
        return base

    closest = candidates[0]
    for candidate in candidates[1:]:
        if abs(candidate - base) < abs(closest - base):
            closest = candidate
    return closest


def parse_enum(value: Any, allowed: Sequence[T], default: T) -> T:
    if not isinstance(value, str):
        return default
    normalized = value.strip()
    for option in allowed:
        if option == normalized:
            return option
    return default


def parse_text(value: Any, default: str = "", max_length: int = 120) -> str:
    if not isinstance(value, str):
        return default
    normalized = _WHITESPACE.sub(" ", value).strip()
    if not normalized:
        return default
    return normalized[:max_length]


def parse_optional_text(value: Any, max_length: int = 2048) -> Optional[str]:
    text = parse_text(value, "", max_length)
    return text or None


def parse_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return default


def parse_aspect(value: Any, allowed: Sequence[str], default: str) -> str:
    """Whitelisted ratio, or any W:H pair, else default."""
    if isinstance(value, str):
        trimmed = value.strip()
        if trimmed in allowed or _ASPECT_PATTERN.match(trimmed):
            return trimmed
    return default
