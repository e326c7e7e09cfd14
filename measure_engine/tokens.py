"""
Dependency tokens.

A token is either a bare measure name ("weight", value at the exact
timestamp) or "modifier:measure" where modifier is one of current,
previous, delta or avgN. Tokens are parsed once into DependencyToken and
dispatched on the Modifier enum afterwards.
"""

import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Optional

from .errors import ConfigurationError

MEASURE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
AVERAGE_PATTERN = re.compile(r"^avg(\d+)$")


class Modifier(str, Enum):
    EXACT = "exact"
    CURRENT = "current"
    PREVIOUS = "previous"
    DELTA = "delta"
    AVERAGE = "avg"


@dataclass(frozen=True)
class DependencyToken:
    """A parsed formula placeholder."""
    text: str
    measure_name: str
    modifier: Modifier = Modifier.EXACT
    window_days: Optional[int] = None

    @property
    def is_time_series(self) -> bool:
        return self.modifier is not Modifier.EXACT


@lru_cache(maxsize=1024)
def parse_dependency_token(text: str) -> DependencyToken:
    """
    Parse token text into a DependencyToken.

    Raises ConfigurationError for an unknown modifier, a non-positive
    average window or an invalid measure name.
    """
    raw = text.strip()
    if ":" not in raw:
        _check_measure_name(raw, text)
        return DependencyToken(text=raw, measure_name=raw)

    prefix, measure_name = raw.split(":", 1)
    prefix = prefix.strip()
    measure_name = measure_name.strip()
    _check_measure_name(measure_name, text)
    token_text = f"{prefix}:{measure_name}"

    if prefix == Modifier.CURRENT.value:
        return DependencyToken(token_text, measure_name, Modifier.CURRENT)
    if prefix == Modifier.PREVIOUS.value:
        return DependencyToken(token_text, measure_name, Modifier.PREVIOUS)
    if prefix == Modifier.DELTA.value:
        return DependencyToken(token_text, measure_name, Modifier.DELTA)

    match = AVERAGE_PATTERN.match(prefix)
    if match:
        days = int(match.group(1))
        if days <= 0:
            raise ConfigurationError(f"Invalid time-series modifier: {prefix} (window must be positive)")
        return DependencyToken(token_text, measure_name, Modifier.AVERAGE, window_days=days)

    raise ConfigurationError(f"Invalid time-series modifier: {prefix}")


def base_measure_name(text: str) -> str:
    """Strip any modifier prefix: "current:weight" -> "weight"."""
    return text.split(":", 1)[1].strip() if ":" in text else text.strip()


def _check_measure_name(name: str, original: str) -> None:
    if not MEASURE_NAME_PATTERN.match(name):
        raise ConfigurationError(
            f"Invalid variable name: {original}. Use {{measure_name}} or {{modifier:measure_name}}"
        )
