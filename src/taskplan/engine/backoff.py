"""Retry backoff policy."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


def backoff(attempt: int, base: float, multiplier: float) -> float:
    """Delay before retry number `attempt` (1-based): base * multiplier^(attempt-1)."""

    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return base * multiplier ** (attempt - 1)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff with an upper cap."""

    base_seconds: float = 1.0
    multiplier: float = 2.0
    max_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.base_seconds <= 0:
            raise ValueError("base_seconds must be > 0.")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1.")
        if self.max_seconds < self.base_seconds:
            raise ValueError("max_seconds must be >= base_seconds.")

    def delay_for(self, attempt: int, parameters: Mapping[str, Any] | None = None) -> float:
        """Capped delay for `attempt`, honouring valid strategy overrides.

        An override that would make the delay zero, negative or shrinking is
        ignored in favour of the policy value, so every retry waits > 0.
        """

        overrides = parameters or {}
        base = _override(overrides, "base_seconds", self.base_seconds, accept=lambda v: v > 0)
        multiplier = _override(overrides, "multiplier", self.multiplier, accept=lambda v: v >= 1)
        return min(backoff(attempt, base, multiplier), self.max_seconds)


def _override(
    overrides: Mapping[str, Any],
    name: str,
    default: float,
    *,
    accept: Callable[[float], bool],
) -> float:
    if name not in overrides:
        return default
    try:
        value = float(overrides[name])
    except (TypeError, ValueError):
        value = None
    if value is None or not math.isfinite(value) or not accept(value):
        logger.warning(
            "Ignoring invalid retry override %s=%r; using %s",
            name,
            overrides[name],
            default,
        )
        return default
    return value
