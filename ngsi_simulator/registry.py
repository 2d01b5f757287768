"""Closed set of interpolator kinds and the run-scoped compiled-instance cache."""
from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from .expressions import attribute_function_interpolator
from .interpolators import (
    date_increment_interpolator,
    linear_interpolator,
    multiline_position_interpolator,
    random_linear_interpolator,
    step_after_interpolator,
    step_before_interpolator,
    text_rotation_interpolator,
)

LOGGER = logging.getLogger("ngsi_simulator.registry")


class TimeInput(str, Enum):
    """What an interpolator instance receives when it is evaluated."""

    DECIMAL_HOURS = "decimal-hours"
    DATETIME = "datetime"
    NOTHING = "nothing"
    BROKER_VALUES = "broker-values"


class InterpolatorKind(str, Enum):
    TIME_LINEAR = "time-linear-interpolator"
    TIME_RANDOM_LINEAR = "time-random-linear-interpolator"
    TIME_STEP_BEFORE = "time-step-before-interpolator"
    TIME_STEP_AFTER = "time-step-after-interpolator"
    DATE_INCREMENT = "date-increment-interpolator"
    MULTILINE_POSITION = "multiline-position-interpolator"
    TEXT_ROTATION = "text-rotation-interpolator"
    ATTRIBUTE_FUNCTION = "attribute-function-interpolator"

    @property
    def factory(self) -> Callable[[Any], Callable[..., Any]]:
        return FACTORIES[self]

    @property
    def time_input(self) -> TimeInput:
        return TIME_INPUTS.get(self, TimeInput.DECIMAL_HOURS)

    @property
    def cacheable(self) -> bool:
        return self is not InterpolatorKind.TIME_RANDOM_LINEAR


FACTORIES: Dict[InterpolatorKind, Callable[[Any], Callable[..., Any]]] = {
    InterpolatorKind.TIME_LINEAR: linear_interpolator,
    InterpolatorKind.TIME_RANDOM_LINEAR: random_linear_interpolator,
    InterpolatorKind.TIME_STEP_BEFORE: step_before_interpolator,
    InterpolatorKind.TIME_STEP_AFTER: step_after_interpolator,
    InterpolatorKind.DATE_INCREMENT: date_increment_interpolator,
    InterpolatorKind.MULTILINE_POSITION: multiline_position_interpolator,
    InterpolatorKind.TEXT_ROTATION: text_rotation_interpolator,
    InterpolatorKind.ATTRIBUTE_FUNCTION: attribute_function_interpolator,
}

TIME_INPUTS = {
    InterpolatorKind.DATE_INCREMENT: TimeInput.NOTHING,
    InterpolatorKind.TEXT_ROTATION: TimeInput.DATETIME,
    InterpolatorKind.ATTRIBUTE_FUNCTION: TimeInput.BROKER_VALUES,
}


def parse_value(value: Any) -> Optional[Tuple[InterpolatorKind, str]]:
    """Split ``<kind>(<params>)`` into its kind and parameter spec.

    Returns ``None`` for anything that is not a string prefixed by a known kind.
    """
    if not isinstance(value, str):
        return None
    for kind in InterpolatorKind:
        prefix = kind.value + "("
        if value.startswith(prefix):
            end = value.rfind(")")
            if end < len(prefix):
                end = len(value)
            return kind, value[len(prefix):end]
    return None


def _cache_key(kind: InterpolatorKind, spec: str) -> Tuple[str, str]:
    if kind is InterpolatorKind.ATTRIBUTE_FUNCTION:
        return kind.value, spec
    try:
        return kind.value, json.dumps(json.loads(spec), sort_keys=True, separators=(",", ":"))
    except ValueError:
        return kind.value, spec


class InterpolatorRegistry:
    """Compiles interpolator specs and keeps one instance per structural spec."""

    def __init__(self) -> None:
        self._cache: Dict[Tuple[str, str], Callable[..., Any]] = {}
        self.compilations = 0

    def resolve(self, kind: InterpolatorKind, spec: str) -> Callable[..., Any]:
        if not kind.cacheable:
            self.compilations += 1
            return kind.factory(spec)
        key = _cache_key(kind, spec)
        instance = self._cache.get(key)
        if instance is None:
            instance = kind.factory(spec)
            self.compilations += 1
            self._cache[key] = instance
            LOGGER.debug("Compiled %s(%s)", kind.value, spec)
        return instance

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


__all__ = ["InterpolatorKind", "InterpolatorRegistry", "TimeInput", "parse_value"]
