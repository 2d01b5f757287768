"""Interpolator families: each factory compiles a parameter spec into a callable.

Factories raise :class:`InvalidInterpolationSpec` when the parameter spec does not have the
shape the family expects, so the same call validates and compiles.
"""
from __future__ import annotations

import bisect
import json
import math
import random
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import InvalidInterpolationSpec

ROUNDINGS: Dict[str, Callable[[float], int]] = {
    "ceil": math.ceil,
    "floor": math.floor,
    # Half-up, not Python's banker's rounding.
    "round": lambda value: math.floor(value + 0.5),
}

RANDOM_RE = re.compile(r"^\s*random\(\s*(-?\d+(?:\.\d+)?)\s*,\s*(-?\d+(?:\.\d+)?)\s*\)\s*$")

EARTH_RADIUS = {"kilometers": 6371.0088, "meters": 6371008.8, "miles": 3958.7613}

TEXT_UNITS = ("seconds", "minutes", "hours", "days", "dates", "months", "years")


def parse_spec(spec: Any) -> Any:
    if not isinstance(spec, str):
        return spec
    try:
        return json.loads(spec)
    except ValueError as exc:
        raise InvalidInterpolationSpec(f"The interpolation spec ({spec}) is not valid JSON: {exc}") from exc


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _split_return(parsed: Any, spec: Any) -> Tuple[Any, Callable[[float], Any]]:
    """Accept ``[[x, y], ...]`` or ``{"spec": [...], "return": {...}}``."""
    if isinstance(parsed, list):
        return parsed, float
    if not isinstance(parsed, dict) or "spec" not in parsed:
        raise InvalidInterpolationSpec(
            f"The interpolation spec ({spec}) should be an array of [x, y] entries or an object "
            "including the 'spec' and 'return' properties"
        )
    returned = parsed.get("return")
    if not isinstance(returned, dict) or returned.get("type") not in ("float", "integer"):
        raise InvalidInterpolationSpec(
            f"The interpolation spec ({spec}) should include a 'return' object whose 'type' is 'float' or 'integer'"
        )
    if returned["type"] == "float":
        return parsed["spec"], float
    rounding = ROUNDINGS.get(returned.get("rounding"))
    if rounding is None:
        raise InvalidInterpolationSpec(
            f"The interpolation spec ({spec}) returns integers and should include a 'rounding' property "
            "equal to 'ceil', 'floor' or 'round'"
        )
    return parsed["spec"], rounding


def _anchors(entries: Any, spec: Any, *, allow_random: bool = False) -> List[List[Any]]:
    if not isinstance(entries, list) or not entries:
        raise InvalidInterpolationSpec(f"The interpolation spec ({spec}) should include at least one [x, y] entry")
    for entry in entries:
        valid = isinstance(entry, list) and len(entry) == 2 and _is_number(entry[0])
        if valid:
            valid = _is_number(entry[1]) or (
                allow_random and isinstance(entry[1], str) and RANDOM_RE.match(entry[1]) is not None
            )
        if not valid:
            raise InvalidInterpolationSpec(
                f"The interpolation spec ({spec}) includes an invalid entry: {entry!r}"
            )
    return sorted(entries, key=lambda item: item[0])


def _interpolate(xs: Sequence[float], ys: Sequence[float], x: float) -> float:
    if x <= xs[0]:
        return float(ys[0])
    if x >= xs[-1]:
        return float(ys[-1])
    index = bisect.bisect_right(xs, x)
    x0, x1 = xs[index - 1], xs[index]
    y0, y1 = ys[index - 1], ys[index]
    if x1 == x0:
        return float(y1)
    return y0 + (y1 - y0) * (x - x0) / (x1 - x0)


def linear_interpolator(spec: Any) -> Callable[[float], Any]:
    """Piecewise linear function of the decimal hour."""
    entries, finish = _split_return(parse_spec(spec), spec)
    anchors = _anchors(entries, spec)
    xs = [entry[0] for entry in anchors]
    ys = [entry[1] for entry in anchors]

    def interpolate(hours: float) -> Any:
        return finish(_interpolate(xs, ys, hours))

    return interpolate


def random_linear_interpolator(spec: Any) -> Callable[[float], Any]:
    """Linear interpolation whose anchors may be ``random(min,max)`` draws."""
    entries, finish = _split_return(parse_spec(spec), spec)
    anchors = _anchors(entries, spec, allow_random=True)
    xs = [entry[0] for entry in anchors]
    ys: List[float] = []
    for _, y in anchors:
        if isinstance(y, str):
            match = RANDOM_RE.match(y)
            low, high = float(match.group(1)), float(match.group(2))
            ys.append(random.uniform(min(low, high), max(low, high)))
        else:
            ys.append(y)

    def interpolate(hours: float) -> Any:
        return finish(_interpolate(xs, ys, hours))

    return interpolate


def step_after_interpolator(spec: Any) -> Callable[[float], Any]:
    """Value of the last anchor at or before the decimal hour."""
    entries, finish = _split_return(parse_spec(spec), spec)
    anchors = _anchors(entries, spec)
    xs = [entry[0] for entry in anchors]
    ys = [entry[1] for entry in anchors]

    def interpolate(hours: float) -> Any:
        index = bisect.bisect_right(xs, hours) - 1
        return finish(ys[max(index, 0)])

    return interpolate


def step_before_interpolator(spec: Any) -> Callable[[float], Any]:
    """Value of the first anchor at or after the decimal hour."""
    entries, finish = _split_return(parse_spec(spec), spec)
    anchors = _anchors(entries, spec)
    xs = [entry[0] for entry in anchors]
    ys = [entry[1] for entry in anchors]

    def interpolate(hours: float) -> Any:
        index = bisect.bisect_left(xs, hours)
        return finish(ys[min(index, len(ys) - 1)])

    return interpolate


def to_iso(moment: datetime) -> str:
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def date_increment_interpolator(spec: Any) -> Callable[[], str]:
    """Stateful date that moves ``increment`` seconds forward on every call."""
    parsed = parse_spec(spec)
    if not isinstance(parsed, dict) or "origin" not in parsed or not _is_number(parsed.get("increment")):
        raise InvalidInterpolationSpec(
            f"The interpolation spec ({spec}) should be an object including the 'origin' and 'increment' properties"
        )
    origin = parsed["origin"]
    if origin == "now":
        current = datetime.now(timezone.utc)
    else:
        try:
            current = datetime.fromisoformat(str(origin).replace("Z", "+00:00"))
        except ValueError as exc:
            raise InvalidInterpolationSpec(
                f"The interpolation spec ({spec}) includes an invalid origin date: {origin}"
            ) from exc
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
    step = timedelta(seconds=parsed["increment"])
    state = {"current": current}

    def interpolate() -> str:
        state["current"] = state["current"] + step
        return to_iso(state["current"])

    return interpolate


def _haversine(start: Sequence[float], end: Sequence[float], radius: float) -> float:
    lon1, lat1, lon2, lat2 = map(math.radians, (start[0], start[1], end[0], end[1]))
    half = (
        math.sin((lat2 - lat1) / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin((lon2 - lon1) / 2) ** 2
    )
    return 2 * radius * math.asin(min(1.0, math.sqrt(half)))


def multiline_position_interpolator(spec: Any) -> Callable[[float], Dict[str, Any]]:
    """GeoJSON point travelling along a polyline at constant speed."""
    parsed = parse_spec(spec)
    coordinates = parsed.get("coordinates") if isinstance(parsed, dict) else None
    speed = parsed.get("speed") if isinstance(parsed, dict) else None
    window = parsed.get("time") if isinstance(parsed, dict) else None
    valid = (
        isinstance(coordinates, list)
        and len(coordinates) > 0
        and all(isinstance(point, list) and len(point) == 2 and all(map(_is_number, point)) for point in coordinates)
        and isinstance(speed, dict)
        and _is_number(speed.get("value"))
        and speed.get("units") in EARTH_RADIUS
        and isinstance(window, dict)
        and _is_number(window.get("from"))
        and _is_number(window.get("to"))
    )
    if not valid:
        raise InvalidInterpolationSpec(
            f"The interpolation spec ({spec}) should be an object including 'coordinates' ([[lon, lat], ...]), "
            "'speed' ({value, units}) and 'time' ({from, to}) properties"
        )
    radius = EARTH_RADIUS[speed["units"]]
    lengths = [_haversine(a, b, radius) for a, b in zip(coordinates, coordinates[1:])]

    def interpolate(hours: float) -> Dict[str, Any]:
        elapsed = min(hours, window["to"]) - window["from"]
        remaining = max(elapsed, 0) * speed["value"]
        position = list(coordinates[-1])
        for start, end, length in zip(coordinates, coordinates[1:], lengths):
            if remaining <= length:
                ratio = remaining / length if length else 0.0
                position = [start[0] + (end[0] - start[0]) * ratio, start[1] + (end[1] - start[1]) * ratio]
                break
            remaining -= length
        return {"type": "Point", "coordinates": position}

    return interpolate


def _unit_value(moment: datetime, units: str) -> int:
    if units == "seconds":
        return moment.second
    if units == "minutes":
        return moment.minute
    if units == "hours":
        return moment.hour
    if units == "days":
        # Sunday is 0.
        return (moment.weekday() + 1) % 7
    if units == "dates":
        return moment.day
    if units == "months":
        # January is 0.
        return moment.month - 1
    return moment.year


def _valid_choices(choices: Any) -> bool:
    if not isinstance(choices, list) or not choices:
        return False
    for choice in choices:
        if not (isinstance(choice, list) and len(choice) == 2 and isinstance(choice[0], str) and _is_number(choice[1])):
            return False
    return math.isclose(sum(choice[1] for choice in choices), 100)


def text_rotation_interpolator(spec: Any) -> Callable[[datetime], Optional[str]]:
    """Text picked from a rotation table keyed by a calendar unit."""
    parsed = parse_spec(spec)
    units = parsed.get("units") if isinstance(parsed, dict) else None
    table = parsed.get("text") if isinstance(parsed, dict) else None
    valid = units in TEXT_UNITS and isinstance(table, list) and len(table) > 0
    if valid:
        for entry in table:
            if not (
                isinstance(entry, list)
                and len(entry) == 2
                and _is_number(entry[0])
                and (isinstance(entry[1], str) or _valid_choices(entry[1]))
            ):
                valid = False
                break
    if not valid:
        raise InvalidInterpolationSpec(
            f"The interpolation spec ({spec}) should be an object including 'units' (one of "
            f"{', '.join(TEXT_UNITS)}) and 'text' ([[start, text or [[text, percent], ...]], ...]) properties"
        )
    rotation = sorted(table, key=lambda item: item[0])
    starts = [entry[0] for entry in rotation]

    def interpolate(moment: datetime) -> Optional[str]:
        index = bisect.bisect_right(starts, _unit_value(moment, units)) - 1
        if index < 0:
            return None
        text = rotation[index][1]
        if isinstance(text, str):
            return text
        return random.choices([choice[0] for choice in text], weights=[choice[1] for choice in text])[0]

    return interpolate


__all__ = [
    "parse_spec",
    "to_iso",
    "linear_interpolator",
    "random_linear_interpolator",
    "step_after_interpolator",
    "step_before_interpolator",
    "date_increment_interpolator",
    "multiline_position_interpolator",
    "text_rotation_interpolator",
]
