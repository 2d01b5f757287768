"""Turns attribute values (literals or interpolator specs) into concrete values."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .expressions import AttributeFunction
from .model import Attribute
from .registry import InterpolatorKind, InterpolatorRegistry, TimeInput, parse_value

BrokerValues = Mapping[Tuple[str, str], Any]


def to_decimal_hours(moment: datetime) -> float:
    return moment.hour + moment.minute / 60 + moment.second / 3600


class ValueResolver:
    def __init__(self, registry: InterpolatorRegistry, clock: Callable[[], datetime] = datetime.now) -> None:
        self.registry = registry
        self.clock = clock

    def resolve(self, value: Any, now: Optional[datetime] = None, broker_values: Optional[BrokerValues] = None) -> Any:
        """Return ``value`` itself unless it is a known ``<kind>(<params>)`` spec."""
        parsed = parse_value(value)
        if parsed is None:
            return value
        kind, spec = parsed
        instance = self.registry.resolve(kind, spec)
        time_input = kind.time_input
        if time_input is TimeInput.NOTHING:
            return instance()
        if time_input is TimeInput.BROKER_VALUES:
            return instance(broker_values or {})
        moment = now or self.clock()
        if time_input is TimeInput.DATETIME:
            return instance(moment)
        return instance(to_decimal_hours(moment))

    def references(self, attributes: Iterable[Attribute]) -> Dict[str, List[str]]:
        """Broker attributes (entity id -> names) needed to resolve ``attributes``."""
        references: Dict[str, List[str]] = {}
        for attribute in attributes:
            values = [attribute.value] + [metadata.value for metadata in attribute.metadata]
            for value in values:
                parsed = parse_value(value)
                if parsed is None or parsed[0] is not InterpolatorKind.ATTRIBUTE_FUNCTION:
                    continue
                function = self.registry.resolve(*parsed)
                if not isinstance(function, AttributeFunction):
                    continue
                for entity, names in function.references.items():
                    known = references.setdefault(entity, [])
                    known.extend(name for name in names if name not in known)
        return references


__all__ = ["ValueResolver", "to_decimal_hours", "BrokerValues"]
