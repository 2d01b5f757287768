"""Element expansion (templates with ``count``) and per-schedule attribute grouping."""
from __future__ import annotations

import copy
from typing import Dict, Iterator, List, Tuple

from .model import Attribute, Device, Element, ElementType, SimulationConfig


def expand(template: Element) -> List[Element]:
    """Concrete instances for ``template``; every instance is an independent deep copy."""
    if template.identifier:
        return [copy.deepcopy(template)]
    instances: List[Element] = []
    for index in range(1, (template.count or 0) + 1):
        instance = copy.deepcopy(template)
        generated = f"{template.entity_type}:{index}"
        if isinstance(instance, Device):
            instance.device_id = generated
            instance.protocol = template.protocol
            instance.api_key = template.api_key
        else:
            instance.entity_name = generated
        instance.count = None
        instances.append(instance)
    return instances


def expand_all(config: SimulationConfig) -> Iterator[Tuple[ElementType, Element]]:
    for entity in config.entities:
        for instance in expand(entity):
            yield ElementType.ENTITY, instance
    for device in config.devices:
        for instance in expand(device):
            yield ElementType.DEVICE, instance


def group_by_schedule(element: Element) -> Dict[str, List[Attribute]]:
    """Attributes keyed by effective schedule (attribute override or element default).

    An element with only static attributes gets one empty bucket on its own
    schedule so its static data is still pushed.
    """
    groups: Dict[str, List[Attribute]] = {}
    attributes = element.scheduled_attributes
    if attributes:
        for attribute in attributes:
            groups.setdefault(attribute.schedule or element.schedule, []).append(attribute)
    elif element.static_attributes:
        groups[element.schedule] = []
    return groups


__all__ = ["expand", "expand_all", "group_by_schedule"]
