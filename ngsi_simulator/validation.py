"""Structural and semantic checks run on a simulation document before anything is scheduled."""
from __future__ import annotations

import re
from typing import Any, List, Mapping, NoReturn, Optional, Sequence

from .errors import InvalidInterpolationSpec, SimulationConfigurationNotValid
from .model import SUPPORTED_NGSI_VERSIONS, DeviceProtocol
from .registry import parse_value
from .schedule import validate_schedule

INTERPOLATOR_NAME_RE = re.compile(r"^([a-z][a-z-]*-interpolator)\(")

ATTRIBUTE_LABELS = {
    "active": "an active attribute",
    "static": "a static attribute",
    "attribute": "an attribute",
}
LIST_LABELS = {
    "active": "an active",
    "static": "a staticAttributes",
    "attribute": "an attributes",
}
AGENT_NAMES = {"ultralight": "UltraLight", "json": "JSON"}


def _fail(message: str) -> NoReturn:
    raise SimulationConfigurationNotValid(message)


def _has_items(value: Any) -> bool:
    return isinstance(value, list) and len(value) > 0


def validate_domain(config: Mapping[str, Any]) -> None:
    if not _has_items(config.get("entities")):
        return
    domain = config.get("domain")
    if not domain:
        _fail("No domain configuration information (the 'domain' property is mandatory if 'entities' are included)")
    for key in ("service", "subservice"):
        if not domain.get(key):
            _fail(
                f"No {key} in the domain configuration information "
                f"(the 'domain.{key}' property is mandatory if 'entities' are included)"
            )


def validate_context_broker(config: Mapping[str, Any]) -> None:
    if not _has_items(config.get("entities")):
        return
    broker = config.get("contextBroker")
    if not broker:
        _fail(
            "No context broker configuration information "
            "(the 'contextBroker' property is mandatory if 'entities' are included)"
        )
    labels = (("protocol", "protocol"), ("host", "host"), ("port", "port"), ("ngsiVersion", "NGSI version"))
    for key, label in labels:
        if not broker.get(key):
            _fail(
                f"No {label} in the context broker configuration information "
                f"(the 'contextBroker.{key}' property is mandatory if 'entities' are included)"
            )
    if str(broker["ngsiVersion"]) not in SUPPORTED_NGSI_VERSIONS:
        _fail(
            f"The NGSI version in the context broker configuration information "
            f"('{broker['ngsiVersion']}') is not supported"
        )


def validate_authentication(config: Mapping[str, Any]) -> None:
    auth = config.get("authentication")
    if not auth:
        return
    for key in ("protocol", "host", "port", "user", "password"):
        if not auth.get(key):
            _fail(
                f"No {key} in the authentication configuration information "
                f"(the 'authentication.{key}' property is mandatory)"
            )
    retry = auth.get("retry")
    if retry is None:
        return
    if isinstance(retry, bool) or not isinstance(retry, (int, Mapping)):
        _fail("The 'authentication.retry' property should be an attempt count or a {times, interval} object")


def validate_iota(config: Mapping[str, Any]) -> None:
    devices = config.get("devices")
    if not _has_items(devices):
        return
    iota = config.get("iota")
    if not iota:
        _fail("No IoT Agent configuration information (the 'iota' property is mandatory)")
    in_use: List[DeviceProtocol] = []
    for device in devices:
        if not isinstance(device, Mapping):
            continue
        try:
            protocol = DeviceProtocol(device.get("protocol"))
        except ValueError:
            continue
        if protocol not in in_use:
            in_use.append(protocol)
    for protocol in in_use:
        agent_key = protocol.agent
        agent_name = AGENT_NAMES[agent_key]
        transport = protocol.transport
        agent = iota.get(agent_key)
        if not agent:
            _fail(
                f"No {agent_name} IoT Agent configuration information "
                f"(the 'iota.{agent_key}' property is mandatory)"
            )
        endpoint = agent.get(transport)
        if not endpoint:
            _fail(
                f"No {transport.upper()} configuration information for the {agent_name} IoT Agent "
                f"(the 'iota.{agent_key}.{transport}' property is mandatory)"
            )
        for key in ("protocol", "host", "port"):
            if not endpoint.get(key):
                _fail(
                    f"No {transport.upper()} {key} in the {agent_name} IoT Agent configuration information "
                    f"(the 'iota.{agent_key}.{transport}.{key}' property is mandatory)"
                )
        keyless = any(
            isinstance(device, Mapping) and device.get("protocol") == protocol.value and not device.get("api_key")
            for device in devices
        )
        if keyless and not agent.get("api_key"):
            _fail(
                f"No API key in the {agent_name} IoT Agent configuration information "
                f"(the 'iota.{agent_key}.api_key' property is mandatory if {agent_name} {transport.upper()} "
                f"devices are included with no specific API key information)"
            )


def validate_value(value: Any, where: str) -> None:
    """Compile interpolator-shaped strings so bad specs surface before the run."""
    if not isinstance(value, str):
        return
    parsed = parse_value(value)
    if parsed is None:
        match = INTERPOLATOR_NAME_RE.match(value)
        if match:
            _fail(f"{where} with an unknown interpolator '{match.group(1)}': '{value}'")
        return
    kind, spec = parsed
    try:
        kind.factory(spec)
    except InvalidInterpolationSpec as exc:
        _fail(f"{where} with an invalid {kind.value.replace('-', ' ')}: '{value}', due to error: {exc}")


def validate_attribute(
    attribute: Any,
    attribute_type: str,
    index: int,
    parent_type: str,
    parent_index: int,
    parent_schedule: Optional[str],
) -> None:
    label = ATTRIBUTE_LABELS[attribute_type]
    where = (
        f"The {parent_type} configuration information at array index position {parent_index} "
        f"includes {label} at array index position {index}"
    )
    if not isinstance(attribute, Mapping):
        _fail(f"{where} which is not an object")
    required = ("object_id",) if attribute_type == "attribute" else ("name", "type")
    for key in required:
        if not attribute.get(key):
            _fail(f"{where} missing the {key} property")
    if "value" not in attribute or attribute["value"] is None:
        _fail(f"{where} missing the value property")
    validate_value(attribute["value"], where)
    schedule = attribute.get("schedule")
    validate_schedule(schedule, parent_type, parent_index)
    if attribute_type != "static" and not schedule and not parent_schedule:
        _fail(f"{where} has no schedule and its {parent_type} defines no default schedule")

    metadata = attribute.get("metadata")
    if metadata is None:
        return
    if not isinstance(metadata, list):
        _fail(f"{where} including a metadata property which is not an array")
    for meta_index, meta in enumerate(metadata):
        meta_where = f"{where} including a metadata entry at array index position {meta_index}"
        if not isinstance(meta, Mapping):
            _fail(f"{meta_where} which is not an object")
        for key in ("name", "type"):
            if not meta.get(key):
                _fail(f"{meta_where} missing the {key} property")
        if meta.get("value") is None:
            _fail(f"{meta_where} missing the value property")
        validate_value(meta["value"], meta_where)


def validate_attributes(
    attributes: Any, attribute_type: str, parent_type: str, parent_index: int, parent_schedule: Optional[str]
) -> None:
    if attributes is None:
        return
    if not isinstance(attributes, list):
        _fail(
            f"The {parent_type} configuration information at array index position {parent_index} "
            f"includes {LIST_LABELS[attribute_type]} property which is not an array"
        )
    for index, attribute in enumerate(attributes):
        validate_attribute(attribute, attribute_type, index, parent_type, parent_index, parent_schedule)


def _valid_count(count: Any) -> bool:
    return isinstance(count, int) and not isinstance(count, bool) and count > 0


def validate_entity(entity: Any, index: int) -> None:
    prefix = f"The entities configuration information at array index position {index}"
    if not isinstance(entity, Mapping):
        _fail(f"{prefix} is not an object")
    if not entity.get("entity_name") and not _valid_count(entity.get("count")):
        _fail(f"{prefix} should include an entity_name or a positive count property")
    if not entity.get("entity_type"):
        _fail(f"{prefix} misses the entity_type property")
    if not _has_items(entity.get("staticAttributes")) and not _has_items(entity.get("active")):
        _fail(f"{prefix} misses static and/or active attributes configuration information")
    schedule = entity.get("schedule")
    validate_schedule(schedule, "entity", index)
    if not _has_items(entity.get("active")) and not schedule:
        _fail(f"{prefix} only includes static attributes and misses the schedule property")
    validate_attributes(entity.get("staticAttributes"), "static", "entity", index, schedule)
    validate_attributes(entity.get("active"), "active", "entity", index, schedule)


def validate_device(device: Any, index: int) -> None:
    prefix = f"The devices configuration information at array index position {index}"
    if not isinstance(device, Mapping):
        _fail(f"{prefix} is not an object")
    if not device.get("device_id"):
        if not _valid_count(device.get("count")):
            _fail(f"{prefix} should include a device_id or a positive count property")
        if not device.get("entity_type"):
            _fail(f"{prefix} should include an entity_type property to generate device identifiers")
    if not device.get("protocol"):
        _fail(f"{prefix} should include a protocol property")
    try:
        DeviceProtocol(device["protocol"])
    except ValueError:
        _fail(f"{prefix} includes a not supported protocol ('{device['protocol']}')")
    if not _has_items(device.get("attributes")):
        _fail(f"{prefix} misses attributes configuration information")
    schedule = device.get("schedule")
    validate_schedule(schedule, "device", index)
    validate_attributes(device.get("attributes"), "attribute", "device", index, schedule)


def _validate_elements(config: Mapping[str, Any], key: str, validator: Any) -> None:
    elements: Optional[Sequence[Any]] = config.get(key)
    if elements is None:
        return
    if not isinstance(elements, list):
        _fail(f"The {key} configuration information should be an array of {key} configuration information")
    for index, element in enumerate(elements):
        validator(element, index)


def validate_configuration(config: Any) -> None:
    """Raise ``SimulationConfigurationNotValid`` for the first problem found in ``config``."""
    if not isinstance(config, Mapping):
        _fail("The simulation configuration should be an object")
    if not _has_items(config.get("entities")) and not _has_items(config.get("devices")):
        _fail("No entities and/or devices configuration information available (at least one of them is mandatory)")
    validate_domain(config)
    validate_context_broker(config)
    validate_authentication(config)
    validate_iota(config)
    _validate_elements(config, "entities", validate_entity)
    _validate_elements(config, "devices", validate_device)


__all__ = ["validate_configuration", "validate_value"]
