"""Typed view of the simulation document (entities, devices, endpoints)."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

ONCE = "once"


class ElementType(str, Enum):
    ENTITY = "entity"
    DEVICE = "device"


class DeviceProtocol(str, Enum):
    ULTRALIGHT_HTTP = "UltraLight::HTTP"
    ULTRALIGHT_MQTT = "UltraLight::MQTT"
    JSON_HTTP = "JSON::HTTP"
    JSON_MQTT = "JSON::MQTT"

    @property
    def agent(self) -> str:
        """Key of the IoT agent block (``iota.ultralight`` or ``iota.json``)."""
        return "ultralight" if self.value.startswith("UltraLight") else "json"

    @property
    def transport(self) -> str:
        return "mqtt" if self.value.endswith("MQTT") else "http"


SUPPORTED_NGSI_VERSIONS = ("1.0", "2.0")


@dataclass
class Endpoint:
    protocol: str
    host: str
    port: Union[int, str]
    user: Optional[str] = None
    password: Optional[str] = None

    @property
    def url(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Endpoint":
        return Endpoint(
            protocol=data.get("protocol", ""),
            host=data.get("host", ""),
            port=data.get("port", ""),
            user=data.get("user"),
            password=data.get("password"),
        )


@dataclass
class DomainConfig:
    service: Optional[str] = None
    subservice: Optional[str] = None


@dataclass
class ContextBrokerConfig(Endpoint):
    ngsi_version: str = "2.0"

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "ContextBrokerConfig":
        return ContextBrokerConfig(
            protocol=data.get("protocol", ""),
            host=data.get("host", ""),
            port=data.get("port", ""),
            ngsi_version=str(data.get("ngsiVersion", "")),
        )


@dataclass
class RetryPolicy:
    """Attempt count and pause (milliseconds) between token request attempts."""

    times: int = 5
    interval: float = 0.0
    backoff: float = 1.0

    @staticmethod
    def from_value(value: Any) -> "RetryPolicy":
        if isinstance(value, Mapping):
            return RetryPolicy(
                times=int(value.get("times", 5)),
                interval=float(value.get("interval", 0)),
                backoff=float(value.get("backoff", 1)),
            )
        return RetryPolicy(times=int(value))

    def delays(self) -> List[float]:
        """Seconds to wait before each attempt after the first one."""
        delays: List[float] = []
        pause = self.interval / 1000.0
        for _ in range(max(self.times, 1) - 1):
            delays.append(pause)
            pause *= self.backoff
        return delays


@dataclass
class AuthenticationConfig(Endpoint):
    retry: Optional[RetryPolicy] = None
    token: Optional[str] = None

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "AuthenticationConfig":
        retry = data.get("retry")
        return AuthenticationConfig(
            protocol=data.get("protocol", ""),
            host=data.get("host", ""),
            port=data.get("port", ""),
            user=data.get("user"),
            password=data.get("password"),
            retry=RetryPolicy.from_value(retry) if retry else None,
        )


@dataclass
class AgentConfig:
    api_key: Optional[str] = None
    http: Optional[Endpoint] = None
    mqtt: Optional[Endpoint] = None

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "AgentConfig":
        return AgentConfig(
            api_key=data.get("api_key"),
            http=Endpoint.from_dict(data["http"]) if data.get("http") else None,
            mqtt=Endpoint.from_dict(data["mqtt"]) if data.get("mqtt") else None,
        )


@dataclass
class IotaConfig:
    ultralight: Optional[AgentConfig] = None
    json: Optional[AgentConfig] = None

    def agent(self, protocol: DeviceProtocol) -> Optional[AgentConfig]:
        return self.ultralight if protocol.agent == "ultralight" else self.json


@dataclass
class Metadata:
    name: str
    type: str
    value: Any

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Metadata":
        return Metadata(name=data.get("name", ""), type=data.get("type", ""), value=data.get("value"))


@dataclass
class Attribute:
    value: Any
    name: Optional[str] = None
    type: Optional[str] = None
    object_id: Optional[str] = None
    metadata: List[Metadata] = field(default_factory=list)
    schedule: Optional[str] = None

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Attribute":
        return Attribute(
            value=data.get("value"),
            name=data.get("name"),
            type=data.get("type"),
            object_id=data.get("object_id"),
            metadata=[Metadata.from_dict(item) for item in data.get("metadata") or []],
            schedule=data.get("schedule"),
        )

    def describe(self) -> Dict[str, Any]:
        described: Dict[str, Any] = {"value": self.value}
        for key in ("name", "type", "object_id"):
            if getattr(self, key):
                described[key] = getattr(self, key)
        return described


@dataclass
class Entity:
    entity_type: str
    entity_name: Optional[str] = None
    count: Optional[int] = None
    schedule: Optional[str] = None
    active: List[Attribute] = field(default_factory=list)
    static_attributes: List[Attribute] = field(default_factory=list)

    element_type = ElementType.ENTITY

    @property
    def identifier(self) -> Optional[str]:
        return self.entity_name

    @property
    def scheduled_attributes(self) -> List[Attribute]:
        return self.active

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Entity":
        return Entity(
            entity_type=data.get("entity_type", ""),
            entity_name=data.get("entity_name"),
            count=data.get("count"),
            schedule=data.get("schedule"),
            active=[Attribute.from_dict(item) for item in data.get("active") or []],
            static_attributes=[Attribute.from_dict(item) for item in data.get("staticAttributes") or []],
        )


@dataclass
class Device:
    protocol: str
    device_id: Optional[str] = None
    entity_type: Optional[str] = None
    api_key: Optional[str] = None
    count: Optional[int] = None
    schedule: Optional[str] = None
    attributes: List[Attribute] = field(default_factory=list)

    element_type = ElementType.DEVICE

    @property
    def identifier(self) -> Optional[str]:
        return self.device_id

    @property
    def scheduled_attributes(self) -> List[Attribute]:
        return self.attributes

    @property
    def static_attributes(self) -> List[Attribute]:
        return []

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Device":
        return Device(
            protocol=data.get("protocol", ""),
            device_id=data.get("device_id"),
            entity_type=data.get("entity_type"),
            api_key=data.get("api_key"),
            count=data.get("count"),
            schedule=data.get("schedule"),
            attributes=[Attribute.from_dict(item) for item in data.get("attributes") or []],
        )


Element = Union[Entity, Device]


@dataclass
class SimulationConfig:
    """Root of the simulation document.

    ``authentication.token`` is the only field mutated while a run is live: the
    token manager writes it, the dispatcher reads it for ``X-Auth-Token``.
    """

    domain: Optional[DomainConfig] = None
    context_broker: Optional[ContextBrokerConfig] = None
    authentication: Optional[AuthenticationConfig] = None
    iota: Optional[IotaConfig] = None
    entities: List[Entity] = field(default_factory=list)
    devices: List[Device] = field(default_factory=list)

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "SimulationConfig":
        domain = data.get("domain")
        broker = data.get("contextBroker")
        auth = data.get("authentication")
        iota = data.get("iota")
        return SimulationConfig(
            domain=DomainConfig(domain.get("service"), domain.get("subservice")) if domain else None,
            context_broker=ContextBrokerConfig.from_dict(broker) if broker else None,
            authentication=AuthenticationConfig.from_dict(auth) if auth else None,
            iota=IotaConfig(
                ultralight=AgentConfig.from_dict(iota["ultralight"]) if iota.get("ultralight") else None,
                json=AgentConfig.from_dict(iota["json"]) if iota.get("json") else None,
            )
            if iota
            else None,
            entities=[Entity.from_dict(item) for item in data.get("entities") or []],
            devices=[Device.from_dict(item) for item in data.get("devices") or []],
        )

    def device_api_key(self, device: Device) -> Optional[str]:
        """Device-level key, falling back to the agent default for its protocol."""
        if device.api_key:
            return device.api_key
        try:
            protocol = DeviceProtocol(device.protocol)
        except ValueError:
            return None
        agent = self.iota.agent(protocol) if self.iota else None
        return agent.api_key if agent else None


__all__ = [
    "ONCE",
    "ElementType",
    "DeviceProtocol",
    "SUPPORTED_NGSI_VERSIONS",
    "Endpoint",
    "DomainConfig",
    "ContextBrokerConfig",
    "RetryPolicy",
    "AuthenticationConfig",
    "AgentConfig",
    "IotaConfig",
    "Metadata",
    "Attribute",
    "Entity",
    "Device",
    "Element",
    "SimulationConfig",
]
