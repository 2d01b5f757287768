"""Shared fixtures: in-memory transports, an event recorder and document builders."""
from __future__ import annotations

import asyncio
import copy
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest

from ngsi_simulator.events import EventNotifier, SimulationEvent
from ngsi_simulator.settings import SimulatorSettings
from ngsi_simulator.simulator import DeviceSimulator
from ngsi_simulator.transport import HttpRequest, HttpResponse, MqttRequest

Responder = Callable[[HttpRequest], Union[HttpResponse, Exception]]


class FakeHttpTransport:
    """Records requests and answers them through ``responder`` (200 by default)."""

    def __init__(self, responder: Optional[Responder] = None) -> None:
        self.requests: List[HttpRequest] = []
        self.responder = responder or (lambda request: HttpResponse(200, {}))
        self.closed = False

    async def send(self, request: HttpRequest) -> HttpResponse:
        self.requests.append(request)
        await asyncio.sleep(0)
        answer = self.responder(request)
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def close(self) -> None:
        self.closed = True


class FakeMqttPublisher:
    def __init__(self) -> None:
        self.published: List[MqttRequest] = []
        self.closed = False
        self.on_error: Optional[Callable[[Exception], None]] = None

    async def publish(self, request: MqttRequest) -> int:
        self.published.append(request)
        await asyncio.sleep(0)
        return len(self.published)

    async def close(self) -> None:
        self.closed = True


class EventRecorder:
    def __init__(self, notifier: EventNotifier) -> None:
        self.events: List[Tuple[SimulationEvent, Optional[dict]]] = []
        notifier.on_any(self)

    def __call__(self, event: SimulationEvent, payload: Optional[dict]) -> None:
        self.events.append((event, payload))

    def names(self) -> List[str]:
        return [event.value for event, _ in self.events]

    def count(self, event: SimulationEvent) -> int:
        return sum(1 for name, _ in self.events if name is event)

    def payloads(self, event: SimulationEvent) -> List[Optional[dict]]:
        return [payload for name, payload in self.events if name is event]


BASE_DOCUMENT: Dict[str, Any] = {
    "domain": {"service": "theService", "subservice": "/theSubService"},
    "contextBroker": {"protocol": "https", "host": "localhost", "port": 1026, "ngsiVersion": "2.0"},
    "iota": {
        "ultralight": {
            "api_key": "1ifhm6o0kp4ew7fi377mpyc3c",
            "http": {"protocol": "http", "host": "localhost", "port": 8085},
            "mqtt": {"protocol": "mqtt", "host": "localhost", "port": 1883},
        },
        "json": {
            "api_key": "83ut64ib3gzs6km6izviz9ma7",
            "http": {"protocol": "http", "host": "localhost", "port": 8185},
            "mqtt": {"protocol": "mqtt", "host": "localhost", "port": 1883},
        },
    },
}


def make_document(
    entities: Optional[List[Dict[str, Any]]] = None,
    devices: Optional[List[Dict[str, Any]]] = None,
    **overrides: Any,
) -> Dict[str, Any]:
    document = copy.deepcopy(BASE_DOCUMENT)
    if entities is not None:
        document["entities"] = entities
    if devices is not None:
        document["devices"] = devices
    document.update(overrides)
    return document


def once_entity(name: str = "EntityName1", value: Any = "1") -> Dict[str, Any]:
    return {
        "entity_name": name,
        "entity_type": "Type1",
        "schedule": "once",
        "active": [{"name": "active1", "type": "number", "value": value}],
    }


@pytest.fixture
def document_factory() -> Callable[..., Dict[str, Any]]:
    return make_document


@pytest.fixture
def entity_factory() -> Callable[..., Dict[str, Any]]:
    return once_entity


@pytest.fixture
def settings() -> SimulatorSettings:
    return SimulatorSettings(once_delay=0.01)


@pytest.fixture
def http() -> FakeHttpTransport:
    return FakeHttpTransport()


@pytest.fixture
def mqtt() -> FakeMqttPublisher:
    return FakeMqttPublisher()


@pytest.fixture
def simulator(settings: SimulatorSettings, http: FakeHttpTransport, mqtt: FakeMqttPublisher) -> DeviceSimulator:
    def mqtt_factory(_settings: SimulatorSettings, on_error: Callable[[Exception], None]) -> FakeMqttPublisher:
        mqtt.on_error = on_error
        return mqtt

    return DeviceSimulator(settings, http_factory=lambda _settings: http, mqtt_factory=mqtt_factory)


@pytest.fixture
def recorder_factory() -> Callable[[EventNotifier], EventRecorder]:
    return EventRecorder


@pytest.fixture
def http_factory() -> Callable[..., FakeHttpTransport]:
    return FakeHttpTransport
