"""Builds and sends one update request per schedule-group firing."""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .errors import (
    NGSIVersionNotSupported,
    ProtocolNotSupported,
    SimulatorError,
    TransportError,
    ValueResolutionError,
)
from .events import EventNotifier, SimulationEvent
from .model import Attribute, Device, DeviceProtocol, Element, ElementType, Endpoint, Entity, SimulationConfig
from .resolver import BrokerValues, ValueResolver
from .transport import HttpRequest, HttpResponse, HttpTransport, MqttPublisher, MqttRequest

LOGGER = logging.getLogger("ngsi_simulator.dispatcher")

UpdateRequest = Union[HttpRequest, MqttRequest]


def ultralight_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def ultralight_payload(pairs: Sequence[Tuple[str, Any]]) -> str:
    """``object_id|value|object_id|value`` without trailing separator."""
    return "|".join(f"{object_id}|{ultralight_value(value)}" for object_id, value in pairs)


def mqtt_topic(api_key: Optional[str], device_id: Optional[str]) -> str:
    return f"/{api_key}/{device_id}/attrs"


class UpdateDispatcher:
    def __init__(
        self,
        config: SimulationConfig,
        resolver: ValueResolver,
        notifier: EventNotifier,
        http: HttpTransport,
        mqtt: MqttPublisher,
        *,
        clock: Callable[[], datetime] = datetime.now,
        is_stopped: Callable[[], bool] = lambda: False,
    ) -> None:
        self.config = config
        self.resolver = resolver
        self.notifier = notifier
        self.http = http
        self.mqtt = mqtt
        self.clock = clock
        self.is_stopped = is_stopped

    # -- headers ------------------------------------------------------------

    def headers(self, content_type: str = "application/json") -> Dict[str, str]:
        headers = {"Content-Type": content_type, "Accept": "application/json"}
        domain = self.config.domain
        if domain is not None and domain.service:
            headers["Fiware-Service"] = domain.service
        if domain is not None and domain.subservice:
            headers["Fiware-ServicePath"] = domain.subservice
        auth = self.config.authentication
        if auth is not None and auth.token:
            headers["X-Auth-Token"] = auth.token
        return headers

    # -- request building ---------------------------------------------------

    def build_request(
        self,
        element_type: ElementType,
        element: Element,
        attributes: Sequence[Attribute],
        now: Optional[datetime] = None,
        broker_values: Optional[BrokerValues] = None,
    ) -> UpdateRequest:
        now = now or self.clock()

        def resolve(value: Any) -> Any:
            return self.resolver.resolve(value, now=now, broker_values=broker_values)

        if element_type is ElementType.ENTITY and isinstance(element, Entity):
            return self._entity_request(element, attributes, resolve)
        if not isinstance(element, Device):
            raise ProtocolNotSupported(f"'{element.identifier}' is not a device")
        return self._device_request(element, attributes, resolve)

    def _entity_request(
        self, entity: Entity, attributes: Sequence[Attribute], resolve: Callable[[Any], Any]
    ) -> HttpRequest:
        broker = self.config.context_broker
        version = broker.ngsi_version if broker is not None else None
        combined = list(entity.static_attributes) + list(attributes)
        if broker is not None and version == "1.0":
            context_element = {
                "id": entity.entity_name,
                "type": entity.entity_type,
                "isPattern": False,
                "attributes": [
                    {
                        "name": attribute.name,
                        "type": attribute.type,
                        "value": resolve(attribute.value),
                        "metadatas": [
                            {"name": meta.name, "type": meta.type, "value": resolve(meta.value)}
                            for meta in attribute.metadata
                        ],
                    }
                    for attribute in combined
                ],
            }
            body: Dict[str, Any] = {"contextElements": [context_element], "updateAction": "APPEND"}
            return HttpRequest("POST", f"{broker.url}/v1/updateContext", self.headers(), body)
        if broker is not None and version == "2.0":
            entity_body: Dict[str, Any] = {"id": entity.entity_name, "type": entity.entity_type}
            for attribute in combined:
                rendered: Dict[str, Any] = {"type": attribute.type, "value": resolve(attribute.value)}
                if attribute.metadata:
                    rendered["metadata"] = {
                        meta.name: {"type": meta.type, "value": resolve(meta.value)} for meta in attribute.metadata
                    }
                entity_body[str(attribute.name)] = rendered
            body = {"actionType": "APPEND", "entities": [entity_body]}
            return HttpRequest("POST", f"{broker.url}/v2/op/update", self.headers(), body)
        raise NGSIVersionNotSupported(f"The provided NGSI version ('{version}') is not supported")

    def _device_request(
        self, device: Device, attributes: Sequence[Attribute], resolve: Callable[[Any], Any]
    ) -> UpdateRequest:
        try:
            protocol = DeviceProtocol(device.protocol)
        except ValueError:
            raise ProtocolNotSupported(f"The provided protocol ('{device.protocol}') is not supported") from None
        agent = self.config.iota.agent(protocol) if self.config.iota else None
        api_key = self.config.device_api_key(device)
        pairs = [(str(attribute.object_id), resolve(attribute.value)) for attribute in attributes]

        endpoint: Optional[Endpoint] = None
        if agent is not None:
            endpoint = agent.mqtt if protocol.transport == "mqtt" else agent.http
        if endpoint is None:
            raise ProtocolNotSupported(
                f"No {protocol.transport.upper()} endpoint configured for protocol '{protocol.value}'"
            )

        if protocol.transport == "mqtt":
            if protocol is DeviceProtocol.ULTRALIGHT_MQTT:
                payload = ultralight_payload(pairs)
            else:
                payload = json.dumps(dict(pairs))
            return MqttRequest(endpoint.url, mqtt_topic(api_key, device.device_id), payload, endpoint=endpoint)

        query = f"?i={device.device_id}&k={api_key}"
        if protocol is DeviceProtocol.ULTRALIGHT_HTTP:
            return HttpRequest(
                "POST",
                f"{endpoint.url}/iot/d{query}",
                self.headers("text/plain"),
                ultralight_payload(pairs),
                json=False,
            )
        return HttpRequest("POST", f"{endpoint.url}/iot/json{query}", self.headers(), dict(pairs))

    # -- broker lookups -----------------------------------------------------

    async def fetch_references(self, references: Dict[str, List[str]]) -> Dict[Tuple[str, str], Any]:
        """Current broker values for every ``entity -> [attribute]`` reference."""
        broker = self.config.context_broker
        if broker is None:
            raise ValueResolutionError("No Context Broker configured to resolve attribute references")
        values: Dict[Tuple[str, str], Any] = {}
        for entity_id, names in references.items():
            if broker.ngsi_version == "1.0":
                request = HttpRequest(
                    "POST",
                    f"{broker.url}/v1/queryContext",
                    self.headers(),
                    {"entities": [{"id": entity_id, "isPattern": "false"}], "attributes": list(names)},
                )
            else:
                request = HttpRequest(
                    "GET",
                    f"{broker.url}/v2/entities/{entity_id}/attrs?attrs={','.join(names)}",
                    self.headers(),
                    None,
                    json=False,
                )
            try:
                response = await self.http.send(request)
            except TransportError as exc:
                raise ValueResolutionError(
                    f"Error when getting attributes {names} of entity '{entity_id}' from the Context Broker: {exc}"
                ) from exc
            values.update(self._extract_values(entity_id, names, response, broker.ngsi_version))
        return values

    @staticmethod
    def _extract_values(
        entity_id: str, names: Sequence[str], response: HttpResponse, version: str
    ) -> Dict[Tuple[str, str], Any]:
        body = response.body
        failure = ValueResolutionError(
            f"Error when getting attributes {list(names)} of entity '{entity_id}' from the Context Broker "
            f"(status {response.status})"
        )
        if response.status != 200 or not isinstance(body, dict):
            raise failure
        found: Dict[Tuple[str, str], Any] = {}
        if version == "1.0":
            error_code = body.get("errorCode")
            if error_code and str(error_code.get("code")) != "200":
                raise failure
            try:
                attributes = body["contextResponses"][0]["contextElement"]["attributes"]
            except (KeyError, IndexError, TypeError):
                raise failure from None
            for attribute in attributes:
                if attribute.get("name") in names:
                    found[(entity_id, attribute["name"])] = attribute.get("value")
        else:
            for name in names:
                item = body.get(name)
                if isinstance(item, dict):
                    found[(entity_id, name)] = item.get("value")
        return found

    # -- firing -------------------------------------------------------------

    async def dispatch(self, element_type: ElementType, element: Element, attributes: Sequence[Attribute]) -> None:
        """Resolve, build, send and report one update. Never raises for per-firing failures."""
        request: Optional[UpdateRequest] = None
        try:
            broker_values: Optional[BrokerValues] = None
            references = self.resolver.references(list(element.static_attributes) + list(attributes))
            if references:
                broker_values = await self.fetch_references(references)
            request = self.build_request(element_type, element, attributes, broker_values=broker_values)
        except SimulatorError as exc:
            self.report_error(exc)
            return
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Unexpected failure resolving the update of %s", element.identifier)
            error = ValueResolutionError(
                f"Error when resolving the attributes of '{element.identifier}': {exc.__class__.__name__}: {exc}"
            )
            error.__cause__ = exc
            self.report_error(error)
            return

        if self.is_stopped():
            LOGGER.debug("Run stopped before sending the update of %s; dropped", element.identifier)
            return
        self.notifier.emit(SimulationEvent.UPDATE_REQUEST, {"request": request.to_dict()})
        LOGGER.debug("Update request for %s: %s", element.identifier, request.to_dict())
        try:
            if isinstance(request, MqttRequest):
                mid = await self.mqtt.publish(request)
                response: Dict[str, Any] = {"mid": mid}
            else:
                answer = await self.http.send(request)
                if not answer.ok:
                    raise TransportError(
                        f"Update of '{element.identifier}' answered with status {answer.status}",
                        status_code=answer.status,
                        body=answer.body,
                    )
                response = {"status_code": answer.status, "body": answer.body}
        except SimulatorError as exc:
            self.report_error(exc, request)
            return
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Unexpected failure sending update for %s", element.identifier)
            self.report_error(exc, request)
            return
        self.notifier.emit(SimulationEvent.UPDATE_RESPONSE, {"request": request.to_dict(), "response": response})

    def report_error(self, error: BaseException, request: Optional[UpdateRequest] = None) -> None:
        payload: Dict[str, Any] = {"error": error}
        if request is not None:
            payload["request"] = request.to_dict()
        if isinstance(error, TransportError) and error.status_code is not None:
            payload["response"] = {"status_code": error.status_code, "body": error.body}
        LOGGER.warning("%s: %s", error.__class__.__name__, error)
        self.notifier.emit(SimulationEvent.ERROR, payload)


__all__ = ["UpdateDispatcher", "UpdateRequest", "ultralight_payload", "ultralight_value", "mqtt_topic"]
