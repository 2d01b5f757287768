"""HTTP (aiohttp) and MQTT (paho) transports used by the dispatcher and token manager."""
from __future__ import annotations

import asyncio
import json
import logging
import random
import string
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Set, Tuple

import aiohttp
import paho.mqtt.client as mqtt

from .errors import TransportError
from .model import Endpoint

LOGGER = logging.getLogger("ngsi_simulator.transport")

TLS_PROTOCOLS = {"mqtts", "ssl", "tls", "wss"}


@dataclass
class HttpRequest:
    method: str
    url: str
    headers: Dict[str, str]
    body: Any
    json: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "url": self.url,
            "headers": dict(self.headers),
            "json": self.json,
            "body": self.body,
        }


@dataclass
class HttpResponse:
    status: int
    body: Any = None
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


@dataclass
class MqttRequest:
    url: str
    topic: str
    payload: str
    endpoint: Optional[Endpoint] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "topic": self.topic, "payload": self.payload}


class HttpTransport(Protocol):
    async def send(self, request: HttpRequest) -> HttpResponse:
        ...

    async def close(self) -> None:
        ...


class MqttPublisher(Protocol):
    async def publish(self, request: MqttRequest) -> Any:
        ...

    async def close(self) -> None:
        ...


class AiohttpTransport:
    """Shared aiohttp session created on first use; certificates are not verified."""

    def __init__(self, timeout: Optional[float] = None) -> None:
        self._timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout) if self._timeout else None
            self._session = aiohttp.ClientSession(timeout=timeout) if timeout else aiohttp.ClientSession()
        return self._session

    async def send(self, request: HttpRequest) -> HttpResponse:
        session = self._ensure_session()
        kwargs: Dict[str, Any] = {"headers": request.headers, "ssl": False}
        if request.body is not None and request.json:
            kwargs["data"] = json.dumps(request.body)
        elif request.body is not None:
            kwargs["data"] = request.body if isinstance(request.body, (str, bytes)) else str(request.body)
        try:
            async with session.request(request.method, request.url, **kwargs) as resp:
                text = await resp.text()
                return HttpResponse(status=resp.status, body=_decode_body(text), headers=dict(resp.headers))
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"{exc.__class__.__name__}: {exc}") from exc

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


def _decode_body(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


def classify_failure(stage: str, rc: Any = None, exc: Optional[BaseException] = None) -> Tuple[str, str]:
    """Map low-level MQTT results into human-readable buckets."""

    if exc is not None:
        if isinstance(exc, TimeoutError):
            return ("network-timeout", f"Timeout: {exc}")
        if isinstance(exc, OSError):
            return ("network", f"{exc.__class__.__name__}: {exc}")
        return ("internal-error", f"{exc.__class__.__name__}: {exc}")

    if rc is None:
        return ("unknown", "Unknown failure cause")

    if stage in ("connect", "disconnect") and not isinstance(rc, int):
        detail = str(rc)
        lowered = detail.lower()
        if stage == "disconnect" and not getattr(rc, "is_failure", True):
            return ("client-request", "Client requested disconnect")
        if "authori" in lowered or "password" in lowered:
            return ("auth", detail)
        if "protocol" in lowered:
            return ("protocol", detail)
        if "identifier" in lowered:
            return ("client-id", detail)
        return ("broker", detail)

    rc_val = int(rc)
    error_map = {
        int(mqtt.MQTT_ERR_AGAIN): ("network", "Resource temporarily unavailable"),
        int(mqtt.MQTT_ERR_CONN_LOST): ("network", "Connection lost"),
        int(mqtt.MQTT_ERR_CONN_REFUSED): ("network", "Connection refused"),
        int(mqtt.MQTT_ERR_NO_CONN): ("network", "Client not connected"),
        int(mqtt.MQTT_ERR_PROTOCOL): ("protocol", "Protocol error"),
        int(mqtt.MQTT_ERR_NOMEM): ("client-memory", "Out of memory"),
        int(mqtt.MQTT_ERR_PAYLOAD_SIZE): ("payload", "Payload too large for broker"),
        int(mqtt.MQTT_ERR_QUEUE_SIZE): ("client-backpressure", "Local queue is full"),
        int(mqtt.MQTT_ERR_TLS): ("tls", "TLS handshake failed"),
        int(mqtt.MQTT_ERR_AUTH): ("auth", "Authentication error"),
        int(mqtt.MQTT_ERR_ACL_DENIED): ("auth", "ACL denied"),
        int(mqtt.MQTT_ERR_NOT_SUPPORTED): ("client", "Operation not supported"),
        int(mqtt.MQTT_ERR_KEEPALIVE): ("network", "Keepalive failure"),
        int(mqtt.MQTT_ERR_ERRNO): ("network", "System socket error"),
    }
    if rc_val in error_map:
        return error_map[rc_val]
    return ("broker", mqtt.error_string(rc_val))


def _settle(future: "asyncio.Future[Any]", error: Optional[BaseException] = None) -> None:
    if future.done():
        return
    if error is None:
        future.set_result(None)
    else:
        future.set_exception(error)


class MqttConnection:
    """One paho client bound to one broker, bridged to the asyncio loop.

    paho invokes callbacks on its network thread; results are handed back to the
    loop with ``call_soon_threadsafe``.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        loop: asyncio.AbstractEventLoop,
        *,
        qos: int,
        keepalive: int,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        self.endpoint = endpoint
        self.loop = loop
        self.qos = qos
        self.keepalive = keepalive
        self.on_error = on_error
        suffix = "".join(random.choices(string.ascii_letters + string.digits, k=6))
        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2, client_id=f"ngsi-sim-{suffix}", clean_session=True
        )
        if endpoint.user and endpoint.password:
            self.client.username_pw_set(endpoint.user, endpoint.password)
        if str(endpoint.protocol).lower() in TLS_PROTOCOLS:
            self.client.tls_set()
        self.client.on_connect = self.on_connect
        self.client.on_connect_fail = self.on_connect_fail
        self.client.on_disconnect = self.on_disconnect
        self.client.on_publish = self.on_publish
        self._connected: "asyncio.Future[Any]" = loop.create_future()
        self._pending: Dict[int, "asyncio.Future[Any]"] = {}
        self._published_early: Set[int] = set()
        self._lock = threading.RLock()

    async def connect(self) -> None:
        LOGGER.info("Connecting to MQTT broker %s", self.endpoint.url)
        self.client.connect_async(self.endpoint.host, int(self.endpoint.port), keepalive=self.keepalive)
        self.client.loop_start()
        await self._connected

    def _report(self, error: Exception) -> None:
        if self.on_error is not None:
            self.loop.call_soon_threadsafe(self.on_error, error)

    def on_connect(self, _client, _userdata, _flags, reason_code, _properties) -> None:
        if not reason_code.is_failure:
            LOGGER.info("MQTT connected to %s", self.endpoint.url)
            self.loop.call_soon_threadsafe(_settle, self._connected)
            return
        reason, detail = classify_failure("connect", rc=reason_code)
        error = TransportError(f"MQTT connection to {self.endpoint.url} refused ({reason}: {detail})")
        LOGGER.warning("%s", error)
        if self._connected.done():
            self._report(error)
        else:
            self.loop.call_soon_threadsafe(_settle, self._connected, error)

    def on_connect_fail(self, _client, _userdata) -> None:
        error = TransportError(f"MQTT connection to {self.endpoint.url} failed (network)")
        LOGGER.warning("%s", error)
        if self._connected.done():
            self._report(error)
        else:
            self.loop.call_soon_threadsafe(_settle, self._connected, error)

    def on_disconnect(self, _client, _userdata, _flags, reason_code, _properties) -> None:
        reason, detail = classify_failure("disconnect", rc=reason_code)
        if reason == "client-request":
            LOGGER.info("MQTT disconnected from %s", self.endpoint.url)
            return
        LOGGER.warning("MQTT disconnected from %s (%s: %s)", self.endpoint.url, reason, detail)
        self._report(TransportError(f"MQTT connection to {self.endpoint.url} lost ({reason}: {detail})"))

    def on_publish(self, _client, _userdata, mid, _reason_code, _properties) -> None:
        with self._lock:
            future = self._pending.pop(mid, None)
            if future is None:
                self._published_early.add(mid)
                return
        self.loop.call_soon_threadsafe(_settle, future)

    async def publish(self, topic: str, payload: str) -> int:
        future = self.loop.create_future()
        with self._lock:
            info = self.client.publish(topic, payload, qos=self.qos)
            if int(info.rc) != int(mqtt.MQTT_ERR_SUCCESS):
                reason, detail = classify_failure("publish", rc=info.rc)
                raise TransportError(f"MQTT publication to '{topic}' failed ({reason}: {detail})")
            if info.mid in self._published_early:
                self._published_early.discard(info.mid)
                _settle(future)
            else:
                self._pending[info.mid] = future
        await future
        return info.mid

    def close(self) -> None:
        self.client.disconnect()
        self.client.loop_stop()
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            _settle(future, TransportError(f"MQTT connection to {self.endpoint.url} closed"))


class PahoMqttPublisher:
    """Lazily connected MQTT clients, one per broker URL, shared for the whole run."""

    def __init__(
        self,
        *,
        qos: int = 1,
        keepalive: int = 60,
        on_error: Optional[Callable[[Exception], None]] = None,
        connection_factory: Callable[..., MqttConnection] = MqttConnection,
    ) -> None:
        self.qos = qos
        self.keepalive = keepalive
        self.on_error = on_error
        self.connection_factory = connection_factory
        self.closed = False
        self._connections: Dict[str, MqttConnection] = {}
        self._connecting: Dict[str, "asyncio.Task[None]"] = {}

    async def _connection(self, endpoint: Endpoint) -> MqttConnection:
        url = endpoint.url
        connection = self._connections.get(url)
        if connection is not None:
            return connection
        pending = self._connecting.get(url)
        if pending is None:
            candidate = self.connection_factory(
                endpoint,
                asyncio.get_running_loop(),
                qos=self.qos,
                keepalive=self.keepalive,
                on_error=self.on_error,
            )
            pending = asyncio.ensure_future(candidate.connect())
            self._connecting[url] = pending
            try:
                await asyncio.shield(pending)
            except BaseException:
                candidate.close()
                raise
            finally:
                self._connecting.pop(url, None)
            self._connections[url] = candidate
            return candidate
        await asyncio.shield(pending)
        return self._connections[url]

    async def publish(self, request: MqttRequest) -> int:
        if request.endpoint is None:
            raise TransportError(f"No MQTT broker configured for topic '{request.topic}'")
        try:
            connection = await self._connection(request.endpoint)
        except asyncio.CancelledError:
            if not self.closed:
                raise
            raise TransportError(f"MQTT client for {request.endpoint.url} closed before connecting") from None
        return await connection.publish(request.topic, request.payload)

    async def close(self) -> None:
        self.closed = True
        for task in list(self._connecting.values()):
            task.cancel()
        for connection in list(self._connections.values()):
            connection.close()
        self._connections.clear()


__all__ = [
    "HttpRequest",
    "HttpResponse",
    "MqttRequest",
    "HttpTransport",
    "MqttPublisher",
    "AiohttpTransport",
    "PahoMqttPublisher",
    "MqttConnection",
    "classify_failure",
]
