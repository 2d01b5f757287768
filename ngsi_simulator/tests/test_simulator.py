"""
End-to-end tests for simulation runs over in-memory transports.

Each scenario starts a run inside ``asyncio.run``, records every emitted event
and checks the ordering guarantees a consumer relies on: one ``end`` per run,
nothing sent after ``stop`` and token acquisition before any update.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, List

import pytest

from ngsi_simulator.errors import (
    SimulationConfigurationNotValid,
    TokenNotAvailable,
    TransportError,
    ValueResolutionError,
)
from ngsi_simulator.events import SimulationEvent
from ngsi_simulator.resolver import ValueResolver
from ngsi_simulator.settings import SimulatorSettings
from ngsi_simulator.simulator import DeviceSimulator
from ngsi_simulator.transport import HttpResponse

AUTH = {
    "protocol": "https",
    "host": "localhost",
    "port": 5001,
    "user": "theUser",
    "password": "thePassword",
}


def token_response(request) -> HttpResponse:
    if request.url.endswith("/v3/auth/tokens"):
        return HttpResponse(
            201,
            {"token": {"expires_at": "2999-01-01T00:00:00.000Z"}},
            {"X-Subject-Token": "theToken"},
        )
    return HttpResponse(204)


def run_until_end(simulator, document, recorder_factory, timeout: float = 5.0):
    async def scenario():
        notifier = simulator.start(document)
        recorder = recorder_factory(notifier)
        await asyncio.wait_for(simulator.wait(), timeout=timeout)
        return recorder

    return asyncio.run(scenario())


# =============================================================================
# Once-only runs
# =============================================================================

class TestOnceRuns:
    """Runs whose jobs all fire a single time end on their own."""

    def test_single_entity(self, simulator, document_factory, entity_factory, recorder_factory, http) -> None:
        recorder = run_until_end(simulator, document_factory(entities=[entity_factory()]), recorder_factory)
        assert recorder.names() == ["update-scheduled", "update-request", "update-response", "end"]
        assert http.requests[0].body["entities"][0]["active1"]["value"] == "1"

    def test_end_follows_every_response(
        self, simulator, document_factory, entity_factory, recorder_factory, http, mqtt
    ) -> None:
        template = entity_factory()
        del template["entity_name"]
        template["count"] = 3
        devices = [
            {
                "device_id": "DeviceId1",
                "protocol": "UltraLight::MQTT",
                "schedule": "once",
                "attributes": [{"object_id": "t", "value": 20}],
            },
            {
                "device_id": "DeviceId2",
                "protocol": "JSON::HTTP",
                "schedule": "once",
                "attributes": [{"object_id": "t", "value": 20}],
            },
        ]
        recorder = run_until_end(simulator, document_factory(entities=[template], devices=devices), recorder_factory)
        assert recorder.count(SimulationEvent.UPDATE_SCHEDULED) == 5
        assert recorder.count(SimulationEvent.UPDATE_REQUEST) == 5
        assert recorder.count(SimulationEvent.UPDATE_RESPONSE) == 5
        assert recorder.count(SimulationEvent.END) == 1
        assert recorder.names()[-1] == "end"
        assert len(http.requests) == 4
        assert len(mqtt.published) == 1

    def test_scheduled_payloads(self, simulator, document_factory, entity_factory, recorder_factory) -> None:
        device = {
            "device_id": "DeviceId1",
            "protocol": "UltraLight::HTTP",
            "schedule": "once",
            "attributes": [{"object_id": "t", "value": 20}],
        }
        recorder = run_until_end(
            simulator, document_factory(entities=[entity_factory()], devices=[device]), recorder_factory
        )
        entity_job, device_job = recorder.payloads(SimulationEvent.UPDATE_SCHEDULED)
        assert entity_job["entity_name"] == "EntityName1"
        assert entity_job["schedule"] == "once"
        assert device_job["device_id"] == "DeviceId1"
        assert device_job["api_key"] == "1ifhm6o0kp4ew7fi377mpyc3c"

    def test_failed_updates_still_end(self, simulator, document_factory, entity_factory, recorder_factory, http) -> None:
        http.responder = lambda request: HttpResponse(500, {"error": "InternalError"})
        recorder = run_until_end(simulator, document_factory(entities=[entity_factory()]), recorder_factory)
        assert recorder.names() == ["update-scheduled", "update-request", "error", "end"]

    def test_transports_closed_after_run(self, simulator, document_factory, entity_factory, recorder_factory, http, mqtt) -> None:
        run_until_end(simulator, document_factory(entities=[entity_factory()]), recorder_factory)
        assert http.closed
        assert mqtt.closed

    def test_unexpected_resolution_failure_is_an_error(
        self, simulator, document_factory, entity_factory, recorder_factory, http, monkeypatch
    ) -> None:
        def broken(self, value, **kwargs):
            raise MemoryError()

        monkeypatch.setattr(ValueResolver, "resolve", broken)
        recorder = run_until_end(simulator, document_factory(entities=[entity_factory()]), recorder_factory)
        assert recorder.names() == ["update-scheduled", "error", "end"]
        assert isinstance(recorder.payloads(SimulationEvent.ERROR)[0]["error"], ValueResolutionError)
        assert http.requests == []


# =============================================================================
# Recurring runs and stop
# =============================================================================

class TestRecurringRuns:
    def test_stop_prevents_further_updates(self, simulator, document_factory, entity_factory, recorder_factory) -> None:
        entity = entity_factory()
        entity["schedule"] = "* * * * * *"

        async def scenario():
            notifier = simulator.start(document_factory(entities=[entity]))
            recorder = recorder_factory(notifier)
            await asyncio.sleep(2.5)
            assert simulator.running
            simulator.stop()
            await asyncio.wait_for(simulator.wait(), timeout=5)
            await asyncio.sleep(1.2)
            return recorder

        recorder = asyncio.run(scenario())
        names = recorder.names()
        assert names.count("update-request") >= 1
        stop_at = names.index("stop")
        assert names[stop_at + 1] == "end"
        assert "update-request" not in names[stop_at:]
        assert names.count("end") == 1
        assert not simulator.running

    def test_stop_without_run(self, simulator) -> None:
        simulator.stop()
        assert not simulator.running

    def test_stop_after_end_emits_nothing(self, simulator, document_factory, entity_factory, recorder_factory) -> None:
        async def scenario():
            recorder = recorder_factory(simulator.start(document_factory(entities=[entity_factory()])))
            await asyncio.wait_for(simulator.wait(), timeout=5)
            simulator.stop()
            await asyncio.sleep(0.05)
            return recorder

        recorder = asyncio.run(scenario())
        assert recorder.names() == ["update-scheduled", "update-request", "update-response", "end"]

    def test_mixed_schedules_never_end_on_their_own(
        self, simulator, document_factory, entity_factory, recorder_factory
    ) -> None:
        recurring = entity_factory("EntityName2")
        recurring["schedule"] = "* * * * * *"

        async def scenario():
            recorder = recorder_factory(simulator.start(document_factory(entities=[entity_factory(), recurring])))
            await asyncio.sleep(1.5)
            still_running = simulator.running
            simulator.stop()
            await asyncio.wait_for(simulator.wait(), timeout=5)
            return recorder, still_running

        recorder, still_running = asyncio.run(scenario())
        assert still_running
        names = recorder.names()
        assert names.count("update-response") >= 2
        assert names.index("stop") < names.index("end")
        assert names.count("end") == 1

    def test_failing_group_does_not_stop_siblings(
        self, simulator, document_factory, entity_factory, recorder_factory, http
    ) -> None:
        http.responder = lambda request: HttpResponse(404) if request.method == "GET" else HttpResponse(204)
        healthy = entity_factory("EntityGood")
        failing = entity_factory("EntityBad", value="attribute-function-interpolator(${{Room1}{temperature}} + 1)")
        for entity in (healthy, failing):
            entity["schedule"] = "* * * * * *"

        async def scenario():
            recorder = recorder_factory(simulator.start(document_factory(entities=[healthy, failing])))
            await asyncio.sleep(2.6)
            simulator.stop()
            await asyncio.wait_for(simulator.wait(), timeout=5)
            return recorder

        recorder = asyncio.run(scenario())
        errors = recorder.payloads(SimulationEvent.ERROR)
        assert len(errors) >= 2
        assert all(isinstance(payload["error"], ValueResolutionError) for payload in errors)
        assert recorder.count(SimulationEvent.UPDATE_RESPONSE) >= 2
        updates = [request for request in http.requests if request.method == "POST"]
        assert {request.body["entities"][0]["id"] for request in updates} == {"EntityGood"}

    def test_restart_stops_previous_run(self, simulator, document_factory, entity_factory, recorder_factory) -> None:
        recurring = entity_factory()
        recurring["schedule"] = "* * * * * *"

        async def scenario():
            first = recorder_factory(simulator.start(document_factory(entities=[recurring])))
            await asyncio.sleep(0.05)
            second = recorder_factory(simulator.start(document_factory(entities=[entity_factory()])))
            await asyncio.wait_for(simulator.wait(), timeout=5)
            return first, second

        first, second = asyncio.run(scenario())
        stop_at = first.names().index("stop")
        assert first.names()[stop_at + 1] == "end"
        assert second.names()[-1] == "end"
        assert second.count(SimulationEvent.UPDATE_RESPONSE) == 1


# =============================================================================
# Authentication
# =============================================================================

class TestAuthentication:
    def test_token_before_updates(self, simulator, document_factory, entity_factory, recorder_factory, http) -> None:
        http.responder = token_response
        document = document_factory(entities=[entity_factory()], authentication=dict(AUTH))
        recorder = run_until_end(simulator, document, recorder_factory)
        assert recorder.names() == [
            "token-request",
            "token-response",
            "token-request-scheduled",
            "update-scheduled",
            "update-request",
            "update-response",
            "end",
        ]
        token_request, update = http.requests
        assert token_request.url == "https://localhost:5001/v3/auth/tokens"
        assert token_request.body["auth"]["scope"]["project"] == {"domain": {"name": "theService"}, "name": "/theSubService"}
        assert update.headers["X-Auth-Token"] == "theToken"

    def test_token_request_event_hides_password(
        self, simulator, document_factory, entity_factory, recorder_factory, http
    ) -> None:
        http.responder = token_response
        document = document_factory(entities=[entity_factory()], authentication=dict(AUTH))
        recorder = run_until_end(simulator, document, recorder_factory)
        (payload,) = recorder.payloads(SimulationEvent.TOKEN_REQUEST)
        user = payload["request"]["body"]["auth"]["identity"]["password"]["user"]
        assert user["password"] == "***"
        assert http.requests[0].body["auth"]["identity"]["password"]["user"]["password"] == "thePassword"

    def test_token_unavailable_ends_run(self, simulator, document_factory, entity_factory, recorder_factory, http) -> None:
        http.responder = lambda request: HttpResponse(
            503, {"error": {"code": 503, "title": "Service Unavailable", "message": "Keystone down"}}
        )
        document = document_factory(entities=[entity_factory()], authentication=dict(AUTH))
        recorder = run_until_end(simulator, document, recorder_factory)
        assert recorder.names() == ["token-request", "error", "end"]
        (payload,) = recorder.payloads(SimulationEvent.ERROR)
        assert isinstance(payload["error"], TokenNotAvailable)
        assert "503" in str(payload["error"])
        assert recorder.count(SimulationEvent.UPDATE_REQUEST) == 0

    def test_renewal_failure_ends_live_run(
        self, simulator, document_factory, entity_factory, recorder_factory, http
    ) -> None:
        """The first token expires almost at once and its renewal is refused."""
        grants: List[int] = []

        def responder(request):
            if not request.url.endswith("/v3/auth/tokens"):
                return HttpResponse(204)
            if grants:
                return HttpResponse(503)
            grants.append(1)
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=1)
            return HttpResponse(
                201,
                {"token": {"expires_at": expires_at.strftime("%Y-%m-%dT%H:%M:%S.%fZ")}},
                {"X-Subject-Token": "theToken"},
            )

        http.responder = responder
        recurring = entity_factory()
        recurring["schedule"] = "* * * * * *"
        document = document_factory(entities=[recurring], authentication=dict(AUTH))

        async def scenario():
            notifier = simulator.start(document)
            recorder = recorder_factory(notifier)
            await asyncio.wait_for(simulator.wait(), timeout=5)
            await asyncio.sleep(1.2)
            return recorder

        recorder = asyncio.run(scenario())
        names = recorder.names()
        assert names.count("token-request") == 2
        assert "update-scheduled" in names
        error_at = names.index("error")
        assert names[error_at + 1] == "end"
        assert "update-request" not in names[error_at:]
        assert names.count("end") == 1
        assert isinstance(recorder.payloads(SimulationEvent.ERROR)[0]["error"], TokenNotAvailable)

    def test_retry_until_success(self, simulator, document_factory, entity_factory, recorder_factory, http) -> None:
        attempts: List[int] = []

        def flaky(request):
            if request.url.endswith("/v3/auth/tokens"):
                attempts.append(1)
                if len(attempts) < 3:
                    return HttpResponse(503)
            return token_response(request)

        http.responder = flaky
        auth = dict(AUTH, retry={"times": 3, "interval": 10})
        recorder = run_until_end(simulator, document_factory(entities=[entity_factory()], authentication=auth), recorder_factory)
        assert recorder.count(SimulationEvent.TOKEN_REQUEST) == 3
        assert recorder.count(SimulationEvent.ERROR) == 0
        assert recorder.count(SimulationEvent.UPDATE_RESPONSE) == 1


# =============================================================================
# Invalid documents
# =============================================================================

class TestInvalidDocuments:
    @pytest.mark.parametrize("mutate", [lambda doc: doc.pop("entities"), lambda doc: doc["entities"][0].pop("entity_type")])
    def test_error_then_end(
        self,
        simulator,
        document_factory,
        entity_factory,
        recorder_factory,
        http,
        mutate: Callable[[dict], object],
    ) -> None:
        document = document_factory(entities=[entity_factory()])
        mutate(document)
        recorder = run_until_end(simulator, document, recorder_factory)
        assert recorder.names() == ["error", "end"]
        assert isinstance(recorder.payloads(SimulationEvent.ERROR)[0]["error"], SimulationConfigurationNotValid)
        assert http.requests == []

    def test_start_needs_running_loop(self, simulator, document_factory, entity_factory) -> None:
        with pytest.raises(RuntimeError):
            simulator.start(document_factory(entities=[entity_factory()]))


# =============================================================================
# Shutdown with unfinished dispatches
# =============================================================================

class UnackedMqttPublisher:
    """Publications are never acknowledged; closing fails the pending ones."""

    def __init__(self) -> None:
        self.pending: List["asyncio.Future[int]"] = []
        self.closed = False

    async def publish(self, request) -> int:
        future = asyncio.get_running_loop().create_future()
        self.pending.append(future)
        return await future

    async def close(self) -> None:
        self.closed = True
        for future in self.pending:
            if not future.done():
                future.set_exception(TransportError("MQTT connection closed"))


class HungHttpTransport:
    def __init__(self) -> None:
        self.closed = False

    async def send(self, request) -> HttpResponse:
        await asyncio.Event().wait()
        return HttpResponse(204)

    async def close(self) -> None:
        self.closed = True


class TestShutdown:
    """``wait`` returns even when a dispatch never completes by itself."""

    MQTT_DEVICE = {
        "device_id": "DeviceId1",
        "protocol": "UltraLight::MQTT",
        "schedule": "once",
        "attributes": [{"object_id": "t", "value": 20}],
    }

    def stop_after_request(self, simulator, document, recorder_factory):
        async def scenario():
            recorder = recorder_factory(simulator.start(document))
            await asyncio.sleep(0.2)
            simulator.stop()
            await asyncio.wait_for(simulator.wait(), timeout=3)
            return recorder

        return asyncio.run(scenario())

    def test_unacknowledged_publication_reports_error(self, document_factory, recorder_factory, http) -> None:
        mqtt = UnackedMqttPublisher()
        simulator = DeviceSimulator(
            SimulatorSettings(once_delay=0.01, drain_timeout=0.2),
            http_factory=lambda _settings: http,
            mqtt_factory=lambda _settings, _on_error: mqtt,
        )
        recorder = self.stop_after_request(simulator, document_factory(devices=[dict(self.MQTT_DEVICE)]), recorder_factory)
        assert recorder.names() == ["update-scheduled", "update-request", "stop", "end", "error"]
        assert isinstance(recorder.payloads(SimulationEvent.ERROR)[0]["error"], TransportError)
        assert mqtt.closed

    def test_hung_request_is_abandoned(self, document_factory, entity_factory, recorder_factory, mqtt) -> None:
        http = HungHttpTransport()
        simulator = DeviceSimulator(
            SimulatorSettings(once_delay=0.01, drain_timeout=0.2),
            http_factory=lambda _settings: http,
            mqtt_factory=lambda _settings, _on_error: mqtt,
        )
        recorder = self.stop_after_request(simulator, document_factory(entities=[entity_factory()]), recorder_factory)
        assert recorder.names() == ["update-scheduled", "update-request", "stop", "end"]
        assert http.closed
        assert mqtt.closed
