"""Run-scoped simulation context and the ``DeviceSimulator`` start/stop facade."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from .auth import TokenManager
from .dispatcher import UpdateDispatcher
from .errors import SimulationConfigurationNotValid, SimulatorError
from .events import EventNotifier, SimulationEvent
from .model import SimulationConfig
from .registry import InterpolatorRegistry
from .resolver import ValueResolver
from .scheduler import JobScheduler
from .settings import SimulatorSettings
from .transport import AiohttpTransport, HttpTransport, MqttPublisher, PahoMqttPublisher
from .validation import validate_configuration

LOGGER = logging.getLogger("ngsi_simulator.simulator")

HttpFactory = Callable[[SimulatorSettings], HttpTransport]
MqttFactory = Callable[[SimulatorSettings, Callable[[Exception], None]], MqttPublisher]


def default_http_factory(settings: SimulatorSettings) -> HttpTransport:
    return AiohttpTransport(timeout=settings.http_timeout)


def default_mqtt_factory(settings: SimulatorSettings, on_error: Callable[[Exception], None]) -> MqttPublisher:
    return PahoMqttPublisher(qos=settings.mqtt_qos, keepalive=settings.mqtt_keepalive, on_error=on_error)


class SimulationRun:
    """Everything one simulation owns: config, cache, live jobs, token and transports."""

    def __init__(
        self,
        config: SimulationConfig,
        notifier: EventNotifier,
        settings: SimulatorSettings,
        http: HttpTransport,
        mqtt: MqttPublisher,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config
        self.notifier = notifier
        self.settings = settings
        self.http = http
        self.mqtt = mqtt
        self.finished = False
        self.registry = InterpolatorRegistry()
        self.resolver = ValueResolver(self.registry, clock)
        self.dispatcher = UpdateDispatcher(
            config, self.resolver, notifier, http, mqtt, clock=clock, is_stopped=lambda: self.finished
        )
        self.scheduler = JobScheduler(
            self.dispatcher.dispatch,
            notifier,
            once_delay=settings.once_delay,
            clock=clock,
            on_end=self.end,
        )
        self.tokens: Optional[TokenManager] = None
        if config.authentication is not None:
            self.tokens = TokenManager(
                config,
                http,
                notifier,
                renewal_margin=settings.token_renewal_margin,
                on_first_token=self.schedule_jobs,
                on_failure=self.fail,
            )
        self._shutdown: Optional["asyncio.Task[None]"] = None

    def begin(self) -> None:
        if self.finished:
            return
        LOGGER.info("Simulation started")
        if self.tokens is not None:
            self.tokens.start()
        else:
            self.schedule_jobs()

    def schedule_jobs(self) -> None:
        if not self.finished:
            self.scheduler.schedule_all(self.config)

    def report_transport_error(self, error: Exception) -> None:
        if not self.finished:
            self.dispatcher.report_error(error)

    def stop(self) -> None:
        if self.finished:
            return
        self._terminate()
        LOGGER.info("Simulation stopped")
        self.notifier.emit(SimulationEvent.STOP)
        self._emit_end()

    def end(self) -> None:
        if self.finished:
            return
        self._terminate()
        self._emit_end()

    def fail(self, error: SimulatorError) -> None:
        if self.finished:
            return
        self._terminate()
        self.notifier.emit(SimulationEvent.ERROR, {"error": error})
        self._emit_end()

    def _terminate(self) -> None:
        self.finished = True
        self.scheduler.cancel_all()
        if self.tokens is not None:
            self.tokens.cancel()

    def _emit_end(self) -> None:
        LOGGER.info("Simulation ended")
        self.notifier.emit(SimulationEvent.END)
        self._shutdown = asyncio.ensure_future(self._close())

    async def _close(self) -> None:
        timeout = self.settings.drain_timeout
        if not await self.scheduler.drain(timeout):
            LOGGER.warning(
                "%d update dispatches still in flight after %.1fs; closing transports",
                len(self.scheduler.in_flight),
                timeout,
            )
        await self.http.close()
        await self.mqtt.close()
        if not await self.scheduler.drain(timeout):
            LOGGER.warning("Cancelled %d update dispatches that never completed", self.scheduler.abandon())
        LOGGER.debug("Transports closed")

    async def closed(self) -> None:
        """Resolves once the run has ended and its transports are closed."""
        await self.notifier.wait_end()
        if self._shutdown is not None:
            await asyncio.wait({self._shutdown})


class DeviceSimulator:
    """Starts and stops simulation runs; each ``start`` gets a fresh run and notifier.

    Transports are built per run through the factories, so tests can inject
    in-memory fakes.
    """

    def __init__(
        self,
        settings: Optional[SimulatorSettings] = None,
        *,
        http_factory: HttpFactory = default_http_factory,
        mqtt_factory: MqttFactory = default_mqtt_factory,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.settings = settings or SimulatorSettings()
        self.http_factory = http_factory
        self.mqtt_factory = mqtt_factory
        self.clock = clock
        self.run: Optional[SimulationRun] = None
        self.notifier: Optional[EventNotifier] = None

    def start(self, config: Mapping[str, Any]) -> EventNotifier:
        """Begin a run on the running event loop and return its event channel.

        Events are emitted from the next loop iteration on, so handlers attached
        right after ``start`` returns see every event. A previous run is stopped
        first.
        """
        loop = asyncio.get_running_loop()
        if self.run is not None and not self.run.finished:
            LOGGER.info("Stopping the previous simulation before starting a new one")
            self.run.stop()
        notifier = EventNotifier()
        self.notifier = notifier
        try:
            validate_configuration(config)
            parsed = SimulationConfig.from_dict(config)
        except SimulationConfigurationNotValid as exc:
            LOGGER.error("Invalid simulation configuration: %s", exc)
            loop.call_soon(self._reject, notifier, exc)
            self.run = None
            return notifier

        http = self.http_factory(self.settings)
        run_ref: Optional[SimulationRun] = None

        def on_mqtt_error(error: Exception) -> None:
            if run_ref is not None:
                run_ref.report_transport_error(error)

        mqtt = self.mqtt_factory(self.settings, on_mqtt_error)
        run_ref = SimulationRun(parsed, notifier, self.settings, http, mqtt, clock=self.clock)
        self.run = run_ref
        loop.call_soon(run_ref.begin)
        return notifier

    @staticmethod
    def _reject(notifier: EventNotifier, error: SimulationConfigurationNotValid) -> None:
        notifier.emit(SimulationEvent.ERROR, {"error": error})
        notifier.emit(SimulationEvent.END)

    def stop(self) -> None:
        if self.run is None or self.run.finished:
            LOGGER.info("No simulation running")
            return
        self.run.stop()

    async def wait(self) -> None:
        """Wait for the current run to end and release its transports."""
        if self.run is not None:
            await self.run.closed()
        elif self.notifier is not None:
            await self.notifier.wait_end()

    @property
    def running(self) -> bool:
        return self.run is not None and not self.run.finished


__all__ = ["DeviceSimulator", "SimulationRun", "default_http_factory", "default_mqtt_factory"]
