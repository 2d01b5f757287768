"""Observable channel through which a simulation run reports what happens."""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, DefaultDict, List, Optional, Union

LOGGER = logging.getLogger("ngsi_simulator.events")


class SimulationEvent(str, Enum):
    TOKEN_REQUEST = "token-request"
    TOKEN_RESPONSE = "token-response"
    TOKEN_REQUEST_SCHEDULED = "token-request-scheduled"
    UPDATE_SCHEDULED = "update-scheduled"
    UPDATE_REQUEST = "update-request"
    UPDATE_RESPONSE = "update-response"
    ERROR = "error"
    STOP = "stop"
    END = "end"


Handler = Callable[[Optional[dict]], Any]
EventName = Union[SimulationEvent, str]


class EventNotifier:
    """Synchronous fan-out of named events to registered handlers.

    A handler that raises is logged and does not prevent the remaining handlers
    from running.
    """

    def __init__(self) -> None:
        self._handlers: DefaultDict[SimulationEvent, List[Handler]] = defaultdict(list)
        self._any: List[Callable[[SimulationEvent, Optional[dict]], Any]] = []
        self._ended: Optional[asyncio.Event] = None
        self.ended = False

    def on(self, event: EventName, handler: Handler) -> "EventNotifier":
        self._handlers[SimulationEvent(event)].append(handler)
        return self

    def off(self, event: EventName, handler: Handler) -> None:
        handlers = self._handlers.get(SimulationEvent(event), [])
        if handler in handlers:
            handlers.remove(handler)

    def on_any(self, handler: Callable[[SimulationEvent, Optional[dict]], Any]) -> "EventNotifier":
        self._any.append(handler)
        return self

    def emit(self, event: EventName, payload: Optional[dict] = None) -> None:
        event = SimulationEvent(event)
        LOGGER.debug("event %s", event.value)
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(payload)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Handler for '%s' failed", event.value)
        for handler in list(self._any):
            try:
                handler(event, payload)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Catch-all handler failed on '%s'", event.value)
        if event is SimulationEvent.END:
            self.ended = True
            if self._ended is not None:
                self._ended.set()

    async def wait_end(self) -> None:
        if self.ended:
            return
        if self._ended is None:
            self._ended = asyncio.Event()
        await self._ended.wait()


__all__ = ["SimulationEvent", "EventNotifier"]
