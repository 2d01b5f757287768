"""Command line entry point: run one simulation document until it ends or is interrupted."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import aiofiles

from .errors import SimulationConfigurationNotValid, TokenNotAvailable
from .events import EventNotifier, SimulationEvent
from .settings import SimulatorSettings, setup_logging
from .simulator import DeviceSimulator

LOGGER = logging.getLogger("ngsi_simulator.cli")

FATAL_ERRORS = (SimulationConfigurationNotValid, TokenNotAvailable)


class AsyncJsonLogger:
    """Appends one JSON document per line from a queue, off the event loop's hot path."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._queue: asyncio.Queue[Optional[Dict[str, Any]]] = asyncio.Queue()
        self._task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._task = asyncio.create_task(self._writer())

    async def _writer(self) -> None:
        async with aiofiles.open(self.path, "a", encoding="utf-8") as afp:
            while True:
                record = await self._queue.get()
                if record is None:
                    break
                await afp.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
                await afp.flush()

    def log(self, record: Dict[str, Any]) -> None:
        self._queue.put_nowait(record)

    async def close(self) -> None:
        await self._queue.put(None)
        if self._task is not None:
            await self._task


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseException):
        return {"type": value.__class__.__name__, "message": str(value)}
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def event_record(event: SimulationEvent, payload: Optional[dict]) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": event.value,
        "payload": _jsonable(payload) if payload is not None else None,
    }


class EventReporter:
    """Logs every event and remembers fatal errors for the exit code."""

    def __init__(self, writer: Optional[AsyncJsonLogger] = None) -> None:
        self.writer = writer
        self.fatal: List[BaseException] = []
        self.counts: Dict[str, int] = {}

    def attach(self, notifier: EventNotifier) -> None:
        notifier.on_any(self)

    def __call__(self, event: SimulationEvent, payload: Optional[dict]) -> None:
        self.counts[event.value] = self.counts.get(event.value, 0) + 1
        if event is SimulationEvent.ERROR:
            error = (payload or {}).get("error")
            LOGGER.warning("error: %s", error)
            if isinstance(error, FATAL_ERRORS):
                self.fatal.append(error)
        elif event in (SimulationEvent.UPDATE_REQUEST, SimulationEvent.UPDATE_RESPONSE):
            LOGGER.debug("%s: %s", event.value, payload)
        else:
            LOGGER.info("%s: %s", event.value, _jsonable(payload) if payload else "")
        if self.writer is not None:
            self.writer.log(event_record(event, payload))


def configure_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _set_event_from_signal(sig: int) -> None:
        if not stop_event.is_set():
            LOGGER.info("Signal %s received, stopping simulation", signal.Signals(sig).name)
            loop.call_soon_threadsafe(stop_event.set)

    for sig in (signal.SIGINT, getattr(signal, "SIGTERM", None)):
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, _set_event_from_signal, sig)
        except (NotImplementedError, RuntimeError):
            signal.signal(sig, lambda s, f: _set_event_from_signal(s))


def load_document(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


async def run_simulation(args: argparse.Namespace, settings: SimulatorSettings) -> int:
    document = load_document(Path(args.config))
    writer = AsyncJsonLogger(Path(args.events_file)) if args.events_file else None
    if writer is not None:
        await writer.start()
    reporter = EventReporter(writer)

    stop_event = asyncio.Event()
    configure_signal_handlers(stop_event)

    simulator = DeviceSimulator(settings)
    notifier = simulator.start(document)
    reporter.attach(notifier)

    ended = asyncio.ensure_future(notifier.wait_end())
    stopped = asyncio.ensure_future(stop_event.wait())
    try:
        await asyncio.wait({ended, stopped}, timeout=args.duration, return_when=asyncio.FIRST_COMPLETED)
        if not ended.done():
            simulator.stop()
        await simulator.wait()
    finally:
        for task in (ended, stopped):
            task.cancel()
        if writer is not None:
            await writer.close()

    LOGGER.info("Event summary: %s", json.dumps(reporter.counts, sort_keys=True))
    return 1 if reporter.fatal else 0


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Simulate IoT devices and entities updating an NGSI Context Broker or IoT Agents."
    )
    parser.add_argument("--config", required=True, help="Simulation document (JSON).")
    parser.add_argument("--events-file", default=None, help="Append every event as one JSON line to this file.")
    parser.add_argument("--log-level", default=None, help="Logging level (default SIM_LOG_LEVEL or INFO).")
    parser.add_argument("--log-file", default=None, help="Also write logs to this file.")
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop the simulation after this many seconds (default: run until it ends or is interrupted).",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    settings = SimulatorSettings.load()
    log_path = setup_logging(args.log_level or settings.log_level, args.log_file or settings.log_file)
    if log_path is not None:
        LOGGER.info("Writing logs to %s", log_path)
    try:
        return asyncio.run(run_simulation(args, settings))
    except FileNotFoundError as exc:
        LOGGER.error("Cannot read simulation document: %s", exc)
        return 2
    except json.JSONDecodeError as exc:
        LOGGER.error("Simulation document is not valid JSON: %s", exc)
        return 2
    except KeyboardInterrupt:
        LOGGER.info("Simulation interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
