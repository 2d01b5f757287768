"""Simulator of IoT device and entity fleets reporting to FIWARE NGSI backends."""
from __future__ import annotations

from .errors import (
    InvalidInterpolationSpec,
    NGSIVersionNotSupported,
    ProtocolNotSupported,
    SimulationConfigurationNotValid,
    SimulatorError,
    TokenNotAvailable,
    TransportError,
    ValueResolutionError,
)
from .events import EventNotifier, SimulationEvent
from .settings import SimulatorSettings, setup_logging
from .simulator import DeviceSimulator, SimulationRun
from .validation import validate_configuration

__version__ = "0.1.0"

__all__ = [
    "DeviceSimulator",
    "SimulationRun",
    "EventNotifier",
    "SimulationEvent",
    "SimulatorSettings",
    "setup_logging",
    "validate_configuration",
    "SimulatorError",
    "SimulationConfigurationNotValid",
    "InvalidInterpolationSpec",
    "ValueResolutionError",
    "TokenNotAvailable",
    "NGSIVersionNotSupported",
    "ProtocolNotSupported",
    "TransportError",
]
