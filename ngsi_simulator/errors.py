"""Exception taxonomy shared by every simulator component."""
from __future__ import annotations

from typing import Any, Optional


class SimulatorError(RuntimeError):
    """Base class for errors raised or reported by the simulator."""


class SimulationConfigurationNotValid(SimulatorError):
    """The simulation document is structurally or semantically invalid."""


class InvalidInterpolationSpec(SimulatorError):
    """An interpolator parameter spec could not be compiled."""


class ValueResolutionError(SimulatorError):
    """A dynamic value could not be computed for one firing."""


class TokenNotAvailable(SimulatorError):
    """The authorization token could not be obtained or renewed."""


class NGSIVersionNotSupported(SimulatorError):
    """The configured Context Broker NGSI version is not supported."""


class ProtocolNotSupported(SimulatorError):
    """The device protocol is not supported."""


class TransportError(SimulatorError):
    """Network failure or non-2xx answer from a remote endpoint."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


__all__ = [
    "SimulatorError",
    "SimulationConfigurationNotValid",
    "InvalidInterpolationSpec",
    "ValueResolutionError",
    "TokenNotAvailable",
    "NGSIVersionNotSupported",
    "ProtocolNotSupported",
    "TransportError",
]
