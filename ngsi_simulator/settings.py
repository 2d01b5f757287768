"""Runtime settings resolved from the environment and logging setup."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

LOGGER = logging.getLogger("ngsi_simulator")

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class SimulatorSettings:
    """Knobs that are not part of the simulation document itself."""

    once_delay: float = 0.5
    token_renewal_margin: float = 60.0
    http_timeout: Optional[float] = None
    mqtt_qos: int = 1
    mqtt_keepalive: int = 60
    drain_timeout: float = 10.0
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @staticmethod
    def load() -> "SimulatorSettings":
        load_dotenv(override=True)
        http_timeout = float(os.getenv("SIM_HTTP_TIMEOUT_SEC", "0"))
        return SimulatorSettings(
            once_delay=max(int(os.getenv("SIM_ONCE_DELAY_MS", "500")), 0) / 1000.0,
            token_renewal_margin=float(os.getenv("SIM_TOKEN_RENEWAL_MARGIN_SEC", "60")),
            http_timeout=http_timeout if http_timeout > 0 else None,
            mqtt_qos=max(0, min(int(os.getenv("SIM_MQTT_QOS", "1")), 2)),
            mqtt_keepalive=int(os.getenv("SIM_MQTT_KEEPALIVE", "60")),
            drain_timeout=max(float(os.getenv("SIM_DRAIN_TIMEOUT_SEC", "10")), 0.0),
            log_level=os.getenv("SIM_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("SIM_LOG_FILE") or None,
        )


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> Optional[Path]:
    LOGGER.setLevel(getattr(logging, level.upper(), logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)
    for handler in list(LOGGER.handlers):
        LOGGER.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    LOGGER.addHandler(console_handler)

    if not log_file:
        return None
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    LOGGER.addHandler(file_handler)
    return log_path


__all__ = ["SimulatorSettings", "setup_logging", "LOGGER"]
