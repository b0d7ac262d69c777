"""
Client configuration.

Values come from environment variables (``.env`` is honoured) with defaults
matching the server's heartbeat and the reconnect policy.
"""

import os
from dataclasses import dataclass
from dotenv import load_dotenv

from courtside.utils import constants


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


@dataclass
class ClientConfig:
    """Settings for one messaging session."""

    ws_url: str = "ws://localhost:8000/api/ws"
    api_url: str = "http://localhost:8000"
    request_timeout: float = constants.REQUEST_TIMEOUT_SECONDS
    connect_timeout: float = constants.CONNECT_TIMEOUT_SECONDS
    reconnect_attempts: int = constants.RECONNECT_ATTEMPTS
    reconnect_delay: float = constants.RECONNECT_DELAY_SECONDS
    reconnect_delay_max: float = constants.RECONNECT_DELAY_MAX_SECONDS
    reconnect_randomization: float = constants.RECONNECT_RANDOMIZATION
    heartbeat_interval: float = constants.HEARTBEAT_INTERVAL_SECONDS
    typing_quiet_period: float = constants.TYPING_QUIET_PERIOD
    typing_hard_cap: float = constants.TYPING_HARD_CAP
    typing_indicator_ttl: float = constants.TYPING_INDICATOR_TTL
    history_page_size: int = constants.HISTORY_PAGE_SIZE

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Build a config from ``COURTSIDE_*`` environment variables."""
        load_dotenv()
        return cls(
            ws_url=os.getenv("COURTSIDE_WS_URL", cls.ws_url),
            api_url=os.getenv("COURTSIDE_API_URL", cls.api_url),
            request_timeout=_env_float("COURTSIDE_REQUEST_TIMEOUT", cls.request_timeout),
            reconnect_attempts=_env_int("COURTSIDE_RECONNECT_ATTEMPTS", cls.reconnect_attempts),
            reconnect_delay=_env_float("COURTSIDE_RECONNECT_DELAY", cls.reconnect_delay),
            reconnect_delay_max=_env_float(
                "COURTSIDE_RECONNECT_DELAY_MAX", cls.reconnect_delay_max
            ),
            heartbeat_interval=_env_float(
                "COURTSIDE_HEARTBEAT_INTERVAL", cls.heartbeat_interval
            ),
        )
