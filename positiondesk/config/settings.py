"""Centralized environment-based settings for PositionDesk.

Reads configuration from environment variables with sensible defaults.
Session identifiers are deliberately absent: they live in
SessionContext and follow the login/logout lifecycle.

Usage:
    from positiondesk.config.settings import get_settings
    settings = get_settings()
"""

import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path


@dataclass(frozen=True)
class DeskSettings:
    """Immutable application settings loaded from environment."""

    # Logging
    log_level: str = "INFO"
    json_logs: bool = True

    # Desk backend
    api_url: str = "http://localhost:8080"
    request_timeout: float = 15.0

    # P&L
    brokerage_percent: Decimal = Decimal("0.01")

    # Sampling clock
    frame_interval_ms: int = 16
    order_list_throttle_ms: int = 200
    option_chain_throttle_ms: int = 50

    # Optional YAML override for view profiles
    profiles_path: Path | None = None

    @property
    def frame_interval(self) -> float:
        return self.frame_interval_ms / 1000.0


def get_settings() -> DeskSettings:
    """Load settings from environment variables.

    Environment variables (all optional):
        POSITIONDESK_LOG_LEVEL: Logging level (default: INFO)
        POSITIONDESK_JSON_LOGS: Render logs as JSON (default: true)
        POSITIONDESK_API_URL: Desk backend base URL (default: http://localhost:8080)
        POSITIONDESK_REQUEST_TIMEOUT: HTTP timeout in seconds (default: 15)
        POSITIONDESK_BROKERAGE_PERCENT: Brokerage percent per side (default: 0.01)
        POSITIONDESK_FRAME_INTERVAL_MS: Sampling clock period (default: 16)
        POSITIONDESK_ORDER_LIST_THROTTLE_MS: Order list throttle (default: 200)
        POSITIONDESK_OPTION_CHAIN_THROTTLE_MS: Option chain throttle (default: 50)
        POSITIONDESK_PROFILES_PATH: YAML file with view profiles
    """
    def _bool(key: str, default: bool = False) -> bool:
        val = os.environ.get(key, "").lower()
        if val in ("1", "true", "yes"):
            return True
        if val in ("0", "false", "no"):
            return False
        return default

    profiles_path = os.environ.get("POSITIONDESK_PROFILES_PATH", "")

    return DeskSettings(
        log_level=os.environ.get("POSITIONDESK_LOG_LEVEL", "INFO").upper(),
        json_logs=_bool("POSITIONDESK_JSON_LOGS", True),
        api_url=os.environ.get("POSITIONDESK_API_URL", "http://localhost:8080"),
        request_timeout=float(os.environ.get("POSITIONDESK_REQUEST_TIMEOUT", "15")),
        brokerage_percent=Decimal(os.environ.get("POSITIONDESK_BROKERAGE_PERCENT", "0.01")),
        frame_interval_ms=int(os.environ.get("POSITIONDESK_FRAME_INTERVAL_MS", "16")),
        order_list_throttle_ms=int(os.environ.get("POSITIONDESK_ORDER_LIST_THROTTLE_MS", "200")),
        option_chain_throttle_ms=int(os.environ.get("POSITIONDESK_OPTION_CHAIN_THROTTLE_MS", "50")),
        profiles_path=Path(profiles_path) if profiles_path else None,
    )
