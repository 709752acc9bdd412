"""Bullish or Bust — application configuration.

Loads .env variables into a typed config object.
Validates required variables on startup.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv


_REQUIRED_VARS = [
    "ALPACA_KEY_ID",
    "ALPACA_SECRET_KEY",
]

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    alpaca_key_id: str
    alpaca_secret_key: str
    alpaca_environment: str  # "paper" or "live"
    cryptocompare_api_key: str
    strategy_preset: str
    presets_path: str
    scan_interval_seconds: int
    exit_interval_seconds: int
    request_timeout_seconds: float
    max_retries: int
    retry_base_delay: float
    fill_poll_attempts: int
    fill_poll_interval_seconds: float
    max_concurrent_requests: int
    event_log_size: int
    synthetic_spread_bps: float
    auto_trade: bool
    log_level: str
    api_port: int

    @property
    def trading_base_url(self) -> str:
        """Return the Alpaca trading API base URL based on environment."""
        if self.alpaca_environment == "live":
            return "https://api.alpaca.markets"
        return "https://paper-api.alpaca.markets"

    @property
    def data_base_url(self) -> str:
        """Alpaca market-data host (same for paper and live)."""
        return "https://data.alpaca.markets"


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    return Config(
        alpaca_key_id=os.environ["ALPACA_KEY_ID"],
        alpaca_secret_key=os.environ["ALPACA_SECRET_KEY"],
        alpaca_environment=os.environ.get("ALPACA_ENVIRONMENT", "paper"),
        cryptocompare_api_key=os.environ.get("CRYPTOCOMPARE_API_KEY", ""),
        strategy_preset=os.environ.get("STRATEGY_PRESET", "balanced"),
        presets_path=os.environ.get("PRESETS_PATH", ""),
        scan_interval_seconds=int(os.environ.get("SCAN_INTERVAL_SECONDS", "60")),
        exit_interval_seconds=int(os.environ.get("EXIT_INTERVAL_SECONDS", "10")),
        request_timeout_seconds=float(os.environ.get("REQUEST_TIMEOUT_SECONDS", "10.0")),
        max_retries=int(os.environ.get("MAX_RETRIES", "3")),
        retry_base_delay=float(os.environ.get("RETRY_BASE_DELAY", "1.0")),
        fill_poll_attempts=int(os.environ.get("FILL_POLL_ATTEMPTS", "20")),
        fill_poll_interval_seconds=float(os.environ.get("FILL_POLL_INTERVAL_SECONDS", "3.0")),
        max_concurrent_requests=int(os.environ.get("MAX_CONCURRENT_REQUESTS", "6")),
        event_log_size=int(os.environ.get("EVENT_LOG_SIZE", "500")),
        synthetic_spread_bps=float(os.environ.get("SYNTHETIC_SPREAD_BPS", "10.0")),
        auto_trade=os.environ.get("AUTO_TRADE", "false").strip().lower() in _TRUTHY,
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        api_port=int(os.environ.get("API_PORT", "8080")),
    )
