"""CryptoCompare REST async client — spot prices and minute bars.

Malformed or incomplete payloads never raise: they yield ``None`` / an empty
bar list so callers treat the instrument as "signal unavailable".
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from bullbust.broker.models import Bar
from bullbust.broker.retry import RetryingClient
from bullbust.config import Config

logger = logging.getLogger("bullbust.market")

_BASE_URL = "https://min-api.cryptocompare.com"
_MAX_LIMIT = 2000


def session_start(now: datetime) -> datetime:
    """UTC midnight of *now*'s trading day."""
    now = now.astimezone(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def parse_bars(payload: dict) -> list[Bar]:
    """Extract bars from a ``histominute`` response, oldest first.

    Rows with missing or non-numeric OHLC fields are dropped.
    """
    if not isinstance(payload, dict) or payload.get("Response") == "Error":
        return []
    data = payload.get("Data")
    rows = data.get("Data") if isinstance(data, dict) else None
    if not isinstance(rows, list):
        return []

    bars: list[Bar] = []
    for row in rows:
        try:
            bar = Bar(
                time=int(row["time"]),
                open=float(row["open"]),
                high=float(row["high"]),
                low=float(row["low"]),
                close=float(row["close"]),
                volume=float(row.get("volumefrom") or 0.0),
            )
        except (KeyError, TypeError, ValueError):
            continue
        # CryptoCompare pads illiquid minutes with all-zero rows
        if bar.close <= 0:
            continue
        bars.append(bar)
    bars.sort(key=lambda b: b.time)
    return bars


class CryptoCompareClient(RetryingClient):
    """Async client for the CryptoCompare min-api."""

    _label = "CryptoCompare"

    def __init__(self, config: Config, base_url: str = _BASE_URL) -> None:
        headers = {}
        if config.cryptocompare_api_key:
            headers["authorization"] = f"Apikey {config.cryptocompare_api_key}"
        super().__init__(
            headers=headers,
            timeout=config.request_timeout_seconds,
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay,
        )
        self._base_url = base_url

    async def get_price(self, data_symbol: str) -> Optional[float]:
        """Spot USD price for *data_symbol* (``"BTC"``), or ``None``."""
        url = f"{self._base_url}/data/price"
        params = {"fsym": data_symbol, "tsyms": "USD"}

        resp = await self._request_with_retry("get", url, params=params)

        payload = resp.json()
        price = payload.get("USD") if isinstance(payload, dict) else None
        if isinstance(price, (int, float)) and price > 0:
            return float(price)
        return None

    async def fetch_bars(
        self,
        data_symbol: str,
        minutes: int = 15,
        count: int = 60,
        to_ts: Optional[int] = None,
    ) -> list[Bar]:
        """Fetch *count* bars of *minutes* granularity, oldest first.

        Args:
            data_symbol: e.g. ``"ETH"``
            minutes: bar width in minutes (1 = raw minute bars)
            count: number of bars requested (max 2000)
            to_ts: optional epoch second of the last bar
        """
        url = f"{self._base_url}/data/v2/histominute"
        params = {
            "fsym": data_symbol,
            "tsym": "USD",
            "limit": max(1, min(count, _MAX_LIMIT)),
            "aggregate": max(1, minutes),
        }
        if to_ts is not None:
            params["toTs"] = to_ts

        resp = await self._request_with_retry("get", url, params=params)

        return parse_bars(resp.json())

    async def fetch_session_bars(self, data_symbol: str, now: datetime) -> list[Bar]:
        """One-minute bars from UTC midnight up to *now*."""
        start = session_start(now)
        elapsed = int((now - start).total_seconds() // 60) + 1
        bars = await self.fetch_bars(
            data_symbol,
            minutes=1,
            count=elapsed,
            to_ts=int(now.timestamp()),
        )
        anchor = int(start.timestamp())
        return [b for b in bars if b.time >= anchor]
