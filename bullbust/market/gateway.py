"""Market Data Gateway — one place the engine asks for prices, bars and quotes.

Bars and spot price come from CryptoCompare; bid/ask from the brokerage's
quote endpoint, falling back to a synthetic quote around spot when no real
quote is available.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import httpx

from bullbust.broker.models import Bar, Quote
from bullbust.models.instrument import Instrument
from bullbust.models.preset import StrategyPreset

logger = logging.getLogger("bullbust.market")


@dataclass(frozen=True)
class MarketContext:
    """Everything fetched for one instrument in one cycle."""

    price: Optional[float]
    bars: list[Bar] = field(default_factory=list)
    short_bars: list[Bar] = field(default_factory=list)
    session_bars: list[Bar] = field(default_factory=list)
    quote: Optional[Quote] = None


def synthetic_quote(price: float, spread_bps: float) -> Quote:
    """Bid/ask straddling *price* with an assumed spread."""
    half = price * spread_bps / 20_000.0
    return Quote(bid=price - half, ask=price + half, synthetic=True)


class MarketDataGateway:
    """Facade over the data provider and the brokerage quote feed.

    Args:
        data_client: A ``CryptoCompareClient`` (or duck-type).
        quote_client: An object with ``get_latest_quote(pair)``, usually the
            ``AlpacaClient``; ``None`` means quotes are always synthetic.
        synthetic_spread_bps: Assumed spread for synthetic quotes.
    """

    def __init__(
        self,
        data_client,
        quote_client=None,
        synthetic_spread_bps: float = 10.0,
    ) -> None:
        self._data = data_client
        self._quotes = quote_client
        self._synthetic_spread_bps = synthetic_spread_bps

    async def get_price(self, instrument: Instrument) -> Optional[float]:
        return await self._data.get_price(instrument.data_symbol)

    async def fetch_bars(self, instrument: Instrument, minutes: int, count: int) -> list[Bar]:
        return await self._data.fetch_bars(instrument.data_symbol, minutes=minutes, count=count)

    async def fetch_session_bars(self, instrument: Instrument, now: datetime) -> list[Bar]:
        return await self._data.fetch_session_bars(instrument.data_symbol, now)

    async def get_quote(self, instrument: Instrument, spot: Optional[float]) -> Optional[Quote]:
        """Real quote if the brokerage has one, else synthetic around *spot*."""
        if self._quotes is not None:
            try:
                quote = await self._quotes.get_latest_quote(instrument.pair)
                if quote is not None:
                    return quote
            except httpx.HTTPError as exc:
                logger.debug("Quote unavailable for %s: %s", instrument.pair, exc)
        if spot is None:
            return None
        return synthetic_quote(spot, self._synthetic_spread_bps)

    async def fetch_context(
        self,
        instrument: Instrument,
        preset: StrategyPreset,
        now: datetime,
        include_session: bool = True,
    ) -> MarketContext:
        """Fetch price, strategy bars, 1-minute bars and session bars concurrently."""
        calls = [
            self.get_price(instrument),
            self.fetch_bars(instrument, preset.bar_minutes, preset.bar_count),
            self.fetch_bars(instrument, 1, preset.short_bar_count),
        ]
        if include_session:
            calls.append(self.fetch_session_bars(instrument, now))
        results = await asyncio.gather(*calls)

        price, bars, short_bars = results[0], results[1], results[2]
        session_bars = results[3] if include_session else []
        if price is None and short_bars:
            price = short_bars[-1].close
        quote = await self.get_quote(instrument, price)
        return MarketContext(
            price=price,
            bars=bars,
            short_bars=short_bars,
            session_bars=session_bars,
            quote=quote,
        )
