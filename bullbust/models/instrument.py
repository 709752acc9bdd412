"""Instrument universe.

Represents the fixed set of tradable pairs configured at startup.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Instrument:
    """A tradable crypto pair.

    ``symbol`` is the brokerage's position key (``"BTCUSD"``), ``pair`` the
    order symbol (``"BTC/USD"``) and ``data_symbol`` the market-data alias
    (``"BTC"``).  ``max_notional`` overrides the notional ceiling for this
    instrument only; ``0`` disables trading it entirely.
    """

    symbol: str
    name: str
    data_symbol: str
    max_notional: Optional[float] = None

    @property
    def pair(self) -> str:
        return self.name

    @property
    def tradable(self) -> bool:
        return self.max_notional is None or self.max_notional > 0


def _usd(cc: str, max_notional: Optional[float] = None) -> Instrument:
    return Instrument(
        symbol=f"{cc}USD",
        name=f"{cc}/USD",
        data_symbol=cc,
        max_notional=max_notional,
    )


BENCHMARK_SYMBOL = "BTCUSD"

DEFAULT_UNIVERSE: tuple[Instrument, ...] = (
    _usd("BTC"),
    _usd("ETH"),
    _usd("DOGE"),
    _usd("SUSHI"),
    _usd("SHIB"),
    _usd("CRV"),
    _usd("AAVE"),
    _usd("AVAX"),
    _usd("LINK"),
    _usd("LTC"),
    _usd("UNI"),
    _usd("DOT"),
    _usd("BCH"),
    _usd("BAT"),
    _usd("XTZ"),
    _usd("YFI"),
    _usd("GRT"),
    _usd("MKR"),
    # Stablecoin pair: quoted for the dashboard, never traded
    _usd("USDT", max_notional=0.0),
)


def find_instrument(
    symbol: str,
    universe: tuple[Instrument, ...] = DEFAULT_UNIVERSE,
) -> Optional[Instrument]:
    """Look up an instrument by position symbol or slash pair."""
    key = symbol.replace("/", "").upper()
    for inst in universe:
        if inst.symbol == key:
            return inst
    return None
