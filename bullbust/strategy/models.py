"""Strategy data models — typed representations for indicator and gate outputs."""

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class MACDResult:
    """Last two points of the MACD line, signal and histogram."""

    macd: float
    signal: float
    histogram: float
    prev_macd: float
    prev_signal: float
    prev_histogram: float

    @property
    def histogram_rising(self) -> bool:
        return self.histogram > self.prev_histogram

    @property
    def bullish(self) -> bool:
        return self.macd > self.signal


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Per-cycle, per-instrument indicator values.

    Any field may be ``None`` when history is too short; ``available`` is
    ``True`` only when the core entry indicators are all defined.
    """

    price: Optional[float] = None
    rsi: Optional[float] = None
    macd: Optional[MACDResult] = None
    atr: Optional[float] = None
    atr_short: Optional[float] = None
    sigma: Optional[float] = None
    z: Optional[float] = None
    short_return_z: Optional[float] = None
    vwap: Optional[float] = None
    trend_slope: Optional[float] = None
    trend: str = "flat"  # "up", "down" or "flat"
    ema_aligned: Optional[bool] = None
    short_ema_fast: Optional[float] = None
    short_ema_slow: Optional[float] = None
    impulse_bps: Optional[float] = None
    relative_return_bps: Optional[float] = None
    last_close: Optional[float] = None
    short_close: Optional[float] = None
    short_close_time: Optional[int] = None

    @property
    def available(self) -> bool:
        return (
            self.price is not None
            and self.rsi is not None
            and self.macd is not None
            and self.atr is not None
        )

    @property
    def short_emas_inverted(self) -> Optional[bool]:
        if self.short_ema_fast is None or self.short_ema_slow is None:
            return None
        return self.short_ema_fast < self.short_ema_slow


@dataclass(frozen=True)
class GateDecision:
    """Outcome of the gate evaluator for one instrument in one cycle."""

    admitted: bool
    watchlist: bool
    score: float
    pass_count: int
    required_passes: int
    gates: dict[str, bool] = field(default_factory=dict)
    edge_bps: Optional[float] = None
    spread_bps: Optional[float] = None
    relative_strength_bps: Optional[float] = None
    reason: str = ""
