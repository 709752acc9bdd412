"""Technical indicators — RSI, MACD, ATR, volatility, z-score, trend, VWAP.

Pure functions, no I/O.  Short history never raises: every function returns
``None`` (or an empty series) when there is not enough data, and callers
treat that as "signal unavailable".
"""

import math
from typing import Optional

import numpy as np

from bullbust.broker.models import Bar
from bullbust.models.preset import StrategyPreset
from bullbust.strategy.models import IndicatorSnapshot, MACDResult


TREND_GLYPHS: dict[str, str] = {"up": "⬆️", "down": "⬇️", "flat": "🟰"}

TREND_WINDOW = 15


# ── EMA ──────────────────────────────────────────────────────────────────


def calculate_ema(values: list[float], period: int) -> list[float]:
    """Exponential moving average series seeded with the first value.

    ``EMA_today = value × k + EMA_yesterday × (1 - k)`` with
    ``k = 2 / (period + 1)``.  Returns a list the same length as *values*
    (empty for empty input).
    """
    if not values:
        return []
    k = 2.0 / (period + 1)
    ema = [values[0]]
    for v in values[1:]:
        ema.append(v * k + ema[-1] * (1 - k))
    return ema


# ── RSI ──────────────────────────────────────────────────────────────────


def calculate_rsi(closes: list[float], period: int = 14) -> Optional[float]:
    """Wilder's Relative Strength Index of the last close.

    Algorithm (Wilder-smoothed):
        1. delta = close[i] - close[i-1]
        2. Seed average gain/loss = SMA of the first *period* deltas.
        3. Subsequent: avg = (prev_avg × (period-1) + current) / period
        4. RSI = 100 - 100 / (1 + avg_gain / avg_loss); 100 when avg_loss is 0.

    Returns ``None`` with fewer than ``period + 1`` closes.
    """
    if period < 1 or len(closes) < period + 1:
        return None

    deltas = [closes[i] - closes[i - 1] for i in range(1, len(closes))]
    gains = [max(d, 0.0) for d in deltas]
    losses = [max(-d, 0.0) for d in deltas]

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period
    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period

    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


# ── MACD ─────────────────────────────────────────────────────────────────


def calculate_macd(
    closes: list[float],
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> Optional[MACDResult]:
    """MACD line (EMA fast − EMA slow), its signal EMA and the histogram.

    Requires ``slow + signal`` closes; returns the last two points so the
    caller can read slope and crossings.
    """
    if len(closes) < max(slow + signal, 2):
        return None

    ema_fast = calculate_ema(closes, fast)
    ema_slow = calculate_ema(closes, slow)
    macd_line = [f - s for f, s in zip(ema_fast, ema_slow)]
    signal_line = calculate_ema(macd_line, signal)
    hist = [m - s for m, s in zip(macd_line, signal_line)]

    return MACDResult(
        macd=macd_line[-1],
        signal=signal_line[-1],
        histogram=hist[-1],
        prev_macd=macd_line[-2],
        prev_signal=signal_line[-2],
        prev_histogram=hist[-2],
    )


# ── ATR ──────────────────────────────────────────────────────────────────


def calculate_atr(bars: list[Bar], period: int = 14) -> Optional[float]:
    """Wilder's Average True Range.

    ``TR = max(high - low, |high - prev_close|, |low - prev_close|)``; seeded
    with the SMA of the first *period* true ranges, then
    ``ATR = (prev × (period-1) + TR) / period``.

    Returns ``None`` with fewer than ``period + 1`` bars.
    """
    if period < 1 or len(bars) < period + 1:
        return None

    true_ranges: list[float] = []
    for i in range(1, len(bars)):
        prev_close = bars[i - 1].close
        true_ranges.append(max(
            bars[i].high - bars[i].low,
            abs(bars[i].high - prev_close),
            abs(bars[i].low - prev_close),
        ))

    atr = sum(true_ranges[:period]) / period
    for tr in true_ranges[period:]:
        atr = (atr * (period - 1) + tr) / period
    return atr


# ── Volatility / z-score ─────────────────────────────────────────────────


def log_returns(closes: list[float]) -> list[float]:
    """Natural-log returns between consecutive positive closes."""
    return [
        math.log(closes[i] / closes[i - 1])
        for i in range(1, len(closes))
        if closes[i] > 0 and closes[i - 1] > 0
    ]


def rolling_volatility(closes: list[float], window: int = 20) -> Optional[float]:
    """Sample standard deviation of the last *window* log returns."""
    returns = log_returns(closes)
    if window < 2 or len(returns) < window:
        return None
    return float(np.std(returns[-window:], ddof=1))


def calculate_zscore(values: list[float], window: int = 20) -> Optional[float]:
    """Last value's deviation from the window mean, in standard deviations.

    The window includes the last value.  Zero when the window is flat.
    """
    if window < 2 or len(values) < window:
        return None
    arr = np.asarray(values[-window:], dtype=float)
    std = float(arr.std(ddof=1))
    if std == 0.0 or math.isnan(std):
        return 0.0
    return float((arr[-1] - arr.mean()) / std)


# ── Trend ────────────────────────────────────────────────────────────────


def trend_slope(closes: list[float], window: int = TREND_WINDOW) -> Optional[float]:
    """Ordinary least-squares slope of the last *window* closes (price per bar)."""
    if len(closes) < window or window < 2:
        return None
    y = np.asarray(closes[-window:], dtype=float)
    x = np.arange(window, dtype=float)
    slope, _intercept = np.polyfit(x, y, 1)
    return float(slope)


def classify_trend(
    slope: Optional[float],
    reference_price: Optional[float],
    threshold: float = 0.0002,
) -> str:
    """``"up"`` / ``"down"`` / ``"flat"`` from a slope normalised by price."""
    if slope is None or not reference_price:
        return "flat"
    normalised = slope / reference_price
    if normalised > threshold:
        return "up"
    if normalised < -threshold:
        return "down"
    return "flat"


def ema_trend_aligned(closes: list[float], fast: int, slow: int) -> Optional[bool]:
    """``True`` when EMA(fast) > EMA(slow) and price > EMA(fast).

    Needs at least *slow* closes.
    """
    if len(closes) < slow:
        return None
    ema_f = calculate_ema(closes, fast)[-1]
    ema_s = calculate_ema(closes, slow)[-1]
    return ema_f > ema_s and closes[-1] > ema_f


def return_bps(closes: list[float], lookback: int) -> Optional[float]:
    """Simple return over the last *lookback* bars, in basis points."""
    if lookback < 1 or len(closes) < lookback + 1:
        return None
    base = closes[-1 - lookback]
    if base <= 0:
        return None
    return (closes[-1] / base - 1.0) * 10_000.0


# ── VWAP ─────────────────────────────────────────────────────────────────


def anchored_vwap(bars: list[Bar], anchor_ts: Optional[int] = None) -> Optional[float]:
    """Volume-weighted average typical price from *anchor_ts* forward.

    Recomputed from scratch on every call.  ``None`` when no volume traded
    since the anchor.
    """
    pv = 0.0
    volume = 0.0
    for bar in bars:
        if anchor_ts is not None and bar.time < anchor_ts:
            continue
        pv += bar.typical_price * bar.volume
        volume += bar.volume
    if volume <= 0:
        return None
    return pv / volume


# ── Snapshot ─────────────────────────────────────────────────────────────


def build_snapshot(
    price: Optional[float],
    bars: list[Bar],
    short_bars: list[Bar],
    session_bars: list[Bar],
    preset: StrategyPreset,
    session_anchor: Optional[int] = None,
) -> IndicatorSnapshot:
    """Compute every indicator the gates and exit rules read.

    *bars* are strategy-timeframe bars, *short_bars* one-minute bars and
    *session_bars* one-minute bars since the session anchor.
    """
    closes = [b.close for b in bars]
    short_closes = [b.close for b in short_bars]
    last_close = closes[-1] if closes else None
    if price is None:
        price = short_closes[-1] if short_closes else last_close

    slope = trend_slope(closes)
    short_ema_fast = short_ema_slow = None
    if len(short_closes) >= preset.short_ema_slow:
        short_ema_fast = calculate_ema(short_closes, preset.short_ema_fast)[-1]
        short_ema_slow = calculate_ema(short_closes, preset.short_ema_slow)[-1]

    short_rets = log_returns(short_closes)

    return IndicatorSnapshot(
        price=price,
        rsi=calculate_rsi(closes, preset.rsi_period),
        macd=calculate_macd(closes, preset.macd_fast, preset.macd_slow, preset.macd_signal),
        atr=calculate_atr(bars, preset.atr_period),
        atr_short=calculate_atr(short_bars, preset.atr_period),
        sigma=rolling_volatility(closes, preset.sigma_window),
        z=calculate_zscore(closes, preset.z_window),
        short_return_z=calculate_zscore(short_rets, preset.kill_z_window),
        vwap=anchored_vwap(session_bars, session_anchor),
        trend_slope=slope,
        trend=classify_trend(slope, last_close, preset.trend_slope_threshold),
        ema_aligned=ema_trend_aligned(closes, preset.trend_ema_fast, preset.trend_ema_slow),
        short_ema_fast=short_ema_fast,
        short_ema_slow=short_ema_slow,
        impulse_bps=return_bps(short_closes, preset.impulse_lookback_bars),
        relative_return_bps=return_bps(closes, preset.rs_lookback_bars),
        last_close=last_close,
        short_close=short_closes[-1] if short_closes else None,
        short_close_time=short_bars[-1].time if short_bars else None,
    )
