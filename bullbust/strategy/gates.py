"""Gate evaluator — turns an indicator snapshot into an admit/deny decision.

Four boolean gates are counted against the preset's pass-count policy:

  - ``slope``       MACD histogram rising
  - ``volatility``  return sigma at or above the floor
  - ``zscore``      |z| at or above the floor
  - ``regime``      benchmark EMA trend aligned (always passes when disabled)

Entry additionally needs the composite score, a positive fee-adjusted edge,
the spread check and, when enabled, relative strength against the benchmark.
"""

from typing import Optional

from bullbust.broker.models import Quote
from bullbust.models.preset import StrategyPreset
from bullbust.strategy.models import GateDecision, IndicatorSnapshot, MACDResult


BOOLEAN_GATES = ("slope", "volatility", "zscore", "regime")

_SCORE_WEIGHTS = {"slope": 0.4, "trend": 0.3, "rsi": 0.3}
_TREND_SCORES = {"up": 1.0, "flat": 0.5, "down": 0.0}


# ── Score components ─────────────────────────────────────────────────────


def rsi_context_score(rsi: Optional[float]) -> float:
    """1.0 inside the 45–60 band, 0.0 outside 25–80, linear in between."""
    if rsi is None:
        return 0.0
    if 45.0 <= rsi <= 60.0:
        return 1.0
    if rsi < 25.0 or rsi > 80.0:
        return 0.0
    if rsi < 45.0:
        return (rsi - 25.0) / 20.0
    return (80.0 - rsi) / 20.0


def slope_score(macd: Optional[MACDResult]) -> float:
    if macd is None:
        return 0.0
    if macd.histogram_rising and macd.bullish:
        return 1.0
    if macd.histogram_rising:
        return 0.5
    return 0.0


def composite_score(snapshot: IndicatorSnapshot) -> float:
    """Weighted blend of slope, trend and RSI context, scaled to 0–100."""
    raw = (
        _SCORE_WEIGHTS["slope"] * slope_score(snapshot.macd)
        + _SCORE_WEIGHTS["trend"] * _TREND_SCORES.get(snapshot.trend, 0.5)
        + _SCORE_WEIGHTS["rsi"] * rsi_context_score(snapshot.rsi)
    )
    return round(100.0 * raw, 2)


# ── Continuous checks ────────────────────────────────────────────────────


def expected_edge_bps(
    atr: Optional[float],
    price: Optional[float],
    preset: StrategyPreset,
    spread_bps: float = 0.0,
) -> Optional[float]:
    """Expected move to the ATR target net of fees, spread and slippage (bps)."""
    if atr is None or not price or price <= 0:
        return None
    gross = atr / price * 10_000.0 * preset.tp_atr_mult
    return gross - preset.round_trip_fee_bps - spread_bps - preset.slippage_bps


def spread_ok(spread_bps: float, edge_bps: Optional[float], preset: StrategyPreset) -> bool:
    """Spread within the cap, or within twice the cap when the edge is large."""
    if spread_bps <= preset.max_spread_bps:
        return True
    return (
        edge_bps is not None
        and edge_bps >= preset.soft_spread_edge_bps
        and spread_bps <= 2.0 * preset.max_spread_bps
    )


def relative_strength_bps(
    snapshot: IndicatorSnapshot,
    benchmark: Optional[IndicatorSnapshot],
) -> Optional[float]:
    if benchmark is None:
        return None
    if snapshot.relative_return_bps is None or benchmark.relative_return_bps is None:
        return None
    return snapshot.relative_return_bps - benchmark.relative_return_bps


def is_watchlist(macd: Optional[MACDResult]) -> bool:
    """Directional MACD cross underway: above signal, or rising toward it."""
    if macd is None:
        return False
    return macd.bullish or (macd.macd > macd.prev_macd and macd.macd <= macd.signal)


# ── Evaluator ────────────────────────────────────────────────────────────


def evaluate_gates(
    snapshot: IndicatorSnapshot,
    preset: StrategyPreset,
    quote: Optional[Quote],
    benchmark: Optional[IndicatorSnapshot] = None,
    is_benchmark: bool = False,
) -> GateDecision:
    """Evaluate every gate for one instrument.

    Args:
        snapshot: This instrument's indicators for the cycle.
        preset: The preset snapshot captured for the cycle.
        quote: Current bid/ask (real or synthetic).
        benchmark: The benchmark instrument's snapshot, if available.
        is_benchmark: ``True`` when *snapshot* is the benchmark itself; the
            relative-strength check is then skipped.
    """
    required = preset.min_pass_count
    if not snapshot.available:
        return GateDecision(
            admitted=False,
            watchlist=False,
            score=0.0,
            pass_count=0,
            required_passes=required,
            reason="insufficient_data",
        )

    macd = snapshot.macd
    if preset.regime_gate_enabled:
        regime = bool(benchmark is not None and benchmark.ema_aligned)
    else:
        regime = True

    gates = {
        "slope": macd.histogram_rising,
        "volatility": snapshot.sigma is not None and snapshot.sigma >= preset.min_sigma,
        "zscore": snapshot.z is not None and abs(snapshot.z) >= preset.min_abs_z,
        "regime": regime,
    }
    pass_count = sum(1 for name in BOOLEAN_GATES if gates[name])
    score = composite_score(snapshot)

    spread = quote.spread_bps if quote is not None else None
    edge = expected_edge_bps(snapshot.atr, snapshot.price, preset, spread or 0.0)
    rs = relative_strength_bps(snapshot, benchmark)

    checks = [
        ("score", score >= preset.min_score),
        ("pass_count", pass_count >= required),
        ("edge", edge is not None and edge > 0 and edge >= preset.min_edge_bps),
        ("spread", spread is not None and spread_ok(spread, edge, preset)),
    ]
    if preset.rs_gate_enabled and not is_benchmark:
        checks.append(("relative_strength", rs is not None and rs >= preset.rs_min_bps))

    gates.update({f"{name}_ok": ok for name, ok in checks})
    failed = [name for name, ok in checks if not ok]
    admitted = not failed

    return GateDecision(
        admitted=admitted,
        watchlist=not admitted and is_watchlist(macd),
        score=score,
        pass_count=pass_count,
        required_passes=required,
        gates=gates,
        edge_bps=round(edge, 2) if edge is not None else None,
        spread_bps=round(spread, 2) if spread is not None else None,
        relative_strength_bps=round(rs, 2) if rs is not None else None,
        reason="admitted" if admitted else f"failed: {', '.join(failed)}",
    )
