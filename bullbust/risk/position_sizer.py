"""Position sizing — pure math, no I/O.

Converts an admitted signal into an order notional bounded by fixed-fraction
risk, the percentage-of-equity ceiling, buying power, the absolute ceiling and
the per-instrument override.
"""

import math
from dataclasses import dataclass
from typing import Optional

from bullbust.models.preset import StrategyPreset


@dataclass(frozen=True)
class SizingResult:
    """Computed order size.  ``notional`` is 0 when the entry is skipped."""

    notional: float
    qty: float
    raw_notional: float
    capped_by: Optional[str] = None
    skip_reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.skip_reason is None


def risk_notional(
    equity: float,
    risk_fraction: float,
    atr: float,
    stop_atr_mult: float,
    price: float,
) -> float:
    """Notional that loses ``equity × risk_fraction`` if stopped out.

    Formula::

        qty      = (equity × risk_fraction) / (ATR × stop_atr_mult)
        notional = qty × price

    Raises:
        ValueError: If any input is non-positive.
    """
    if equity <= 0:
        raise ValueError(f"equity must be positive, got {equity}")
    if risk_fraction <= 0:
        raise ValueError(f"risk_fraction must be positive, got {risk_fraction}")
    if atr <= 0:
        raise ValueError(f"atr must be positive, got {atr}")
    if stop_atr_mult <= 0:
        raise ValueError(f"stop_atr_mult must be positive, got {stop_atr_mult}")
    if price <= 0:
        raise ValueError(f"price must be positive, got {price}")

    qty = (equity * risk_fraction) / (atr * stop_atr_mult)
    return qty * price


def floor_cents(amount: float) -> float:
    return math.floor(amount * 100.0 + 1e-9) / 100.0


def calculate_notional(
    equity: float,
    buying_power: float,
    atr: float,
    price: float,
    preset: StrategyPreset,
    instrument_cap: Optional[float] = None,
) -> SizingResult:
    """Size an entry and apply every cap.

    Args:
        equity: Account equity.
        buying_power: Non-marginable buying power (crypto is cash-settled).
        atr: ATR at entry, in price units.
        price: Expected entry price.
        preset: Active preset snapshot.
        instrument_cap: Per-instrument override; ``0`` disables trading.

    Returns:
        A ``SizingResult``; ``skip_reason`` is set instead of raising when
        the trade should not be placed.
    """
    if instrument_cap is not None and instrument_cap <= 0:
        return SizingResult(0.0, 0.0, 0.0, skip_reason="instrument_disabled")
    if equity <= 0 or atr <= 0 or price <= 0:
        return SizingResult(0.0, 0.0, 0.0, skip_reason="invalid_inputs")

    raw = risk_notional(equity, preset.risk_fraction, atr, preset.stop_atr_mult, price)

    caps = [
        ("equity_pct", equity * preset.max_position_pct),
        ("buying_power", max(buying_power, 0.0) * preset.buying_power_cushion),
        ("max_notional", preset.max_notional),
    ]
    if instrument_cap is not None:
        caps.append(("instrument_cap", instrument_cap))

    notional = raw
    capped_by = None
    for name, cap in caps:
        if cap < notional:
            notional = cap
            capped_by = name

    notional = floor_cents(notional)
    if notional < preset.min_notional:
        reason = (
            "insufficient_funds" if capped_by == "buying_power" else "below_minimum"
        )
        return SizingResult(0.0, 0.0, raw, capped_by=capped_by, skip_reason=reason)

    return SizingResult(
        notional=notional,
        qty=notional / price,
        raw_notional=raw,
        capped_by=capped_by,
    )
