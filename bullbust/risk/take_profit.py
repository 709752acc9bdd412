"""Take-profit calculation — pure math, no I/O.

The initial target is the tighter of an ATR multiple and a minimum-bps
target, floored by the fee/slippage/edge breakeven price.  As the position
ages the target decays linearly from its initial value to that floor.
"""

from bullbust.models.preset import StrategyPreset


def fee_floor_price(entry_price: float, preset: StrategyPreset) -> float:
    """Lowest take-profit that still clears fees, slippage and a small edge."""
    bps = preset.round_trip_fee_bps + preset.slippage_bps + preset.tp_edge_bps
    return entry_price * (1.0 + bps / 10_000.0)


def initial_take_profit(entry_price: float, atr: float, preset: StrategyPreset) -> float:
    """Tighter of the ATR and min-bps targets, never below the fee floor."""
    atr_target = entry_price + preset.tp_atr_mult * atr
    bps_target = entry_price * (1.0 + preset.tp_min_bps / 10_000.0)
    return max(min(atr_target, bps_target), fee_floor_price(entry_price, preset))


def decayed_take_profit(
    initial_tp: float,
    floor_price: float,
    held_minutes: float,
    preset: StrategyPreset,
) -> float:
    """Linear decay from *initial_tp* toward *floor_price*.

    Unchanged before ``tp_decay_start_minutes``; equal to the floor at and
    after ``tp_decay_full_minutes``.  Never below the floor.
    """
    start = preset.tp_decay_start_minutes
    full = preset.tp_decay_full_minutes
    if initial_tp <= floor_price:
        return floor_price
    if held_minutes <= start:
        return initial_tp
    if full <= start or held_minutes >= full:
        return floor_price
    progress = (held_minutes - start) / (full - start)
    return max(initial_tp - (initial_tp - floor_price) * progress, floor_price)


def drift_bps(current: float, target: float) -> float:
    """Absolute distance between two prices in bps of *current*."""
    if current <= 0:
        return 0.0
    return abs(target - current) / current * 10_000.0
