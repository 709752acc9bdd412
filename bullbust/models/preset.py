"""Strategy presets — named, immutable threshold bundles.

A preset is swapped as a unit; the engine captures the active preset once per
loop tick and hands that snapshot to every component.
"""

import json
import pathlib
from dataclasses import dataclass, fields, replace
from typing import Optional


@dataclass(frozen=True)
class StrategyPreset:
    """Every tunable threshold the engine reads.

    Defaults describe the ``balanced`` preset.  Basis-point fields are
    ``1 bp = 0.01 %``; durations are minutes unless suffixed ``_seconds``.
    """

    name: str = "balanced"

    # ── Indicator windows ──
    bar_minutes: int = 15
    bar_count: int = 60
    rsi_period: int = 14
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    atr_period: int = 14
    sigma_window: int = 20
    z_window: int = 20
    trend_ema_fast: int = 9
    trend_ema_slow: int = 21
    trend_slope_threshold: float = 0.0002  # OLS slope / mean price, per bar
    short_ema_fast: int = 5
    short_ema_slow: int = 13
    short_bar_count: int = 60

    # ── Gates ──
    min_pass_count: int = 3
    min_score: float = 55.0
    min_sigma: float = 0.001
    min_abs_z: float = 0.5
    min_edge_bps: float = 5.0
    max_spread_bps: float = 25.0
    soft_spread_edge_bps: float = 30.0
    fee_bps: float = 25.0
    slippage_bps: float = 5.0
    regime_gate_enabled: bool = True
    rs_gate_enabled: bool = True
    rs_lookback_bars: int = 8
    rs_min_bps: float = 10.0

    # ── Sizing ──
    risk_fraction: float = 0.0025
    stop_atr_mult: float = 1.5
    max_position_pct: float = 0.10
    max_notional: float = 2_500.0
    min_notional: float = 5.0
    buying_power_cushion: float = 0.998

    # ── Entry pricing ──
    entry_slippage_cap_bps: float = 15.0
    impulse_threshold_bps: float = 40.0
    impulse_lookback_bars: int = 3

    # ── Take-profit ──
    tp_atr_mult: float = 2.0
    tp_min_bps: float = 80.0
    tp_edge_bps: float = 10.0
    tp_decay_start_minutes: float = 30.0
    tp_decay_full_minutes: float = 180.0
    tp_refresh_seconds: float = 120.0
    tp_drift_bps: float = 10.0

    # ── Stop management ──
    breakeven_trigger_atr: float = 1.0
    trail_atr_mult: float = 1.5

    # ── Partial exit ──
    partial_exit_enabled: bool = True
    partial_exit_fraction: float = 0.5
    partial_edge_bps: float = 20.0

    # ── Fast-wrong exit ──
    fast_wrong_minutes: float = 5.0
    fast_wrong_atr_mult: float = 1.0
    fast_wrong_max_loss_bps: float = 30.0

    # ── VWAP exit ──
    vwap_exit_enabled: bool = True
    vwap_exit_bars: int = 2

    # ── Time exits ──
    max_hold_minutes: float = 360.0
    time_stop_minutes: float = 120.0

    # ── Admission ──
    max_concurrent_positions: int = 4
    max_concurrent_high_vol: int = 2
    high_vol_sigma: float = 0.004
    cooldown_minutes: float = 10.0
    loss_cooldown_minutes: float = 30.0
    loss_streak_count: int = 3
    loss_window_minutes: float = 60.0
    global_cooldown_minutes: float = 30.0
    kill_z: float = -2.5
    kill_z_window: int = 30
    kill_cooldown_minutes: float = 60.0
    daily_drawdown_pct: float = 5.0

    @property
    def round_trip_fee_bps(self) -> float:
        return 2.0 * self.fee_bps


_BALANCED = StrategyPreset()

PRESETS: dict[str, StrategyPreset] = {
    "balanced": _BALANCED,
    "aggressive": replace(
        _BALANCED,
        name="aggressive",
        min_pass_count=2,
        min_score=45.0,
        min_abs_z=0.3,
        rs_gate_enabled=False,
        risk_fraction=0.004,
        entry_slippage_cap_bps=25.0,
        tp_decay_start_minutes=15.0,
        tp_decay_full_minutes=90.0,
        breakeven_trigger_atr=0.75,
        trail_atr_mult=1.0,
        partial_exit_fraction=0.33,
        max_concurrent_positions=6,
        max_concurrent_high_vol=3,
        cooldown_minutes=5.0,
        loss_cooldown_minutes=15.0,
        vwap_exit_enabled=False,
    ),
    "conservative": replace(
        _BALANCED,
        name="conservative",
        min_pass_count=4,
        min_score=65.0,
        min_edge_bps=15.0,
        max_spread_bps=15.0,
        risk_fraction=0.0015,
        entry_slippage_cap_bps=10.0,
        tp_decay_start_minutes=60.0,
        tp_decay_full_minutes=300.0,
        breakeven_trigger_atr=1.25,
        trail_atr_mult=2.0,
        partial_exit_fraction=0.5,
        max_concurrent_positions=2,
        max_concurrent_high_vol=1,
        cooldown_minutes=20.0,
        loss_cooldown_minutes=60.0,
    ),
}


_FIELD_NAMES = {f.name for f in fields(StrategyPreset)}


def preset_from_dict(name: str, data: dict) -> StrategyPreset:
    """Build a preset from the dataclass defaults plus *data*.

    Raises ``ValueError`` on unknown field names.
    """
    unknown = sorted(set(data) - _FIELD_NAMES)
    if unknown:
        raise ValueError(
            f"Unknown preset field(s) for '{name}': {', '.join(unknown)}"
        )
    values = {k: v for k, v in data.items() if k != "name"}
    return replace(StrategyPreset(), name=name, **values)


def load_presets(path: Optional[str] = None) -> dict[str, StrategyPreset]:
    """Return the built-in presets, extended by a JSON preset file if given.

    File format::

        {"presets": {"scalper": {"min_pass_count": 2, "fee_bps": 20}}}

    A file preset with a built-in name replaces the built-in entirely.
    """
    presets = dict(PRESETS)
    if not path:
        return presets
    data = json.loads(pathlib.Path(path).read_text(encoding="utf-8"))
    for name, body in data.get("presets", {}).items():
        presets[name] = preset_from_dict(name, body)
    return presets


def get_preset(name: str, presets: Optional[dict[str, StrategyPreset]] = None) -> StrategyPreset:
    """Look up a preset by name.

    Raises ``KeyError`` if the preset name is not registered.
    """
    registry = presets if presets is not None else PRESETS
    if name not in registry:
        raise KeyError(
            f"Unknown preset '{name}'. "
            f"Available: {', '.join(registry.keys())}"
        )
    return registry[name]
