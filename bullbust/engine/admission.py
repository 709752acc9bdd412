"""Admission controller — decides whether new entries are allowed at all.

Owns the process-wide ``CooldownState``: global and per-instrument
cooldowns, the loss-streak window, the volatility kill-switch and the daily
drawdown kill-switch.  Concurrency caps depend on the volatility regime.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from bullbust.broker.models import AccountSnapshot
from bullbust.models.preset import StrategyPreset
from bullbust.risk.drawdown import DailyDrawdownTracker

logger = logging.getLogger("bullbust.admission")


def next_utc_midnight(now: datetime) -> datetime:
    now = now.astimezone(timezone.utc)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


@dataclass
class CooldownState:
    """Process-wide cooldown timestamps and the recent-loss window."""

    global_until: Optional[datetime] = None
    daily_kill_until: Optional[datetime] = None
    instrument_until: dict[str, datetime] = field(default_factory=dict)
    recent_losses: deque = field(default_factory=deque)
    global_reason: str = ""


class AdmissionController:
    """Gatekeeper consulted by the entry path every scan cycle."""

    def __init__(self, state: Optional[CooldownState] = None) -> None:
        self.state = state or CooldownState()
        self._drawdown = DailyDrawdownTracker()

    # ── Queries ──────────────────────────────────────────────────────────

    @staticmethod
    def concurrency_cap(preset: StrategyPreset, benchmark_sigma: Optional[float]) -> int:
        """Position cap for the current regime (tighter when volatile)."""
        if benchmark_sigma is not None and benchmark_sigma >= preset.high_vol_sigma:
            return preset.max_concurrent_high_vol
        return preset.max_concurrent_positions

    def entries_halted(self, now: datetime) -> Optional[str]:
        """Reason new entries are blocked for every instrument, else ``None``."""
        s = self.state
        if s.daily_kill_until is not None and now < s.daily_kill_until:
            return "daily_kill"
        if s.global_until is not None and now < s.global_until:
            return s.global_reason or "global_cooldown"
        return None

    def can_enter(
        self,
        symbol: str,
        now: datetime,
        open_count: int,
        cap: int,
    ) -> tuple[bool, str]:
        """Check kill-switches, cooldowns and the concurrency cap.

        Returns:
            ``(allowed, reason)``; *reason* is ``"ok"`` when allowed.
        """
        halted = self.entries_halted(now)
        if halted:
            return False, halted
        until = self.state.instrument_until.get(symbol)
        if until is not None and now < until:
            return False, "instrument_cooldown"
        if open_count >= cap:
            return False, "concurrency_cap"
        return True, "ok"

    def status(self, now: datetime) -> dict:
        s = self.state
        return {
            "entries_halted": self.entries_halted(now),
            "global_until": s.global_until.isoformat() if s.global_until else None,
            "daily_kill_until": (
                s.daily_kill_until.isoformat() if s.daily_kill_until else None
            ),
            "instrument_cooldowns": {
                sym: until.isoformat()
                for sym, until in sorted(s.instrument_until.items())
                if until > now
            },
            "recent_losses": len(s.recent_losses),
            "drawdown_pct": round(self._drawdown.drawdown_pct, 3),
        }

    # ── Mutation ─────────────────────────────────────────────────────────

    def record_exit(
        self,
        symbol: str,
        now: datetime,
        losing: bool,
        preset: StrategyPreset,
    ) -> bool:
        """Start the per-instrument cooldown and track the loss streak.

        Returns ``True`` when this exit tripped the global loss-streak
        cooldown.
        """
        minutes = preset.loss_cooldown_minutes if losing else preset.cooldown_minutes
        self.state.instrument_until[symbol] = now + timedelta(minutes=minutes)
        if not losing:
            return False

        window_start = now - timedelta(minutes=preset.loss_window_minutes)
        losses = self.state.recent_losses
        losses.append(now)
        while losses and losses[0] < window_start:
            losses.popleft()

        if preset.loss_streak_count > 0 and len(losses) >= preset.loss_streak_count:
            self._start_global(now, preset.global_cooldown_minutes, "loss_streak")
            losses.clear()
            logger.warning(
                "Loss streak (%d within %.0f min) — entries paused %.0f min",
                preset.loss_streak_count,
                preset.loss_window_minutes,
                preset.global_cooldown_minutes,
            )
            return True
        return False

    def check_volatility_kill(
        self,
        benchmark_return_z: Optional[float],
        now: datetime,
        preset: StrategyPreset,
    ) -> bool:
        """Trip the kill-switch on a benchmark return shock.

        Returns ``True`` only when the switch newly activates.
        """
        if benchmark_return_z is None or benchmark_return_z >= preset.kill_z:
            return False
        s = self.state
        already = (
            s.global_reason == "volatility_kill"
            and s.global_until is not None
            and now < s.global_until
        )
        self._start_global(now, preset.kill_cooldown_minutes, "volatility_kill")
        if already:
            return False
        logger.warning(
            "Volatility kill-switch: benchmark 1m return z=%.2f < %.2f",
            benchmark_return_z, preset.kill_z,
        )
        return True

    def check_drawdown_kill(
        self,
        account: AccountSnapshot,
        now: datetime,
        preset: StrategyPreset,
    ) -> bool:
        """Trip the daily kill when intraday drawdown reaches the limit.

        Entries stay blocked until the next UTC midnight.  Returns ``True``
        only when the switch newly activates.
        """
        self._drawdown.set_threshold(preset.daily_drawdown_pct)
        self._drawdown.update(account.equity, now, opening_equity=account.last_equity)
        if not self._drawdown.circuit_breaker_active:
            return False
        s = self.state
        if s.daily_kill_until is not None and now < s.daily_kill_until:
            return False
        s.daily_kill_until = next_utc_midnight(now)
        logger.warning(
            "Daily drawdown kill-switch: %.2f%% >= %.2f%% — halted until %s",
            self._drawdown.drawdown_pct,
            preset.daily_drawdown_pct,
            s.daily_kill_until.isoformat(),
        )
        return True

    def _start_global(self, now: datetime, minutes: float, reason: str) -> None:
        until = now + timedelta(minutes=minutes)
        s = self.state
        if s.global_until is None or until > s.global_until:
            s.global_until = until
            s.global_reason = reason
