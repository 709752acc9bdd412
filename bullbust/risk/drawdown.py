"""Daily drawdown tracking and circuit breaker — pure math, no I/O.

Tracks the session's opening equity and the intraday peak.  The peak resets
at each UTC midnight.  The circuit breaker activates when drawdown from the
day's peak reaches the configured threshold.
"""

from datetime import date, datetime, timezone
from typing import Optional


class DailyDrawdownTracker:
    """Tracks intraday equity peaks and computes drawdown metrics.

    Args:
        max_drawdown_pct: Drawdown threshold that triggers the circuit breaker
                          (percentage, e.g. 5.0 for 5 %).
    """

    def __init__(self, max_drawdown_pct: float = 5.0) -> None:
        self._max_drawdown_pct: float = max_drawdown_pct
        self._day: Optional[date] = None
        self._peak_equity: float = 0.0
        self._current_equity: float = 0.0

    # ── Mutation ─────────────────────────────────────────────────────────

    def update(self, equity: float, now: datetime, opening_equity: Optional[float] = None) -> None:
        """Record the latest equity value.

        On the first update of a new UTC day the peak restarts from
        *opening_equity* (the brokerage's ``last_equity``) when given.
        """
        today = now.astimezone(timezone.utc).date()
        if today != self._day:
            self._day = today
            self._peak_equity = max(opening_equity or 0.0, equity)
        self._current_equity = equity
        if equity > self._peak_equity:
            self._peak_equity = equity

    def set_threshold(self, max_drawdown_pct: float) -> None:
        self._max_drawdown_pct = max_drawdown_pct

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def peak_equity(self) -> float:
        """Highest equity recorded today."""
        return self._peak_equity

    @property
    def current_equity(self) -> float:
        return self._current_equity

    @property
    def drawdown_pct(self) -> float:
        """Current drawdown as a percentage of today's peak equity."""
        if self._peak_equity <= 0:
            return 0.0
        return (
            (self._peak_equity - self._current_equity) / self._peak_equity
        ) * 100.0

    @property
    def circuit_breaker_active(self) -> bool:
        """``True`` when drawdown has reached or exceeded the threshold."""
        return self._max_drawdown_pct > 0 and self.drawdown_pct >= self._max_drawdown_pct
