"""Trailing stop — progressive stop management for open long positions.

Rules:
  - Once gain reaches ``breakeven_trigger_atr × ATR`` → stop to at least
    breakeven (entry plus round-trip fees).
  - After that, trail ``trail_atr_mult × ATR`` behind the peak.
  - The stop never moves down.
"""

from typing import Optional


def breakeven_price(entry_price: float, round_trip_fee_bps: float) -> float:
    """Entry price plus round-trip fees."""
    return entry_price * (1.0 + round_trip_fee_bps / 10_000.0)


class TrailingStop:
    """Tracks and ratchets the stop for a single position.

    Args:
        entry_price: Fill price.
        atr: ATR at entry.
        initial_stop: Starting stop price.
        breakeven_trigger_atr: ATR multiple of gain that arms the breakeven lock.
        trail_atr_mult: Distance of the trail behind the peak, in ATRs.
        round_trip_fee_bps: Fees folded into the breakeven price.
        peak: Highest mark seen so far (defaults to entry).
        armed: Whether the breakeven trigger has already fired.
    """

    def __init__(
        self,
        entry_price: float,
        atr: float,
        initial_stop: float,
        breakeven_trigger_atr: float = 1.0,
        trail_atr_mult: float = 1.5,
        round_trip_fee_bps: float = 50.0,
        peak: Optional[float] = None,
        armed: bool = False,
    ) -> None:
        self.entry_price = entry_price
        self.atr = atr
        self.current_stop = initial_stop
        self.breakeven_trigger_atr = breakeven_trigger_atr
        self.trail_atr_mult = trail_atr_mult
        self.breakeven = breakeven_price(entry_price, round_trip_fee_bps)
        self.peak = max(peak if peak is not None else entry_price, entry_price)
        self.armed = armed

    def lock_breakeven(self) -> Optional[float]:
        """Force the stop to at least breakeven; returns the new stop if it moved."""
        self.armed = True
        return self._raise_to(self.breakeven)

    def update(self, mark: float) -> Optional[float]:
        """Evaluate the current mark and return a new stop if it should move.

        Returns:
            New stop price if it was raised, ``None`` if no change.
        """
        if mark > self.peak:
            self.peak = mark
        if self.atr <= 0:
            return None

        gain = self.peak - self.entry_price
        if not self.armed and gain >= self.breakeven_trigger_atr * self.atr:
            self.armed = True

        if not self.armed:
            return None

        candidate = max(self.breakeven, self.peak - self.trail_atr_mult * self.atr)
        return self._raise_to(candidate)

    def _raise_to(self, price: float) -> Optional[float]:
        if price > self.current_stop:
            self.current_stop = price
            return price
        return None
