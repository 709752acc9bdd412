"""Position ledger — per-instrument trade state shared by both loops.

Each instrument has its own ``asyncio.Lock``.  Every read-modify-write of a
``TradeState`` happens while holding that lock: the exit loop mutates state,
the entry path creates it for its own fill and flatten paths remove it.
"""

import asyncio
import math
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional


# Lifecycle phases
NO_POSITION = "no_position"
ENTRY_SUBMITTED = "entry_submitted"
OPEN = "open"
PARTIALLY_EXITED = "partially_exited"
CLOSED = "closed"

TP_QTY_EPSILON = 0.001


def floor_qty(qty: float, decimals: int = 6) -> float:
    factor = 10 ** decimals
    return math.floor(qty * factor + 1e-9) / factor


def take_profit_qty(held_qty: float) -> float:
    """Quantity for a resting take-profit sell: held × (1 − 0.001), 6 dp."""
    return floor_qty(held_qty * (1.0 - TP_QTY_EPSILON), 6)


@dataclass
class TradeState:
    """Mutable exit-management state for one held position."""

    symbol: str
    qty: float
    entry_price: float
    atr_at_entry: float
    peak: float
    stop: float
    take_profit: float
    initial_take_profit: float
    tp_floor: float
    entered_at: datetime
    phase: str = OPEN
    partial_exit_done: bool = False
    breakeven_armed: bool = False
    below_vwap_count: int = 0
    last_vwap_bar: Optional[int] = None
    tp_order_id: Optional[str] = None
    tp_order_price: Optional[float] = None
    tp_refreshed_at: Optional[datetime] = None
    adopted: bool = False

    def held_minutes(self, now: datetime) -> float:
        return max((now - self.entered_at).total_seconds() / 60.0, 0.0)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["entered_at"] = self.entered_at.isoformat()
        if self.tp_refreshed_at is not None:
            data["tp_refreshed_at"] = self.tp_refreshed_at.isoformat()
        return data


class PositionLedger:
    """Trade states and in-flight entries keyed by position symbol."""

    def __init__(self) -> None:
        self._states: dict[str, TradeState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._pending: set[str] = set()

    def lock(self, symbol: str) -> asyncio.Lock:
        """The lock guarding *symbol*'s state (created on first use)."""
        lock = self._locks.get(symbol)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[symbol] = lock
        return lock

    def is_busy(self, symbol: str) -> bool:
        lock = self._locks.get(symbol)
        return lock is not None and lock.locked()

    # ── State ────────────────────────────────────────────────────────────

    def get(self, symbol: str) -> Optional[TradeState]:
        return self._states.get(symbol)

    def create(self, state: TradeState) -> None:
        if state.symbol in self._states:
            raise ValueError(f"TradeState for {state.symbol} already exists")
        self._states[state.symbol] = state

    def remove(self, symbol: str) -> Optional[TradeState]:
        state = self._states.pop(symbol, None)
        if state is not None:
            state.phase = CLOSED
        return state

    def symbols(self) -> list[str]:
        return sorted(self._states)

    def states(self) -> list[TradeState]:
        return [self._states[s] for s in self.symbols()]

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._states

    def __len__(self) -> int:
        return len(self._states)

    # ── In-flight entries ────────────────────────────────────────────────

    def mark_pending(self, symbol: str) -> None:
        self._pending.add(symbol)

    def clear_pending(self, symbol: str) -> None:
        self._pending.discard(symbol)

    def is_pending(self, symbol: str) -> bool:
        return symbol in self._pending

    def occupied(self) -> set[str]:
        """Symbols with a tracked position or an entry awaiting confirmation."""
        return set(self._states) | self._pending

    @property
    def open_count(self) -> int:
        """Held positions plus entries awaiting confirmation."""
        return len(self.occupied())

    def phase(self, symbol: str) -> str:
        if symbol in self._states:
            return self._states[symbol].phase
        if symbol in self._pending:
            return ENTRY_SUBMITTED
        return NO_POSITION
