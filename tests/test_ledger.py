"""Tests for the position ledger, the event log and the P&L fold."""

import asyncio

import pytest

from bullbust.broker.models import Activity
from bullbust.engine.event_log import EventLog
from bullbust.engine.ledger import (
    CLOSED,
    ENTRY_SUBMITTED,
    NO_POSITION,
    OPEN,
    PositionLedger,
    TradeState,
    floor_qty,
    take_profit_qty,
)
from bullbust.engine.pnl import summarize_activities

from fakes import NOW, minutes_later


def _state(symbol: str = "ETHUSD") -> TradeState:
    return TradeState(
        symbol=symbol,
        qty=1.0,
        entry_price=100.0,
        atr_at_entry=1.0,
        peak=100.0,
        stop=98.5,
        take_profit=100.8,
        initial_take_profit=100.8,
        tp_floor=100.65,
        entered_at=NOW,
    )


class TestQuantities:
    def test_floor_qty(self):
        assert floor_qty(1.23456789, 6) == 1.234567
        assert floor_qty(0.1 + 0.2, 1) == 0.3

    def test_take_profit_qty_leaves_epsilon(self):
        assert take_profit_qty(1.0) == 0.999
        assert take_profit_qty(2.5) == pytest.approx(2.4975)
        assert take_profit_qty(0.0) == 0.0


class TestPositionLedger:
    def test_create_and_get(self):
        ledger = PositionLedger()
        ledger.create(_state())
        assert "ETHUSD" in ledger
        assert len(ledger) == 1
        assert ledger.get("ETHUSD").qty == 1.0
        assert ledger.phase("ETHUSD") == OPEN

    def test_duplicate_state_rejected(self):
        ledger = PositionLedger()
        ledger.create(_state())
        with pytest.raises(ValueError, match="already exists"):
            ledger.create(_state())

    def test_remove_marks_closed(self):
        ledger = PositionLedger()
        ledger.create(_state())
        removed = ledger.remove("ETHUSD")
        assert removed.phase == CLOSED
        assert ledger.get("ETHUSD") is None
        assert ledger.phase("ETHUSD") == NO_POSITION
        assert ledger.remove("ETHUSD") is None

    def test_pending_counts_toward_open(self):
        ledger = PositionLedger()
        ledger.create(_state("ETHUSD"))
        ledger.mark_pending("LTCUSD")
        assert ledger.open_count == 2
        assert ledger.phase("LTCUSD") == ENTRY_SUBMITTED
        ledger.clear_pending("LTCUSD")
        assert ledger.open_count == 1

    def test_symbols_sorted(self):
        ledger = PositionLedger()
        ledger.create(_state("LTCUSD"))
        ledger.create(_state("BTCUSD"))
        assert ledger.symbols() == ["BTCUSD", "LTCUSD"]
        assert [s.symbol for s in ledger.states()] == ["BTCUSD", "LTCUSD"]

    @pytest.mark.asyncio
    async def test_lock_is_per_instrument(self):
        ledger = PositionLedger()
        assert ledger.lock("ETHUSD") is ledger.lock("ETHUSD")
        assert ledger.lock("ETHUSD") is not ledger.lock("LTCUSD")
        async with ledger.lock("ETHUSD"):
            assert ledger.is_busy("ETHUSD")
            assert not ledger.is_busy("LTCUSD")
        assert not ledger.is_busy("ETHUSD")

    @pytest.mark.asyncio
    async def test_lock_serialises_access(self):
        ledger = PositionLedger()
        order: list[str] = []

        async def worker(name: str):
            async with ledger.lock("ETHUSD"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    def test_held_minutes_and_dict(self):
        state = _state()
        assert state.held_minutes(minutes_later(15)) == pytest.approx(15.0)
        data = state.to_dict()
        assert data["entered_at"] == NOW.isoformat()
        assert data["symbol"] == "ETHUSD"


class TestEventLog:
    def test_newest_first(self):
        log = EventLog(10)
        log.record("a", now=NOW)
        log.record("b", "ETHUSD", minutes_later(1), reason="x")
        events = log.recent()
        assert [e["event"] for e in events] == ["b", "a"]
        assert events[0]["instrument"] == "ETHUSD"
        assert events[0]["detail"] == {"reason": "x"}
        assert events[0]["timestamp"] == minutes_later(1).isoformat()

    def test_bounded(self):
        log = EventLog(3)
        for i in range(5):
            log.record(f"e{i}", now=NOW)
        assert len(log) == 3
        assert [e["event"] for e in log.recent()] == ["e4", "e3", "e2"]

    def test_filter_and_limit(self):
        log = EventLog(10)
        for i in range(4):
            log.record("exit" if i % 2 else "entry", now=NOW, i=i)
        exits = log.recent(event="exit")
        assert [e["detail"]["i"] for e in exits] == [3, 1]
        assert len(log.recent(limit=1)) == 1


def _fill(side: str, qty: float, price: float, symbol: str = "ETHUSD") -> Activity:
    return Activity("id", "FILL", symbol, side, qty, price, 0.0, NOW.isoformat())


class TestPnL:
    def test_average_cost_realized(self):
        summary = summarize_activities([
            _fill("buy", 1.0, 100.0),
            _fill("buy", 1.0, 110.0),
            _fill("sell", 1.0, 120.0),
            Activity("fee", "CFEE", "ETHUSD", "", -0.001, 120.0, 0.0, NOW.isoformat()),
        ])
        assert summary["realized_pnl"] == 15.0
        assert summary["fees"] == 0.12
        assert summary["net_pnl"] == 14.88
        assert summary["fills"] == 3
        assert summary["by_symbol"] == {"ETHUSD": 15.0}

    def test_unmatched_sell(self):
        summary = summarize_activities([_fill("sell", 2.0, 50.0)])
        assert summary["realized_pnl"] == 0.0
        assert summary["unmatched_qty"] == 2.0

    def test_empty(self):
        summary = summarize_activities([])
        assert summary["realized_pnl"] == 0.0
        assert summary["fills"] == 0
