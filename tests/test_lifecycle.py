"""Tests for the order lifecycle: entries, fill confirmation and exits.

Uses the in-memory ``MockBroker`` from ``fakes``; no network access.
"""

from dataclasses import replace

import pytest

from bullbust.broker.models import Order, Quote
from bullbust.engine.admission import AdmissionController
from bullbust.engine.event_log import EventLog
from bullbust.engine.ledger import PARTIALLY_EXITED, PositionLedger, take_profit_qty
from bullbust.engine.lifecycle import (
    OrderLifecycle,
    entry_limit_price,
    evaluate_exit,
    new_trade_state,
    update_vwap_counter,
)
from bullbust.models.instrument import find_instrument
from bullbust.models.preset import StrategyPreset
from bullbust.strategy.models import IndicatorSnapshot

from fakes import NOW, MockBroker, minutes_later

PRESET = StrategyPreset()
ETH = find_instrument("ETHUSD")
QUOTE = Quote(bid=99.95, ask=100.05)
LIMIT = 100.05 * 1.0015


def _lifecycle(broker: MockBroker):
    ledger = PositionLedger()
    admission = AdmissionController()
    events = EventLog(200)
    lc = OrderLifecycle(
        broker, ledger, admission, events,
        fill_poll_attempts=3, fill_poll_interval=0.0, position_poll_attempts=2,
    )
    return lc, ledger, admission, events


async def _enter(lc, broker, preset=PRESET, now=NOW):
    snapshot = IndicatorSnapshot(price=100.0, atr=1.0)
    return await lc.enter(ETH, snapshot, QUOTE, broker.account, preset, now)


def _mark(price: float, **extra) -> IndicatorSnapshot:
    return IndicatorSnapshot(price=price, **extra)


# ── Pure helpers ─────────────────────────────────────────────────────────


class TestEntryPrice:
    def test_slippage_cap(self):
        assert entry_limit_price(100.0, None, PRESET) == pytest.approx(100.15)

    def test_halved_after_impulse(self):
        assert entry_limit_price(100.0, 50.0, PRESET) == pytest.approx(100.075)


class TestEvaluateExit:
    def _state(self):
        # stop 98.5, breakeven 100.5
        return new_trade_state("ETHUSD", 1.0, 100.0, 1.0, PRESET, NOW)

    def test_seeded_levels(self):
        state = self._state()
        assert state.stop == pytest.approx(98.5)
        assert state.take_profit == pytest.approx(100.8)
        assert state.tp_floor == pytest.approx(100.65)

    def test_holding(self):
        assert evaluate_exit(self._state(), _mark(100.2), 100.2, 30.0, PRESET) is None

    def test_stop(self):
        assert evaluate_exit(self._state(), _mark(98.5), 98.5, 30.0, PRESET) == "stop"

    def test_fast_wrong_ema(self):
        snap = _mark(99.8, short_ema_fast=99.7, short_ema_slow=99.9)
        assert evaluate_exit(self._state(), snap, 99.8, 2.0, PRESET) == "fast_wrong_ema"

    def test_fast_wrong_ema_ignores_deep_loss(self):
        snap = _mark(99.0, short_ema_fast=99.0, short_ema_slow=99.9)
        assert evaluate_exit(self._state(), snap, 99.0, 2.0, PRESET) is None

    def test_fast_wrong_atr(self):
        snap = _mark(99.4, atr_short=0.5)
        assert evaluate_exit(self._state(), snap, 99.4, 2.0, PRESET) == "fast_wrong_atr"

    def test_fast_wrong_window_expires(self):
        snap = _mark(99.4, atr_short=0.5)
        assert evaluate_exit(self._state(), snap, 99.4, 6.0, PRESET) is None

    def test_vwap(self):
        state = self._state()
        state.below_vwap_count = 2
        assert evaluate_exit(state, _mark(99.9), 99.9, 30.0, PRESET) == "vwap"

    def test_vwap_skipped_on_large_loss(self):
        state = self._state()
        state.below_vwap_count = 2
        assert evaluate_exit(state, _mark(99.0), 99.0, 30.0, PRESET) is None

    def test_max_hold(self):
        assert evaluate_exit(self._state(), _mark(100.0), 100.0, 360.0, PRESET) == "max_hold"

    def test_time_stop_needs_breakeven(self):
        assert evaluate_exit(self._state(), _mark(100.6), 100.6, 120.0, PRESET) == "time_stop"
        assert evaluate_exit(self._state(), _mark(100.4), 100.4, 120.0, PRESET) is None


class TestVwapCounter:
    def test_counts_each_bar_once(self):
        state = new_trade_state("ETHUSD", 1.0, 100.0, 1.0, PRESET, NOW)
        below = dict(vwap=100.0, short_close=99.0)
        update_vwap_counter(state, _mark(99.0, short_close_time=60, **below))
        update_vwap_counter(state, _mark(99.0, short_close_time=60, **below))
        assert state.below_vwap_count == 1
        update_vwap_counter(state, _mark(99.0, short_close_time=120, **below))
        assert state.below_vwap_count == 2
        update_vwap_counter(state, _mark(101.0, vwap=100.0, short_close=101.0, short_close_time=180))
        assert state.below_vwap_count == 0

    def test_no_vwap_no_change(self):
        state = new_trade_state("ETHUSD", 1.0, 100.0, 1.0, PRESET, NOW)
        update_vwap_counter(state, _mark(99.0, short_close=99.0, short_close_time=60))
        assert state.below_vwap_count == 0


# ── Entry path ───────────────────────────────────────────────────────────


class TestEntry:
    @pytest.mark.asyncio
    async def test_fill_seeds_state_and_take_profit(self):
        broker = MockBroker()
        lc, ledger, _adm, events = _lifecycle(broker)
        result = await _enter(lc, broker)

        assert result["action"] == "entered"
        buy = broker.buys()[0]
        assert buy.type == "limit"
        assert buy.time_in_force == "ioc"
        assert buy.limit_price == pytest.approx(LIMIT)
        # Equity cap: 10 % of $10,000
        assert buy.qty * buy.limit_price == pytest.approx(1000.0, abs=0.01)

        state = ledger.get("ETHUSD")
        assert state.entry_price == pytest.approx(LIMIT)
        assert state.stop == pytest.approx(LIMIT - 1.5)
        assert state.take_profit == pytest.approx(LIMIT * 1.008)
        assert not ledger.is_pending("ETHUSD")

        tp = broker.sells("limit")[0]
        assert tp.time_in_force == "gtc"
        assert tp.qty == take_profit_qty(state.qty)
        assert tp.limit_price == pytest.approx(state.take_profit)
        assert state.tp_order_id is not None
        assert events.recent(event="entry_filled")

    @pytest.mark.asyncio
    async def test_repeated_entry_is_blocked(self):
        broker = MockBroker()
        lc, *_ = _lifecycle(broker)
        await _enter(lc, broker)
        result = await _enter(lc, broker)
        assert result == {"action": "skipped", "reason": "already_in_position"}
        assert len(broker.buys()) == 1

    @pytest.mark.asyncio
    async def test_open_order_blocks_entry(self):
        broker = MockBroker()
        broker.open_orders.append(Order(
            order_id="resting", client_order_id="c", symbol="ETH/USD", side="buy",
            type="limit", time_in_force="gtc", status="new", qty=1.0, limit_price=99.0,
        ))
        lc, _ledger, _adm, events = _lifecycle(broker)
        result = await _enter(lc, broker)
        assert result["reason"] == "open_order"
        assert broker.submitted == []
        assert events.recent(event="entry_skipped")[0]["detail"]["order_ids"] == ["resting"]

    @pytest.mark.asyncio
    async def test_closed_order_in_listing_does_not_block_entry(self):
        broker = MockBroker()
        broker.open_orders.append(Order(
            order_id="done", client_order_id="c", symbol="ETH/USD", side="buy",
            type="limit", time_in_force="ioc", status="canceled", qty=1.0, limit_price=99.0,
        ))
        lc, ledger, *_ = _lifecycle(broker)
        result = await _enter(lc, broker)
        assert result["action"] == "entered"
        assert "ETHUSD" in ledger

    @pytest.mark.asyncio
    async def test_held_position_blocks_entry(self):
        broker = MockBroker()
        broker.add_position("ETHUSD", 1.0, 100.0)
        lc, *_ = _lifecycle(broker)
        result = await _enter(lc, broker)
        assert result["reason"] == "position_held"
        assert broker.submitted == []

    @pytest.mark.asyncio
    async def test_blocked_account(self):
        broker = MockBroker()
        broker.account = replace(broker.account, trading_blocked=True)
        lc, _ledger, _adm, events = _lifecycle(broker)
        result = await _enter(lc, broker)
        assert result == {"action": "skipped", "reason": "account_blocked", "detail": "Trading blocked"}
        assert broker.submitted == []
        assert events.recent(event="entry_blocked")

    @pytest.mark.asyncio
    async def test_rejection_leaves_no_state(self):
        broker = MockBroker()
        broker.reject_reason = "insufficient balance for USD"
        lc, ledger, _adm, events = _lifecycle(broker)
        result = await _enter(lc, broker)
        assert result == {"action": "rejected", "reason": "insufficient balance for USD"}
        assert "ETHUSD" not in ledger
        assert not ledger.is_pending("ETHUSD")
        assert events.recent(event="order_rejected")[0]["detail"]["reason"] == "insufficient balance for USD"

    @pytest.mark.asyncio
    async def test_unfilled_ioc(self):
        broker = MockBroker()
        broker.fill_entries = False
        broker.entry_status = "canceled"
        lc, ledger, *_ = _lifecycle(broker)
        result = await _enter(lc, broker)
        assert result["reason"] == "unfilled"
        assert len(ledger) == 0
        assert broker.sells() == []

    @pytest.mark.asyncio
    async def test_fill_timeout(self):
        broker = MockBroker()
        broker.fill_entries = False
        broker.entry_status = "new"
        lc, ledger, _adm, events = _lifecycle(broker)
        result = await _enter(lc, broker)
        assert result["action"] == "fill_timeout"
        assert len(ledger) == 0
        assert not ledger.is_pending("ETHUSD")
        assert events.recent(event="fill_timeout")

    @pytest.mark.asyncio
    async def test_insufficient_funds(self):
        broker = MockBroker(buying_power=2.0)
        lc, *_ = _lifecycle(broker)
        result = await _enter(lc, broker)
        assert result["reason"] == "insufficient_funds"
        assert broker.submitted == []

    @pytest.mark.asyncio
    async def test_missing_atr(self):
        broker = MockBroker()
        lc, *_ = _lifecycle(broker)
        result = await lc.enter(ETH, IndicatorSnapshot(price=100.0), QUOTE, broker.account, PRESET, NOW)
        assert result["reason"] == "insufficient_data"


# ── Exit path ────────────────────────────────────────────────────────────


class TestManage:
    @pytest.mark.asyncio
    async def test_stop_breach_exits(self):
        broker = MockBroker()
        lc, ledger, admission, events = _lifecycle(broker)
        await _enter(lc, broker)
        tp_id = ledger.get("ETHUSD").tp_order_id

        mark = LIMIT - 2.0
        broker.set_mark("ETHUSD", mark)
        result = await lc.manage(ETH, None, _mark(mark), PRESET, minutes_later(10))

        assert result == {"action": "exited", "symbol": "ETHUSD", "reason": "stop", "losing": True}
        assert tp_id in broker.cancelled
        assert len(broker.sells("market")) == 1
        assert broker.positions == {}
        assert "ETHUSD" not in ledger
        assert admission.can_enter("ETHUSD", minutes_later(20), 0, 4) == (False, "instrument_cooldown")
        assert events.recent(event="exit")[0]["detail"]["reason"] == "stop"

    @pytest.mark.asyncio
    async def test_stop_ratchets_up_only(self):
        preset = replace(PRESET, partial_exit_enabled=False)
        broker = MockBroker()
        lc, ledger, *_ = _lifecycle(broker)
        await _enter(lc, broker, preset=preset)

        stops = []
        for minute, offset in enumerate([1.2, 3.0, 2.0, 4.0], start=10):
            mark = LIMIT + offset
            broker.set_mark("ETHUSD", mark)
            result = await lc.manage(ETH, None, _mark(mark), preset, minutes_later(minute))
            assert result["action"] == "managed"
            stops.append(ledger.get("ETHUSD").stop)

        assert stops == sorted(stops)
        assert stops[0] == pytest.approx(LIMIT * 1.005)
        assert stops[-1] == pytest.approx(LIMIT + 2.5)

    @pytest.mark.asyncio
    async def test_partial_exit(self):
        broker = MockBroker()
        lc, ledger, *_ = _lifecycle(broker)
        await _enter(lc, broker)
        held = ledger.get("ETHUSD").qty

        mark = LIMIT * 1.01
        broker.set_mark("ETHUSD", mark)
        result = await lc.manage(ETH, None, _mark(mark), PRESET, minutes_later(10))

        assert result["partial"] is True
        state = ledger.get("ETHUSD")
        assert state.partial_exit_done
        assert state.phase == PARTIALLY_EXITED
        assert state.stop >= LIMIT * 1.005
        sold = broker.sells("market")[0].qty
        assert sold == pytest.approx(held * 0.5, abs=1e-6)
        assert broker.positions["ETHUSD"].qty == pytest.approx(held - sold)
        # Take-profit re-placed for the remainder
        assert broker.sells("limit")[-1].qty == take_profit_qty(state.qty)

    @pytest.mark.asyncio
    async def test_take_profit_refresh_interval(self):
        broker = MockBroker()
        lc, ledger, *_ = _lifecycle(broker)
        await _enter(lc, broker)
        first_tp = ledger.get("ETHUSD").tp_order_id

        await lc.manage(ETH, None, _mark(LIMIT), PRESET, minutes_later(1))
        assert broker.cancelled == []

        await lc.manage(ETH, None, _mark(LIMIT), PRESET, minutes_later(3))
        assert broker.cancelled == [first_tp]
        assert ledger.get("ETHUSD").tp_order_id != first_tp

    @pytest.mark.asyncio
    async def test_take_profit_fill_detected(self):
        broker = MockBroker()
        lc, ledger, admission, events = _lifecycle(broker)
        await _enter(lc, broker)
        state = ledger.get("ETHUSD")
        broker.fill_order(state.tp_order_id, state.take_profit)

        result = await lc.manage(ETH, None, _mark(state.take_profit), PRESET, minutes_later(30))

        assert result["reason"] == "take_profit"
        assert result["losing"] is False
        assert "ETHUSD" not in ledger
        assert events.recent(event="take_profit_filled")
        assert broker.sells("market") == []
        # Winning exit: short cooldown only
        assert admission.can_enter("ETHUSD", minutes_later(41), 0, 4) == (True, "ok")

    @pytest.mark.asyncio
    async def test_external_close(self):
        broker = MockBroker()
        lc, ledger, _adm, events = _lifecycle(broker)
        await _enter(lc, broker)
        tp_id = ledger.get("ETHUSD").tp_order_id
        broker.positions.clear()

        result = await lc.manage(ETH, None, _mark(LIMIT), PRESET, minutes_later(5))

        assert result["reason"] == "external"
        assert tp_id in broker.cancelled
        assert events.recent(event="position_closed_externally")

    @pytest.mark.asyncio
    async def test_dust_counts_as_closed(self):
        broker = MockBroker()
        lc, ledger, *_ = _lifecycle(broker)
        await _enter(lc, broker)
        broker.positions["ETHUSD"] = replace(broker.positions["ETHUSD"], qty=0.01)

        result = await lc.manage(ETH, None, _mark(LIMIT), PRESET, minutes_later(5))

        assert result["action"] == "exited"
        assert "ETHUSD" not in ledger


class TestAdopt:
    @pytest.mark.asyncio
    async def test_adopts_untracked_position(self):
        broker = MockBroker()
        position = broker.add_position("ETHUSD", 2.0, 100.0)
        broker.open_orders.append(Order(
            order_id="stale", client_order_id="c", symbol="ETH/USD", side="sell",
            type="limit", time_in_force="gtc", status="new", qty=2.0, limit_price=120.0,
        ))
        lc, ledger, _adm, events = _lifecycle(broker)

        result = await lc.adopt(ETH, position, IndicatorSnapshot(price=101.0, atr=1.0), PRESET, NOW)

        assert result == {"action": "adopted", "symbol": "ETHUSD", "qty": 2.0}
        state = ledger.get("ETHUSD")
        assert state.adopted
        assert state.peak == 101.0
        assert state.stop == pytest.approx(98.5)
        assert "stale" in broker.cancelled
        assert broker.sells("limit")[0].qty == take_profit_qty(2.0)
        assert events.recent(event="position_adopted")

    @pytest.mark.asyncio
    async def test_adopt_without_atr_skips(self):
        broker = MockBroker()
        position = broker.add_position("ETHUSD", 2.0, 100.0)
        lc, ledger, *_ = _lifecycle(broker)
        result = await lc.adopt(ETH, position, IndicatorSnapshot(price=101.0), PRESET, NOW)
        assert result["reason"] == "insufficient_data"
        assert len(ledger) == 0
