"""Order lifecycle — entry submission, fill confirmation and exit management.

Phases per instrument::

    no_position → entry_submitted → open → partially_exited → closed
                        └──────────── closed (IOC unfilled / rejected)

Every public coroutine expects the caller to hold the instrument's ledger
lock.  Results are plain dicts (``{"action": ..., "reason": ...}``) in the
same shape the engine reports per cycle.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

import httpx

from bullbust.broker.alpaca_client import OrderRejectedError, new_client_order_id
from bullbust.broker.models import AccountSnapshot, Order, OrderRequest, Position, Quote
from bullbust.engine.admission import AdmissionController
from bullbust.engine.event_log import EventLog
from bullbust.engine.ledger import (
    PARTIALLY_EXITED,
    PositionLedger,
    TradeState,
    floor_qty,
    take_profit_qty,
)
from bullbust.models.instrument import Instrument
from bullbust.models.preset import StrategyPreset
from bullbust.risk.position_sizer import calculate_notional
from bullbust.risk.take_profit import (
    decayed_take_profit,
    drift_bps,
    fee_floor_price,
    initial_take_profit,
)
from bullbust.risk.trailing_stop import TrailingStop, breakeven_price
from bullbust.strategy.models import IndicatorSnapshot

logger = logging.getLogger("bullbust.lifecycle")


# ── Pure helpers ─────────────────────────────────────────────────────────


def entry_limit_price(ask: float, impulse_bps: Optional[float], preset: StrategyPreset) -> float:
    """Best ask plus the slippage cap, halved after a sharp 1-minute impulse."""
    slip = preset.entry_slippage_cap_bps
    if impulse_bps is not None and impulse_bps >= preset.impulse_threshold_bps:
        slip /= 2.0
    return ask * (1.0 + slip / 10_000.0)


def update_vwap_counter(state: TradeState, snapshot: IndicatorSnapshot) -> None:
    """Count consecutive one-minute closes below the anchored VWAP.

    A bar already counted (same bar time) is not counted twice.
    """
    if snapshot.vwap is None or snapshot.short_close is None:
        return
    bar_time = snapshot.short_close_time
    if bar_time is not None and bar_time == state.last_vwap_bar:
        return
    state.last_vwap_bar = bar_time
    if snapshot.short_close < snapshot.vwap:
        state.below_vwap_count += 1
    else:
        state.below_vwap_count = 0


def evaluate_exit(
    state: TradeState,
    snapshot: IndicatorSnapshot,
    mark: float,
    held_minutes: float,
    preset: StrategyPreset,
) -> Optional[str]:
    """Name of the first full-exit trigger that fires, or ``None``."""
    entry = state.entry_price
    loss_bps = (entry - mark) / entry * 10_000.0

    if held_minutes <= preset.fast_wrong_minutes:
        if snapshot.short_emas_inverted and 0 < loss_bps <= preset.fast_wrong_max_loss_bps:
            return "fast_wrong_ema"
        if snapshot.atr_short and mark < entry - preset.fast_wrong_atr_mult * snapshot.atr_short:
            return "fast_wrong_atr"

    if (
        preset.vwap_exit_enabled
        and state.below_vwap_count >= preset.vwap_exit_bars
        and loss_bps <= preset.round_trip_fee_bps
    ):
        return "vwap"

    if held_minutes >= preset.max_hold_minutes:
        return "max_hold"
    if held_minutes >= preset.time_stop_minutes and mark >= breakeven_price(
        entry, preset.round_trip_fee_bps
    ):
        return "time_stop"

    if mark <= state.stop:
        return "stop"
    return None


def new_trade_state(
    symbol: str,
    qty: float,
    entry_price: float,
    atr: float,
    preset: StrategyPreset,
    now: datetime,
) -> TradeState:
    """Seed stop, take-profit and fee floor for a fresh position."""
    tp = initial_take_profit(entry_price, atr, preset)
    return TradeState(
        symbol=symbol,
        qty=qty,
        entry_price=entry_price,
        atr_at_entry=atr,
        peak=entry_price,
        stop=entry_price - preset.stop_atr_mult * atr,
        take_profit=tp,
        initial_take_profit=tp,
        tp_floor=fee_floor_price(entry_price, preset),
        entered_at=now,
    )


# ── Lifecycle ────────────────────────────────────────────────────────────


class OrderLifecycle:
    """Drives orders for one instrument at a time through the brokerage.

    Args:
        broker: An ``AlpacaClient`` (or duck-type / mock).
        ledger: Shared ``PositionLedger``.
        admission: Shared ``AdmissionController`` (exits feed cooldowns).
        events: ``EventLog`` receiving structured events.
        fill_poll_attempts: Order polls before giving up on a fill.
        fill_poll_interval: Seconds between polls.
    """

    def __init__(
        self,
        broker,
        ledger: PositionLedger,
        admission: AdmissionController,
        events: EventLog,
        fill_poll_attempts: int = 20,
        fill_poll_interval: float = 3.0,
        position_poll_attempts: int = 3,
    ) -> None:
        self._broker = broker
        self._ledger = ledger
        self._admission = admission
        self._events = events
        self._fill_poll_attempts = fill_poll_attempts
        self._fill_poll_interval = fill_poll_interval
        self._position_poll_attempts = position_poll_attempts

    # ── Entry path ───────────────────────────────────────────────────────

    async def enter(
        self,
        instrument: Instrument,
        snapshot: IndicatorSnapshot,
        quote: Optional[Quote],
        account: AccountSnapshot,
        preset: StrategyPreset,
        now: datetime,
        source: str = "signal",
    ) -> dict:
        """Submit an IOC limit buy, confirm the fill and seed ``TradeState``."""
        symbol = instrument.symbol

        blocked = account.blocked_reason
        if blocked:
            self._events.record("entry_blocked", symbol, now, reason=blocked, source=source)
            return {"action": "skipped", "reason": "account_blocked", "detail": blocked}

        if snapshot.atr is None or snapshot.atr <= 0 or quote is None:
            return {"action": "skipped", "reason": "insufficient_data"}

        if symbol in self._ledger or self._ledger.is_pending(symbol):
            return {"action": "skipped", "reason": "already_in_position"}

        open_orders = [
            o for o in await self._broker.list_orders(symbol=instrument.pair, status="open")
            if o.is_open
        ]
        if open_orders:
            self._events.record(
                "entry_skipped", symbol, now,
                reason="open_order", order_ids=[o.order_id for o in open_orders],
            )
            return {"action": "skipped", "reason": "open_order"}

        position = await self._broker.get_position(symbol)
        if position is not None and position.qty > 0:
            self._events.record("entry_skipped", symbol, now, reason="position_held", qty=position.qty)
            return {"action": "skipped", "reason": "position_held"}

        limit_price = entry_limit_price(quote.ask, snapshot.impulse_bps, preset)
        sizing = calculate_notional(
            equity=account.equity,
            buying_power=account.non_marginable_buying_power,
            atr=snapshot.atr,
            price=limit_price,
            preset=preset,
            instrument_cap=instrument.max_notional,
        )
        if not sizing.ok:
            self._events.record(
                "entry_skipped", symbol, now,
                reason=sizing.skip_reason, raw_notional=round(sizing.raw_notional, 2),
            )
            return {"action": "skipped", "reason": sizing.skip_reason}

        request = OrderRequest(
            symbol=instrument.pair,
            side="buy",
            type="limit",
            time_in_force="ioc",
            client_order_id=new_client_order_id(symbol, "buy"),
            qty=floor_qty(sizing.notional / limit_price, 9),
            limit_price=limit_price,
        )

        self._ledger.mark_pending(symbol)
        try:
            try:
                order = await self._broker.submit_order(request)
            except OrderRejectedError as exc:
                self._events.record("order_rejected", symbol, now, side="buy", reason=exc.reason)
                return {"action": "rejected", "reason": exc.reason}

            self._events.record(
                "entry_submitted", symbol, now,
                order_id=order.order_id,
                client_order_id=request.client_order_id,
                notional=sizing.notional,
                limit_price=limit_price,
                capped_by=sizing.capped_by,
                source=source,
            )

            final = await self._await_fill(order)
            if final is None:
                self._events.record("fill_timeout", symbol, now, order_id=order.order_id)
                return {"action": "fill_timeout", "order_id": order.order_id}
            if final.filled_qty <= 0:
                self._events.record("entry_unfilled", symbol, now, status=final.status)
                return {"action": "skipped", "reason": "unfilled", "status": final.status}

            state = await self._seed_state(instrument, final, snapshot.atr, preset, now)
        finally:
            self._ledger.clear_pending(symbol)

        self._events.record(
            "entry_filled", symbol, now,
            qty=state.qty,
            price=state.entry_price,
            stop=round(state.stop, 8),
            take_profit=round(state.take_profit, 8),
        )
        return {
            "action": "entered",
            "symbol": symbol,
            "order_id": final.order_id,
            "qty": state.qty,
            "entry": state.entry_price,
            "stop": state.stop,
            "take_profit": state.take_profit,
            "notional": sizing.notional,
        }

    async def _await_fill(self, order: Order) -> Optional[Order]:
        """Poll until the order reaches a terminal status, else ``None``."""
        current = order
        for _ in range(self._fill_poll_attempts):
            if current.is_terminal:
                return current
            await asyncio.sleep(self._fill_poll_interval)
            current = await self._broker.get_order(current.order_id)
        return current if current.is_terminal else None

    async def _held_qty(self, symbol: str, fallback: float) -> float:
        for attempt in range(self._position_poll_attempts):
            position = await self._broker.get_position(symbol)
            if position is not None and position.qty > 0:
                return position.qty
            if attempt < self._position_poll_attempts - 1:
                await asyncio.sleep(self._fill_poll_interval)
        return fallback

    async def _seed_state(
        self,
        instrument: Instrument,
        order: Order,
        atr: float,
        preset: StrategyPreset,
        now: datetime,
    ) -> TradeState:
        entry = order.filled_avg_price or order.limit_price
        qty = await self._held_qty(instrument.symbol, order.filled_qty)
        state = new_trade_state(instrument.symbol, qty, entry, atr, preset, now)
        self._ledger.create(state)
        await self._place_take_profit(instrument, state, state.take_profit, now)
        return state

    async def adopt(
        self,
        instrument: Instrument,
        position: Position,
        snapshot: IndicatorSnapshot,
        preset: StrategyPreset,
        now: datetime,
    ) -> dict:
        """Seed ``TradeState`` for a held position the ledger does not know."""
        atr = snapshot.atr or snapshot.atr_short
        if not atr:
            return {"action": "skipped", "reason": "insufficient_data"}

        state = new_trade_state(
            instrument.symbol, position.qty, position.avg_entry_price, atr, preset, now,
        )
        state.adopted = True
        if snapshot.price is not None:
            state.peak = max(state.peak, snapshot.price)
        self._ledger.create(state)

        await self._cancel_open_orders(instrument)
        await self._place_take_profit(instrument, state, state.take_profit, now)
        self._events.record(
            "position_adopted", instrument.symbol, now,
            qty=position.qty, avg_entry_price=position.avg_entry_price,
        )
        return {"action": "adopted", "symbol": instrument.symbol, "qty": position.qty}

    # ── Take-profit order ────────────────────────────────────────────────

    async def _place_take_profit(
        self,
        instrument: Instrument,
        state: TradeState,
        price: float,
        now: datetime,
    ) -> bool:
        state.tp_refreshed_at = now
        qty = take_profit_qty(state.qty)
        if qty <= 0:
            return False
        request = OrderRequest(
            symbol=instrument.pair,
            side="sell",
            type="limit",
            time_in_force="gtc",
            client_order_id=new_client_order_id(instrument.symbol, "sell"),
            qty=qty,
            limit_price=price,
        )
        try:
            order = await self._broker.submit_order(request)
        except OrderRejectedError as exc:
            self._events.record("tp_rejected", instrument.symbol, now, reason=exc.reason, price=price)
            return False

        state.tp_order_id = order.order_id
        state.tp_order_price = price
        self._events.record("tp_placed", instrument.symbol, now, price=price, qty=qty)
        return True

    async def _cancel_take_profit(self, state: TradeState) -> None:
        if state.tp_order_id is None:
            return
        await self._broker.cancel_order(state.tp_order_id)
        state.tp_order_id = None
        state.tp_order_price = None

    async def _cancel_open_orders(self, instrument: Instrument) -> None:
        for order in await self._broker.list_orders(symbol=instrument.pair, status="open"):
            if order.is_open:
                await self._broker.cancel_order(order.order_id)

    async def _refresh_take_profit(
        self,
        instrument: Instrument,
        state: TradeState,
        preset: StrategyPreset,
        now: datetime,
        force: bool = False,
    ) -> None:
        elapsed = (
            (now - state.tp_refreshed_at).total_seconds()
            if state.tp_refreshed_at is not None else None
        )
        interval_due = elapsed is None or elapsed >= preset.tp_refresh_seconds
        if state.tp_order_id is None:
            due = force or interval_due
        else:
            drifted = drift_bps(state.tp_order_price or 0.0, state.take_profit) > preset.tp_drift_bps
            due = force or drifted or interval_due
        if not due:
            return
        await self._cancel_take_profit(state)
        await self._place_take_profit(instrument, state, state.take_profit, now)

    # ── Exit path ────────────────────────────────────────────────────────

    async def manage(
        self,
        instrument: Instrument,
        position: Optional[Position],
        snapshot: IndicatorSnapshot,
        preset: StrategyPreset,
        now: datetime,
    ) -> dict:
        """One exit-loop tick for an instrument with ``TradeState``."""
        symbol = instrument.symbol
        state = self._ledger.get(symbol)
        if state is None:
            return {"action": "skipped", "reason": "no_trade_state"}
        mark = snapshot.price
        if mark is None:
            return {"action": "skipped", "reason": "no_price"}

        if position is None or position.qty <= 0:
            position = await self._broker.get_position(symbol)
        if position is None or position.qty * mark < preset.min_notional:
            return await self._close_externally(instrument, state, mark, preset, now)
        state.qty = position.qty

        held = state.held_minutes(now)

        # 1 ── Take-profit decay
        state.take_profit = decayed_take_profit(
            state.initial_take_profit, state.tp_floor, held, preset,
        )

        # 2 ── Stop ratchet
        trail = TrailingStop(
            entry_price=state.entry_price,
            atr=state.atr_at_entry,
            initial_stop=state.stop,
            breakeven_trigger_atr=preset.breakeven_trigger_atr,
            trail_atr_mult=preset.trail_atr_mult,
            round_trip_fee_bps=preset.round_trip_fee_bps,
            peak=state.peak,
            armed=state.breakeven_armed,
        )
        trail.update(mark)
        state.peak = trail.peak
        state.stop = trail.current_stop
        state.breakeven_armed = trail.armed

        # 3 ── Partial take-profit
        partial = await self._maybe_partial_exit(instrument, state, trail, mark, preset, now)

        # 4-7 ── Full-exit triggers
        update_vwap_counter(state, snapshot)
        reason = evaluate_exit(state, snapshot, mark, held, preset)
        if reason is not None:
            return await self.exit_position(instrument, reason, mark, preset, now)

        await self._refresh_take_profit(instrument, state, preset, now, force=partial)
        return {
            "action": "managed",
            "symbol": symbol,
            "mark": mark,
            "stop": state.stop,
            "take_profit": state.take_profit,
            "partial": partial,
        }

    async def _maybe_partial_exit(
        self,
        instrument: Instrument,
        state: TradeState,
        trail: TrailingStop,
        mark: float,
        preset: StrategyPreset,
        now: datetime,
    ) -> bool:
        if not preset.partial_exit_enabled or state.partial_exit_done:
            return False
        threshold = state.entry_price * (
            1.0 + (preset.round_trip_fee_bps + preset.partial_edge_bps) / 10_000.0
        )
        if mark < threshold:
            return False

        qty = floor_qty(state.qty * preset.partial_exit_fraction, 6)
        remainder = state.qty - qty
        if qty * mark < preset.min_notional or remainder * mark < preset.min_notional:
            # Too small to split; leave the whole position to the other exits
            state.partial_exit_done = True
            return False

        await self._cancel_take_profit(state)
        request = OrderRequest(
            symbol=instrument.pair,
            side="sell",
            type="market",
            time_in_force="gtc",
            client_order_id=new_client_order_id(instrument.symbol, "sell"),
            qty=qty,
        )
        try:
            await self._broker.submit_order(request)
        except OrderRejectedError as exc:
            self._events.record("order_rejected", instrument.symbol, now, side="sell", reason=exc.reason)
            return False

        state.partial_exit_done = True
        state.phase = PARTIALLY_EXITED
        state.qty = remainder
        trail.lock_breakeven()
        state.stop = trail.current_stop
        state.breakeven_armed = True
        self._events.record(
            "partial_exit", instrument.symbol, now,
            qty=qty, price=mark, stop=round(state.stop, 8),
        )
        return True

    async def exit_position(
        self,
        instrument: Instrument,
        reason: str,
        mark: float,
        preset: StrategyPreset,
        now: datetime,
    ) -> dict:
        """Cancel resting orders, market-sell the full holding, clear state."""
        symbol = instrument.symbol
        state = self._ledger.get(symbol)
        if state is not None:
            await self._cancel_take_profit(state)
        await self._cancel_open_orders(instrument)

        position = await self._broker.get_position(symbol)
        qty = position.qty if position is not None else 0.0
        if qty > 0:
            request = OrderRequest(
                symbol=instrument.pair,
                side="sell",
                type="market",
                time_in_force="gtc",
                client_order_id=new_client_order_id(symbol, "sell"),
                qty=qty,
            )
            try:
                await self._broker.submit_order(request)
            except OrderRejectedError as exc:
                self._events.record(
                    "order_rejected", symbol, now, side="sell", reason=exc.reason, trigger=reason,
                )
                return {"action": "exit_failed", "reason": exc.reason, "trigger": reason}

        if state is not None:
            entry = state.entry_price
        elif position is not None:
            entry = position.avg_entry_price
        else:
            entry = mark
        losing = mark < breakeven_price(entry, preset.round_trip_fee_bps)
        pnl_bps = (mark - entry) / entry * 10_000.0 if entry else 0.0

        self._ledger.remove(symbol)
        streak = self._admission.record_exit(symbol, now, losing, preset)
        self._events.record(
            "exit", symbol, now,
            reason=reason, qty=qty, price=mark, pnl_bps=round(pnl_bps, 1), losing=losing,
        )
        if streak:
            self._events.record("loss_streak_cooldown", symbol, now)
        return {"action": "exited", "symbol": symbol, "reason": reason, "losing": losing}

    async def _close_externally(
        self,
        instrument: Instrument,
        state: TradeState,
        mark: float,
        preset: StrategyPreset,
        now: datetime,
    ) -> dict:
        """The brokerage no longer reports a holding: TP filled or sold elsewhere."""
        symbol = instrument.symbol
        tp_fill: Optional[Order] = None
        if state.tp_order_id is not None:
            try:
                order = await self._broker.get_order(state.tp_order_id)
            except httpx.HTTPError as exc:
                logger.debug("TP order lookup for %s failed: %s", symbol, exc)
            else:
                if order.status == "filled" or order.filled_qty > 0:
                    tp_fill = order
                else:
                    await self._cancel_take_profit(state)

        self._ledger.remove(symbol)
        if tp_fill is not None:
            price = tp_fill.filled_avg_price or state.tp_order_price or mark
            self._admission.record_exit(symbol, now, False, preset)
            self._events.record(
                "take_profit_filled", symbol, now,
                price=price, qty=tp_fill.filled_qty, order_id=tp_fill.order_id,
            )
            return {"action": "exited", "symbol": symbol, "reason": "take_profit", "losing": False}

        losing = mark < breakeven_price(state.entry_price, preset.round_trip_fee_bps)
        self._admission.record_exit(symbol, now, losing, preset)
        self._events.record("position_closed_externally", symbol, now, price=mark, losing=losing)
        return {"action": "exited", "symbol": symbol, "reason": "external", "losing": losing}
