"""Shared test doubles: config factory, bar builders, mock broker and market."""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from bullbust.broker.alpaca_client import OrderRejectedError
from bullbust.broker.models import (
    AccountSnapshot,
    Bar,
    Order,
    OrderRequest,
    Position,
    Quote,
)
from bullbust.config import Config
from bullbust.market.gateway import MarketContext
from bullbust.models.instrument import find_instrument

NOW = datetime(2025, 6, 2, 12, 0, tzinfo=timezone.utc)


def make_config(**overrides) -> Config:
    """Build a Config with sensible test defaults."""
    defaults = dict(
        alpaca_key_id="test-key",
        alpaca_secret_key="test-secret",
        alpaca_environment="paper",
        cryptocompare_api_key="",
        strategy_preset="balanced",
        presets_path="",
        scan_interval_seconds=60,
        exit_interval_seconds=10,
        request_timeout_seconds=5.0,
        max_retries=3,
        retry_base_delay=0.0,
        fill_poll_attempts=3,
        fill_poll_interval_seconds=0.0,
        max_concurrent_requests=4,
        event_log_size=200,
        synthetic_spread_bps=10.0,
        auto_trade=True,
        log_level="WARNING",
        api_port=8080,
    )
    defaults.update(overrides)
    return Config(**defaults)


def universe(*symbols: str):
    return tuple(find_instrument(s) for s in symbols)


# ── Bars ─────────────────────────────────────────────────────────────────


def make_bars(
    closes: list[float],
    half_range: float = 0.5,
    minutes: int = 15,
    end: datetime = NOW,
    volume: float = 10.0,
) -> list[Bar]:
    """Bars ending at *end* with ``high/low = close ± half_range``."""
    end_ts = int(end.timestamp())
    n = len(closes)
    bars = []
    for i, c in enumerate(closes):
        prev = closes[i - 1] if i else c
        bars.append(Bar(
            time=end_ts - (n - 1 - i) * minutes * 60,
            open=prev,
            high=c + half_range,
            low=c - half_range,
            close=c,
            volume=volume,
        ))
    return bars


def ramp(start: float = 100.0, step: float = 0.1, n: int = 60) -> list[float]:
    return [start + step * i for i in range(n)]


def crash_closes(n: int = 61, start: float = 100.0, drop: float = 0.05) -> list[float]:
    """Alternating ±0.1 % one-minute moves, then one sharp drop."""
    closes = [start]
    for i in range(n - 2):
        closes.append(closes[-1] * (1.001 if i % 2 == 0 else 0.999))
    closes.append(closes[-1] * (1.0 - drop))
    return closes


def make_context(
    price: float = 106.0,
    closes: Optional[list[float]] = None,
    short_closes: Optional[list[float]] = None,
    quote: Optional[Quote] = None,
) -> MarketContext:
    closes = closes if closes is not None else ramp(100.0, 0.1, 60)
    short_closes = short_closes if short_closes is not None else ramp(105.0, 0.01, 60)
    return MarketContext(
        price=price,
        bars=make_bars(closes),
        short_bars=make_bars(short_closes, half_range=0.05, minutes=1),
        session_bars=make_bars(short_closes, half_range=0.05, minutes=1),
        quote=quote or Quote(bid=price * 0.9995, ask=price * 1.0005),
    )


# ── Broker ───────────────────────────────────────────────────────────────


class MockBroker:
    """In-memory stand-in for ``AlpacaClient``.

    Buys fill immediately at the limit price (unless ``fill_entries`` is
    off), market sells reduce the position, limit sells rest as open orders.
    """

    def __init__(self, equity: float = 10_000.0, buying_power: Optional[float] = None) -> None:
        self.account = AccountSnapshot(
            account_id="acct-1",
            equity=equity,
            last_equity=equity,
            cash=equity,
            buying_power=equity if buying_power is None else buying_power,
            non_marginable_buying_power=equity if buying_power is None else buying_power,
        )
        self.positions: dict[str, Position] = {}
        self.orders: dict[str, Order] = {}
        self.open_orders: list[Order] = []
        self.submitted: list[OrderRequest] = []
        self.cancelled: list[str] = []
        self.activities: list = []
        self.fill_entries: bool = True
        self.entry_status: str = "filled"
        self.reject_reason: Optional[str] = None
        self.account_error: bool = False

    # ── helpers ──

    def add_position(self, symbol: str, qty: float, price: float) -> Position:
        pos = Position(symbol, qty, price, price, qty * price, 0.0)
        self.positions[symbol] = pos
        return pos

    def set_mark(self, symbol: str, price: float) -> None:
        pos = self.positions[symbol]
        self.positions[symbol] = replace(
            pos, current_price=price, market_value=pos.qty * price,
        )

    def buys(self) -> list[OrderRequest]:
        return [r for r in self.submitted if r.side == "buy"]

    def sells(self, type_: Optional[str] = None) -> list[OrderRequest]:
        return [
            r for r in self.submitted
            if r.side == "sell" and (type_ is None or r.type == type_)
        ]

    # ── AlpacaClient surface ──

    async def get_account(self) -> AccountSnapshot:
        if self.account_error:
            raise httpx.ConnectError("account down")
        return self.account

    async def list_orders(self, symbol=None, status="open") -> list[Order]:
        return [o for o in self.open_orders if symbol is None or o.symbol == symbol]

    async def submit_order(self, req: OrderRequest) -> Order:
        self.submitted.append(req)
        if self.reject_reason:
            raise OrderRejectedError(self.reject_reason, 403)

        oid = f"order-{len(self.submitted)}"
        key = req.symbol.replace("/", "")
        base = dict(
            order_id=oid,
            client_order_id=req.client_order_id,
            symbol=req.symbol,
            side=req.side,
            type=req.type,
            time_in_force=req.time_in_force,
            qty=req.qty,
            limit_price=req.limit_price,
        )

        if req.side == "buy":
            if self.fill_entries:
                order = Order(status="filled", filled_qty=req.qty, filled_avg_price=req.limit_price, **base)
                self.add_position(key, req.qty, req.limit_price)
            else:
                order = Order(status=self.entry_status, **base)
        elif req.type == "market":
            pos = self.positions.get(key)
            price = pos.current_price if pos else 0.0
            order = Order(status="filled", filled_qty=req.qty, filled_avg_price=price, **base)
            if pos is not None:
                remaining = pos.qty - req.qty
                if remaining <= 1e-9:
                    del self.positions[key]
                else:
                    self.positions[key] = replace(
                        pos, qty=remaining, market_value=remaining * pos.current_price,
                    )
        else:
            order = Order(status="new", **base)
            self.open_orders.append(order)

        self.orders[oid] = order
        return order

    async def get_order(self, order_id: str) -> Order:
        return self.orders[order_id]

    async def cancel_order(self, order_id: str) -> None:
        self.cancelled.append(order_id)
        self.open_orders = [o for o in self.open_orders if o.order_id != order_id]
        order = self.orders.get(order_id)
        if order is not None and order.status == "new":
            self.orders[order_id] = replace(order, status="canceled")

    def fill_order(self, order_id: str, price: float) -> None:
        """Mark a resting order filled and remove the position it sold."""
        order = self.orders[order_id]
        self.orders[order_id] = replace(
            order, status="filled", filled_qty=order.qty, filled_avg_price=price,
        )
        self.open_orders = [o for o in self.open_orders if o.order_id != order_id]
        self.positions.pop(order.symbol.replace("/", ""), None)

    async def get_position(self, symbol: str) -> Optional[Position]:
        pos = self.positions.get(symbol.replace("/", ""))
        if pos is None or pos.qty <= 0:
            return None
        return pos

    async def list_positions(self) -> list[Position]:
        return list(self.positions.values())

    async def list_activities(self, after) -> list:
        return list(self.activities)

    async def get_latest_quote(self, pair: str) -> Optional[Quote]:
        return None


# ── Market data ──────────────────────────────────────────────────────────


class MockMarket:
    """Stand-in for ``MarketDataGateway`` serving canned contexts.

    Instruments without a context get an empty one (signal unavailable).
    """

    def __init__(self, contexts: Optional[dict[str, MarketContext]] = None) -> None:
        self.contexts: dict[str, MarketContext] = dict(contexts or {})
        self.failing: set[str] = set()
        self.gate: Optional[asyncio.Event] = None
        self.calls: list[str] = []

    async def fetch_context(self, instrument, preset, now, include_session=True) -> MarketContext:
        self.calls.append(instrument.symbol)
        if self.gate is not None:
            await self.gate.wait()
        if instrument.symbol in self.failing:
            raise httpx.ConnectError(f"{instrument.symbol} feed down")
        return self.contexts.get(instrument.symbol, MarketContext(price=None))

    async def fetch_bars(self, instrument, minutes, count) -> list[Bar]:
        ctx = self.contexts.get(instrument.symbol)
        return list(ctx.short_bars) if ctx is not None else []


def minutes_later(minutes: float, start: datetime = NOW) -> datetime:
    return start + timedelta(minutes=minutes)
