"""Broker data models — typed representations of Alpaca and market-data objects."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Bar:
    """A single OHLCV bar. ``time`` is epoch seconds (UTC) of the bucket open."""

    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3.0


@dataclass(frozen=True)
class Quote:
    """Best bid / ask.  ``synthetic`` marks a quote derived from spot price."""

    bid: float
    ask: float
    synthetic: bool = False

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2.0

    @property
    def spread_bps(self) -> float:
        if self.mid <= 0:
            return 0.0
        return (self.ask - self.bid) / self.mid * 10_000.0


@dataclass(frozen=True)
class AccountSnapshot:
    """Alpaca account state, refreshed once per cycle."""

    account_id: str
    equity: float
    last_equity: float
    cash: float
    buying_power: float
    non_marginable_buying_power: float
    trading_blocked: bool = False
    account_blocked: bool = False
    trade_suspended_by_user: bool = False

    @property
    def blocked_reason(self) -> Optional[str]:
        """Readable reason if the account cannot trade, else ``None``."""
        if self.trading_blocked:
            return "Trading blocked"
        if self.account_blocked:
            return "Account blocked"
        if self.trade_suspended_by_user:
            return "Trading suspended by user"
        return None

    @property
    def daily_change(self) -> float:
        return self.equity - self.last_equity


@dataclass(frozen=True)
class OrderRequest:
    """An order submission payload.  Exactly one of ``qty``/``notional`` is set."""

    symbol: str  # slash pair, e.g. "BTC/USD"
    side: str  # "buy" or "sell"
    type: str  # "market" or "limit"
    time_in_force: str  # "gtc" or "ioc"
    client_order_id: str
    qty: Optional[float] = None
    notional: Optional[float] = None
    limit_price: Optional[float] = None


@dataclass(frozen=True)
class Order:
    """An order as reported by the brokerage.  Never mutated after creation."""

    order_id: str
    client_order_id: str
    symbol: str
    side: str
    type: str
    time_in_force: str
    status: str
    qty: Optional[float] = None
    notional: Optional[float] = None
    limit_price: Optional[float] = None
    filled_qty: float = 0.0
    filled_avg_price: Optional[float] = None
    submitted_at: str = ""

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_ORDER_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES


OPEN_ORDER_STATUSES = frozenset({
    "new",
    "accepted",
    "pending_new",
    "partially_filled",
    "accepted_for_bidding",
    "pending_cancel",
    "pending_replace",
    "calculated",
})

TERMINAL_ORDER_STATUSES = frozenset({
    "filled",
    "canceled",
    "expired",
    "rejected",
    "done_for_day",
    "replaced",
    "stopped",
    "suspended",
})


@dataclass(frozen=True)
class Position:
    """An open position.  ``symbol`` is normalised without the slash."""

    symbol: str
    qty: float
    avg_entry_price: float
    current_price: float
    market_value: float
    unrealized_pnl: float


@dataclass(frozen=True)
class Activity:
    """An account activity (fill or crypto fee)."""

    activity_id: str
    activity_type: str  # "FILL" or "CFEE"
    symbol: str
    side: str
    qty: float
    price: float
    net_amount: float
    transaction_time: str
