"""Alpaca v2 REST API async client.

Handles all communication with the brokerage: account snapshot, order
submission / lookup / cancellation, position queries, fill activities and
the latest crypto quote.
"""

import asyncio
import logging
import math
import time
import uuid
from datetime import datetime
from typing import Optional

import httpx

from bullbust.broker.models import (
    AccountSnapshot,
    Activity,
    Order,
    OrderRequest,
    Position,
    Quote,
)
from bullbust.broker.retry import RETRYABLE_STATUS_CODES, RetryingClient
from bullbust.config import Config

logger = logging.getLogger("bullbust.broker")

_REJECTION_STATUS_CODES = {403, 422}


class OrderRejectedError(Exception):
    """Raised when Alpaca rejects an order payload (funds, blocked, invalid qty)."""

    def __init__(self, reason: str, status_code: Optional[int] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


def new_client_order_id(symbol: str, side: str) -> str:
    """Idempotency token, e.g. ``"BTCUSD_BUY_1718000000_1a2b3c4d"``."""
    return (
        f"{symbol.replace('/', '')}_{side.upper()}_"
        f"{int(time.time())}_{uuid.uuid4().hex[:8]}"
    )


def _num(value, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    return float(value)


def _opt_num(value) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body)
    return str(body)


def parse_order(o: dict) -> Order:
    """Build an ``Order`` from an Alpaca order JSON object."""
    return Order(
        order_id=o["id"],
        client_order_id=o.get("client_order_id", ""),
        symbol=o["symbol"],
        side=o["side"],
        type=o.get("type") or o.get("order_type", "market"),
        time_in_force=o.get("time_in_force", "gtc"),
        status=o["status"],
        qty=_opt_num(o.get("qty")),
        notional=_opt_num(o.get("notional")),
        limit_price=_opt_num(o.get("limit_price")),
        filled_qty=_num(o.get("filled_qty")),
        filled_avg_price=_opt_num(o.get("filled_avg_price")),
        submitted_at=o.get("submitted_at") or "",
    )


class AlpacaClient(RetryingClient):
    """Async client wrapping the Alpaca v2 trading API."""

    _label = "Alpaca"

    def __init__(self, config: Config) -> None:
        super().__init__(
            headers={
                "APCA-API-KEY-ID": config.alpaca_key_id,
                "APCA-API-SECRET-KEY": config.alpaca_secret_key,
                "Content-Type": "application/json",
            },
            timeout=config.request_timeout_seconds,
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay,
        )
        self._config = config
        self._base_url = config.trading_base_url
        self._data_url = config.data_base_url

    # ── Account ──────────────────────────────────────────────────────────

    async def get_account(self) -> AccountSnapshot:
        """Query equity, cash, buying power and the blocked flags."""
        url = f"{self._base_url}/v2/account"

        resp = await self._request_with_retry("get", url)

        acct = resp.json()
        return AccountSnapshot(
            account_id=acct.get("id", ""),
            equity=_num(acct.get("equity")),
            last_equity=_num(acct.get("last_equity"), _num(acct.get("equity"))),
            cash=_num(acct.get("cash")),
            buying_power=_num(acct.get("buying_power")),
            non_marginable_buying_power=_num(acct.get("non_marginable_buying_power")),
            trading_blocked=bool(acct.get("trading_blocked")),
            account_blocked=bool(acct.get("account_blocked")),
            trade_suspended_by_user=bool(acct.get("trade_suspended_by_user")),
        )

    # ── Orders ───────────────────────────────────────────────────────────

    async def list_orders(
        self,
        symbol: Optional[str] = None,
        status: str = "open",
    ) -> list[Order]:
        """Return orders filtered by status and (optionally) one symbol."""
        url = f"{self._base_url}/v2/orders"
        params: dict = {"status": status, "limit": 500}
        if symbol:
            params["symbols"] = symbol

        resp = await self._request_with_retry("get", url, params=params)

        return [parse_order(o) for o in resp.json()]

    async def submit_order(self, order: OrderRequest) -> Order:
        """Submit an order.

        Raises ``OrderRejectedError`` with the brokerage's reason when the
        order is refused.  Once an attempt times out or hits a server error the
        order is looked up by its ``client_order_id`` before it is re-posted,
        before a later 403/422 is treated as a rejection, and before giving up.
        """
        url = f"{self._base_url}/v2/orders"
        body: dict = {
            "symbol": order.symbol,
            "side": order.side,
            "type": order.type,
            "time_in_force": order.time_in_force,
            "client_order_id": order.client_order_id,
        }
        if order.qty is not None:
            body["qty"] = _format_qty(order.qty)
        if order.notional is not None:
            body["notional"] = f"{order.notional:.2f}"
        if order.limit_price is not None:
            body["limit_price"] = _format_price(order.limit_price)

        # After a timeout or server error the order may already be live, so
        # every later attempt starts with a lookup by client_order_id.
        uncertain = False
        last_exc: Optional[Exception] = None
        for attempt in range(self._max_retries):
            if uncertain:
                existing = await self._recover_submission(order)
                if existing is not None:
                    return existing
            try:
                resp = await self._request_with_retry("post", url, attempts=1, json=body)
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if status in _REJECTION_STATUS_CODES:
                    if uncertain:
                        existing = await self._recover_submission(order)
                        if existing is not None:
                            return existing
                    reason = _error_message(exc.response)
                    logger.error(
                        "Order rejected (%d) %s %s: %s",
                        status, order.side, order.symbol, reason,
                    )
                    raise OrderRejectedError(reason, status) from exc
                if status not in RETRYABLE_STATUS_CODES:
                    raise
                last_exc = exc
            except httpx.TransportError as exc:
                last_exc = exc
            else:
                return parse_order(resp.json())

            uncertain = True
            if attempt + 1 < self._max_retries:
                await asyncio.sleep(self._base_delay * (2 ** attempt))

        existing = await self._recover_submission(order)
        if existing is not None:
            return existing
        raise last_exc  # type: ignore[misc]

    async def _recover_submission(self, order: OrderRequest) -> Optional[Order]:
        try:
            found = await self.get_order_by_client_id(order.client_order_id)
        except httpx.HTTPError:
            logger.debug("Lookup by client_order_id %s failed", order.client_order_id)
            return None
        if found is not None:
            logger.warning(
                "Submission of %s errored but the order exists (%s)",
                order.client_order_id, found.status,
            )
        return found

    async def get_order(self, order_id: str) -> Order:
        url = f"{self._base_url}/v2/orders/{order_id}"
        resp = await self._request_with_retry("get", url)
        return parse_order(resp.json())

    async def get_order_by_client_id(self, client_order_id: str) -> Optional[Order]:
        """Return the order carrying *client_order_id*, or ``None`` (404)."""
        url = f"{self._base_url}/v2/orders:by_client_order_id"
        try:
            resp = await self._request_with_retry(
                "get", url, params={"client_order_id": client_order_id},
            )
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return None
            raise
        return parse_order(resp.json())

    async def cancel_order(self, order_id: str) -> None:
        """Cancel an open order.  Already-closed orders (404/422) are ignored."""
        url = f"{self._base_url}/v2/orders/{order_id}"
        try:
            await self._request_with_retry("delete", url)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code in (404, 422):
                logger.debug("Cancel %s: order no longer open", order_id)
                return
            raise

    # ── Positions ────────────────────────────────────────────────────────

    async def get_position(self, symbol: str) -> Optional[Position]:
        """Return the position for *symbol*, or ``None`` when flat (404)."""
        key = symbol.replace("/", "")
        url = f"{self._base_url}/v2/positions/{key}"
        try:
            resp = await self._request_with_retry("get", url)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return None
            raise
        return _parse_position(resp.json())

    async def list_positions(self) -> list[Position]:
        """Return all open positions on the account."""
        url = f"{self._base_url}/v2/positions"

        resp = await self._request_with_retry("get", url)

        return [_parse_position(p) for p in resp.json()]

    # ── Activities ───────────────────────────────────────────────────────

    async def list_activities(self, after: datetime) -> list[Activity]:
        """Return FILL and CFEE activities after *after* (oldest first)."""
        url = f"{self._base_url}/v2/account/activities"
        params = {
            "activity_types": "FILL,CFEE",
            "after": after.isoformat(),
            "direction": "asc",
            "page_size": 100,
        }

        resp = await self._request_with_retry("get", url, params=params)

        activities: list[Activity] = []
        for a in resp.json():
            qty = _num(a.get("qty"))
            price = _num(a.get("price"))
            activities.append(
                Activity(
                    activity_id=a.get("id", ""),
                    activity_type=a.get("activity_type", ""),
                    symbol=(a.get("symbol") or "").replace("/", ""),
                    side=a.get("side", ""),
                    qty=qty,
                    price=price,
                    net_amount=_num(a.get("net_amount"), -abs(qty * price)),
                    transaction_time=a.get("transaction_time", ""),
                )
            )
        return activities

    # ── Quotes ───────────────────────────────────────────────────────────

    async def get_latest_quote(self, pair: str) -> Optional[Quote]:
        """Latest crypto bid/ask for *pair* (``"BTC/USD"``), or ``None``."""
        url = f"{self._data_url}/v1beta3/crypto/us/latest/quotes"

        resp = await self._request_with_retry("get", url, params={"symbols": pair})

        q = resp.json().get("quotes", {}).get(pair)
        if not q:
            return None
        bid = _num(q.get("bp"))
        ask = _num(q.get("ap"))
        if bid <= 0 or ask <= 0 or ask < bid:
            return None
        return Quote(bid=bid, ask=ask)


def _parse_position(p: dict) -> Position:
    return Position(
        symbol=p["symbol"].replace("/", ""),
        qty=_num(p.get("qty")),
        avg_entry_price=_num(p.get("avg_entry_price")),
        current_price=_num(p.get("current_price")),
        market_value=_num(p.get("market_value")),
        unrealized_pnl=_num(p.get("unrealized_pl")),
    )


def _format_qty(qty: float) -> str:
    """Floor to 9 decimals so a sell never asks for more than is held."""
    floored = math.floor(qty * 1e9 + 1e-6) / 1e9
    return f"{floored:.9f}".rstrip("0").rstrip(".")


def _format_price(price: float) -> str:
    """Alpaca accepts up to 9 decimals for crypto; trim sub-cent coins sensibly."""
    if price >= 1:
        return f"{price:.2f}"
    return f"{price:.9f}".rstrip("0").rstrip(".")
