"""Bullish or Bust — trading engine (scan loop and exit loop ticks).

One scan tick: account → indicators for every instrument (concurrently) →
kill-switch checks → gates → admission → sizing → entry.  One exit tick:
account → benchmark shock check → every held instrument through the exit
rules.  Both ticks share the ledger, the admission controller and the event
log owned by this object.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from bullbust.broker.models import AccountSnapshot, Position
from bullbust.config import Config
from bullbust.engine.admission import AdmissionController
from bullbust.engine.event_log import EventLog
from bullbust.engine.ledger import PositionLedger
from bullbust.engine.lifecycle import OrderLifecycle
from bullbust.engine.pnl import summarize_activities
from bullbust.market.cryptocompare_client import session_start
from bullbust.market.gateway import MarketContext, MarketDataGateway
from bullbust.models.instrument import (
    BENCHMARK_SYMBOL,
    DEFAULT_UNIVERSE,
    Instrument,
    find_instrument,
)
from bullbust.models.preset import StrategyPreset, get_preset, load_presets
from bullbust.strategy.gates import evaluate_gates
from bullbust.strategy.indicators import (
    TREND_GLYPHS,
    build_snapshot,
    calculate_zscore,
    log_returns,
)
from bullbust.strategy.models import GateDecision, IndicatorSnapshot

logger = logging.getLogger("bullbust")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _error_text(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class TradingEngine:
    """Owns all shared trading state and runs single loop ticks.

    Args:
        config: Application configuration.
        broker: An ``AlpacaClient`` (or compatible duck-type / mock).
        market: A ``MarketDataGateway`` (or duck-type / mock).
        presets: Preset registry; defaults to built-ins plus ``PRESETS_PATH``.
        universe: Instruments to evaluate.
        preset_name: Initial preset; defaults to ``config.strategy_preset``.
    """

    def __init__(
        self,
        config: Config,
        broker,
        market: MarketDataGateway,
        presets: Optional[dict[str, StrategyPreset]] = None,
        universe: tuple[Instrument, ...] = DEFAULT_UNIVERSE,
        preset_name: Optional[str] = None,
    ) -> None:
        self._config = config
        self._broker = broker
        self._market = market
        self._presets = presets if presets is not None else load_presets(config.presets_path or None)
        self._preset = get_preset(preset_name or config.strategy_preset, self._presets)
        self._universe = tuple(universe)
        self._benchmark = find_instrument(BENCHMARK_SYMBOL, self._universe)

        self.ledger = PositionLedger()
        self.admission = AdmissionController()
        self.events = EventLog(config.event_log_size)
        self.lifecycle = OrderLifecycle(
            broker=broker,
            ledger=self.ledger,
            admission=self.admission,
            events=self.events,
            fill_poll_attempts=config.fill_poll_attempts,
            fill_poll_interval=config.fill_poll_interval_seconds,
        )

        self._auto_trade: bool = config.auto_trade
        self._semaphore = asyncio.Semaphore(max(1, config.max_concurrent_requests))
        self._snapshots: dict[str, dict] = {}
        self._scan_in_flight: bool = False
        self._scan_task: Optional[asyncio.Task] = None
        self._scan_count: int = 0
        self._exit_count: int = 0
        self._last_scan_at: Optional[str] = None
        self._last_exit_at: Optional[str] = None

    # ── Properties / settings ────────────────────────────────────────────

    @property
    def preset(self) -> StrategyPreset:
        return self._preset

    @property
    def presets(self) -> dict[str, StrategyPreset]:
        return dict(self._presets)

    @property
    def auto_trade(self) -> bool:
        return self._auto_trade

    @property
    def universe(self) -> tuple[Instrument, ...]:
        return self._universe

    @property
    def scan_in_flight(self) -> bool:
        task_running = self._scan_task is not None and not self._scan_task.done()
        return self._scan_in_flight or task_running

    def set_preset(self, name: str) -> StrategyPreset:
        """Swap the active preset as a unit.

        Raises ``KeyError`` for an unknown name.  Ticks already running keep
        the preset they captured.
        """
        preset = get_preset(name, self._presets)
        previous = self._preset.name
        self._preset = preset
        self.events.record("preset_changed", previous=previous, preset=name)
        logger.info("Preset changed: %s → %s", previous, name)
        return preset

    def set_auto_trade(self, enabled: bool) -> None:
        self._auto_trade = bool(enabled)
        self.events.record("auto_trade", enabled=self._auto_trade)

    # ── Scan loop ────────────────────────────────────────────────────────

    def trigger_scan(self) -> Optional[asyncio.Task]:
        """Start a scan in the background unless one is still running."""
        if self.scan_in_flight:
            self.events.record("scan_skipped", reason="scan_in_flight")
            logger.warning("Scan still running — tick skipped")
            return None
        self._scan_task = asyncio.create_task(self.run_scan_once())
        self._scan_task.add_done_callback(self._scan_done)
        return self._scan_task

    def _scan_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background scan failed: %s", exc, exc_info=exc)
            self.events.record("data_error", source="scan_tick", error=_error_text(exc))

    async def force_evaluate(self) -> dict:
        """Run a scan now (single-flight guarded)."""
        if self._scan_task is not None and not self._scan_task.done():
            self.events.record("scan_skipped", reason="scan_in_flight")
            return {"action": "skipped", "reason": "scan_in_flight"}
        return await self.run_scan_once()

    async def run_scan_once(self, now: Optional[datetime] = None) -> dict:
        """Execute one scan cycle.

        Returns a dict describing what happened:

        - ``{"action": "skipped", "reason": "scan_in_flight"}``
        - ``{"action": "error", "reason": "account_unavailable"}``
        - ``{"action": "scanned", "evaluated": ..., "admitted": [...], ...}``

        Args:
            now: Current UTC datetime.  Defaults to ``datetime.now(UTC)``.
        """
        if self._scan_in_flight:
            self.events.record("scan_skipped", now=now, reason="scan_in_flight")
            return {"action": "skipped", "reason": "scan_in_flight"}
        self._scan_in_flight = True
        try:
            return await self._scan(now or _utc_now())
        finally:
            self._scan_in_flight = False

    async def _scan(self, now: datetime) -> dict:
        preset = self._preset
        self._scan_count += 1
        self._last_scan_at = now.isoformat()

        try:
            account = await self._broker.get_account()
        except httpx.HTTPError as exc:
            self.events.record("data_error", now=now, source="account", error=_error_text(exc))
            logger.error("Scan %d: account unavailable: %s", self._scan_count, exc)
            return {"action": "error", "reason": "account_unavailable"}

        await self._check_drawdown(account, preset, now)

        anchor = int(session_start(now).timestamp())
        results = await asyncio.gather(
            *(self._evaluate(inst, preset, now, anchor) for inst in self._universe),
            return_exceptions=True,
        )

        contexts: dict[str, MarketContext] = {}
        snaps: dict[str, IndicatorSnapshot] = {}
        errors: dict[str, str] = {}
        for inst, res in zip(self._universe, results):
            if isinstance(res, BaseException):
                errors[inst.symbol] = _error_text(res)
                self.events.record("data_error", inst.symbol, now, error=errors[inst.symbol])
                logger.warning("%s: data unavailable: %s", inst.symbol, res)
                continue
            contexts[inst.symbol], snaps[inst.symbol] = res

        bench_symbol = self._benchmark.symbol if self._benchmark else None
        bench = snaps.get(bench_symbol) if bench_symbol else None
        if bench is not None:
            await self._check_volatility(bench.short_return_z, preset, now)

        decisions: dict[str, GateDecision] = {}
        for sym, snap in snaps.items():
            decisions[sym] = evaluate_gates(
                snap, preset, contexts[sym].quote, bench, is_benchmark=(sym == bench_symbol),
            )

        self._snapshots = {
            inst.symbol: self._snapshot_record(
                inst, snaps.get(inst.symbol), decisions.get(inst.symbol),
                errors.get(inst.symbol), now,
            )
            for inst in self._universe
        }

        candidates = sorted(
            (
                (inst, snaps[inst.symbol], decisions[inst.symbol], contexts[inst.symbol])
                for inst in self._universe
                if inst.symbol in decisions and decisions[inst.symbol].admitted
            ),
            key=lambda c: c[2].score,
            reverse=True,
        )
        entries = await self._run_entries(
            candidates, account, preset, now, bench.sigma if bench else None,
        )

        admitted = [c[0].symbol for c in candidates]
        logger.info(
            "Scan %d: %d evaluated, %d admitted, %d entered, %d errors",
            self._scan_count,
            len(snaps),
            len(admitted),
            sum(1 for e in entries if e.get("action") == "entered"),
            len(errors),
        )
        return {
            "action": "scanned",
            "evaluated": len(snaps),
            "admitted": admitted,
            "watchlist": sorted(s for s, d in decisions.items() if d.watchlist),
            "entries": entries,
            "errors": sorted(errors),
        }

    async def _evaluate(
        self,
        instrument: Instrument,
        preset: StrategyPreset,
        now: datetime,
        anchor: int,
    ) -> tuple[MarketContext, IndicatorSnapshot]:
        async with self._semaphore:
            ctx = await self._market.fetch_context(instrument, preset, now)
        snapshot = build_snapshot(
            ctx.price, ctx.bars, ctx.short_bars, ctx.session_bars, preset, session_anchor=anchor,
        )
        return ctx, snapshot

    async def _run_entries(
        self,
        candidates: list,
        account: AccountSnapshot,
        preset: StrategyPreset,
        now: datetime,
        benchmark_sigma: Optional[float],
    ) -> list[dict]:
        if not candidates or not self._auto_trade:
            return []
        halted = self.admission.entries_halted(now)
        if halted:
            logger.info("Entries halted (%s): %d candidate(s) ignored", halted, len(candidates))
            return []

        try:
            positions = await self._broker.list_positions()
        except httpx.HTTPError as exc:
            self.events.record("data_error", now=now, source="positions", error=_error_text(exc))
            logger.error("Entries skipped: positions unavailable: %s", exc)
            return []
        # Brokerage positions the ledger has not adopted yet still use a slot
        held = {
            s for s, p in self._held_positions(positions).items()
            if p.market_value >= preset.min_notional
        }

        cap = self.admission.concurrency_cap(preset, benchmark_sigma)
        results: list[dict] = []
        for inst, snap, _decision, ctx in candidates:
            if not inst.tradable:
                continue
            open_count = len(self.ledger.occupied() | held)
            allowed, reason = self.admission.can_enter(inst.symbol, now, open_count, cap)
            if not allowed:
                self.events.record("entry_denied", inst.symbol, now, reason=reason, cap=cap)
                continue

            async with self.ledger.lock(inst.symbol):
                try:
                    result = await self.lifecycle.enter(inst, snap, ctx.quote, account, preset, now)
                except httpx.HTTPError as exc:
                    self.events.record("order_error", inst.symbol, now, error=_error_text(exc))
                    logger.error("%s: entry failed: %s", inst.symbol, exc)
                    continue
            results.append(result)

            if result.get("reason") == "insufficient_funds":
                # No point sizing the rest of this cycle
                self.events.record("insufficient_funds", inst.symbol, now)
                break
            if result.get("action") == "entered":
                try:
                    account = await self._broker.get_account()
                except httpx.HTTPError as exc:
                    logger.debug("Account refresh after entry failed: %s", exc)
        return results

    # ── Exit loop ────────────────────────────────────────────────────────

    async def run_exit_once(self, now: Optional[datetime] = None) -> dict:
        """Execute one exit-management cycle over every held instrument."""
        now = now or _utc_now()
        preset = self._preset
        self._exit_count += 1
        self._last_exit_at = now.isoformat()

        try:
            account = await self._broker.get_account()
        except httpx.HTTPError as exc:
            self.events.record("data_error", now=now, source="account", error=_error_text(exc))
            account = None
        if account is not None and await self._check_drawdown(account, preset, now):
            return {"action": "halted", "reason": "daily_drawdown"}

        if self._benchmark is not None:
            try:
                bars = await self._market.fetch_bars(self._benchmark, 1, preset.short_bar_count)
            except httpx.HTTPError as exc:
                logger.debug("Benchmark bars unavailable: %s", exc)
            else:
                z = calculate_zscore(log_returns([b.close for b in bars]), preset.kill_z_window)
                if await self._check_volatility(z, preset, now):
                    return {"action": "halted", "reason": "volatility_kill"}

        try:
            positions = await self._broker.list_positions()
        except httpx.HTTPError as exc:
            self.events.record("data_error", now=now, source="positions", error=_error_text(exc))
            return {"action": "error", "reason": "positions_unavailable"}

        held = self._held_positions(positions)

        targets = set(self.ledger.symbols())
        targets |= {s for s, p in held.items() if p.market_value >= preset.min_notional}
        instruments = [i for i in self._universe if i.symbol in targets]

        anchor = int(session_start(now).timestamp())
        results = await asyncio.gather(
            *(self._manage(inst, held.get(inst.symbol), preset, now, anchor) for inst in instruments),
            return_exceptions=True,
        )

        out: dict[str, dict] = {}
        for inst, res in zip(instruments, results):
            if isinstance(res, BaseException):
                self.events.record("data_error", inst.symbol, now, error=_error_text(res))
                logger.warning("%s: exit management failed: %s", inst.symbol, res)
                out[inst.symbol] = {"action": "error", "reason": _error_text(res)}
            else:
                out[inst.symbol] = res
        return {"action": "managed", "instruments": out}

    def _held_positions(self, positions: list[Position]) -> dict[str, Position]:
        """Brokerage positions in tradable universe instruments, keyed by symbol."""
        held: dict[str, Position] = {}
        for pos in positions:
            inst = find_instrument(pos.symbol, self._universe)
            if inst is None or not inst.tradable or pos.qty <= 0:
                continue
            held[inst.symbol] = pos
        return held

    async def _manage(
        self,
        instrument: Instrument,
        position: Optional[Position],
        preset: StrategyPreset,
        now: datetime,
        anchor: int,
    ) -> dict:
        if self.ledger.is_busy(instrument.symbol):
            return {"action": "skipped", "reason": "busy"}
        ctx, snapshot = await self._evaluate(instrument, preset, now, anchor)
        async with self.ledger.lock(instrument.symbol):
            if self.ledger.get(instrument.symbol) is None:
                if self.ledger.is_pending(instrument.symbol) or position is None:
                    return {"action": "skipped", "reason": "no_position"}
                return await self.lifecycle.adopt(instrument, position, snapshot, preset, now)
            return await self.lifecycle.manage(instrument, position, snapshot, preset, now)

    # ── Kill-switches ────────────────────────────────────────────────────

    async def _check_drawdown(self, account: AccountSnapshot, preset: StrategyPreset, now: datetime) -> bool:
        if not self.admission.check_drawdown_kill(account, now, preset):
            return False
        self.events.record(
            "kill_switch", now=now, kind="daily_drawdown",
            equity=account.equity, until=self.admission.state.daily_kill_until.isoformat(),
        )
        await self.flatten_all("daily_drawdown", preset, now)
        return True

    async def _check_volatility(self, z: Optional[float], preset: StrategyPreset, now: datetime) -> bool:
        if not self.admission.check_volatility_kill(z, now, preset):
            return False
        self.events.record(
            "kill_switch", now=now, kind="volatility",
            benchmark_z=round(z, 3), until=self.admission.state.global_until.isoformat(),
        )
        await self.flatten_all("volatility_kill", preset, now)
        return True

    async def flatten_all(self, reason: str, preset: StrategyPreset, now: datetime) -> list[dict]:
        """Market-exit every held instrument in the universe."""
        try:
            positions = await self._broker.list_positions()
        except httpx.HTTPError as exc:
            logger.error("Flatten: positions unavailable (%s) — using ledger only", exc)
            positions = []
        marks = {p.symbol: p.current_price for p in positions if p.qty > 0}
        values = {p.symbol: p.market_value for p in positions if p.qty > 0}

        symbols = set(self.ledger.symbols())
        symbols |= {s for s, v in values.items() if v >= preset.min_notional}

        results: list[dict] = []
        for sym in sorted(symbols):
            inst = find_instrument(sym, self._universe)
            if inst is None or not inst.tradable:
                continue
            async with self.ledger.lock(sym):
                state = self.ledger.get(sym)
                mark = marks.get(sym) or (state.entry_price if state else 0.0)
                try:
                    result = await self.lifecycle.exit_position(inst, reason, mark, preset, now)
                except httpx.HTTPError as exc:
                    self.events.record("order_error", sym, now, error=_error_text(exc), trigger=reason)
                    logger.error("%s: flatten failed: %s", sym, exc)
                    continue
            results.append(result)
        logger.warning("Flattened %d position(s) (%s)", len(results), reason)
        return results

    # ── Manual entry ─────────────────────────────────────────────────────

    async def manual_entry(self, symbol: str, now: Optional[datetime] = None) -> dict:
        """Buy *symbol* now, bypassing the gates but not the safety checks."""
        now = now or _utc_now()
        preset = self._preset
        inst = find_instrument(symbol, self._universe)
        if inst is None:
            return {"action": "error", "reason": f"Unknown instrument: {symbol}"}
        if not inst.tradable:
            self.events.record("manual_entry_failed", inst.symbol, now, reason="instrument_disabled")
            return {"action": "skipped", "reason": "instrument_disabled"}
        halted = self.admission.entries_halted(now)
        if halted:
            self.events.record("manual_entry_failed", inst.symbol, now, reason=halted)
            return {"action": "skipped", "reason": halted}

        try:
            account = await self._broker.get_account()
            async with self._semaphore:
                ctx = await self._market.fetch_context(inst, preset, now, include_session=False)
        except httpx.HTTPError as exc:
            self.events.record("manual_entry_failed", inst.symbol, now, reason=_error_text(exc))
            return {"action": "error", "reason": _error_text(exc)}

        snapshot = build_snapshot(ctx.price, ctx.bars, ctx.short_bars, [], preset)
        async with self.ledger.lock(inst.symbol):
            try:
                result = await self.lifecycle.enter(
                    inst, snapshot, ctx.quote, account, preset, now, source="manual",
                )
            except httpx.HTTPError as exc:
                result = {"action": "error", "reason": _error_text(exc)}
        if result.get("action") != "entered":
            self.events.record(
                "manual_entry_failed", inst.symbol, now,
                reason=result.get("detail") or result.get("reason"),
            )
        return result

    # ── Read models ──────────────────────────────────────────────────────

    def _snapshot_record(
        self,
        inst: Instrument,
        snap: Optional[IndicatorSnapshot],
        decision: Optional[GateDecision],
        error: Optional[str],
        now: datetime,
    ) -> dict:
        record = {
            "symbol": inst.symbol,
            "name": inst.name,
            "price": None,
            "rsi": None,
            "macd": None,
            "macd_signal": None,
            "macd_histogram": None,
            "atr": None,
            "sigma": None,
            "z": None,
            "vwap": None,
            "trend": "flat",
            "trend_glyph": TREND_GLYPHS["flat"],
            "score": None,
            "pass_count": None,
            "required_passes": None,
            "gates": {},
            "edge_bps": None,
            "spread_bps": None,
            "relative_strength_bps": None,
            "entry_ready": False,
            "watchlist": False,
            "reason": "",
            "missing_data": True,
            "error": error,
            "tradable": inst.tradable,
            "in_position": inst.symbol in self.ledger,
            "updated_at": now.isoformat(),
        }
        if snap is None:
            return record

        record.update({
            "price": snap.price,
            "rsi": round(snap.rsi, 2) if snap.rsi is not None else None,
            "atr": snap.atr,
            "sigma": snap.sigma,
            "z": round(snap.z, 3) if snap.z is not None else None,
            "vwap": snap.vwap,
            "trend": snap.trend,
            "trend_glyph": TREND_GLYPHS.get(snap.trend, TREND_GLYPHS["flat"]),
            "missing_data": not snap.available,
        })
        if snap.macd is not None:
            record.update({
                "macd": snap.macd.macd,
                "macd_signal": snap.macd.signal,
                "macd_histogram": snap.macd.histogram,
            })
        if decision is not None:
            record.update({
                "score": decision.score,
                "pass_count": decision.pass_count,
                "required_passes": decision.required_passes,
                "gates": dict(decision.gates),
                "edge_bps": decision.edge_bps,
                "spread_bps": decision.spread_bps,
                "relative_strength_bps": decision.relative_strength_bps,
                "entry_ready": decision.admitted and inst.tradable,
                "watchlist": decision.watchlist,
                "reason": decision.reason,
            })
        if record["missing_data"] and not record["error"]:
            record["error"] = "Insufficient market data"
        return record

    def snapshots(self) -> list[dict]:
        """Entry-ready first, then watchlist, then the rest; each by symbol."""
        def group(rec: dict) -> int:
            if rec["entry_ready"]:
                return 0
            if rec["watchlist"]:
                return 1
            return 2

        return sorted(self._snapshots.values(), key=lambda r: (group(r), r["symbol"]))

    def get_snapshot(self, symbol: str) -> Optional[dict]:
        inst = find_instrument(symbol, self._universe)
        if inst is None:
            return None
        return self._snapshots.get(inst.symbol)

    def status(self, now: Optional[datetime] = None) -> dict:
        now = now or _utc_now()
        return {
            "preset": self._preset.name,
            "auto_trade": self._auto_trade,
            "scan_in_flight": self.scan_in_flight,
            "scan_count": self._scan_count,
            "exit_count": self._exit_count,
            "last_scan_at": self._last_scan_at,
            "last_exit_at": self._last_exit_at,
            "open_positions": self.ledger.symbols(),
            "admission": self.admission.status(now),
        }

    async def account_summary(self) -> dict:
        account = await self._broker.get_account()
        change_pct = (
            account.daily_change / account.last_equity * 100.0
            if account.last_equity else 0.0
        )
        return {
            "account_id": account.account_id,
            "equity": account.equity,
            "cash": account.cash,
            "buying_power": account.buying_power,
            "non_marginable_buying_power": account.non_marginable_buying_power,
            "daily_change": round(account.daily_change, 2),
            "daily_change_pct": round(change_pct, 3),
            "blocked_reason": account.blocked_reason,
        }

    async def pnl_summary(self, now: Optional[datetime] = None) -> dict:
        """Today's realized P&L and fees plus account value and daily change."""
        now = now or _utc_now()
        activities = await self._broker.list_activities(session_start(now))
        summary = summarize_activities(activities)
        account = await self._broker.get_account()
        summary.update({
            "account_value": account.equity,
            "daily_change": round(account.daily_change, 2),
            "since": session_start(now).isoformat(),
        })
        return summary

    async def positions(self) -> list[dict]:
        """Brokerage positions joined with the ledger's exit state."""
        out: list[dict] = []
        for p in await self._broker.list_positions():
            state = self.ledger.get(p.symbol)
            out.append({
                "symbol": p.symbol,
                "qty": p.qty,
                "avg_entry_price": p.avg_entry_price,
                "current_price": p.current_price,
                "market_value": p.market_value,
                "unrealized_pnl": p.unrealized_pnl,
                "phase": self.ledger.phase(p.symbol),
                "trade_state": state.to_dict() if state else None,
            })
        return out
