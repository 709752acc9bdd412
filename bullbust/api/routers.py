"""Internal API routers — snapshots, events, account, P&L, presets, controls.

No business logic.  Delegates to the engine and scheduler injected at
startup via ``configure_routers``.
"""

import logging
from dataclasses import asdict
from typing import Optional

import httpx
from fastapi import APIRouter, Body, Query

logger = logging.getLogger("bullbust")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_engine = None     # Set via configure_routers()
_scheduler = None  # Set via configure_routers()


def configure_routers(engine=None, scheduler=None) -> None:
    """Inject dependencies from the application startup.

    Args:
        engine: A ``TradingEngine`` instance (or duck-type for tests).
        scheduler: A ``LoopScheduler`` for pause / resume.
    """
    global _engine, _scheduler  # noqa: PLW0603
    _engine = engine
    _scheduler = scheduler


_NO_ENGINE = {"error": "Engine not configured"}


# ── Read endpoints ───────────────────────────────────────────────────────


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/status")
async def get_status():
    """Engine and loop status."""
    if _engine is None:
        return _NO_ENGINE
    status = _engine.status()
    status["loops"] = _scheduler.get_status() if _scheduler is not None else None
    return status


@router.get("/snapshots")
async def get_snapshots():
    """Per-instrument snapshot records from the last scan, grouped."""
    if _engine is None:
        return {"snapshots": []}
    return {"snapshots": _engine.snapshots()}


@router.get("/snapshots/{symbol}")
async def get_snapshot(symbol: str):
    if _engine is None:
        return _NO_ENGINE
    snap = _engine.get_snapshot(symbol)
    if snap is None:
        return {"error": f"No snapshot for {symbol}"}
    return snap


@router.get("/events")
async def get_events(
    limit: int = Query(default=50, ge=1, le=500),
    event: Optional[str] = Query(default=None),
):
    """Newest-first structured event log."""
    if _engine is None:
        return {"events": []}
    return {"events": _engine.events.recent(limit=limit, event=event)}


@router.get("/account")
async def get_account():
    """Live account summary from the brokerage."""
    if _engine is None:
        return {"account": None}
    try:
        return {"account": await _engine.account_summary()}
    except httpx.HTTPError as exc:
        logger.warning("Account summary unavailable: %s", exc)
        return {"account": None, "error": str(exc)}


@router.get("/pnl")
async def get_pnl():
    """Realized P&L and fees for the current UTC day."""
    if _engine is None:
        return {"pnl": None}
    try:
        return {"pnl": await _engine.pnl_summary()}
    except httpx.HTTPError as exc:
        logger.warning("P&L summary unavailable: %s", exc)
        return {"pnl": None, "error": str(exc)}


@router.get("/positions")
async def get_positions():
    if _engine is None:
        return {"positions": []}
    try:
        return {"positions": await _engine.positions()}
    except httpx.HTTPError as exc:
        logger.warning("Positions unavailable: %s", exc)
        return {"positions": [], "error": str(exc)}


# ── Presets ──────────────────────────────────────────────────────────────


@router.get("/presets")
async def get_presets():
    if _engine is None:
        return _NO_ENGINE
    return {
        "active": _engine.preset.name,
        "presets": {name: asdict(p) for name, p in _engine.presets.items()},
    }


@router.post("/presets/{name}")
async def set_preset(name: str):
    """Swap the active preset as a unit."""
    if _engine is None:
        return _NO_ENGINE
    try:
        preset = _engine.set_preset(name)
    except KeyError as exc:
        return {"status": "error", "error": str(exc.args[0])}
    return {"status": "ok", "active": preset.name}


# ── Controls ─────────────────────────────────────────────────────────────


@router.post("/control/evaluate")
async def force_evaluate():
    """Run a scan now.  Skipped if a scan is already in flight."""
    if _engine is None:
        return _NO_ENGINE
    return await _engine.force_evaluate()


@router.post("/control/auto-trade")
async def set_auto_trade(enabled: bool = Body(..., embed=True)):
    if _engine is None:
        return _NO_ENGINE
    _engine.set_auto_trade(enabled)
    return {"status": "ok", "auto_trade": _engine.auto_trade}


@router.post("/control/buy/{symbol}")
async def manual_buy(symbol: str):
    """Manual entry: skips the gates, keeps blocked/duplicate/sizing checks."""
    if _engine is None:
        return _NO_ENGINE
    return await _engine.manual_entry(symbol)


@router.post("/control/pause")
async def pause():
    if _scheduler is None:
        return {"error": "Scheduler not configured"}
    _scheduler.pause()
    return {"status": "paused"}


@router.post("/control/resume")
async def resume():
    if _scheduler is None:
        return {"error": "Scheduler not configured"}
    _scheduler.resume()
    return {"status": "running"}
