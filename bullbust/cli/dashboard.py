"""CLI dashboard — prints the per-instrument snapshot table to the console."""


def _fmt(value, pattern: str = ".2f") -> str:
    if value is None:
        return "—"
    return format(value, pattern)


def _price(value) -> str:
    if value is None:
        return "—"
    if value >= 1:
        return f"{value:,.2f}"
    return f"{value:.6f}"


def print_snapshots(snapshots: list[dict], status: dict | None = None) -> str:
    """Format and print snapshot records as a fixed-width table.

    Args:
        snapshots: Records from ``TradingEngine.snapshots()``.
        status: Optional ``TradingEngine.status()`` dict for the header.

    Returns:
        The formatted string (also printed to stdout).
    """
    lines = ["──────────────── Bullish or Bust ────────────────"]
    if status:
        lines.append(
            f"  Preset: {status.get('preset')}   "
            f"Auto-trade: {'on' if status.get('auto_trade') else 'off'}   "
            f"Open: {len(status.get('open_positions') or [])}"
        )
    lines.append(
        f"  {'Symbol':<9} {'Price':>14} {'RSI':>6} {'Trend':>5} "
        f"{'Score':>6} {'Pass':>5} {'Edge':>7}  Status"
    )
    for s in snapshots:
        if s.get("entry_ready"):
            label = "READY"
        elif s.get("watchlist"):
            label = "watch"
        elif s.get("error"):
            label = s["error"]
        else:
            label = ""
        passes = (
            f"{s['pass_count']}/{s['required_passes']}"
            if s.get("pass_count") is not None else "—"
        )
        lines.append(
            f"  {s['symbol']:<9} {_price(s.get('price')):>14} {_fmt(s.get('rsi'), '.1f'):>6} "
            f"{s.get('trend_glyph', ''):>5} {_fmt(s.get('score'), '.0f'):>6} {passes:>5} "
            f"{_fmt(s.get('edge_bps'), '.1f'):>7}  {label}"
        )
    lines.append("─────────────────────────────────────────────────")
    output = "\n".join(lines)
    print(output)
    return output
