"""Realized P&L and fees for the current UTC day, from fill activities.

Average-cost accounting per symbol.  Sells of inventory bought before the
window (no known cost) are counted in ``unmatched_qty`` and contribute no
realized P&L.
"""

from bullbust.broker.models import Activity


def summarize_activities(activities: list[Activity]) -> dict:
    """Fold ``FILL`` and ``CFEE`` activities (oldest first) into totals."""
    inventory: dict[str, tuple[float, float]] = {}  # symbol → (qty, avg_cost)
    realized: dict[str, float] = {}
    fees = 0.0
    fills = 0
    unmatched = 0.0

    for act in activities:
        if act.activity_type == "CFEE":
            fee = abs(act.qty * act.price) if act.price else abs(act.net_amount)
            fees += fee
            continue
        if act.activity_type != "FILL":
            continue

        fills += 1
        qty, avg = inventory.get(act.symbol, (0.0, 0.0))
        if act.side == "buy":
            new_qty = qty + act.qty
            avg = (qty * avg + act.qty * act.price) / new_qty if new_qty > 0 else 0.0
            inventory[act.symbol] = (new_qty, avg)
        elif act.side == "sell":
            matched = min(act.qty, qty)
            unmatched += act.qty - matched
            if matched > 0:
                realized[act.symbol] = (
                    realized.get(act.symbol, 0.0) + (act.price - avg) * matched
                )
            inventory[act.symbol] = (qty - matched, avg)

    total = sum(realized.values())
    return {
        "realized_pnl": round(total, 2),
        "fees": round(fees, 2),
        "net_pnl": round(total - fees, 2),
        "fills": fills,
        "unmatched_qty": unmatched,
        "by_symbol": {sym: round(v, 2) for sym, v in sorted(realized.items())},
    }
