"""Session truth: simple, verifiable stats computed straight from the trades table.

Every number here is a count, sum or plain ratio over raw rows. No heuristics.
"""

from __future__ import annotations

from sniper.shell.database import Database


async def compute_session_stats(db: Database, since: str | None = None) -> dict:
    """Aggregate finished positions, optionally only those closed at/after `since`."""
    where = "WHERE closed_at >= ?" if since else ""
    params: tuple = (since,) if since else ()

    row = await db.fetchone(f"""
        SELECT
            COUNT(*) as trade_count,
            COALESCE(SUM(CASE WHEN status = 'closed' AND pnl > 0 THEN 1 ELSE 0 END), 0) as win_count,
            COALESCE(SUM(CASE WHEN status = 'closed' AND pnl <= 0 THEN 1 ELSE 0 END), 0) as loss_count,
            COALESCE(SUM(CASE WHEN status = 'abandoned' THEN 1 ELSE 0 END), 0) as abandoned_count,
            COALESCE(SUM(pnl), 0) as net_pnl,
            COALESCE(SUM(position_size), 0) as capital_deployed,
            MAX(multiplier) as best_multiplier,
            MIN(multiplier) as worst_multiplier
        FROM trades {where}
    """, params)

    trade_count = row["trade_count"]
    stats = {
        "trade_count": trade_count,
        "win_count": row["win_count"],
        "loss_count": row["loss_count"],
        "abandoned_count": row["abandoned_count"],
        "win_rate": row["win_count"] / trade_count if trade_count > 0 else 0.0,
        "net_pnl": row["net_pnl"],
        "capital_deployed": row["capital_deployed"],
        "best_multiplier": row["best_multiplier"],
        "worst_multiplier": row["worst_multiplier"],
    }

    # Per-strategy breakdown
    rows = await db.fetchall(f"""
        SELECT strategy, COUNT(*) as trades, COALESCE(SUM(pnl), 0) as pnl
        FROM trades {where}
        GROUP BY strategy ORDER BY strategy
    """, params)
    stats["by_strategy"] = {r["strategy"]: {"trades": r["trades"], "pnl": r["pnl"]} for r in rows}

    # Exit reasons
    rows = await db.fetchall(f"""
        SELECT exit_reason, COUNT(*) as n FROM trades {where}
        GROUP BY exit_reason ORDER BY n DESC
    """, params)
    stats["exit_reasons"] = {r["exit_reason"]: r["n"] for r in rows}

    # Admission funnel
    adm_where = "WHERE created_at >= ?" if since else ""
    rows = await db.fetchall(f"""
        SELECT gate, COUNT(*) as n FROM admissions {adm_where}
        GROUP BY gate ORDER BY n DESC
    """, params)
    stats["admissions_by_gate"] = {r["gate"]: r["n"] for r in rows}

    return stats
