"""Activity log: the session timeline plus the structured rows behind session stats.

Timeline entries go to `activity_log` and are echoed through structlog at a level
matching their severity. Finished positions, admission outcomes and ledger repairs
each get their own table so `truth.py` can aggregate them with plain SQL.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from sniper.shell.contract import Position
    from sniper.shell.database import Database

log = structlog.get_logger()

SQLITE_TS = "%Y-%m-%d %H:%M:%S"


def _encode_detail(detail: dict | str | None) -> str | None:
    if detail is None or isinstance(detail, str):
        return detail
    try:
        return json.dumps(detail, default=str)
    except (TypeError, ValueError):
        return repr(detail)


def _trade_row(
    position: Position,
    exit_price: float | None,
    proceeds: float,
    pnl: float,
    reason: str,
    proceeds_source: str,
    sell_signature: str | None,
) -> tuple:
    # No exit price means nothing was sold (abandoned), so there is no realised multiplier
    multiplier = position.multiplier(exit_price) if exit_price else None
    return (
        position.asset_id, position.strategy_id, position.status.value,
        position.entry_price, exit_price, position.position_size,
        position.invested_amount, position.reserved_amount, proceeds, pnl,
        multiplier, position.peak_multiplier, reason, proceeds_source,
        position.buy_signature, sell_signature,
        position.opened_at.strftime(SQLITE_TS),
    )


class ActivityLogger:
    """Single writer for everything the engine persists about a session."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def log(
        self,
        category: str,
        summary: str,
        severity: str = "info",
        detail: dict | str | None = None,
    ) -> None:
        await self._db.write(
            "INSERT INTO activity_log (timestamp, category, severity, summary, detail) VALUES (?, ?, ?, ?, ?)",
            (datetime.now(timezone.utc).strftime(SQLITE_TS), category, severity, summary, _encode_detail(detail)),
        )

        emit = {"error": log.error, "warning": log.warning}.get(severity, log.info)
        emit("activity", category=category, summary=summary)

    async def trade(self, summary: str, severity: str = "info", detail: dict | None = None) -> None:
        await self.log("TRADE", summary, severity, detail)

    async def ledger(self, summary: str, severity: str = "info", detail: dict | None = None) -> None:
        await self.log("LEDGER", summary, severity, detail)

    async def system(self, summary: str, severity: str = "info", detail: dict | None = None) -> None:
        await self.log("SYSTEM", summary, severity, detail)

    # --- Structured rows ---

    async def record_trade(
        self,
        position: Position,
        exit_price: float | None,
        proceeds: float,
        pnl: float,
        reason: str,
        proceeds_source: str,
        sell_signature: str | None = None,
    ) -> None:
        """One row per finished position, closed or abandoned."""
        await self._db.write(
            """INSERT INTO trades (asset_id, strategy, status, entry_price, exit_price, position_size,
                   invested, reserved, proceeds, pnl, multiplier, peak_multiplier, exit_reason,
                   proceeds_source, buy_signature, sell_signature, opened_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            _trade_row(position, exit_price, proceeds, pnl, reason, proceeds_source, sell_signature),
        )

    async def record_admission(
        self, asset_id: str, admitted: bool, gate: str, reason: str, strategy: str | None = None,
    ) -> None:
        await self._db.write(
            "INSERT INTO admissions (asset_id, admitted, gate, reason, strategy) VALUES (?, ?, ?, ?, ?)",
            (asset_id, int(admitted), gate, reason, strategy),
        )

    async def record_ledger_event(self, kind: str, amount: float, total: float, locked: float) -> None:
        await self._db.write(
            "INSERT INTO ledger_events (kind, amount, total_balance, locked_balance) VALUES (?, ?, ?, ?)",
            (kind, amount, total, locked),
        )

    # --- Readers ---

    async def recent(self, limit: int = 30) -> list[dict]:
        """Last `limit` timeline entries, oldest first."""
        rows = await self.query(limit=limit)
        return rows[::-1]

    async def query(
        self,
        limit: int = 50,
        since: str | None = None,
        category: str | None = None,
        severity: str | None = None,
    ) -> list[dict]:
        """Timeline entries matching every given filter, newest first."""
        clauses = []
        params: list = []
        for column, op, value in (("timestamp", ">=", since), ("category", "=", category), ("severity", "=", severity)):
            if value is not None:
                clauses.append(f"{column} {op} ?")
                params.append(value)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return await self._db.fetchall(
            f"SELECT * FROM activity_log {where} ORDER BY id DESC LIMIT ?",
            (*params, limit),
        )
