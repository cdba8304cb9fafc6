"""SQLite database: persistent record of trades, admissions and ledger events."""

from __future__ import annotations

from pathlib import Path

import aiosqlite
import structlog

log = structlog.get_logger()

SCHEMA = """
-- One row per finished position (closed or abandoned)
CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    asset_id TEXT NOT NULL,
    strategy TEXT NOT NULL,
    status TEXT NOT NULL,               -- 'closed' or 'abandoned'
    entry_price REAL NOT NULL,
    exit_price REAL,
    position_size REAL NOT NULL,
    invested REAL NOT NULL,
    reserved REAL NOT NULL,
    proceeds REAL NOT NULL DEFAULT 0,
    pnl REAL NOT NULL DEFAULT 0,
    multiplier REAL,
    peak_multiplier REAL,
    exit_reason TEXT,
    proceeds_source TEXT,               -- 'execution' or 'estimate'
    buy_signature TEXT,
    sell_signature TEXT,
    opened_at TEXT,
    closed_at TEXT DEFAULT (datetime('now'))
);

-- Every admission outcome (admitted or rejected at a gate)
CREATE TABLE IF NOT EXISTS admissions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    asset_id TEXT NOT NULL,
    admitted INTEGER NOT NULL DEFAULT 0,
    gate TEXT,
    reason TEXT,
    strategy TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

-- Ledger repairs and external balance syncs
CREATE TABLE IF NOT EXISTS ledger_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,                 -- 'desync' or 'sync'
    amount REAL NOT NULL,
    total_balance REAL,
    locked_balance REAL,
    created_at TEXT DEFAULT (datetime('now'))
);

-- Activity log (unified timeline)
CREATE TABLE IF NOT EXISTS activity_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%S', 'now')),
    category TEXT NOT NULL,
    severity TEXT NOT NULL DEFAULT 'info',
    summary TEXT NOT NULL,
    detail TEXT
);

CREATE INDEX IF NOT EXISTS idx_trades_closed ON trades(closed_at);
CREATE INDEX IF NOT EXISTS idx_admissions_asset ON admissions(asset_id);
CREATE INDEX IF NOT EXISTS idx_activity_ts ON activity_log(timestamp);
"""

# Columns added after the first release: table -> [(column, SQL type)]
ADDED_COLUMNS: dict[str, list[tuple[str, str]]] = {
    "trades": [("peak_multiplier", "REAL"), ("proceeds_source", "TEXT")],
}


class Database:
    """One aiosqlite connection per session. Rows come back as plain dicts."""

    def __init__(self, db_path: str):
        self._path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(self._path)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode=WAL")
        self._conn = conn
        await self._ensure_columns()
        await conn.executescript(SCHEMA)
        await conn.commit()
        log.info("database.connected", path=self._path)

    async def _ensure_columns(self) -> None:
        """Bring tables created by older builds up to the current column set."""
        for table, columns in ADDED_COLUMNS.items():
            existing = {row["name"] for row in await self.fetchall(f"PRAGMA table_info({table})")}
            if not existing:
                continue    # fresh database, SCHEMA creates the table
            for column, sql_type in columns:
                if column not in existing:
                    await self._conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {sql_type}")
                    log.info("database.column_added", table=table, column=column)

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        await conn.commit()
        await conn.close()
        log.info("database.closed", path=self._path)

    def _require(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected")
        return self._conn

    async def write(self, sql: str, params: tuple = ()) -> int | None:
        """Execute one statement and commit it. Returns the new rowid for inserts."""
        conn = self._require()
        cursor = await conn.execute(sql, params)
        await conn.commit()
        return cursor.lastrowid

    async def fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        async with self._require().execute(sql, params) as cursor:
            row = await cursor.fetchone()
        return None if row is None else dict(row)

    async def fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        async with self._require().execute(sql, params) as cursor:
            return [dict(row) for row in await cursor.fetchall()]
