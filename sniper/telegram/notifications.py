"""Notifications: the engine's observability sink.

Every lifecycle event flows through here. Each one is written to the activity log
(plus its structured trade/admission/ledger row) and, if enabled for that event,
sent to Telegram.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from sniper.shell.activity import ActivityLogger
    from sniper.shell.config import NotificationConfig
    from sniper.shell.contract import Position
    from telegram import Bot

log = structlog.get_logger()

# Event-to-activity mapping: event_name -> (category, severity)
_EVENT_ACTIVITY: dict[str, tuple[str, str]] = {
    "candidate_rejected":  ("ADMISSION", "info"),
    "position_opened":     ("TRADE",     "info"),
    "position_closed":     ("TRADE",     "info"),
    "position_abandoned":  ("TRADE",     "error"),
    "ledger_desync":       ("LEDGER",    "error"),
    "balance_synced":      ("LEDGER",    "warning"),
    "status_report":       ("SYSTEM",    "info"),
    "system_online":       ("SYSTEM",    "info"),
    "system_shutdown":     ("SYSTEM",    "info"),
    "system_error":        ("SYSTEM",    "error"),
}


def _short(asset_id: str) -> str:
    return f"{asset_id[:8]}…" if len(asset_id) > 12 else asset_id


def _format_activity(event_name: str, data: dict) -> str | None:
    """Format an event into a one-line activity summary. Returns None to skip."""
    asset = _short(data.get("asset_id", "?"))

    if event_name == "candidate_rejected":
        return f"{asset} rejected at {data.get('gate', '?')}: {data.get('reason', '')}"

    if event_name == "position_opened":
        return (f"OPEN {asset} [{data.get('strategy', '?')}] "
                f"{data.get('invested', 0):.6f} @ {data.get('entry_price', 0):.10f}")

    if event_name == "position_closed":
        return (f"CLOSE {asset} [{data.get('reason', '?')}] {data.get('multiplier', 0):.2f}x "
                f"proceeds {data.get('proceeds', 0):.6f} P&L {data.get('pnl', 0):+.6f}")

    if event_name == "position_abandoned":
        return f"ABANDONED {asset}: {data.get('error', '?')} (written off {data.get('written_off', 0):.6f})"

    if event_name == "ledger_desync":
        return (f"Ledger desync corrected: locked {data.get('locked_before', 0):.6f} "
                f"-> {data.get('expected', 0):.6f}")

    if event_name == "balance_synced":
        return f"Balance synced to wallet: {data.get('real_balance', 0):.6f} ({data.get('diff', 0):+.6f})"

    if event_name == "status_report":
        return (f"Status: {data.get('active_positions', 0)} active, "
                f"free {data.get('free_balance', 0):.6f}, P&L {data.get('realized_pnl', 0):+.6f}")

    if event_name == "system_online":
        return f"System online ({data.get('mode', '?')}): balance {data.get('balance', 0):.6f}"

    if event_name == "system_shutdown":
        return "System shutting down"

    if event_name == "system_error":
        return f"ERROR: {data.get('message', 'unknown')[:200]}"

    return None


class Notifier:
    """Dual dispatch: activity log (all events) + Telegram (filtered)."""

    def __init__(
        self,
        chat_id: str = "",
        tg_filter: NotificationConfig | None = None,
        bot: Bot | None = None,
    ) -> None:
        self._chat_id = chat_id
        self._bot = bot
        self._tg_filter = tg_filter
        self._activity_logger: ActivityLogger | None = None
        self._pending: set[asyncio.Task] = set()

    def set_bot(self, bot: Bot) -> None:
        self._bot = bot

    def set_activity_logger(self, logger: ActivityLogger) -> None:
        self._activity_logger = logger

    async def start(self, token: str) -> None:
        """Create and initialize the Telegram bot. No-op without a token."""
        if not token or not self._chat_id:
            log.info("notifier.telegram_disabled")
            return
        from telegram import Bot

        bot = Bot(token)
        await bot.initialize()
        self._bot = bot
        log.info("notifier.telegram_ready")

    async def stop(self) -> None:
        if self._pending:
            await asyncio.wait(self._pending, timeout=5)
        if self._bot:
            try:
                await self._bot.shutdown()
            except Exception as e:
                log.warning("notifier.shutdown_failed", error=str(e))
            self._bot = None

    def _should_telegram(self, event_name: str) -> bool:
        if self._tg_filter is None:
            return True
        return getattr(self._tg_filter, event_name, True)

    async def _send_telegram(self, text: str) -> None:
        if not self._bot or not self._chat_id:
            return
        for attempt in range(3):
            try:
                await self._bot.send_message(chat_id=self._chat_id, text=text[:4096])
                return
            except Exception as e:
                if attempt < 2:
                    log.warning("notifier.send_retry", attempt=attempt + 1, error=str(e))
                    await asyncio.sleep(2 ** attempt)
                else:
                    log.error("notifier.send_failed", error=str(e))

    async def _dispatch(self, event_name: str, data: dict, telegram_text: str | None = None) -> None:
        """Write the activity log and send to Telegram (if configured, non-blocking)."""
        if telegram_text and self._bot and self._should_telegram(event_name):
            task = asyncio.create_task(self._send_telegram(telegram_text))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        if self._activity_logger:
            meta = _EVENT_ACTIVITY.get(event_name)
            if meta:
                summary = _format_activity(event_name, data)
                if summary is not None:
                    try:
                        await self._activity_logger.log(meta[0], summary, meta[1], detail=data)
                    except Exception as e:
                        log.warning("notifier.activity_failed", notify_event=event_name, error=str(e))

    async def _record(self, what: str, coro) -> None:
        try:
            await coro
        except Exception as e:
            log.warning("notifier.record_failed", record=what, error=str(e))

    # --- Admission Events ---

    async def candidate_rejected(self, asset_id: str, gate: str, reason: str, strategy: str | None = None) -> None:
        if self._activity_logger:
            await self._record("admission", self._activity_logger.record_admission(
                asset_id, False, gate, reason, strategy))
        await self._dispatch(
            "candidate_rejected",
            {"asset_id": asset_id, "gate": gate, "reason": reason, "strategy": strategy},
            f"Candidate Rejected: {asset_id}\nGate: {gate}\nReason: {reason}",
        )

    # --- Position Events ---

    async def position_opened(self, position: Position) -> None:
        if self._activity_logger:
            await self._record("admission", self._activity_logger.record_admission(
                position.asset_id, True, "admitted", "opened", position.strategy_id))
        data = {
            "asset_id": position.asset_id,
            "strategy": position.strategy_id,
            "entry_price": position.entry_price,
            "invested": position.invested_amount,
            "reserved": position.reserved_amount,
            "signature": position.buy_signature,
        }
        await self._dispatch(
            "position_opened",
            data,
            f"Position Opened: {position.asset_id}\n"
            f"Strategy: {position.strategy_id}\n"
            f"Invested: {position.invested_amount:.6f} (reserved {position.reserved_amount:.6f})\n"
            f"Entry: {position.entry_price:.10f}",
        )

    async def position_closed(
        self,
        position: Position,
        reason: str,
        exit_price: float,
        proceeds: float,
        pnl: float,
        proceeds_source: str = "execution",
        sell_signature: str | None = None,
    ) -> None:
        if self._activity_logger:
            await self._record("trade", self._activity_logger.record_trade(
                position, exit_price, proceeds, pnl, reason, proceeds_source, sell_signature))
        multiplier = position.multiplier(exit_price)
        data = {
            "asset_id": position.asset_id,
            "strategy": position.strategy_id,
            "reason": reason,
            "exit_price": exit_price,
            "multiplier": multiplier,
            "peak_multiplier": position.peak_multiplier,
            "proceeds": proceeds,
            "pnl": pnl,
            "proceeds_source": proceeds_source,
        }
        await self._dispatch(
            "position_closed",
            data,
            f"Position Closed: {position.asset_id}\n"
            f"Reason: {reason}\n"
            f"Multiplier: {multiplier:.2f}x (peak {position.peak_multiplier:.2f}x)\n"
            f"Proceeds: {proceeds:.6f}\nP&L: {pnl:+.6f}",
        )

    async def position_abandoned(self, position: Position, reason: str, error: str) -> None:
        if self._activity_logger:
            await self._record("trade", self._activity_logger.record_trade(
                position, None, 0.0, -position.position_size, reason, "write_off"))
        await self._dispatch(
            "position_abandoned",
            {
                "asset_id": position.asset_id,
                "strategy": position.strategy_id,
                "reason": reason,
                "error": error,
                "written_off": position.position_size,
            },
            f"POSITION ABANDONED: {position.asset_id}\nExit: {reason}\nError: {error[:300]}\n"
            f"Written off: {position.position_size:.6f}",
        )

    # --- Ledger Events ---

    async def ledger_desync(self, locked_before: float, expected: float, correction: float, total: float) -> None:
        if self._activity_logger:
            await self._record("ledger", self._activity_logger.record_ledger_event(
                "desync", correction, total, expected))
        await self._dispatch(
            "ledger_desync",
            {"locked_before": locked_before, "expected": expected, "correction": correction, "total": total},
            f"LEDGER DESYNC CORRECTED\nLocked: {locked_before:.6f} -> {expected:.6f}\nTotal: {total:.6f}",
        )

    async def balance_synced(self, real_balance: float, diff: float) -> None:
        if self._activity_logger:
            await self._record("ledger", self._activity_logger.record_ledger_event(
                "sync", diff, real_balance, 0.0))
        await self._dispatch(
            "balance_synced",
            {"real_balance": real_balance, "diff": diff},
            f"Balance Synced: {real_balance:.6f} ({diff:+.6f})",
        )

    # --- System Events ---

    async def status_report(self, stats: dict) -> None:
        summary = {k: v for k, v in stats.items() if k != "positions"}
        await self._dispatch(
            "status_report",
            summary,
            f"Status\nActive: {stats.get('active_positions', 0)}\n"
            f"Free: {stats.get('free_balance', 0):.6f} / Total: {stats.get('total_balance', 0):.6f}\n"
            f"Closed: {stats.get('closed', 0)}, Abandoned: {stats.get('abandoned', 0)}\n"
            f"P&L: {stats.get('realized_pnl', 0):+.6f}",
        )

    async def system_online(self, balance: float, mode: str) -> None:
        await self._dispatch(
            "system_online",
            {"balance": balance, "mode": mode},
            f"System Online ({mode})\nBalance: {balance:.6f}",
        )

    async def system_shutdown(self) -> None:
        await self._dispatch("system_shutdown", {}, "System Shutting Down")

    async def system_error(self, error: str) -> None:
        await self._dispatch(
            "system_error",
            {"message": error[:500]},
            f"System Error: {error[:500]}",
        )
