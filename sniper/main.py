"""Sniper: position lifecycle engine.

Main entry point. Wires all components, manages lifecycle, consumes the candidate feed.

Startup: load config -> connect DB -> build ledger/quotes/probe/executor/router -> start Telegram -> start scheduler
Shutdown: stop intake -> close all positions -> stop scheduler -> close clients -> final stats -> close DB
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
import uuid
from pathlib import Path
from typing import AsyncIterator

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from sniper.engine.executor import ExecutionAdapter, RetryableExecutor
from sniper.engine.filters import QuoteAvailableFilter
from sniper.engine.orchestrator import BalanceSource, PositionOrchestrator
from sniper.engine.readiness import ReadinessGate
from sniper.shell.activity import ActivityLogger
from sniper.shell.config import Config, load_config
from sniper.shell.contract import TokenCandidate
from sniper.shell.database import Database
from sniper.shell.ledger import Ledger
from sniper.shell.paper import PaperExecutionAdapter
from sniper.shell.quotes import JupiterQuoteService
from sniper.shell.rpc import MintAuthorityFilter, RpcReadinessProbe, SolanaRPC, WalletBalanceSource
from sniper.shell.truth import compute_session_stats
from sniper.strategies.router import StrategyRouter
from sniper.telegram.notifications import Notifier
from sniper.utils.logging import bind_session, setup_logging

log = structlog.get_logger()


class SniperApp:
    """Main application: owns every component for one session."""

    def __init__(
        self,
        config: Config | None = None,
        adapter: ExecutionAdapter | None = None,
        balance_source: BalanceSource | None = None,
        feed: AsyncIterator[TokenCandidate] | None = None,
    ) -> None:
        self._config = config
        self._adapter = adapter
        self._balance_source = balance_source
        self._feed = feed
        self._session_id = uuid.uuid4().hex[:8]
        self._db: Database | None = None
        self._activity: ActivityLogger | None = None
        self._notifier: Notifier | None = None
        self._ledger: Ledger | None = None
        self._quotes: JupiterQuoteService | None = None
        self._rpc: SolanaRPC | None = None
        self._orchestrator: PositionOrchestrator | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._queue: asyncio.Queue[TokenCandidate] = asyncio.Queue()
        self._admissions: set[asyncio.Task] = set()
        self._feed_task: asyncio.Task | None = None
        self._running = False

    @property
    def orchestrator(self) -> PositionOrchestrator | None:
        return self._orchestrator

    @property
    def running(self) -> bool:
        return self._running

    async def setup(self) -> None:
        """Build and connect every component. Does not start intake."""
        # 1. Config
        if self._config is None:
            self._config = load_config()
        cfg = self._config
        setup_logging(cfg.log_level)
        bind_session(cfg.mode, self._session_id)
        log.info("config.loaded", mode=cfg.mode, default_strategy=cfg.default_strategy)

        # 1b. Live mode needs a real adapter and a wallet to reconcile against
        if not cfg.is_paper() and self._adapter is None:
            raise RuntimeError("Live mode requires an execution adapter; only paper execution ships")

        # 2. Database + activity log (before any events)
        self._db = Database(cfg.db_path)
        await self._db.connect()
        self._activity = ActivityLogger(self._db)

        # 3. Notifier
        self._notifier = Notifier(cfg.telegram.chat_id, tg_filter=cfg.telegram.notifications)
        self._notifier.set_activity_logger(self._activity)
        if cfg.telegram.enabled:
            try:
                await self._notifier.start(cfg.telegram.bot_token)
            except Exception as e:
                # Engine still runs without Telegram; the activity log keeps everything
                log.error("telegram.init_failed", error=str(e))

        # 4. Shell components
        self._ledger = Ledger(cfg.initial_balance)
        self._quotes = JupiterQuoteService(cfg.quotes)
        self._rpc = SolanaRPC(cfg.rpc)
        adapter = self._adapter or PaperExecutionAdapter(self._quotes, cfg.paper, cfg.fees)
        if self._balance_source is None and not cfg.is_paper():
            self._balance_source = WalletBalanceSource(self._rpc, cfg.rpc.wallet_address)

        # 5. Engine
        executor = RetryableExecutor(
            adapter,
            cfg.retry.not_ready_signatures,
            backoff_min=cfg.retry.backoff_min_seconds,
            backoff_max=cfg.retry.backoff_max_seconds,
        )
        readiness = ReadinessGate(
            RpcReadinessProbe(self._rpc),
            filters=[QuoteAvailableFilter(self._quotes), MintAuthorityFilter(self._rpc)],
            poll_interval=cfg.readiness.poll_interval_seconds,
            timeout=cfg.readiness.timeout_seconds,
            filter_timeout=cfg.readiness.filter_timeout_seconds,
        )
        router = StrategyRouter(cfg.default_strategy, cfg.strategies)
        self._orchestrator = PositionOrchestrator(
            cfg,
            self._ledger,
            executor,
            self._quotes,
            router,
            readiness,
            notifier=self._notifier,
            balance_source=self._balance_source,
        )

        # 5b. Adopt the wallet balance before admitting anything (live only)
        if self._balance_source is not None:
            await self._orchestrator.sync_external_balance()

        # 6. Scheduler
        self._scheduler = AsyncIOScheduler()
        self._setup_jobs()
        self._scheduler.start()

        self._running = True
        await self._notifier.system_online(self._ledger.total_balance, cfg.mode)
        log.info(
            "sniper.started",
            mode=cfg.mode,
            balance=round(self._ledger.total_balance, 6),
            session=self._session_id,
        )

    def _setup_jobs(self) -> None:
        """Configure all scheduled jobs."""
        engine = self._config.engine
        self._scheduler.add_job(
            self._orchestrator.refresh_prices, IntervalTrigger(seconds=engine.price_refresh_seconds),
            id="refresh_prices", name="Price Refresh", max_instances=1, coalesce=True,
        )
        self._scheduler.add_job(
            self._orchestrator.reconcile_ledger, IntervalTrigger(seconds=engine.reconcile_interval_seconds),
            id="reconcile_ledger", name="Ledger Reconciliation", max_instances=1, coalesce=True,
        )
        self._scheduler.add_job(
            self._log_status, IntervalTrigger(seconds=engine.status_interval_seconds),
            id="log_status", name="Status Report", max_instances=1, coalesce=True,
        )
        if self._balance_source is not None:
            self._scheduler.add_job(
                self._orchestrator.sync_external_balance,
                IntervalTrigger(seconds=engine.balance_sync_interval_seconds),
                id="sync_balance", name="Balance Sync", max_instances=1, coalesce=True,
            )
        log.info("scheduler.configured", jobs=[job.id for job in self._scheduler.get_jobs()])

    async def _log_status(self) -> dict:
        stats = self._orchestrator.get_stats()
        try:
            stats["session"] = await compute_session_stats(self._db)
        except Exception as e:
            log.warning("status.session_stats_failed", error=str(e))
        log.info(
            "status",
            active=stats["active_positions"],
            total=round(stats["total_balance"], 6),
            locked=round(stats["locked_balance"], 6),
            free=round(stats["free_balance"], 6),
            pnl=round(stats["realized_pnl"], 6),
        )
        await self._notifier.status_report(stats)
        return stats

    # --- Candidate intake ---

    def submit(self, candidate: TokenCandidate) -> None:
        """Queue a discovered asset for admission."""
        self._queue.put_nowait(candidate)

    async def _pump_feed(self) -> None:
        async for candidate in self._feed:
            if not self._running:
                break
            self.submit(candidate)
        log.info("feed.exhausted")

    def _on_feed_done(self, task: asyncio.Task) -> None:
        """Handle feed task completion: log any unexpected errors."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            log.error("feed.task_failed", error=str(exc), type=type(exc).__name__)

    def _admit(self, candidate: TokenCandidate) -> asyncio.Task:
        task = asyncio.create_task(
            self._orchestrator.try_open_position(candidate), name=f"admit:{candidate.asset_id}",
        )
        self._admissions.add(task)
        task.add_done_callback(self._on_admission_done)
        return task

    def _on_admission_done(self, task: asyncio.Task) -> None:
        self._admissions.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            log.error("admission.task_failed", task=task.get_name(), error=str(exc))

    async def start(self) -> None:
        """Full startup, then consume candidates until stopped."""
        await self.setup()
        if self._feed is not None:
            self._feed_task = asyncio.create_task(self._pump_feed())
            self._feed_task.add_done_callback(self._on_feed_done)

        while self._running:
            try:
                candidate = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            if self._running:
                self._admit(candidate)

    async def stop(self) -> None:
        """Graceful shutdown sequence."""
        log.info("sniper.stopping")
        self._running = False

        if self._feed_task and not self._feed_task.done():
            self._feed_task.cancel()

        # 1. Abort pending admissions. A buy already submitted settles before its task ends.
        for task in list(self._admissions):
            task.cancel()
        if self._admissions:
            await asyncio.gather(*self._admissions, return_exceptions=True)

        # 2. Close every open position
        if self._orchestrator:
            closed = await self._orchestrator.close_all_positions("shutdown")
            log.info("sniper.positions_closed", count=closed)

        # 3. Stop scheduler
        if self._scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)

        # 4. Close HTTP clients
        if self._quotes:
            await self._quotes.close()
        if self._rpc:
            await self._rpc.close()

        # 5. Final stats + Telegram
        if self._notifier:
            if self._orchestrator and self._db:
                try:
                    await self._log_status()
                except Exception as e:
                    log.warning("shutdown.final_stats_failed", error=str(e))
            await self._notifier.system_shutdown()
            await self._notifier.stop()

        # 6. Close database
        if self._db:
            await self._db.close()

        log.info("sniper.stopped")


LOCK_FILE = Path(__file__).resolve().parent.parent / "data" / "sniper.pid"


class PidLock:
    """Single-instance guard: a pidfile that is taken over when its owner is gone."""

    def __init__(self, path: Path = LOCK_FILE) -> None:
        self._path = path
        self._pid = os.getpid()

    def holder(self) -> int | None:
        """PID of another live process holding the lock, if any."""
        try:
            pid = int(self._path.read_text().strip())
        except FileNotFoundError:
            return None
        except (ValueError, OSError):
            log.warning("lockfile.corrupt", path=str(self._path))
            return None
        if pid == self._pid:
            return None
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            log.warning("lockfile.stale", old_pid=pid)
            return None
        except PermissionError:
            pass    # alive, owned by another user
        return pid

    def acquire(self) -> bool:
        if self.holder() is not None:
            return False
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(str(self._pid))
        return True

    def release(self) -> None:
        try:
            if self._path.read_text().strip() == str(self._pid):
                self._path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("lockfile.release_failed", error=str(e))


async def main(lock: PidLock | None = None) -> int:
    """Run one session until SIGTERM/SIGINT. Returns the process exit code."""
    lock = lock or PidLock()
    if not lock.acquire():
        print(f"ERROR: another sniper is running (PID {lock.holder()}).", file=sys.stderr)
        return 1

    app = SniperApp()
    stopping: list[asyncio.Task] = []

    def request_stop() -> None:
        if not stopping:
            stopping.append(asyncio.create_task(app.stop()))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, request_stop)

    try:
        await app.start()
    except (ValueError, RuntimeError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    finally:
        if stopping:
            await stopping[0]
        elif app.running:
            await app.stop()
        lock.release()
    return 0


def run() -> None:
    """Console entry point (`sniper`)."""
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    run()
