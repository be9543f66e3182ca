"""
Copy-trading worker
Composition root: builds every service once, wires them together and runs the
signal, sell-signal, monitoring and status loops side by side
"""

import asyncio
import signal
from typing import List, Optional

from copytrader.clients.dexscreener_client import DexScreenerClient
from copytrader.clients.jupiter_client import JupiterClient
from copytrader.clients.pump_curve_reader import PumpCurveReader
from copytrader.clients.pumpportal_client import PumpPortalClient
from copytrader.clients.rpc_client import SolanaRpcClient
from copytrader.clients.signer import TransactionSigner
from copytrader.clients.wallet_activity import WalletActivitySource
from copytrader.core.config import BotConfig
from copytrader.core.copy_engine import CopyDecisionEngine
from copytrader.core.copy_strategy import CopyStrategy
from copytrader.core.exit_policy import ExitPolicyEngine
from copytrader.core.logger import get_logger
from copytrader.core.metrics import MetricsCollector
from copytrader.core.pnl import PnLCalculator
from copytrader.core.position_monitor import PositionMonitor
from copytrader.core.position_store import PositionStore
from copytrader.core.price_oracle import PriceOracle
from copytrader.core.signals import COPY_SIGNALS_KEY, SellSignalFlagger
from copytrader.core.simulator import SimulatedExecutor, SimulationBook
from copytrader.core.store import KeyValueStore
from copytrader.core.venues import Venue, VenueRouter
from copytrader.services.notifier import DiscordNotifier


logger = get_logger(__name__)


class CopyTraderWorker:
    """
    Single worker process for one bot instance

    Usage:
        worker = CopyTraderWorker(config)
        await worker.start()   # runs until stop() or a signal
    """

    def __init__(self, config: BotConfig):
        self.config = config
        self.metrics = MetricsCollector()
        self.store = KeyValueStore(config.storage.db_path)
        self.rpc = SolanaRpcClient(config.rpc, self.metrics)

        trading = config.trading
        self.signer: Optional[TransactionSigner] = None
        if config.wallet.private_key:
            self.signer = TransactionSigner(config.wallet.private_key)

        self.jupiter = JupiterClient(
            config.oracle,
            self.rpc,
            signer=self.signer,
            slippage_bps=trading.aggregator_slippage_bps,
            timeout_s=config.oracle.timeout_s,
            submit_timeout_s=trading.trade_timeout_s
        )
        self.dexscreener = DexScreenerClient(config.oracle, timeout_s=config.oracle.timeout_s)
        self.oracle = PriceOracle(
            PumpCurveReader(self.rpc),
            self.jupiter,
            self.dexscreener,
            self.metrics,
            cache_ttl_s=config.oracle.cache_ttl_s,
            tier_ttl_s=config.oracle.tier_ttl_s,
            max_failed_attempts=config.oracle.max_failed_attempts,
            failure_window_s=config.oracle.failure_window_s,
            timeout_s=config.oracle.timeout_s
        )

        self.calculator = PnLCalculator(
            network_fee=trading.network_fee_sol,
            estimated_slippage=trading.estimated_slippage
        )
        self.positions = PositionStore(
            self.store,
            self.calculator,
            self.metrics,
            reentry_cooldown_s=trading.reentry_cooldown_s
        )
        self.strategy = CopyStrategy(config.strategy, trading)
        self.wallet_activity = WalletActivitySource(
            self.rpc,
            self.store,
            lookback_s=config.exit.wallet_sell_lookback_s,
            cache_ttl_s=config.exit.wallet_sell_cache_ttl_s
        )
        self.exit_engine = ExitPolicyEngine(
            self.store,
            self.wallet_activity,
            self.strategy,
            self.metrics,
            wallet_exit_window_s=config.exit.wallet_exit_window_s,
            loss_protection_window_s=config.exit.loss_protection_window_s,
            timeout_s=config.rpc.timeout_s
        )

        self.pumpportal: Optional[PumpPortalClient] = None
        if trading.live:
            self.pumpportal = PumpPortalClient(
                config.pumpportal,
                self.rpc,
                owner=self.signer.pubkey if self.signer else None,
                timeout_s=trading.trade_timeout_s
            )
            executors = {Venue.RELAY: self.pumpportal, Venue.AGGREGATOR: self.jupiter}
        else:
            book = SimulationBook(config.simulation)
            executors = {venue: SimulatedExecutor(venue, book, self.oracle) for venue in Venue}

        self.router = VenueRouter(
            executors,
            self.metrics,
            timeout_s=config.execution_timeout_s(),
            graduation_warmup_s=trading.graduation_warmup_s
        )
        self.notifier = DiscordNotifier(config.notifications.webhook_url, config.notifications.username)

        self.copy_engine = CopyDecisionEngine(
            self.store,
            self.positions,
            self.oracle,
            self.strategy,
            self.router,
            self.notifier,
            self.metrics,
            trading
        )
        self.monitor = PositionMonitor(
            self.positions,
            self.oracle,
            self.calculator,
            self.exit_engine,
            self.router,
            self.notifier,
            self.metrics,
            trading,
            config.notifications
        )
        self.flagger = SellSignalFlagger(
            self.store,
            self.positions,
            self.notifier,
            self.metrics,
            min_wallets_to_sell=config.strategy.min_wallets_to_sell
        )

        self._tasks: List[asyncio.Task] = []
        self.running = False

    async def start(self) -> None:
        """Connect collaborators and run every loop until stopped"""
        loops = self.config.loops
        await self.store.connect()
        await self.rpc.start()
        self.running = True

        logger.info(
            "worker_started",
            mode=self.strategy.mode,
            trading_enabled=self.config.trading.enabled,
            max_positions=self.config.trading.max_positions,
            position_size_sol=self.config.trading.position_size_sol
        )
        await self.notifier.send_text(
            f"🚀 **Copy Trader Started**\n"
            f"Mode: {'💰 Live Trading' if self.config.trading.live else '📄 Paper Trading'}\n"
            f"Position size: {self.config.trading.position_size_sol} SOL | Max positions: {self.config.trading.max_positions}\n"
            f"TP +{self.config.strategy.take_profit_pct}% | Trailing -{self.config.strategy.trailing_stop_pct}% | SL -{self.config.strategy.stop_loss_pct}%"
        )

        self._tasks = [
            asyncio.create_task(
                self.copy_engine.run(loops.signal_poll_timeout_s, loops.error_backoff_s), name="copy_signals"
            ),
            asyncio.create_task(self.sell_signal_loop(), name="sell_signals"),
            asyncio.create_task(
                self.monitor.run(loops.monitor_interval_s, loops.error_backoff_s), name="position_monitor"
            ),
            asyncio.create_task(self.status_loop(), name="status"),
        ]

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("worker_tasks_cancelled")
        finally:
            await self.stop()

    async def sell_signal_loop(self) -> None:
        loops = self.config.loops
        logger.info("sell_signal_loop_started")
        while True:
            try:
                await self.flagger.process_next(timeout=loops.signal_poll_timeout_s)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("sell_signal_loop_error", error=str(e), error_type=type(e).__name__)
                self.metrics.increment_counter("loop_errors", labels={"loop": "sell_signals"})
                await asyncio.sleep(loops.error_backoff_s)

    async def status_loop(self) -> None:
        loops = self.config.loops
        while True:
            await asyncio.sleep(loops.status_interval_s)
            try:
                await self.log_status()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("status_loop_error", error=str(e), error_type=type(e).__name__)
                self.metrics.increment_counter("loop_errors", labels={"loop": "status"})

    async def log_status(self) -> dict:
        status = {
            "open_positions": await self.positions.count_open(),
            "tracked_wallets": await self.wallet_activity.tracked_count(),
            "pending_signals": await self.store.llen(COPY_SIGNALS_KEY),
            "today": await self.positions.get_daily_stats(),
        }
        logger.info("worker_status", **status)
        logger.info("metrics_snapshot", metrics=self.metrics.export_metrics())
        return status

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                # add_signal_handler is unavailable on Windows event loops
                pass

    def request_stop(self) -> None:
        logger.info("worker_stop_requested")
        for task in self._tasks:
            task.cancel()

    async def stop(self) -> None:
        """Cancel loops and release every connection"""
        if not self.running:
            return
        self.running = False

        for task in self._tasks:
            task.cancel()

        for name, closer in (
            ("jupiter", self.jupiter.close),
            ("dexscreener", self.dexscreener.close),
            ("pumpportal", self.pumpportal.close if self.pumpportal else None),
            ("rpc", self.rpc.stop),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as e:
                logger.error("close_failed", component=name, error=str(e))

        try:
            stats = await self.positions.get_daily_stats()
            await self.notifier.send_text(
                f"🛑 **Copy Trader Stopped**\n"
                f"Open positions: {await self.positions.count_open()}\n"
                f"Today: {stats['total_trades']} trades, {stats['total_pnl']:+.4f} SOL"
            )
        except Exception as e:
            logger.error("shutdown_notification_failed", error=str(e))

        await self.notifier.close()
        await self.store.close()
        logger.info("worker_stopped")
