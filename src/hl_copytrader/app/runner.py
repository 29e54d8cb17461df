from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from dataclasses import dataclass
from typing import Optional

from hl_copytrader.core.clock import TimeProvider
from hl_copytrader.core.config import AppConfig, load_config
from hl_copytrader.core.errors import ConfigError, ReconciliationError
from hl_copytrader.core.logging import JsonLogger
from hl_copytrader.core.metrics import Metrics
from hl_copytrader.exchanges.base_gateway import ExchangeGateway
from hl_copytrader.exchanges.hyperliquid.hl_perp_adapter import HyperliquidPerpAdapter
from hl_copytrader.exchanges.market_metadata import MarketMetadataService
from hl_copytrader.execution.order_manager import OrderManager
from hl_copytrader.execution.trade_executor import TradeExecutor
from hl_copytrader.state.account_state import FollowerState, LeaderState
from hl_copytrader.sync.reconciler import Reconciler
from hl_copytrader.sync.subscriptions import SubscriptionService
from hl_copytrader.utils.logging_utils import setup_app_logger

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1


@dataclass
class RunnerOptions:
    config_path: Optional[str]
    dry_run: bool = False
    once: bool = False


def build_gateway(cfg: AppConfig, dry_run: bool) -> tuple[ExchangeGateway, str]:
    """Return the Hyperliquid gateway and the signer address derived from the secret key."""
    info, exchange, signer = cfg.credentials.build_hl_clients(
        account_address=cfg.accounts.follower_address,
        vault_address=cfg.accounts.vault_address,
    )
    return HyperliquidPerpAdapter(info, None if dry_run else exchange), signer


class CopyTradingRunner:
    def __init__(
        self,
        cfg: AppConfig,
        opts: RunnerOptions,
        *,
        gateway: Optional[ExchangeGateway] = None,
        signer_address: Optional[str] = None,
        logger: Optional[JsonLogger] = None,
        clock: Optional[TimeProvider] = None,
    ) -> None:
        self.cfg = cfg
        self.opts = opts
        self.clock = clock or TimeProvider()
        self.log = logger or self._init_logger(cfg)
        self.metrics = Metrics()
        self._stop_event: Optional[asyncio.Event] = None
        self._poll_task: Optional[asyncio.Task] = None

        if gateway is None:
            gateway, signer_address = build_gateway(cfg, opts.dry_run)
        self.gateway = gateway
        signer = signer_address or cfg.accounts.follower_address or ""
        # Signer may be an API wallet trading for a different funded wallet or vault
        self.follower_address = cfg.accounts.vault_address or cfg.accounts.follower_address or signer
        self.log.info(
            "address_config",
            signer=signer,
            follower=self.follower_address,
            same_wallet=signer.lower() == self.follower_address.lower(),
            leader=cfg.accounts.leader_address,
        )

        timeout_s = cfg.timing.request_timeout_s
        self.leader_state = LeaderState()
        self.follower_state = FollowerState()
        self.metadata = MarketMetadataService(self.gateway, self.log.child("metadata"), timeout_s=timeout_s)
        self.executor = TradeExecutor(
            gateway=self.gateway,
            leader_state=self.leader_state,
            follower_state=self.follower_state,
            metadata=self.metadata,
            orders=OrderManager(self.gateway, self.log.child("orders"), timeout_s=timeout_s, dry_run=opts.dry_run),
            risk=cfg.risk,
            logger=self.log.child("executor"),
            metrics=self.metrics,
            timeout_s=timeout_s,
        )
        self.reconciler = Reconciler(
            self.gateway,
            self.leader_state,
            self.follower_state,
            leader_address=cfg.accounts.leader_address,
            follower_address=self.follower_address,
            interval_s=cfg.timing.reconcile_interval_ms / 1000.0,
            logger=self.log.child("reconciler"),
            metrics=self.metrics,
            clock=self.clock,
            timeout_s=timeout_s,
            exclusive=self.executor.exclusive,
        )
        self.subscriptions = SubscriptionService(
            self.gateway,
            self.leader_state,
            leader_address=cfg.accounts.leader_address,
            on_update=lambda: self.executor.request_sync("leader_fill"),
            logger=self.log.child("feed"),
            metrics=self.metrics,
            timeout_s=timeout_s,
        )

    @staticmethod
    def _init_logger(cfg: AppConfig) -> JsonLogger:
        logger = JsonLogger(name="copytrader")
        meta = setup_app_logger(
            "copytrader",
            log_level=cfg.telemetry.log_level,
            log_file=cfg.telemetry.log_file,
            log_max_bytes=cfg.telemetry.log_max_bytes,
            log_backup_count=cfg.telemetry.log_backup_count,
            disable_console_logging=cfg.telemetry.disable_console_logging,
        )
        logger.info("log_init", **meta)
        return logger

    def request_stop(self) -> None:
        self.log.warn("shutdown_requested")
        if self._stop_event is not None:
            self._stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no add_signal_handler
                signal.signal(sig, lambda _signum, _frame: loop.call_soon_threadsafe(self.request_stop))

    async def _poll_loop(self) -> None:
        # Fallback for missed feed messages
        interval = self.cfg.timing.poll_interval_ms / 1000.0
        while True:
            self.executor.request_sync("poll")
            await self.clock.sleep(interval)

    async def startup(self) -> None:
        self.log.info("starting", environment=self.cfg.environment.upper(), mode=self.cfg.risk.copy_mode, dry_run=self.opts.dry_run)
        await self.subscriptions.start()
        self.log.info("fetching_initial_state")
        await self.reconciler.reconcile_once()
        metrics = self.follower_state.get_metrics()
        self.log.info(
            "bot_ready",
            withdrawable_usd=metrics.withdrawable,
            equity_usd=metrics.equity,
            copy_mode=self.cfg.risk.copy_mode,
            copy_ratio=self.cfg.risk.copy_ratio,
            leader_positions=len(self.leader_state.get_positions()),
            follower_positions=len(self.follower_state.get_positions()),
        )

    async def run(self) -> int:
        self._stop_event = asyncio.Event()
        try:
            await self.startup()
        except ReconciliationError as e:
            self.log.error("initial_reconciliation_failed", error=e)
            await self.shutdown()
            return EXIT_STARTUP_FAILURE
        except Exception as e:
            self.log.error("startup_failed", error=e)
            await self.shutdown()
            return EXIT_STARTUP_FAILURE

        if self.opts.once:
            report = await self.executor.sync_with_leader()
            self.log.info("single_sync_done", orders=len(report.orders), failed=report.failed, skipped=report.skipped)
            await self.shutdown()
            return EXIT_OK

        self._install_signal_handlers()
        self.reconciler.start()
        self.executor.start()
        self._poll_task = asyncio.create_task(self._poll_loop(), name="poll-loop")
        await self._stop_event.wait()
        await self.shutdown()
        return EXIT_OK

    async def shutdown(self) -> None:
        self.log.info("shutdown_start")
        try:
            await self.subscriptions.stop()
        except Exception as e:
            self.log.error("subscription_stop_failed", error=e)
        poll, self._poll_task = self._poll_task, None
        if poll is not None:
            poll.cancel()
            await asyncio.gather(poll, return_exceptions=True)
        await self.reconciler.stop()
        await self.executor.stop()
        try:
            self.gateway.close()
        except Exception as e:
            self.log.warn("transport_close_failed", error=e)
        if self.cfg.telemetry.metrics:
            self.log.info("metrics", **self.metrics.snapshot())
        self.log.info("shutdown_end")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Hyperliquid copy trading agent")
    parser.add_argument("--config", default=None, help="JSON config file; environment variables override it")
    parser.add_argument("--env-file", default=".env")
    parser.add_argument("--dry-run", action="store_true", help="read live state but only log orders")
    parser.add_argument("--once", action="store_true", help="reconcile, run a single sync and exit")
    args = parser.parse_args(argv)

    try:
        cfg = load_config(args.config, env_file=args.env_file)
    except (ConfigError, AssertionError, ValueError) as e:
        print(f"config error: {e}", file=sys.stderr)
        return EXIT_STARTUP_FAILURE

    try:
        runner = CopyTradingRunner(cfg, RunnerOptions(config_path=args.config, dry_run=bool(args.dry_run), once=bool(args.once)))
    except Exception as e:
        print(f"client construction failed: {e}", file=sys.stderr)
        return EXIT_STARTUP_FAILURE
    return asyncio.run(runner.run())


if __name__ == "__main__":
    raise SystemExit(main())
