from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncIterator, List, Mapping, Optional

from hl_copytrader.core.errors import ExchangeRequestError, MetadataUnavailable
from hl_copytrader.core.logging import JsonLogger
from hl_copytrader.core.metrics import Metrics
from hl_copytrader.core.remote import call_remote
from hl_copytrader.core.types import ZERO, OrderRequest, Position, RiskConfig, SyncReport
from hl_copytrader.exchanges.base_gateway import ExchangeGateway
from hl_copytrader.exchanges.market_metadata import MarketMetadataService
from hl_copytrader.execution.order_manager import OrderManager
from hl_copytrader.execution.slippage_controller import SlippageController
from hl_copytrader.risk.limits import NotionalLimiter
from hl_copytrader.state.account_state import FollowerState, LeaderState
from hl_copytrader.strategy.rebalancer import compute_target_size, decide_adjustment


@dataclass(frozen=True)
class _LocalFill:
    # Follower snapshot version current when the order was sent
    follower_version: int
    asset: str
    size: Decimal


class TradeExecutor:
    """
    Delta engine: drives follower positions toward the risk-scaled leader positions.

    At most one `sync_with_leader()` runs at a time. Callers that arrive while a
    sync is in flight wait for it and then run against fresh state. Triggers from
    the feed and the poll timer go through `request_sync()`, a queue of depth one,
    so a burst of fills collapses into a single follow-up run.

    FollowerState only moves on reconciliation, so fills of orders placed here are
    kept as a local overlay until the next follower snapshot replaces it. The
    reconciler fetches and applies snapshots inside `exclusive()`, so a snapshot
    never overlaps an order in flight and always includes every recorded fill.
    """

    def __init__(
        self,
        *,
        gateway: ExchangeGateway,
        leader_state: LeaderState,
        follower_state: FollowerState,
        metadata: MarketMetadataService,
        orders: OrderManager,
        risk: RiskConfig,
        logger: JsonLogger,
        metrics: Optional[Metrics] = None,
        timeout_s: Optional[float] = None,
    ) -> None:
        self.gw = gateway
        self.leader = leader_state
        self.follower = follower_state
        self.metadata = metadata
        self.orders = orders
        self.risk = risk
        self.log = logger
        self.metrics = metrics or Metrics()
        self.timeout_s = timeout_s
        self.limiter = NotionalLimiter(max_leverage=risk.max_leverage, max_notional_usd=risk.max_notional_usd)
        self.slippage = SlippageController(max_bps=risk.max_slippage_bps)
        self._lock = asyncio.Lock()
        self._triggers: asyncio.Queue[str] = asyncio.Queue(maxsize=1)
        self._overlay: List[_LocalFill] = []
        self._worker: Optional[asyncio.Task] = None

    # --- triggering -----------------------------------------------------

    def request_sync(self, reason: str = "request") -> bool:
        """Schedule a sync on the worker; returns False when one is already pending."""
        try:
            self._triggers.put_nowait(reason)
        except asyncio.QueueFull:
            self.metrics.inc("sync_coalesced")
            return False
        return True

    def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name="trade-executor")

    async def stop(self) -> None:
        worker, self._worker = self._worker, None
        if worker is None:
            return
        # Holding the lock means no sync is mid-flight when the worker is cancelled
        async with self._lock:
            worker.cancel()
        await asyncio.gather(worker, return_exceptions=True)

    async def _run(self) -> None:
        while True:
            reason = await self._triggers.get()
            try:
                await self.sync_with_leader()
            except Exception as e:
                self.log.error("sync_failed", reason=reason, error=e)

    # --- delta computation ----------------------------------------------

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        """Hold off syncs, and with them order placement, for the duration of the block."""
        async with self._lock:
            yield

    async def sync_with_leader(self) -> SyncReport:
        async with self._lock:
            self.metrics.inc("sync_runs")
            return await self._sync_locked()

    def follower_size(self, asset: str) -> Decimal:
        """Follower size from the last snapshot plus local fills recorded since it was applied."""
        version = self.follower.version
        pending = sum((f.size for f in self._overlay if f.asset == asset and f.follower_version == version), ZERO)
        return self.follower.position_size(asset) + pending

    def _prune_overlay(self) -> None:
        version = self.follower.version
        self._overlay = [f for f in self._overlay if f.follower_version == version]

    async def _sync_locked(self) -> SyncReport:
        report = SyncReport()
        if not (self.leader.initialized and self.follower.initialized):
            self.log.debug("sync_skipped", reason="state_not_initialized")
            report.ran = False
            return report
        equity = self.follower.get_metrics().equity
        if equity <= 0:
            self.log.warn("sync_skipped", reason="no_follower_equity", equity=equity)
            report.ran = False
            return report

        self._prune_overlay()
        # The mapping is replaced, never mutated, so this view stays consistent across awaits
        leader_positions = self.leader.get_positions()
        assets = self.leader.tracked_assets() | set(self.follower.get_positions()) | {f.asset for f in self._overlay}

        for asset in sorted(assets):
            try:
                await self._sync_asset(asset, leader_positions, equity, report)
            except MetadataUnavailable as e:
                report.skipped[asset] = "metadata_unavailable"
                self.log.warn("asset_skipped", asset=asset, reason="metadata_unavailable", error=e)
            except ExchangeRequestError as e:
                report.failed[asset] = str(e)
                self.metrics.inc("orders_failed")
                self.log.error("order_failed", asset=asset, error=e)
            except Exception as e:
                report.failed[asset] = str(e)
                self.metrics.inc("orders_failed")
                self.log.error("asset_sync_failed", asset=asset, error=e)
        if report.orders or report.failed:
            self.log.info(
                "sync_done",
                orders=len(report.orders),
                failed=sorted(report.failed),
                skipped=sorted(report.skipped),
            )
        return report

    async def _sync_asset(self, asset: str, leader_positions: Mapping[str, Position], equity: Decimal, report: SyncReport) -> None:
        meta = await self.metadata.get(asset)
        leader_pos = leader_positions.get(asset)
        leader_size = leader_pos.size if leader_pos is not None else ZERO
        current = self.follower_size(asset)
        raw_target = compute_target_size(leader_size, self.risk.copy_mode, self.risk.copy_ratio, meta.size_decimals)
        if raw_target == 0 and current == 0:
            return

        bid, ask = await call_remote(self.gw.best_bid_ask, asset, timeout_s=self.timeout_s, label="best_bid_ask")
        if bid > 0 and ask > 0:
            mid = (bid + ask) / Decimal(2)
        else:
            mid = bid if bid > 0 else ask
        if mid <= 0:
            report.skipped[asset] = "no_book"
            self.log.warn("asset_skipped", asset=asset, reason="no_book")
            return

        target = self.limiter.cap_target(raw_target, mid, equity, meta.size_decimals, meta.max_leverage)
        if target != raw_target:
            self.log.info("target_capped", asset=asset, requested=raw_target, capped=target, equity=equity)

        decision = decide_adjustment(asset, current, target, meta.size_increment)
        if decision is None:
            return
        size = abs(decision.delta)
        if not decision.is_close and size * mid < self.risk.min_order_usd:
            report.skipped[asset] = "below_min_order"
            self.log.debug("asset_skipped", asset=asset, reason="below_min_order", size=size, mid=mid)
            return

        is_buy = decision.delta > 0
        reference = ask if is_buy else bid
        if reference <= 0:
            report.skipped[asset] = "no_book"
            self.log.warn("asset_skipped", asset=asset, reason="no_book", side=decision.side)
            return

        request = OrderRequest(
            asset=asset,
            side=decision.side,
            size=size,
            limit_price=self.slippage.limit_price(reference, is_buy, meta.price_decimals),
            reduce_only=decision.is_close,
        )
        self.log.info(
            "adjusting_position",
            asset=asset,
            leader=leader_size,
            current=current,
            target=target,
            side=request.side,
            size=size,
            limit_px=request.limit_price,
            close=decision.is_close,
        )
        sent_at_version = self.follower.version
        result = await self.orders.submit(request)
        report.orders.append(request)
        self.metrics.inc("orders_placed")

        filled = size if result.resting else result.filled_size
        if filled > 0:
            signed = filled if is_buy else -filled
            self._overlay.append(_LocalFill(follower_version=sent_at_version, asset=asset, size=signed))
        else:
            self.log.warn("order_unfilled", asset=asset, side=request.side, size=size, limit_px=request.limit_price)
