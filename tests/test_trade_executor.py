import asyncio
import threading
from decimal import Decimal

from conftest import FOLLOWER, LEADER, snapshot
from hl_copytrader.core.clock import TimeProvider
from hl_copytrader.core.logging import JsonLogger
from hl_copytrader.core.metrics import Metrics
from hl_copytrader.core.types import CopyMode, RiskConfig
from hl_copytrader.exchanges.market_metadata import MarketMetadataService
from hl_copytrader.execution.order_manager import OrderManager
from hl_copytrader.execution.trade_executor import TradeExecutor
from hl_copytrader.state.account_state import FollowerState, LeaderState
from hl_copytrader.sync.reconciler import Reconciler

LOG = JsonLogger(name="test-executor")


class Harness:
    def __init__(self, gateway, mode=CopyMode.EXACT, ratio="1", max_leverage="5", max_notional="100000"):
        self.gw = gateway
        self.now = 100.0
        self.clock = TimeProvider(now_fn=lambda: self.now)
        self.metrics = Metrics()
        self.leader = LeaderState()
        self.follower = FollowerState()
        self.executor = TradeExecutor(
            gateway=gateway,
            leader_state=self.leader,
            follower_state=self.follower,
            metadata=MarketMetadataService(gateway, LOG),
            orders=OrderManager(gateway, LOG),
            risk=RiskConfig(
                copy_mode=mode,
                copy_ratio=Decimal(ratio),
                max_leverage=Decimal(max_leverage),
                max_notional_usd=Decimal(max_notional),
            ),
            logger=LOG,
            metrics=self.metrics,
        )
        self.reconciler = Reconciler(
            gateway,
            self.leader,
            self.follower,
            leader_address=LEADER,
            follower_address=FOLLOWER,
            interval_s=60,
            logger=LOG,
            metrics=self.metrics,
            clock=self.clock,
            exclusive=self.executor.exclusive,
        )


async def wait_until(pred, attempts=200):
    for _ in range(attempts):
        if pred():
            return True
        await asyncio.sleep(0.01)
    return pred()


def test_exact_mode_opens_missing_position(gateway):
    gateway.snapshots[LEADER] = snapshot(LEADER, {"BTC": "3"})

    async def scenario():
        h = Harness(gateway)
        await h.reconciler.reconcile_once()
        return await h.executor.sync_with_leader()

    report = asyncio.run(scenario())
    assert len(gateway.placed) == 1
    order = gateway.placed[0]
    assert (order.asset, order.side, order.size, order.reduce_only) == ("BTC", "BUY", Decimal("3"), False)
    # Best ask 100.1 plus 50 bps, five significant figures
    assert order.limit_price == Decimal("100.60")
    assert report.orders == [order]


def test_repeated_sync_is_idempotent(gateway):
    gateway.snapshots[LEADER] = snapshot(LEADER, {"BTC": "3", "ETH": "-2"})

    async def scenario():
        h = Harness(gateway)
        await h.reconciler.reconcile_once()
        await h.executor.sync_with_leader()
        second = await h.executor.sync_with_leader()
        return h, second

    h, second = asyncio.run(scenario())
    assert [(o.asset, o.side, o.size) for o in gateway.placed] == [("BTC", "BUY", Decimal("3")), ("ETH", "SELL", Decimal("2"))]
    assert second.orders == []
    assert h.executor.follower_size("ETH") == Decimal("-2")


def test_concurrent_syncs_do_not_double_order(gateway):
    gateway.snapshots[LEADER] = snapshot(LEADER, {"BTC": "3"})
    gateway.release_orders = threading.Event()

    async def scenario():
        h = Harness(gateway)
        await h.reconciler.reconcile_once()
        first = asyncio.create_task(h.executor.sync_with_leader())
        second = asyncio.create_task(h.executor.sync_with_leader())
        loop = asyncio.get_running_loop()
        # Hold the first order inside the gateway while the second sync is queued on the lock
        assert await loop.run_in_executor(None, gateway.order_started.wait, 5)
        await asyncio.sleep(0.05)
        gateway.release_orders.set()
        return await asyncio.gather(first, second)

    first, second = asyncio.run(scenario())
    assert len(gateway.placed) == 1
    assert len(first.orders) == 1 and second.orders == []


def test_close_uses_reduce_only(gateway):
    gateway.snapshots[FOLLOWER] = snapshot(FOLLOWER, {"BTC": "3"})

    async def scenario():
        h = Harness(gateway)
        await h.reconciler.reconcile_once()
        await h.executor.sync_with_leader()

    asyncio.run(scenario())
    order = gateway.placed[0]
    assert (order.asset, order.side, order.size, order.reduce_only) == ("BTC", "SELL", Decimal("3"), True)
    # Best bid 99.9 minus 50 bps
    assert order.limit_price == Decimal("99.401")


def test_ratio_mode_scales_leader(gateway):
    gateway.snapshots[LEADER] = snapshot(LEADER, {"ETH": "10"})
    gateway.snapshots[FOLLOWER] = snapshot(FOLLOWER, {"ETH": "1"})

    async def scenario():
        h = Harness(gateway, mode=CopyMode.RATIO, ratio="0.25")
        await h.reconciler.reconcile_once()
        await h.executor.sync_with_leader()

    asyncio.run(scenario())
    order = gateway.placed[0]
    assert (order.side, order.size, order.reduce_only) == ("BUY", Decimal("1.5"), False)


def test_leverage_cap_limits_target(gateway):
    gateway.snapshots[LEADER] = snapshot(LEADER, {"BTC": "60"})
    gateway.snapshots[FOLLOWER] = snapshot(FOLLOWER, equity="1000", withdrawable="1000")

    async def scenario():
        h = Harness(gateway, max_leverage="5")
        await h.reconciler.reconcile_once()
        await h.executor.sync_with_leader()

    asyncio.run(scenario())
    # 5x of 1000 equity at mid 100 allows 50
    assert gateway.placed[0].size == Decimal("50")


def test_unknown_asset_is_skipped_and_others_proceed(gateway):
    gateway.snapshots[LEADER] = snapshot(LEADER, {"DOGE": "1000", "BTC": "1"})

    async def scenario():
        h = Harness(gateway)
        await h.reconciler.reconcile_once()
        return await h.executor.sync_with_leader()

    report = asyncio.run(scenario())
    assert report.skipped == {"DOGE": "metadata_unavailable"}
    assert [o.asset for o in gateway.placed] == ["BTC"]


def test_order_failure_is_isolated_and_retried(gateway):
    gateway.snapshots[LEADER] = snapshot(LEADER, {"BTC": "1", "ETH": "1"})
    gateway.order_responses["BTC"] = ConnectionError("socket closed")

    async def scenario():
        h = Harness(gateway)
        await h.reconciler.reconcile_once()
        first = await h.executor.sync_with_leader()
        gateway.order_responses.pop("BTC")
        second = await h.executor.sync_with_leader()
        return h, first, second

    h, first, second = asyncio.run(scenario())
    assert set(first.failed) == {"BTC"}
    assert [o.asset for o in first.orders] == ["ETH"]
    assert [o.asset for o in second.orders] == ["BTC"]
    assert h.metrics.count("orders_failed") == 1
    assert h.metrics.count("orders_placed") == 2


def test_sync_waits_for_initial_state(gateway):
    async def scenario():
        h = Harness(gateway)
        return await h.executor.sync_with_leader()

    report = asyncio.run(scenario())
    assert not report.ran
    assert gateway.placed == []


def test_no_equity_skips_sync(gateway):
    gateway.snapshots[LEADER] = snapshot(LEADER, {"BTC": "1"})
    gateway.snapshots[FOLLOWER] = snapshot(FOLLOWER, equity="0", withdrawable="0")

    async def scenario():
        h = Harness(gateway)
        await h.reconciler.reconcile_once()
        return await h.executor.sync_with_leader()

    assert not asyncio.run(scenario()).ran
    assert gateway.placed == []


def test_small_adjustment_below_min_order(gateway):
    gateway.snapshots[LEADER] = snapshot(LEADER, {"BTC": "0.05"})

    async def scenario():
        h = Harness(gateway)
        await h.reconciler.reconcile_once()
        return await h.executor.sync_with_leader()

    report = asyncio.run(scenario())
    assert report.skipped == {"BTC": "below_min_order"}
    assert gateway.placed == []


def test_local_fills_replaced_by_newer_snapshot(gateway):
    gateway.snapshots[LEADER] = snapshot(LEADER, {"BTC": "3"})

    async def scenario():
        h = Harness(gateway)
        await h.reconciler.reconcile_once()
        h.now = 150.0
        await h.executor.sync_with_leader()
        # Not yet visible in any snapshot: the local fill counts
        assert h.follower.position_size("BTC") == Decimal("0")
        assert h.executor.follower_size("BTC") == Decimal("3")
        await h.executor.sync_with_leader()

        # Newer snapshot that includes the fill replaces the local record
        gateway.snapshots[FOLLOWER] = snapshot(FOLLOWER, {"BTC": "3"})
        h.now = 200.0
        await h.reconciler.reconcile_once()
        assert h.executor.follower_size("BTC") == Decimal("3")

        # Position changed externally: the engine follows the snapshot
        gateway.snapshots[FOLLOWER] = snapshot(FOLLOWER, {"BTC": "1"})
        h.now = 300.0
        await h.reconciler.reconcile_once()
        await h.executor.sync_with_leader()

    asyncio.run(scenario())
    assert [(o.side, o.size) for o in gateway.placed] == [("BUY", Decimal("3")), ("BUY", Decimal("2"))]


def test_reconcile_waits_for_order_in_flight(gateway):
    gateway.snapshots[LEADER] = snapshot(LEADER, {"BTC": "3"})
    gateway.release_orders = threading.Event()

    async def scenario():
        h = Harness(gateway)
        await h.reconciler.reconcile_once()
        sync = asyncio.create_task(h.executor.sync_with_leader())
        loop = asyncio.get_running_loop()
        assert await loop.run_in_executor(None, gateway.order_started.wait, 5)

        # The venue has filled the order but the response has not come back yet
        gateway.snapshots[FOLLOWER] = snapshot(FOLLOWER, {"BTC": "3"})
        h.now = 110.0
        reconcile = asyncio.create_task(h.reconciler.reconcile_once())
        await asyncio.sleep(0.05)
        assert not reconcile.done()

        h.now = 120.0
        gateway.release_orders.set()
        await sync
        await reconcile
        assert h.executor.follower_size("BTC") == Decimal("3")
        return await h.executor.sync_with_leader()

    report = asyncio.run(scenario())
    assert report.orders == []
    assert [(o.side, o.size) for o in gateway.placed] == [("BUY", Decimal("3"))]


def test_request_sync_coalesces_and_worker_runs(gateway):
    gateway.snapshots[LEADER] = snapshot(LEADER, {"BTC": "2"})

    async def scenario():
        h = Harness(gateway)
        await h.reconciler.reconcile_once()
        assert h.executor.request_sync("fill")
        assert not h.executor.request_sync("poll")
        assert not h.executor.request_sync("poll")
        h.executor.start()
        assert await wait_until(lambda: h.metrics.count("sync_runs") >= 1)
        await h.executor.stop()
        # Stopping twice is harmless
        await h.executor.stop()
        return h

    h = asyncio.run(scenario())
    assert h.metrics.count("sync_coalesced") == 2
    assert h.metrics.count("sync_runs") == 1
    assert len(gateway.placed) == 1
