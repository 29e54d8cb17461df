from __future__ import annotations

import asyncio
import contextlib
from enum import Enum
from typing import AsyncContextManager, Callable, Optional

from hl_copytrader.core.clock import TimeProvider
from hl_copytrader.core.errors import ReconciliationError
from hl_copytrader.core.logging import JsonLogger
from hl_copytrader.core.metrics import Metrics
from hl_copytrader.core.remote import call_remote
from hl_copytrader.exchanges.base_gateway import ExchangeGateway
from hl_copytrader.state.account_state import FollowerState, LeaderState


class ReconcilerState(str, Enum):
    IDLE = "idle"
    RUNNING_ON_TIMER = "running-on-timer"


class Reconciler:
    """
    Pulls full account snapshots for leader and follower and overwrites both trackers.

    Used once at startup (failure is fatal to the caller) and then on a fixed
    interval, where a failed tick is logged and the previous state is kept.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        leader_state: LeaderState,
        follower_state: FollowerState,
        *,
        leader_address: str,
        follower_address: str,
        interval_s: float,
        logger: JsonLogger,
        metrics: Optional[Metrics] = None,
        clock: Optional[TimeProvider] = None,
        timeout_s: Optional[float] = None,
        exclusive: Optional[Callable[[], AsyncContextManager[None]]] = None,
    ) -> None:
        self.gw = gateway
        self.leader = leader_state
        self.follower = follower_state
        self.leader_address = leader_address
        self.follower_address = follower_address
        self.interval_s = interval_s
        self.log = logger
        self.metrics = metrics or Metrics()
        self.clock = clock or TimeProvider()
        self.timeout_s = timeout_s
        # Held while fetching and applying so no follower order is in flight meanwhile
        self._exclusive = exclusive
        self.last_success_at: Optional[float] = None
        self._state = ReconcilerState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def state(self) -> ReconcilerState:
        return self._state

    async def reconcile_once(self) -> None:
        guard = self._exclusive() if self._exclusive is not None else contextlib.nullcontext()
        async with guard:
            started = self.clock.now()
            try:
                leader_snap, follower_snap = await asyncio.gather(
                    call_remote(self.gw.get_account_snapshot, self.leader_address, timeout_s=self.timeout_s, label="leader_snapshot"),
                    call_remote(self.gw.get_account_snapshot, self.follower_address, timeout_s=self.timeout_s, label="follower_snapshot"),
                )
            except Exception as e:
                self.metrics.inc("reconcile_failed")
                raise ReconciliationError(f"snapshot fetch failed: {e}") from e

            # Stamp with the request start: anything that happened later may be missing from it
            leader_snap.taken_at = started
            follower_snap.taken_at = started
            self.leader.apply_full_snapshot(leader_snap)
            self.follower.apply_full_snapshot(follower_snap)

        self.last_success_at = self.clock.now()
        self.metrics.inc("reconcile_ok")
        self.metrics.set_gauge("follower_equity", float(follower_snap.metrics.equity))
        self.log.debug(
            "reconciled",
            leader_positions=len(leader_snap.positions),
            follower_positions=len(follower_snap.positions),
            follower_equity=follower_snap.metrics.equity,
        )

    async def _tick(self) -> None:
        try:
            await self.reconcile_once()
        except ReconciliationError as e:
            self.log.warn("reconcile_failed", error=e, last_success_at=self.last_success_at)

    async def _loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                await self._tick()

    def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop_event), name="reconciler")
        self._state = ReconcilerState.RUNNING_ON_TIMER
        self.log.info("reconciler_started", interval_s=self.interval_s)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        # An in-flight tick runs to completion before the loop sees the stop flag
        await task
        self._state = ReconcilerState.IDLE
        self.log.info("reconciler_stopped")
