from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Callable, Dict, Optional

from hl_copytrader.core.logging import JsonLogger
from hl_copytrader.core.metrics import Metrics
from hl_copytrader.core.remote import call_remote
from hl_copytrader.core.types import ZERO, FillBatch
from hl_copytrader.exchanges.base_gateway import ExchangeGateway
from hl_copytrader.exchanges.hyperliquid.hl_common import parse_fills_message
from hl_copytrader.state.account_state import LeaderState

_CLOSE = object()


class SubscriptionState(str, Enum):
    DISCONNECTED = "disconnected"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"


class SubscriptionService:
    """
    Leader fill stream -> LeaderState.

    The SDK invokes the subscription callback on its websocket thread; messages
    are handed to the event loop and consumed in order by a single task.
    Snapshot messages (sent on every (re)connect) only confirm connectivity.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        leader_state: LeaderState,
        *,
        leader_address: str,
        on_update: Callable[[], Any],
        logger: JsonLogger,
        metrics: Optional[Metrics] = None,
        timeout_s: Optional[float] = None,
    ) -> None:
        self.gw = gateway
        self.leader = leader_state
        self.leader_address = leader_address
        self.on_update = on_update
        self.log = logger
        self.metrics = metrics or Metrics()
        self.timeout_s = timeout_s
        self._state = SubscriptionState.DISCONNECTED
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._handle: Any = None
        self._accepting = False

    @property
    def state(self) -> SubscriptionState:
        return self._state

    async def start(self) -> None:
        if self._state is not SubscriptionState.DISCONNECTED:
            return
        self.log.info("subscription_starting", leader=self.leader_address)
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._accepting = True
        self._state = SubscriptionState.SUBSCRIBING
        self._consumer = asyncio.create_task(self._consume(self._queue), name="leader-fills")
        try:
            self._handle = await call_remote(
                self.gw.subscribe_fills, self.leader_address, self._on_message, timeout_s=self.timeout_s, label="subscribe_fills"
            )
        except Exception:
            await self._shutdown_consumer()
            self._state = SubscriptionState.DISCONNECTED
            raise

    async def stop(self) -> None:
        if self._state is SubscriptionState.DISCONNECTED and self._consumer is None:
            return
        self.log.info("subscription_stopping", leader=self.leader_address)
        self._accepting = False
        handle, self._handle = self._handle, None
        if handle is not None:
            try:
                await call_remote(self.gw.unsubscribe_fills, handle, timeout_s=self.timeout_s, label="unsubscribe_fills")
            except Exception as e:
                # Closing the transport drops the subscription anyway
                self.log.warn("unsubscribe_failed", error=e)
        await self._shutdown_consumer()
        self._state = SubscriptionState.DISCONNECTED

    async def _shutdown_consumer(self) -> None:
        consumer, self._consumer = self._consumer, None
        if consumer is None:
            return
        if self._queue is not None:
            self._queue.put_nowait(_CLOSE)
        await asyncio.gather(consumer, return_exceptions=True)

    # Runs on the transport thread
    def _on_message(self, msg: Dict[str, Any]) -> None:
        loop = self._loop
        if loop is None or not self._accepting:
            return
        try:
            loop.call_soon_threadsafe(self._enqueue, msg)
        except RuntimeError:
            # Loop already closed during shutdown
            return

    def _enqueue(self, msg: Dict[str, Any]) -> None:
        if self._accepting and self._queue is not None:
            self._queue.put_nowait(msg)

    async def _consume(self, queue: asyncio.Queue) -> None:
        while True:
            msg = await queue.get()
            if msg is _CLOSE:
                return
            try:
                self.handle_message(msg)
            except Exception as e:
                self.log.error("fill_message_failed", error=e)

    def handle_message(self, msg: Dict[str, Any]) -> None:
        try:
            batch = parse_fills_message(msg)
        except (ValueError, TypeError, KeyError) as e:
            self.metrics.inc("fill_messages_malformed")
            self.log.warn("fill_message_malformed", error=e)
            return

        if batch.is_snapshot:
            if self._state is SubscriptionState.SUBSCRIBING:
                self._state = SubscriptionState.SUBSCRIBED
                self.log.info("subscription_confirmed", snapshot_fills=len(batch.fills))
            else:
                self.log.info("fill_snapshot_replayed", snapshot_fills=len(batch.fills))
            return
        if self._state is SubscriptionState.SUBSCRIBING:
            self._state = SubscriptionState.SUBSCRIBED
        if batch.fills:
            self._apply(batch)

    def _apply(self, batch: FillBatch) -> None:
        first = batch.fills[0]
        self.log.info(
            "leader_fills",
            count=len(batch.fills),
            coin=first.asset,
            side=first.side,
            size=first.size,
            px=first.price,
            start_position=first.start_position,
            closed_pnl=sum((f.closed_pnl for f in batch.fills), ZERO),
        )
        result = self.leader.apply_fill_batch(batch)
        if result.applied:
            self.metrics.inc("fills_applied", result.applied)
        if result.duplicates:
            self.metrics.inc("fills_duplicate", result.duplicates)
            self.log.info("duplicate_fills_ignored", count=result.duplicates)
        if result.applied:
            self.on_update()
