from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from hyperliquid.exchange import Exchange
from hyperliquid.info import Info

from hl_copytrader.core.errors import MetadataUnavailable
from hl_copytrader.core.types import AccountSnapshot, AssetMeta, OrderRequest
from hl_copytrader.exchanges.base_gateway import ExchangeGateway, FillCallback
from hl_copytrader.exchanges.hyperliquid.hl_common import (
    best_bid_ask_from_l2,
    find_asset_meta,
    parse_user_state,
)


class HyperliquidPerpAdapter(ExchangeGateway):
    """Perpetuals gateway on top of hyperliquid-python-sdk Info/Exchange clients."""

    def __init__(self, info: Info, exchange: Optional[Exchange]) -> None:
        self.info = info
        # None in dry-run mode: reads work, placing orders is refused
        self.exchange = exchange
        self._meta: Optional[Dict[str, Any]] = None

    def get_account_snapshot(self, address: str) -> AccountSnapshot:
        return parse_user_state(address, self.info.user_state(address))

    def get_asset_meta(self, asset: str) -> AssetMeta:
        # The universe listing is static; re-fetch once when an asset is missing in case it was newly listed
        if self._meta is None:
            self._meta = self.info.meta()
        try:
            return find_asset_meta(self._meta, asset)
        except MetadataUnavailable:
            self._meta = self.info.meta()
            return find_asset_meta(self._meta, asset)

    def best_bid_ask(self, asset: str) -> Tuple[Decimal, Decimal]:
        return best_bid_ask_from_l2(self.info.l2_snapshot(asset))

    def place_order(self, request: OrderRequest) -> Any:
        if self.exchange is None:
            raise RuntimeError("exchange client not configured (dry run)")
        # Immediate-or-cancel limit at the slippage bound behaves as a protected market order
        order_type: Dict[str, Any] = {"limit": {"tif": "Ioc"}}
        return self.exchange.order(
            request.asset,
            request.is_buy,
            float(request.size),
            float(request.limit_price),
            order_type,
            reduce_only=request.reduce_only,
        )

    def subscribe_fills(self, address: str, callback: FillCallback) -> Any:
        subscription = {"type": "userFills", "user": address}
        sub_id = self.info.subscribe(subscription, callback)
        return subscription, sub_id

    def unsubscribe_fills(self, handle: Any) -> None:
        subscription, sub_id = handle
        self.info.unsubscribe(subscription, sub_id)

    def close(self) -> None:
        disconnect = getattr(self.info, "disconnect_websocket", None)
        if callable(disconnect):
            disconnect()
