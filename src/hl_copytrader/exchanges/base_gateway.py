from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Callable, Dict, Tuple

from hl_copytrader.core.types import AccountSnapshot, AssetMeta, OrderRequest

FillCallback = Callable[[Dict[str, Any]], None]


class ExchangeGateway(ABC):
    """
    Blocking exchange interface used by the copy engine.

    Implementations wrap an SDK; callers run these methods off the event loop
    through `core.remote.call_remote`.
    """

    @abstractmethod
    def get_account_snapshot(self, address: str) -> AccountSnapshot:
        raise NotImplementedError

    @abstractmethod
    def get_asset_meta(self, asset: str) -> AssetMeta:
        """Raise MetadataUnavailable when the venue does not list `asset`."""
        raise NotImplementedError

    @abstractmethod
    def best_bid_ask(self, asset: str) -> Tuple[Decimal, Decimal]:
        raise NotImplementedError

    @abstractmethod
    def place_order(self, request: OrderRequest) -> Any:
        raise NotImplementedError

    @abstractmethod
    def subscribe_fills(self, address: str, callback: FillCallback) -> Any:
        """Subscribe to fills of `address`; `callback` may run on a transport thread."""
        raise NotImplementedError

    @abstractmethod
    def unsubscribe_fills(self, handle: Any) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Release the transport; default is a no-op."""
