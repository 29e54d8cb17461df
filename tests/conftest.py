import copy
import threading
from decimal import Decimal

import pytest

from hl_copytrader.core.errors import MetadataUnavailable
from hl_copytrader.core.types import AccountMetrics, AccountSnapshot, AssetMeta, Position
from hl_copytrader.exchanges.base_gateway import ExchangeGateway

LEADER = "0x" + "1" * 40
FOLLOWER = "0x" + "2" * 40


def filled_response(size, px="100"):
    return {"status": "ok", "response": {"type": "order", "data": {"statuses": [{"filled": {"totalSz": str(size), "avgPx": px, "oid": 7}}]}}}


def snapshot(address, positions=None, equity="10000", withdrawable="8000"):
    return AccountSnapshot(
        address=address,
        positions={a: Position(asset=a, size=Decimal(s), entry_price=Decimal("100")) for a, s in (positions or {}).items()},
        metrics=AccountMetrics(equity=Decimal(equity), withdrawable=Decimal(withdrawable)),
    )


class FakeGateway(ExchangeGateway):
    def __init__(self):
        self.snapshots = {LEADER: snapshot(LEADER), FOLLOWER: snapshot(FOLLOWER)}
        self.metas = {
            "BTC": AssetMeta(asset="BTC", size_decimals=3, price_decimals=3, max_leverage=50),
            "ETH": AssetMeta(asset="ETH", size_decimals=2, price_decimals=4, max_leverage=25),
        }
        self.books = {"BTC": (Decimal("99.9"), Decimal("100.1")), "ETH": (Decimal("99.9"), Decimal("100.1"))}
        self.order_responses = {}
        self.placed = []
        self.meta_calls = {}
        self.callback = None
        self.unsubscribed = []
        self.unsubscribe_error = None
        self.closed = False
        self.order_started = threading.Event()
        self.release_orders = None

    def get_account_snapshot(self, address):
        snap = self.snapshots[address]
        if isinstance(snap, Exception):
            raise snap
        return copy.deepcopy(snap)

    def get_asset_meta(self, asset):
        self.meta_calls[asset] = self.meta_calls.get(asset, 0) + 1
        if asset not in self.metas:
            raise MetadataUnavailable(asset)
        return self.metas[asset]

    def best_bid_ask(self, asset):
        return self.books.get(asset, (Decimal("0"), Decimal("0")))

    def place_order(self, request):
        self.order_started.set()
        if self.release_orders is not None:
            self.release_orders.wait(5)
        self.placed.append(request)
        resp = self.order_responses.get(request.asset)
        if isinstance(resp, Exception):
            raise resp
        return resp if resp is not None else filled_response(request.size)

    def subscribe_fills(self, address, callback):
        self.callback = callback
        return ("userFills", address)

    def unsubscribe_fills(self, handle):
        if self.unsubscribe_error is not None:
            raise self.unsubscribe_error
        self.unsubscribed.append(handle)

    def close(self):
        self.closed = True


@pytest.fixture()
def gateway():
    return FakeGateway()
