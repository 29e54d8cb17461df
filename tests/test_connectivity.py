import os
import pytest

from hyperliquid.info import Info
from hyperliquid.utils import constants

from hl_copytrader.exchanges.hyperliquid.hl_perp_adapter import HyperliquidPerpAdapter


@pytest.mark.skipif(os.environ.get("HL_ONLINE", "0") != "1", reason="Set HL_ONLINE=1 to run connectivity test")
def test_info_connectivity():
    info = Info(constants.TESTNET_API_URL, skip_ws=True)
    pm = info.meta()
    assert isinstance(pm, dict) and "universe" in pm

    gw = HyperliquidPerpAdapter(info, None)
    meta = gw.get_asset_meta("BTC")
    assert meta.size_decimals >= 0 and meta.max_leverage > 0
    bid, ask = gw.best_bid_ask("BTC")
    assert 0 < bid <= ask
