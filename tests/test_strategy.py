from decimal import Decimal

from hl_copytrader.core.types import CopyMode
from hl_copytrader.strategy.rebalancer import compute_target_size, decide_adjustment


def test_ratio_target():
    assert compute_target_size(Decimal("10"), CopyMode.RATIO, Decimal("0.25"), 2) == Decimal("2.5")
    assert compute_target_size(Decimal("-10"), CopyMode.RATIO, Decimal("0.25"), 3) == Decimal("-2.5")
    # 0.333 * 0.5 = 0.1665 rounds half-up at three decimals
    assert compute_target_size(Decimal("0.333"), CopyMode.RATIO, Decimal("0.5"), 3) == Decimal("0.167")


def test_exact_target_ignores_ratio():
    assert compute_target_size(Decimal("3"), CopyMode.EXACT, Decimal("0.1"), 2) == Decimal("3")
    assert compute_target_size(Decimal("0"), CopyMode.EXACT, Decimal("0.1"), 2) == Decimal("0")


def test_adjustment_buy_sell_and_close():
    buy = decide_adjustment("BTC", Decimal("0"), Decimal("3"), Decimal("0.001"))
    assert buy is not None and buy.side == "BUY" and buy.delta == Decimal("3")
    assert not buy.is_close

    sell = decide_adjustment("BTC", Decimal("3"), Decimal("1"), Decimal("0.001"))
    assert sell is not None and sell.side == "SELL" and sell.delta == Decimal("-2")

    close = decide_adjustment("BTC", Decimal("-2"), Decimal("0"), Decimal("0.001"))
    assert close is not None and close.is_close and close.side == "BUY"


def test_adjustment_below_increment_is_noop():
    assert decide_adjustment("BTC", Decimal("1"), Decimal("1"), Decimal("0.001")) is None
    assert decide_adjustment("BTC", Decimal("1"), Decimal("1.0004"), Decimal("0.001")) is None
