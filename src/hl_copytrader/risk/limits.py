from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Optional

from hl_copytrader.core.types import ZERO


def quantize_size(qty: Decimal, size_decimals: int, rounding: str = ROUND_DOWN) -> Decimal:
    quantum = Decimal(1).scaleb(-size_decimals)
    return qty.quantize(quantum, rounding=rounding)


@dataclass(frozen=True)
class NotionalLimiter:
    """
    Caps a follower target so that its notional stays within
    `max_leverage * equity` (tightened to the asset's own max leverage) and
    the absolute `max_notional_usd`.
    """

    max_leverage: Decimal
    max_notional_usd: Decimal

    def notional_cap(self, equity: Decimal, asset_max_leverage: Optional[int] = None) -> Decimal:
        leverage = self.max_leverage
        if asset_max_leverage is not None and asset_max_leverage > 0:
            leverage = min(leverage, Decimal(asset_max_leverage))
        by_leverage = leverage * equity if equity > 0 else ZERO
        return min(by_leverage, self.max_notional_usd)

    def cap_target(
        self,
        target: Decimal,
        price: Decimal,
        equity: Decimal,
        size_decimals: int,
        asset_max_leverage: Optional[int] = None,
    ) -> Decimal:
        if target == 0:
            return target
        if price <= 0:
            raise ValueError(f"price must be positive, got {price}")
        max_size = quantize_size(self.notional_cap(equity, asset_max_leverage) / price, size_decimals)
        if abs(target) <= max_size:
            return target
        return max_size if target > 0 else -max_size
