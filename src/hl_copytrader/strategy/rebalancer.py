from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from hl_copytrader.core.types import CopyMode
from hl_copytrader.risk.limits import quantize_size


@dataclass
class RebalanceDecision:
    asset: str
    current: Decimal
    target: Decimal
    delta: Decimal

    @property
    def side(self) -> str:
        return "BUY" if self.delta > 0 else "SELL"

    @property
    def is_close(self) -> bool:
        return self.target == 0 and self.current != 0


def compute_target_size(leader_size: Decimal, mode: CopyMode, copy_ratio: Decimal, size_decimals: int) -> Decimal:
    """Follower size before risk caps: 1:1 in exact mode, scaled by the copy ratio otherwise."""
    if mode is CopyMode.EXACT:
        return quantize_size(leader_size, size_decimals, ROUND_HALF_UP)
    return quantize_size(leader_size * copy_ratio, size_decimals, ROUND_HALF_UP)


def decide_adjustment(asset: str, current: Decimal, target: Decimal, min_increment: Decimal) -> Optional[RebalanceDecision]:
    delta = target - current
    if abs(delta) < min_increment:
        return None
    return RebalanceDecision(asset=asset, current=current, target=target, delta=delta)
