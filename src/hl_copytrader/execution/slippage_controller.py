from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal

# Hyperliquid accepts at most 5 significant figures on non-integer prices
MAX_SIG_FIGS = 5


def round_price(px: Decimal, price_decimals: int, is_buy: bool) -> Decimal:
    """Round to venue precision, toward the reference so the slippage bound is never exceeded."""
    if px <= 0:
        return px
    int_digits = px.adjusted() + 1
    decimals = min(price_decimals, max(0, MAX_SIG_FIGS - int_digits))
    quantum = Decimal(1).scaleb(-decimals)
    rounding = ROUND_FLOOR if is_buy else ROUND_CEILING
    return px.quantize(quantum, rounding=rounding)


@dataclass(frozen=True)
class SlippageController:
    max_bps: int

    def bound(self, reference_px: Decimal, is_buy: bool) -> Decimal:
        max_move = (reference_px * Decimal(self.max_bps)) / Decimal(10000)
        # Worst acceptable price: above the ask when buying, below the bid when selling
        return reference_px + max_move if is_buy else reference_px - max_move

    def limit_price(self, reference_px: Decimal, is_buy: bool, price_decimals: int) -> Decimal:
        if reference_px <= 0:
            raise ValueError(f"reference price must be positive, got {reference_px}")
        return round_price(self.bound(reference_px, is_buy), price_decimals, is_buy)

