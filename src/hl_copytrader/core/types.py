from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

ZERO = Decimal("0")


class CopyMode(str, Enum):
    EXACT = "exact"
    RATIO = "ratio"


@dataclass
class Position:
    asset: str
    size: Decimal
    entry_price: Decimal
    leverage: Optional[Decimal] = None
    unrealized_pnl: Decimal = ZERO


@dataclass(frozen=True)
class FillEvent:
    asset: str
    side: str
    size: Decimal
    price: Decimal
    timestamp: int
    fill_id: str
    start_position: Optional[Decimal] = None
    closed_pnl: Decimal = ZERO

    @property
    def signed_size(self) -> Decimal:
        return self.size if self.side == "BUY" else -self.size


@dataclass(frozen=True)
class FillBatch:
    fills: List[FillEvent]
    is_snapshot: bool = False


@dataclass(frozen=True)
class AccountMetrics:
    equity: Decimal = ZERO
    withdrawable: Decimal = ZERO
    total_notional: Decimal = ZERO


@dataclass
class AccountSnapshot:
    address: str
    positions: Dict[str, Position]
    metrics: AccountMetrics
    # Clock time at which the fetch started, not when it returned
    taken_at: float = 0.0


@dataclass(frozen=True)
class AssetMeta:
    asset: str
    size_decimals: int
    price_decimals: int
    max_leverage: int

    @property
    def size_increment(self) -> Decimal:
        return Decimal(1).scaleb(-self.size_decimals)


@dataclass(frozen=True)
class OrderRequest:
    asset: str
    side: str
    size: Decimal
    limit_price: Decimal
    reduce_only: bool = False

    @property
    def is_buy(self) -> bool:
        return self.side == "BUY"


@dataclass
class OrderResult:
    ok: bool
    filled_size: Decimal = ZERO
    avg_price: Optional[Decimal] = None
    order_id: Optional[int] = None
    resting: bool = False
    error: Optional[str] = None
    raw: Any = None


@dataclass(frozen=True)
class RiskConfig:
    copy_mode: CopyMode = CopyMode.RATIO
    copy_ratio: Decimal = Decimal("1")
    max_leverage: Decimal = Decimal("5")
    max_notional_usd: Decimal = Decimal("10000")
    max_slippage_bps: int = 50
    min_order_usd: Decimal = Decimal("10")


@dataclass
class SyncReport:
    orders: List[OrderRequest] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    ran: bool = True
