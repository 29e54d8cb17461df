from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, replace
from decimal import Decimal
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Set

from hl_copytrader.core.types import ZERO, AccountMetrics, AccountSnapshot, FillBatch, FillEvent, Position


def is_perp_coin(coin: str) -> bool:
    # Spot fills arrive on the same channel as "@<index>" or "BASE/QUOTE"
    return bool(coin) and not coin.startswith("@") and "/" not in coin


def apply_fill(pos: Optional[Position], fill: FillEvent) -> Optional[Position]:
    """Return the position after `fill`, or None when it is closed out."""
    delta = fill.signed_size
    if pos is None or pos.size == 0:
        return Position(asset=fill.asset, size=delta, entry_price=fill.price)
    new_size = pos.size + delta
    if new_size == 0:
        return None
    if (pos.size > 0) == (delta > 0):
        # Adding in the same direction: size-weighted entry
        entry = (pos.entry_price * abs(pos.size) + fill.price * abs(delta)) / abs(new_size)
        return replace(pos, size=new_size, entry_price=entry)
    if (new_size > 0) == (pos.size > 0):
        return replace(pos, size=new_size)
    # Flipped through zero: the remainder was opened at the fill price
    return replace(pos, size=new_size, entry_price=fill.price, unrealized_pnl=ZERO)


@dataclass(frozen=True)
class FillApplyResult:
    applied: int = 0
    duplicates: int = 0
    ignored: int = 0


class _AccountState:
    def __init__(self) -> None:
        self._positions: Dict[str, Position] = {}
        self._metrics = AccountMetrics()
        self._initialized = False
        self._snapshot_taken_at = 0.0
        self._version = 0

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def snapshot_taken_at(self) -> float:
        return self._snapshot_taken_at

    @property
    def version(self) -> int:
        """Number of snapshots applied so far."""
        return self._version

    def apply_full_snapshot(self, snapshot: AccountSnapshot) -> None:
        positions = {asset: replace(p) for asset, p in snapshot.positions.items() if p.size != 0}
        # Single assignment: readers see the old mapping or the new one, never a mix
        self._positions = positions
        self._metrics = snapshot.metrics
        self._snapshot_taken_at = snapshot.taken_at
        self._version += 1
        self._initialized = True

    def get_positions(self) -> Mapping[str, Position]:
        return MappingProxyType(self._positions)

    def position_size(self, asset: str) -> Decimal:
        pos = self._positions.get(asset)
        return pos.size if pos is not None else ZERO

    def get_metrics(self) -> AccountMetrics:
        return self._metrics


class LeaderState(_AccountState):
    """
    Leader positions, patched by feed fills and overwritten by reconciliation.

    Fills are deduplicated by exchange fill id so a replayed or duplicated
    feed message is never counted twice.
    """

    def __init__(self, max_remembered_fills: int = 10_000) -> None:
        super().__init__()
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._max_seen = max_remembered_fills
        self._ever_held: Set[str] = set()

    def _remember(self, fill_id: str) -> None:
        self._seen[fill_id] = None
        while len(self._seen) > self._max_seen:
            self._seen.popitem(last=False)

    def apply_fill_batch(self, batch: FillBatch) -> FillApplyResult:
        if batch.is_snapshot:
            return FillApplyResult(ignored=len(batch.fills))
        positions = dict(self._positions)
        applied = duplicates = ignored = 0
        for fill in batch.fills:
            if fill.fill_id in self._seen:
                duplicates += 1
                continue
            if not is_perp_coin(fill.asset) or fill.size <= 0:
                ignored += 1
                continue
            self._remember(fill.fill_id)
            updated = apply_fill(positions.get(fill.asset), fill)
            if updated is None:
                positions.pop(fill.asset, None)
            else:
                positions[fill.asset] = updated
            self._ever_held.add(fill.asset)
            applied += 1
        if applied:
            self._positions = positions
        return FillApplyResult(applied=applied, duplicates=duplicates, ignored=ignored)

    def apply_full_snapshot(self, snapshot: AccountSnapshot) -> None:
        super().apply_full_snapshot(snapshot)
        self._ever_held.update(self._positions)

    def tracked_assets(self) -> Set[str]:
        """Assets held now or at any point since start (closed ones map to size 0)."""
        return set(self._ever_held) | set(self._positions)


class FollowerState(_AccountState):
    """Follower positions and balances; changed only by reconciliation snapshots."""
