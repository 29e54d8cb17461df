from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Tuple

from hl_copytrader.core.errors import MetadataUnavailable
from hl_copytrader.core.types import ZERO, AccountMetrics, AccountSnapshot, AssetMeta, FillBatch, FillEvent, OrderResult, Position

# Perp prices may carry at most this many decimals minus szDecimals
PERP_MAX_PRICE_DECIMALS = 6


def to_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return default


def best_bid_ask_from_l2(l2: Dict[str, Any]) -> Tuple[Decimal, Decimal]:
    levels = l2.get("levels") or []
    bids = levels[0] if len(levels) > 0 else []
    asks = levels[1] if len(levels) > 1 else []
    best_bid = to_decimal(bids[0]["px"]) if bids else ZERO
    best_ask = to_decimal(asks[0]["px"]) if asks else ZERO
    return best_bid, best_ask


def find_asset_meta(meta: Dict[str, Any], asset: str) -> AssetMeta:
    # meta() returns {"universe": [{"name", "szDecimals", "maxLeverage", "isDelisted"?}, ...]}
    for entry in meta.get("universe") or []:
        if entry.get("name") != asset:
            continue
        if entry.get("isDelisted"):
            raise MetadataUnavailable(asset, "delisted")
        size_decimals = int(entry.get("szDecimals", 0))
        return AssetMeta(
            asset=asset,
            size_decimals=size_decimals,
            price_decimals=max(0, PERP_MAX_PRICE_DECIMALS - size_decimals),
            max_leverage=int(entry.get("maxLeverage", 1)),
        )
    raise MetadataUnavailable(asset)


def parse_user_state(address: str, state: Dict[str, Any]) -> AccountSnapshot:
    # clearinghouseState: { assetPositions: [ { position: { coin, szi, entryPx, leverage: {value}, unrealizedPnl } } ],
    #                       marginSummary: { accountValue, totalNtlPos }, withdrawable }
    positions: Dict[str, Position] = {}
    for item in state.get("assetPositions") or []:
        pos = (item or {}).get("position") or {}
        coin = str(pos.get("coin") or "")
        size = to_decimal(pos.get("szi"))
        if not coin or size == 0:
            continue
        lev = pos.get("leverage")
        lev_value = lev.get("value") if isinstance(lev, dict) else lev
        positions[coin] = Position(
            asset=coin,
            size=size,
            entry_price=to_decimal(pos.get("entryPx")),
            leverage=to_decimal(lev_value) if lev_value is not None else None,
            unrealized_pnl=to_decimal(pos.get("unrealizedPnl")),
        )
    margin = state.get("marginSummary") or {}
    metrics = AccountMetrics(
        equity=to_decimal(margin.get("accountValue")),
        withdrawable=to_decimal(state.get("withdrawable")),
        total_notional=to_decimal(margin.get("totalNtlPos")),
    )
    return AccountSnapshot(address=address, positions=positions, metrics=metrics)


def parse_fill(raw: Dict[str, Any]) -> FillEvent:
    # side "B" = bid/buy, "A" = ask/sell
    side = "BUY" if str(raw.get("side", "")).upper() in ("B", "BUY") else "SELL"
    tid = raw.get("tid")
    if tid is not None:
        fill_id = str(tid)
    else:
        fill_id = f"{raw.get('hash', '')}:{raw.get('oid', '')}:{raw.get('time', '')}"
    start = raw.get("startPosition")
    return FillEvent(
        asset=str(raw.get("coin", "")),
        side=side,
        size=to_decimal(raw.get("sz")),
        price=to_decimal(raw.get("px")),
        timestamp=int(raw.get("time", 0) or 0),
        fill_id=fill_id,
        start_position=to_decimal(start) if start is not None else None,
        closed_pnl=to_decimal(raw.get("closedPnl")),
    )


def parse_fills_message(msg: Dict[str, Any]) -> FillBatch:
    """Accept either the raw websocket envelope {"channel", "data"} or its data part."""
    data = msg.get("data", msg) if isinstance(msg, dict) else {}
    if not isinstance(data, dict):
        raise ValueError(f"unexpected userFills payload: {msg!r}")
    raw_fills = data.get("fills") or []
    if not isinstance(raw_fills, list):
        raise ValueError("userFills.fills must be a list")
    fills: List[FillEvent] = [parse_fill(f) for f in raw_fills if isinstance(f, dict)]
    return FillBatch(fills=fills, is_snapshot=bool(data.get("isSnapshot", False)))


def parse_order_response(resp: Any) -> OrderResult:
    # {"status": "ok", "response": {"data": {"statuses": [{"filled": {...}} | {"resting": {...}} | {"error": "..."}]}}}
    # {"status": "err", "response": "<message>"}
    if not isinstance(resp, dict):
        return OrderResult(ok=False, error=f"unexpected response: {resp!r}", raw=resp)
    if resp.get("status") != "ok":
        return OrderResult(ok=False, error=str(resp.get("response") or resp), raw=resp)
    response = resp.get("response")
    statuses = []
    if isinstance(response, dict):
        statuses = (response.get("data") or {}).get("statuses") or []
    for s in statuses:
        if not isinstance(s, dict):
            continue
        if "error" in s:
            return OrderResult(ok=False, error=str(s["error"]), raw=resp)
        if "filled" in s:
            f = s["filled"] or {}
            return OrderResult(
                ok=True,
                filled_size=to_decimal(f.get("totalSz")),
                avg_price=to_decimal(f.get("avgPx")) if f.get("avgPx") is not None else None,
                order_id=int(f["oid"]) if f.get("oid") is not None else None,
                raw=resp,
            )
        if "resting" in s:
            r = s["resting"] or {}
            return OrderResult(ok=True, resting=True, order_id=int(r["oid"]) if r.get("oid") is not None else None, raw=resp)
    return OrderResult(ok=False, error="no order status in response", raw=resp)

