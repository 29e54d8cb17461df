from __future__ import annotations

from typing import Optional

from hl_copytrader.core.errors import ExchangeRequestError, OrderRejected
from hl_copytrader.core.logging import JsonLogger
from hl_copytrader.core.remote import call_remote
from hl_copytrader.core.types import OrderRequest, OrderResult
from hl_copytrader.exchanges.base_gateway import ExchangeGateway
from hl_copytrader.exchanges.hyperliquid.hl_common import parse_order_response


class OrderManager:
    def __init__(self, gateway: ExchangeGateway, logger: JsonLogger, *, timeout_s: Optional[float] = None, dry_run: bool = False) -> None:
        self.gw = gateway
        self.log = logger
        self.timeout_s = timeout_s
        self.dry_run = dry_run

    async def submit(self, request: OrderRequest) -> OrderResult:
        """
        Place one order and interpret the venue response.

        Raises OrderRejected when the venue answers with an error status and
        ExchangeRequestError when the call itself fails or times out.
        """
        if self.dry_run:
            self.log.info(
                "dry_run_order",
                asset=request.asset,
                side=request.side,
                size=request.size,
                px=request.limit_price,
                reduce_only=request.reduce_only,
            )
            # Treated as an immediate full fill so repeated syncs stay quiet
            return OrderResult(ok=True, filled_size=request.size, avg_price=request.limit_price)

        try:
            resp = await call_remote(self.gw.place_order, request, timeout_s=self.timeout_s, label="place_order")
        except ExchangeRequestError:
            raise
        except Exception as e:
            raise ExchangeRequestError(f"place_order {request.asset} failed: {e}") from e

        result = parse_order_response(resp)
        if not result.ok:
            raise OrderRejected(f"{request.asset} {request.side} {request.size}@{request.limit_price}: {result.error}", result)
        self.log.info(
            "order_placed",
            asset=request.asset,
            side=request.side,
            size=request.size,
            px=request.limit_price,
            filled=result.filled_size,
            avg_px=result.avg_price,
            oid=result.order_id,
            resting=result.resting,
        )
        return result
