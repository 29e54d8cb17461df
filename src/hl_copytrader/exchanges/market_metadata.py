from __future__ import annotations

from typing import Dict, List, Optional

from hl_copytrader.core.errors import MetadataUnavailable
from hl_copytrader.core.logging import JsonLogger
from hl_copytrader.core.remote import call_remote
from hl_copytrader.core.types import AssetMeta
from hl_copytrader.exchanges.base_gateway import ExchangeGateway


class MarketMetadataService:
    """
    Read-through cache of per-asset listing data (size/price decimals, max leverage).

    Entries never expire; listing data only changes with a process restart.
    Two concurrent first lookups of the same asset may both fetch, which is
    harmless since the fetch is idempotent.
    """

    def __init__(self, gateway: ExchangeGateway, logger: JsonLogger, timeout_s: Optional[float] = None) -> None:
        self.gw = gateway
        self.log = logger
        self.timeout_s = timeout_s
        self._cache: Dict[str, AssetMeta] = {}

    async def get(self, asset: str) -> AssetMeta:
        cached = self._cache.get(asset)
        if cached is not None:
            return cached
        try:
            meta = await call_remote(self.gw.get_asset_meta, asset, timeout_s=self.timeout_s, label="get_asset_meta")
        except MetadataUnavailable:
            raise
        except Exception as e:
            raise MetadataUnavailable(asset, f"lookup failed: {e}") from e
        self._cache[asset] = meta
        self.log.debug("asset_meta_cached", asset=asset, size_decimals=meta.size_decimals, max_leverage=meta.max_leverage)
        return meta

    def cached_assets(self) -> List[str]:
        return sorted(self._cache)
