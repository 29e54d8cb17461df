from __future__ import annotations

from typing import Any


class CopyTraderError(Exception):
    pass


class ConfigError(CopyTraderError):
    pass


class ExchangeRequestError(CopyTraderError):
    """Transient remote failure; the unit of work is retried on the next cycle."""


class RemoteTimeout(ExchangeRequestError):
    pass


class MetadataUnavailable(CopyTraderError):
    def __init__(self, asset: str, reason: str = "unknown asset") -> None:
        super().__init__(f"{asset}: {reason}")
        self.asset = asset
        self.reason = reason


class OrderRejected(ExchangeRequestError):
    def __init__(self, message: str, result: Any = None) -> None:
        super().__init__(message)
        self.result = result


class ReconciliationError(CopyTraderError):
    pass
