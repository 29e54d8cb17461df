from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class _FieldEncoder(json.JSONEncoder):
    def default(self, o: Any):  # type: ignore[override]
        if isinstance(o, Decimal):
            return str(o)
        if isinstance(o, Enum):
            return o.value
        try:
            return super().default(o)
        except TypeError:
            return str(o)


@dataclass
class JsonLogger:
    """Structured logger: `event key=value ...` lines on top of stdlib logging."""

    name: str = "copytrader"
    level: int = logging.INFO

    def __post_init__(self) -> None:
        self._logger = logging.getLogger(self.name)
        self._logger.setLevel(self.level)
        if not self._logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            self._logger.addHandler(handler)
        # Prevent duplicate logs via root logger
        self._logger.propagate = False

    @property
    def stdlib(self) -> logging.Logger:
        return self._logger

    def child(self, suffix: str) -> "JsonLogger":
        # Children share the parent's handlers through propagation
        child = JsonLogger.__new__(JsonLogger)
        child.name = f"{self.name}.{suffix}"
        child.level = self.level
        child._logger = self._logger.getChild(suffix)
        return child

    def _format_value(self, value: Any) -> str:
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, Enum):
            return str(value.value)
        if isinstance(value, BaseException):
            return f"{type(value).__name__}({value})"
        if isinstance(value, (dict, list, tuple)):
            try:
                return json.dumps(value, ensure_ascii=False, separators=(",", ":"), cls=_FieldEncoder)
            except (TypeError, ValueError):
                return str(value)
        return str(value)

    def log(self, level: int, message: str, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        if fields:
            extras = " ".join(f"{k}={self._format_value(v)}" for k, v in fields.items())
            line = f"{message} {extras}"
        else:
            line = message
        self._logger.log(level, line)

    def debug(self, message: str, **fields: Any) -> None:
        self.log(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self.log(logging.INFO, message, **fields)

    def warn(self, message: str, **fields: Any) -> None:
        self.log(logging.WARNING, message, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self.log(logging.ERROR, message, **fields)
