from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable


@dataclass
class TimeProvider:
    now_fn: Callable[[], float] = time.time
    sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep

    def now(self) -> float:
        return float(self.now_fn())

    async def sleep(self, seconds: float) -> None:
        await self.sleep_fn(seconds)
