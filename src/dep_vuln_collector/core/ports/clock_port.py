from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Protocol


class ClockPort(Protocol):
    def now(self) -> datetime:
        """Return current UTC datetime."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the current task for the given seconds."""


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
