"""Injectable time source for the engine and scheduler."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional


class SystemClock:
    """Wall clock plus a sleep that wakes early when ``cancel`` is set."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float, cancel: Optional[asyncio.Event] = None) -> bool:
        """Sleep for up to ``seconds``.

        Returns:
            ``True`` if ``cancel`` was set before the time elapsed.
        """
        if cancel is None:
            await asyncio.sleep(max(0.0, seconds))
            return False
        if cancel.is_set():
            return True
        try:
            await asyncio.wait_for(cancel.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return False
        return True
