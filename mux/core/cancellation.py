"""Cancellation primitives for agents."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass
class CancellationToken:
    """Cooperative cancellation token shared between the pool and one agent."""

    reason: str | None = None
    cancelled_at: datetime | None = None
    _cancelled: bool = False
    _event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def cancel(self, reason: str = "requested") -> None:
        """Mark token as cancelled (idempotent)."""
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        self.cancelled_at = datetime.now(timezone.utc)
        self._event.set()

    def is_cancelled(self) -> bool:
        """Return True if cancellation was requested."""
        return self._cancelled

    async def wait(self) -> str | None:
        """Block until cancellation is requested; return the reason."""
        await self._event.wait()
        return self.reason
