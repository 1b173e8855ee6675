"""Cancellation token threaded through analysis passes.

Cancelling does not interrupt the collaborator call in flight (it may not be
interruptible). It makes the pass ignore the late result and return without
touching the batch.
"""

import asyncio
from typing import Optional


class CancellationToken:
    """One-shot cancellation flag that can also be awaited."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()
