"""
Cooperative cancellation for runs.

The orchestrator checks the token between days and between cycles only,
so a cancelled run never stops in the middle of an agent's trade.
"""

import asyncio
from typing import Optional


class CancellationToken:
    """
    Set once, observed at safe boundaries.

    Usage:
        token = CancellationToken()
        task = asyncio.create_task(orchestrator.run(params, cancel_token=token))
        token.cancel("user request")
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "Run cancelled by client") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()
