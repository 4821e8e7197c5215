"""
Debounced per-recipient email batching.

Every ``add`` for a recipient restarts that recipient's timer and merges the
request into its pending batch, keyed by request id so a later update replaces
an earlier one. When the timer fires, a single email covers the whole batch.
Batches still pending when the process stops are lost.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from .ledger import Request

logger = logging.getLogger(__name__)

BatchSender = Callable[[str, list[Request]], Awaitable[None]]


class EmailBatcher:
    def __init__(self, send_batch: BatchSender, debounce_seconds: float = 60):
        self.send_batch = send_batch
        self.debounce_seconds = debounce_seconds
        self._batches: dict[str, dict[str, Request]] = {}
        self._timers: dict[str, asyncio.Task] = {}

    def pending(self, recipient: str) -> list[Request]:
        return list(self._batches.get(recipient, {}).values())

    def add(self, recipient: str, request: Request) -> None:
        self._batches.setdefault(recipient, {})[request.id] = request

        timer = self._timers.pop(recipient, None)
        if timer is not None:
            timer.cancel()
        self._timers[recipient] = asyncio.create_task(self._fire_later(recipient), name=f"email-batch-{recipient}")
        logger.debug(f"Queued email about {request.id} for {recipient} ({len(self._batches[recipient])} pending)")

    async def _fire_later(self, recipient: str) -> None:
        await asyncio.sleep(self.debounce_seconds)
        self._timers.pop(recipient, None)
        batch = list(self._batches.pop(recipient, {}).values())
        if not batch:
            return
        try:
            await self.send_batch(recipient, batch)
            logger.info(f"Sent {len(batch)} request update(s) to {recipient}")
        except Exception:
            logger.exception(f"Email batch for {recipient} lost")

    async def close(self) -> None:
        """Cancel pending timers; their batches are dropped."""
        timers = list(self._timers.values())
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        if self._batches:
            logger.warning(f"Dropping unsent email batches for {len(self._batches)} recipient(s)")
        self._timers.clear()
        self._batches.clear()
