from __future__ import annotations

import asyncio
from typing import AsyncIterator

from pydantic import BaseModel, Field

from models import RunPhase

# Share of the overall progress bar owned by each phase.
VALIDATION_WEIGHT = 0.10
AUTHORIZATION_WEIGHT = 0.05
ANALYSIS_WEIGHT = 0.75
FINALIZATION_WEIGHT = 0.10


class ProgressUpdate(BaseModel):
    run_id: str
    phase: RunPhase
    progress: float = Field(ge=0.0, le=1.0)
    message: str
    task: str | None = None


class ProgressChannel:
    """Single-consumer stream of progress updates for one run.

    The orchestrator and its tasks publish; the consumer pulls with
    `async for`. Iteration ends once the channel is closed.
    """

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def publish(self, update: ProgressUpdate) -> None:
        if self._closed:
            return
        self._queue.put_nowait(update)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    async def __aiter__(self) -> AsyncIterator[ProgressUpdate]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item
