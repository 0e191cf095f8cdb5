# backend/vasa/services/turn_writer.py
"""
Non-blocking memory writes.

Callers hand over a factory returning a fresh awaitable (a coroutine can only
be awaited once, so the retry needs a new one). `submit` schedules the write
on the running loop and returns the task without waiting; `run` is the body
of that task and is also awaited directly by FastAPI background tasks.
Each write is attempted at most twice.
"""
import asyncio
from typing import Awaitable, Callable, Optional, Set

from vasa.utils.logger import logger

WriteFactory = Callable[[], Awaitable[object]]


class TurnWriter:
    def __init__(self, retry_delay: float = 2.0, name: str = "memory_write"):
        self.retry_delay = retry_delay
        self.name = name
        self._pending: Set[asyncio.Task] = set()

    async def run(self, factory: WriteFactory, label: Optional[str] = None) -> bool:
        label = label or self.name
        try:
            await factory()
            return True
        except Exception as e:
            logger.warning(f"[{label}] Write failed, retrying once in {self.retry_delay:.1f}s: {type(e).__name__}: {e}")

        await asyncio.sleep(self.retry_delay)
        try:
            await factory()
            logger.info(f"[{label}] Write succeeded on retry")
            return True
        except Exception as e:
            logger.error(f"[{label}] Write failed after retry: {type(e).__name__}: {e}")
            return False

    def submit(self, factory: WriteFactory, label: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(self.run(factory, label))
        # hold a reference until done so the task is not garbage collected
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
