"""
Background task runner — fire-and-forget work that is still observable.

Callers submit a labelled coroutine and return immediately.  The runner
keeps a reference to every in-flight task, logs how each one ended, and
keeps simple counters that tests and the health endpoint can read.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Dict, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundTaskRunner:
    def __init__(self, name: str = "background"):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()
        self.submitted = 0
        self.succeeded = 0
        self.failed = 0

    def submit(self, label: str, work: Awaitable[Any]) -> asyncio.Task:
        """Schedule *work* on the running loop without awaiting it."""
        self.submitted += 1
        task = asyncio.create_task(self._run(label, work), name=f"{self.name}:{label}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("Submitted background task %s", label)
        return task

    async def _run(self, label: str, work: Awaitable[Any]) -> Any:
        start = time.perf_counter()
        try:
            result = await work
        except asyncio.CancelledError:
            self.failed += 1
            logger.warning("Background task %s cancelled", label)
            raise
        except Exception:
            self.failed += 1
            logger.exception(
                "Background task %s failed after %.3fs", label, time.perf_counter() - start,
            )
            return None
        self.succeeded += 1
        logger.info(
            "Background task %s finished in %.3fs: %s", label, time.perf_counter() - start, result,
        )
        return result

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for all in-flight tasks.  Returns False if some were still
        running when *timeout* elapsed.
        """
        if not self._tasks:
            return True
        _, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        return not still_running

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def stats(self) -> Dict[str, int]:
        return {
            "submitted": self.submitted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "pending": self.pending,
        }
