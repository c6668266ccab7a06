"""
BackgroundCollectionManager — keeps every owner's analytics fresh.

Two ways in:

* **Daily** — a scheduler task sleeps until ``daily_hour_utc``, lists every
  owner holding a credential and works through them in fixed-size batches.
  Batches run one after another with a pause in between; owners inside a
  batch run concurrently, bounded by a shared semaphore, each preceded by
  a small random jitter.
* **On demand** — ``trigger_owner_collection`` drops the owner on a queue
  without blocking; a consumer task picks it up.  An owner already queued
  or running is not queued twice.

Every run is recorded in the job ledger.  One owner's failure is caught,
written to its job row and never stops the batch.  ``stop()`` interrupts
the waits, gives in-flight owners a grace period, cancels the rest and
fails whatever job is still open.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError

from analytics.cache import ANALYTICS_KEY_PATTERNS, AnalyticsCache
from analytics.collector import DataCollector
from analytics.job_ledger import JobLedger
from database.helpers import utcnow
from utils.schemas import BatchSummary, JobType

logger = logging.getLogger(__name__)

SHUTDOWN_REASON = "collection manager shut down before the job finished"
BATCH_SETUP_REASON = "batch could not be recorded; no owner in it was collected"

OwnerSource = Callable[[], Awaitable[List[str]]]


class BackgroundCollectionManager:
    def __init__(
        self,
        collector: DataCollector,
        ledger: JobLedger,
        cache: AnalyticsCache,
        list_owners: OwnerSource,
        *,
        batch_size: int = 10,
        max_workers: int = 4,
        jitter_seconds: float = 5.0,
        batch_pause_seconds: float = 30.0,
        daily_hour_utc: int = 2,
        owner_timeout_seconds: float = 120.0,
        shutdown_grace_seconds: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if batch_size < 1 or max_workers < 1:
            raise ValueError("batch_size and max_workers must be at least 1")
        if not 0 <= daily_hour_utc <= 23:
            raise ValueError("daily_hour_utc must be between 0 and 23")

        self._ledger = ledger
        self._cache = cache
        self._list_owners = list_owners
        self._collectors: Dict[JobType, Callable[[str], Awaitable[Any]]] = {
            JobType.DAILY_CHANNEL: collector.collect_channel_data,
            JobType.VIDEO_DATA: collector.collect_video_data,
            JobType.FULL_COLLECTION: collector.collect_all,
        }

        self._batch_size = batch_size
        self._jitter = jitter_seconds
        self._batch_pause = batch_pause_seconds
        self._daily_hour = daily_hour_utc
        self._owner_timeout = owner_timeout_seconds
        self._grace = shutdown_grace_seconds
        self._clock = clock
        self._rng = rng or random.Random()
        self._sleep = sleep

        self._semaphore = asyncio.Semaphore(max_workers)
        self._queue: asyncio.Queue[Tuple[str, JobType]] = asyncio.Queue()
        self._queued_or_running: Set[str] = set()
        self._inflight: Set[asyncio.Task] = set()
        self._active_jobs: Set[int] = set()
        self._loops: List[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._running = False

    # ── Lifecycle ───────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._stopping.clear()
        self._loops = [
            asyncio.create_task(self._scheduler_loop(), name="collection-scheduler"),
            asyncio.create_task(self._queue_loop(), name="collection-queue"),
        ]
        self._running = True
        logger.info(
            "Background collection started (daily at %02d:00 UTC, batch size %d)",
            self._daily_hour, self._batch_size,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        logger.info("Stopping background collection")
        self._stopping.set()

        inflight = set(self._inflight)
        if inflight:
            _, unfinished = await asyncio.wait(inflight, timeout=self._grace)
            if unfinished:
                logger.warning("Cancelling %d collection task(s) after grace period", len(unfinished))
                for task in unfinished:
                    task.cancel()
                await asyncio.gather(*unfinished, return_exceptions=True)

        for task in self._loops:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []

        await self._ledger.fail_unfinished(list(self._active_jobs), SHUTDOWN_REASON)
        self._active_jobs.clear()
        self._queued_or_running.clear()
        self._running = False
        logger.info("Background collection stopped")

    async def _wait_for_stop(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds; True if ``stop()`` was called meanwhile."""
        if self._stopping.is_set():
            return True
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    # ── Daily path ──────────────────────────────────────────────────────

    def seconds_until_next_run(self, now: Optional[datetime] = None) -> float:
        now = now or self._clock()
        next_run = now.replace(hour=self._daily_hour, minute=0, second=0, microsecond=0)
        if next_run <= now:
            next_run += timedelta(days=1)
        return (next_run - now).total_seconds()

    async def _scheduler_loop(self) -> None:
        while not self._stopping.is_set():
            delay = self.seconds_until_next_run()
            logger.info("Next daily collection in %.0fs", delay)
            if await self._wait_for_stop(delay):
                break
            try:
                await self.run_daily_collection()
            except Exception:
                logger.exception("Daily collection run failed")

    async def run_daily_collection(self) -> BatchSummary:
        """Collect for every owner with a stored credential, batch by batch."""
        owners = await self._list_owners()
        summary = BatchSummary(owners=len(owners))
        if not owners:
            logger.info("Daily collection: no connected owners")
            return summary

        batches = [owners[i:i + self._batch_size] for i in range(0, len(owners), self._batch_size)]
        logger.info("Daily collection: %d owner(s) in %d batch(es)", len(owners), len(batches))

        for index, batch in enumerate(batches):
            if self._stopping.is_set():
                logger.info("Daily collection interrupted before batch %d", index + 1)
                break
            result = await self.process_batch(batch, JobType.DAILY_CHANNEL)
            summary.completed.extend(result.completed)
            summary.failed.update(result.failed)

            is_last = index == len(batches) - 1
            if not is_last and self._batch_pause > 0 and await self._wait_for_stop(self._batch_pause):
                logger.info("Daily collection interrupted after batch %d", index + 1)
                break

        logger.info(
            "Daily collection finished: %d completed, %d failed",
            len(summary.completed), len(summary.failed),
        )
        return summary

    async def process_batch(self, owner_ids: List[str], job_type: JobType) -> BatchSummary:
        """
        Create a pending job per owner, then run the owners concurrently.

        The batch returns once every owner has finished one way or the other.
        """
        job_type = JobType(job_type)
        today = self._clock().date()
        job_ids: Dict[str, int] = {}
        try:
            for owner_id in owner_ids:
                job_id = await self._ledger.create_job(owner_id, job_type, data_date=today)
                self._active_jobs.add(job_id)
                job_ids[owner_id] = job_id
        except SQLAlchemyError:
            logger.exception("Could not record batch jobs; failing the %d already created", len(job_ids))
            created = list(job_ids.values())
            self._active_jobs.difference_update(created)
            await self._ledger.fail_unfinished(created, BATCH_SETUP_REASON)
            raise

        tasks = [
            self._spawn(self._run_owner(owner_id, job_ids[owner_id], job_type))
            for owner_id in owner_ids
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        summary = BatchSummary(owners=len(owner_ids))
        for owner_id, outcome in zip(owner_ids, results):
            if outcome is None:
                summary.completed.append(owner_id)
            elif isinstance(outcome, BaseException):
                summary.failed[owner_id] = str(outcome) or type(outcome).__name__
            else:
                summary.failed[owner_id] = outcome
        return summary

    # ── On-demand path ──────────────────────────────────────────────────

    def trigger_owner_collection(
        self,
        owner_id: str,
        job_type: JobType = JobType.FULL_COLLECTION,
    ) -> bool:
        """
        Queue a collection for *owner_id* without waiting for it.

        Returns False if the owner is already queued or running, or the
        manager is shutting down.
        """
        if self._stopping.is_set():
            return False
        if owner_id in self._queued_or_running:
            logger.debug("Collection for owner %s already queued", owner_id)
            return False
        self._queued_or_running.add(owner_id)
        self._queue.put_nowait((owner_id, JobType(job_type)))
        logger.info("Queued %s collection for owner %s", JobType(job_type).value, owner_id)
        return True

    def is_queued(self, owner_id: str) -> bool:
        return owner_id in self._queued_or_running

    async def _queue_loop(self) -> None:
        while True:
            owner_id, job_type = await self._queue.get()
            try:
                if self._stopping.is_set():
                    self._queued_or_running.discard(owner_id)
                    continue
                self._spawn(self._run_on_demand(owner_id, job_type))
            finally:
                self._queue.task_done()

    async def _run_on_demand(self, owner_id: str, job_type: JobType) -> Optional[str]:
        try:
            job_id = await self._ledger.create_job(owner_id, job_type, data_date=self._clock().date())
            self._active_jobs.add(job_id)
            return await self._run_owner(owner_id, job_id, job_type)
        except SQLAlchemyError:
            logger.exception("Could not record collection job for owner %s", owner_id)
            return "could not record collection job"
        finally:
            self._queued_or_running.discard(owner_id)

    # ── Per owner ───────────────────────────────────────────────────────

    async def _run_owner(self, owner_id: str, job_id: int, job_type: JobType) -> Optional[str]:
        """Run one owner's collection; returns None on success or the error text."""
        collect = self._collectors[job_type]
        try:
            async with self._semaphore:
                if self._jitter > 0:
                    await self._sleep(self._rng.uniform(0, self._jitter))
                if not await self._ledger.mark_running(job_id):
                    self._active_jobs.discard(job_id)
                    return "job was no longer pending"
                await asyncio.wait_for(collect(owner_id), timeout=self._owner_timeout)
        except asyncio.CancelledError:
            await self._record_failure(owner_id, job_id, SHUTDOWN_REASON)
            raise
        except asyncio.TimeoutError:
            error = f"collection timed out after {self._owner_timeout:g}s"
        except Exception as exc:
            error = str(exc) or type(exc).__name__
        else:
            await self._ledger.mark_completed(job_id)
            self._active_jobs.discard(job_id)
            try:
                await self._cache.invalidate_pattern(owner_id, ANALYTICS_KEY_PATTERNS)
            except SQLAlchemyError:
                logger.exception("Cache invalidation failed for owner %s", owner_id)
            logger.info("Collection job %d for owner %s completed", job_id, owner_id)
            return None

        logger.warning("Collection job %d for owner %s failed: %s", job_id, owner_id, error)
        await self._record_failure(owner_id, job_id, error)
        return error

    async def _record_failure(self, owner_id: str, job_id: int, error: str) -> None:
        try:
            await self._ledger.mark_failed(job_id, error)
        except SQLAlchemyError:
            logger.exception("Could not mark job %d for owner %s failed", job_id, owner_id)
            return
        self._active_jobs.discard(job_id)

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "queued_or_running": sorted(self._queued_or_running),
            "in_flight": len(self._inflight),
            "open_jobs": len(self._active_jobs),
        }
