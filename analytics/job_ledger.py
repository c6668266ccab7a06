"""
JobLedger — durable record of every collection attempt.

Jobs move ``pending -> running -> {completed, failed}``.  Each transition is
a conditional ``UPDATE … WHERE status IN (…)`` so a terminal job is never
reopened; the ``mark_*`` methods return False when the guard did not match.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.helpers import utcnow
from database.models import CollectionJob
from utils.schemas import CollectionJobView, JobStatus, JobType

logger = logging.getLogger(__name__)

_UNFINISHED = (JobStatus.PENDING.value, JobStatus.RUNNING.value)


class JobLedger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create_job(
        self,
        owner_id: str,
        job_type: str,
        data_date: Optional[date] = None,
    ) -> int:
        job = CollectionJob(
            owner_id=owner_id,
            job_type=JobType(job_type).value,
            status=JobStatus.PENDING.value,
            data_date=data_date,
            created_at=utcnow(),
        )
        async with self._session_factory() as session:
            session.add(job)
            await session.commit()
            job_id = job.id
        logger.debug("Created %s job %d for owner %s", job.job_type, job_id, owner_id)
        return job_id

    async def _transition(self, job_id: int, allowed: Iterable[str], **values) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(CollectionJob)
                .where(CollectionJob.id == job_id, CollectionJob.status.in_(list(allowed)))
                .values(**values)
            )
            await session.commit()
        return bool(result.rowcount)

    async def mark_running(self, job_id: int) -> bool:
        ok = await self._transition(
            job_id,
            [JobStatus.PENDING.value],
            status=JobStatus.RUNNING.value,
            started_at=utcnow(),
        )
        if not ok:
            logger.warning("Job %d was not pending; not starting it", job_id)
        return ok

    async def mark_completed(self, job_id: int) -> bool:
        ok = await self._transition(
            job_id,
            [JobStatus.RUNNING.value],
            status=JobStatus.COMPLETED.value,
            completed_at=utcnow(),
        )
        if not ok:
            logger.warning("Job %d was not running; not completing it", job_id)
        return ok

    async def mark_failed(self, job_id: int, error_message: str) -> bool:
        if not error_message:
            raise ValueError("a failed job needs an error message")
        return await self._transition(
            job_id,
            _UNFINISHED,
            status=JobStatus.FAILED.value,
            completed_at=utcnow(),
            error_message=error_message,
        )

    async def fail_unfinished(self, job_ids: Iterable[int], reason: str) -> int:
        """Mark every still pending/running job in *job_ids* failed."""
        ids = list(job_ids)
        if not ids:
            return 0
        async with self._session_factory() as session:
            result = await session.execute(
                update(CollectionJob)
                .where(CollectionJob.id.in_(ids), CollectionJob.status.in_(_UNFINISHED))
                .values(status=JobStatus.FAILED.value, completed_at=utcnow(), error_message=reason)
            )
            await session.commit()
        failed = result.rowcount or 0
        if failed:
            logger.warning("Marked %d unfinished collection job(s) failed: %s", failed, reason)
        return failed

    # ── Queries ─────────────────────────────────────────────────────────

    async def get_job(self, job_id: int) -> Optional[CollectionJobView]:
        async with self._session_factory() as session:
            job = await session.get(CollectionJob, job_id)
            return CollectionJobView.model_validate(job) if job else None

    async def recent_jobs(self, owner_id: str, limit: int = 10) -> List[CollectionJobView]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(CollectionJob)
                .where(CollectionJob.owner_id == owner_id)
                .order_by(CollectionJob.created_at.desc(), CollectionJob.id.desc())
                .limit(limit)
            )
            return [CollectionJobView.model_validate(job) for job in rows.scalars().all()]

    async def status_counts(self, since: Optional[datetime] = None) -> Dict[str, int]:
        """Job count per status, optionally only for jobs created after *since*."""
        stmt = select(CollectionJob.status, func.count()).group_by(CollectionJob.status)
        if since is not None:
            stmt = stmt.where(CollectionJob.created_at >= since)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        counts = {status.value: 0 for status in JobStatus}
        for status, count in rows:
            counts[status] = count
        return counts
