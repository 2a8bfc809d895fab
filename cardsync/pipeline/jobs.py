"""
Card Catalog Sync — Job Tracking & Sync Logs

SyncJobTracker keeps the durable per-group outcome of a bulk run so a later
run can retry only the failures. SyncLogger appends structured status events
to sync_logs for external observers.

Both open a short-lived session per call from the injected session factory,
so concurrent workers never share a session.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Iterable

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardsync.config import JobType, SyncStatus
from cardsync.errors import JobFinishedError, JobNotFoundError
from cardsync.models import SyncJob, SyncLogEntry

logger = structlog.get_logger(__name__)


class SyncJobTracker:
    """
    Usage:
        tracker = SyncJobTracker(session_factory)
        job = await tracker.start(JobType.PRODUCTS, 3, [1938, 1939])
        await tracker.record(job.id, 1938, ok=True)
        await tracker.finish(job.id)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        # Serializes read-modify-write of the id lists within this process.
        self._lock = asyncio.Lock()

    @staticmethod
    async def _load(session: AsyncSession, job_id: str) -> SyncJob:
        job = await session.get(SyncJob, job_id)
        if job is None:
            raise JobNotFoundError(f"Sync job {job_id} not found")
        return job

    async def start(
        self,
        job_type: JobType | str,
        category_id: int | None,
        group_ids: Iterable[int],
        metadata: dict[str, Any] | None = None,
    ) -> SyncJob:
        group_ids = list(group_ids)
        job = SyncJob(
            job_type=JobType(job_type).value,
            category_id=category_id,
            total_groups=len(group_ids),
            succeeded_group_ids=[],
            failed_group_ids=[],
            started_at=datetime.now(timezone.utc),
            metadata_json=metadata,
        )
        async with self._session_factory() as session:
            session.add(job)
            await session.commit()
            await session.refresh(job)

        logger.info(
            "sync_job_started",
            job_id=job.id,
            job_type=job.job_type,
            category_id=category_id,
            total_groups=job.total_groups,
        )
        return job

    async def record(self, job_id: str, group_id: int, ok: bool) -> SyncJob:
        """
        Record one group's outcome. Idempotent; a later outcome for the same
        group replaces an earlier one.
        """
        async with self._lock:
            async with self._session_factory() as session:
                job = await self._load(session, job_id)
                if job.is_finished:
                    raise JobFinishedError(f"Sync job {job_id} is finished")

                succeeded = [g for g in job.succeeded_group_ids or [] if g != group_id]
                failed = [g for g in job.failed_group_ids or [] if g != group_id]
                if ok:
                    succeeded.append(group_id)
                else:
                    failed.append(group_id)

                # New list objects so the JSON columns are flagged dirty.
                job.succeeded_group_ids = succeeded
                job.failed_group_ids = failed
                await session.commit()
                await session.refresh(job)
                return job

    async def finish(self, job_id: str, metadata: dict[str, Any] | None = None) -> SyncJob:
        async with self._lock:
            async with self._session_factory() as session:
                job = await self._load(session, job_id)
                if job.is_finished:
                    raise JobFinishedError(f"Sync job {job_id} is already finished")
                job.finished_at = datetime.now(timezone.utc)
                if metadata:
                    job.metadata_json = {**(job.metadata_json or {}), **metadata}
                await session.commit()
                await session.refresh(job)

        logger.info(
            "sync_job_finished",
            job_id=job_id,
            succeeded=len(job.succeeded_group_ids or []),
            failed=len(job.failed_group_ids or []),
        )
        return job

    async def get(self, job_id: str) -> SyncJob:
        async with self._session_factory() as session:
            return await self._load(session, job_id)

    async def failed_group_ids(self, job_id: str) -> list[int]:
        job = await self.get(job_id)
        return list(job.failed_group_ids or [])


class SyncLogger:
    """Append-only writer for sync_logs. Write failures never break a sync."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def log(
        self,
        operation_id: str,
        operation_type: str,
        status: SyncStatus | str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        entry = SyncLogEntry(
            operation_id=operation_id,
            operation_type=operation_type,
            status=SyncStatus(status).value,
            message=message,
            details=details,
        )
        try:
            async with self._session_factory() as session:
                session.add(entry)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "sync_log_write_failed",
                operation_id=operation_id,
                status=entry.status,
                error=str(e),
                error_type=type(e).__name__,
            )
