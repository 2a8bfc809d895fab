"""
Card Catalog Sync — Catalog Sync Orchestration

Category, group and product syncs against the TCGCSV feed:

    resolve target groups -> WorkerPool(fetch -> parse -> upsert per group)
    -> SyncJob bookkeeping -> sync_logs events -> ProductsSyncResult

Each group is fetched, parsed and persisted before its records are dropped,
so peak memory is bounded by one group. Failures stay on their group and
land in the job's failed list for a later retry_failed_job_id run.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardsync.config import JobType, SyncStatus, settings
from cardsync.errors import CardSyncError
from cardsync.models import CatalogGroup
from cardsync.pipeline.jobs import SyncJobTracker, SyncLogger
from cardsync.pipeline.pool import (
    CancellationToken,
    GroupResult,
    ProgressEvent,
    WorkerPool,
)
from cardsync.pipeline.store import upsert_categories, upsert_groups, upsert_products
from cardsync.pipeline.tcgcsv import TcgCsvClient

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Request / result models
# ---------------------------------------------------------------------------


class ProductsSyncRequest(BaseModel):
    category_id: int
    group_ids: list[int] | None = None
    group_name_filters: list[str] | None = None
    include_sealed: bool = True
    include_singles: bool = True
    dry_run: bool = False
    max_groups: int | None = Field(default=None, ge=1)
    page: int | None = Field(default=None, ge=1)
    page_size: int | None = Field(default=None, ge=1)
    retry_failed_job_id: str | None = None


class SyncSummary(BaseModel):
    fetched: int = 0
    upserted: int = 0
    skipped: int = 0
    succeeded_groups: int = 0
    failed_groups: int = 0
    cancelled_groups: int = 0


class ProductsSyncResult(BaseModel):
    success: bool
    operation_id: str
    job_id: str | None = None
    category_id: int
    groups_processed: int = 0
    group_ids_resolved: list[int] = Field(default_factory=list)
    per_group: list[GroupResult] = Field(default_factory=list)
    summary: SyncSummary = Field(default_factory=SyncSummary)
    next_page: int | None = None
    has_more: bool = False
    throttle: dict[str, Any] = Field(default_factory=dict)
    dry_run: bool = False
    cancelled: bool = False
    note: str | None = None
    error: str | None = None


class CatalogSyncResult(BaseModel):
    """Result of a categories or groups sync."""

    success: bool
    operation_id: str
    category_id: int | None = None
    fetched: int = 0
    upserted: int = 0
    skipped: int = 0
    source: str | None = None
    dry_run: bool = False
    throttle: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


def _operation_id(kind: str, category_id: int | None = None) -> str:
    suffix = uuid.uuid4().hex[:12]
    if category_id is None:
        return f"tcgcsv-{kind}-{suffix}"
    return f"tcgcsv-{kind}-{category_id}-{suffix}"


def _page(ids: list[int], page: int, page_size: int) -> tuple[list[int], int | None]:
    start = (page - 1) * page_size
    window = ids[start:start + page_size]
    next_page = page + 1 if start + page_size < len(ids) else None
    return window, next_page


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class CatalogSync:
    """
    Usage:
        async with TcgCsvClient(throttle) as client:
            sync = CatalogSync(client, session_factory)
            result = await sync.sync_products(ProductsSyncRequest(category_id=3))
    """

    def __init__(
        self,
        client: TcgCsvClient,
        session_factory: async_sessionmaker[AsyncSession],
        reevaluate_seconds: float | None = None,
    ):
        self.client = client
        self._session_factory = session_factory
        self._reevaluate_seconds = reevaluate_seconds
        self.jobs = SyncJobTracker(session_factory)
        self.sync_log = SyncLogger(session_factory)

    # -----------------------------------------------------------------------
    # Categories & groups
    # -----------------------------------------------------------------------

    async def sync_categories(
        self, dry_run: bool = False, operation_id: str | None = None
    ) -> CatalogSyncResult:
        operation_id = operation_id or _operation_id("categories")
        await self.sync_log.log(
            operation_id, "tcgcsv-categories", SyncStatus.STARTED, "Starting categories sync",
            {"dry_run": dry_run},
        )
        try:
            parsed = await self.client.fetch_categories()
            upserted = 0
            if not dry_run:
                async with self._session_factory() as session:
                    upserted = await upsert_categories(session, parsed.records)
        except CardSyncError as e:
            logger.error("categories_sync_failed", operation_id=operation_id, error=str(e))
            await self.sync_log.log(
                operation_id, "tcgcsv-categories", SyncStatus.ERROR,
                f"Categories sync failed: {e}", {"error": str(e)},
            )
            return CatalogSyncResult(
                success=False, operation_id=operation_id, dry_run=dry_run,
                throttle=self.client.throttle.stats(), error=str(e),
            )

        result = CatalogSyncResult(
            success=True,
            operation_id=operation_id,
            fetched=parsed.fetched,
            upserted=upserted,
            skipped=parsed.skipped,
            source=parsed.source,
            dry_run=dry_run,
            throttle=self.client.throttle.stats(),
        )
        await self.sync_log.log(
            operation_id, "tcgcsv-categories", SyncStatus.COMPLETED,
            f"Categories sync complete: {upserted} upserted",
            result.model_dump(exclude={"throttle"}),
        )
        return result

    async def sync_groups(
        self, category_id: int, dry_run: bool = False, operation_id: str | None = None
    ) -> CatalogSyncResult:
        operation_id = operation_id or _operation_id("groups", category_id)
        await self.sync_log.log(
            operation_id, "tcgcsv-groups", SyncStatus.STARTED,
            f"Starting groups sync for category {category_id}",
            {"category_id": category_id, "dry_run": dry_run},
        )
        try:
            parsed = await self.client.fetch_groups(category_id)
            upserted = 0
            if not dry_run:
                async with self._session_factory() as session:
                    upserted = await upsert_groups(session, parsed.records)
        except CardSyncError as e:
            logger.error(
                "groups_sync_failed", operation_id=operation_id, category_id=category_id, error=str(e)
            )
            await self.sync_log.log(
                operation_id, "tcgcsv-groups", SyncStatus.ERROR,
                f"Groups sync failed: {e}", {"error": str(e)},
            )
            return CatalogSyncResult(
                success=False, operation_id=operation_id, category_id=category_id,
                dry_run=dry_run, throttle=self.client.throttle.stats(), error=str(e),
            )

        result = CatalogSyncResult(
            success=True,
            operation_id=operation_id,
            category_id=category_id,
            fetched=parsed.fetched,
            upserted=upserted,
            skipped=parsed.skipped,
            source=parsed.source,
            dry_run=dry_run,
            throttle=self.client.throttle.stats(),
        )
        await self.sync_log.log(
            operation_id, "tcgcsv-groups", SyncStatus.COMPLETED,
            f"Groups sync complete: {upserted} upserted",
            result.model_dump(exclude={"throttle"}),
        )
        return result

    # -----------------------------------------------------------------------
    # Products
    # -----------------------------------------------------------------------

    async def _resolve_groups(self, request: ProductsSyncRequest) -> list[int]:
        async with self._session_factory() as session:
            if request.group_ids:
                rows = await session.execute(
                    select(CatalogGroup.group_id).where(
                        CatalogGroup.group_id.in_(request.group_ids),
                        CatalogGroup.category_id == request.category_id,
                    )
                )
                known = set(rows.scalars())
                dropped = [g for g in request.group_ids if g not in known]
                if dropped:
                    logger.warning(
                        "groups_not_in_category",
                        category_id=request.category_id,
                        group_ids=dropped,
                    )
                return list(dict.fromkeys(g for g in request.group_ids if g in known))

            rows = await session.execute(
                select(CatalogGroup.group_id, CatalogGroup.name)
                .where(CatalogGroup.category_id == request.category_id)
                .order_by(CatalogGroup.name, CatalogGroup.group_id)
            )
            groups = rows.all()

        filters = [f.lower() for f in request.group_name_filters or [] if f.strip()]
        if filters:
            groups = [g for g in groups if any(f in (g.name or "").lower() for f in filters)]
        return [g.group_id for g in groups]

    def _processor(self, request: ProductsSyncRequest, job_id: str | None):
        async def process(group_id: int) -> GroupResult:
            ok = False
            try:
                try:
                    parsed = await self.client.fetch_group_products(
                        request.category_id,
                        group_id,
                        include_sealed=request.include_sealed,
                        include_singles=request.include_singles,
                    )
                except CardSyncError as e:
                    return GroupResult(group_id=group_id, error=str(e))

                result = GroupResult(
                    group_id=group_id,
                    fetched=parsed.fetched,
                    skipped=parsed.skipped,
                    source=parsed.source,
                )
                if not request.dry_run:
                    try:
                        async with self._session_factory() as session:
                            result.upserted = await upsert_products(session, parsed.records)
                    except CardSyncError as e:
                        result.error = str(e)
                        return result
                ok = True
                return result
            finally:
                if job_id is not None:
                    await self.jobs.record(job_id, group_id, ok)

        return process

    async def sync_products(
        self,
        request: ProductsSyncRequest,
        token: CancellationToken | None = None,
        progress: asyncio.Queue[ProgressEvent] | None = None,
        operation_id: str | None = None,
    ) -> ProductsSyncResult:
        """
        Sync the products of one category's groups.

        Target groups come from, in priority order: the failed list of
        `retry_failed_job_id`; explicit `group_ids` limited to the category;
        or every group of the category by name, narrowed by
        `group_name_filters`. `max_groups` then caps the list and
        `page`/`page_size` select one window of it.
        """
        token = token or CancellationToken()
        operation_id = operation_id or _operation_id("products", request.category_id)
        op_type = "tcgcsv-products"

        await self.sync_log.log(
            operation_id, op_type, SyncStatus.STARTED,
            f"Starting products sync for category {request.category_id}",
            request.model_dump(),
        )

        if request.retry_failed_job_id:
            group_ids = await self.jobs.failed_group_ids(request.retry_failed_job_id)
        else:
            group_ids = await self._resolve_groups(request)

        max_groups = request.max_groups or settings.DEFAULT_MAX_GROUPS
        group_ids = group_ids[:max_groups]

        next_page = None
        if request.page is not None:
            page_size = request.page_size or settings.DEFAULT_PAGE_SIZE
            group_ids, next_page = _page(group_ids, request.page, page_size)

        result = ProductsSyncResult(
            success=True,
            operation_id=operation_id,
            category_id=request.category_id,
            group_ids_resolved=group_ids,
            next_page=next_page,
            has_more=next_page is not None,
            dry_run=request.dry_run,
        )

        if not group_ids:
            result.note = "No groups found for the specified criteria"
            result.throttle = self.client.throttle.stats()
            await self.sync_log.log(operation_id, op_type, SyncStatus.WARNING, result.note)
            return result

        job_id = None
        if not request.dry_run:
            job = await self.jobs.start(
                JobType.PRODUCTS,
                request.category_id,
                group_ids,
                metadata={
                    "operation_id": operation_id,
                    "retry_of": request.retry_failed_job_id,
                    "page": request.page,
                },
            )
            job_id = job.id
            result.job_id = job_id

        pool = WorkerPool(
            self._processor(request, job_id),
            self.client.throttle,
            progress=progress,
            token=token,
            reevaluate_seconds=self._reevaluate_seconds,
        )
        per_group = await pool.run(group_ids)

        for group in per_group:
            if group.cancelled and job_id is not None:
                await self.jobs.record(job_id, group.group_id, ok=False)
            if group.error:
                await self.sync_log.log(
                    operation_id, op_type, SyncStatus.WARNING,
                    f"Group {group.group_id} failed", {"group_id": group.group_id, "error": group.error},
                )

        if job_id is not None:
            await self.jobs.finish(job_id)

        result.per_group = sorted(per_group, key=lambda g: g.group_id)
        result.groups_processed = sum(1 for g in per_group if not g.cancelled)
        result.cancelled = token.cancelled
        result.summary = SyncSummary(
            fetched=sum(g.fetched for g in per_group),
            upserted=sum(g.upserted for g in per_group),
            skipped=sum(g.skipped for g in per_group),
            succeeded_groups=sum(1 for g in per_group if g.ok),
            failed_groups=sum(1 for g in per_group if g.error),
            cancelled_groups=sum(1 for g in per_group if g.cancelled),
        )
        result.throttle = self.client.throttle.stats()

        logger.info(
            "products_sync_complete",
            operation_id=operation_id,
            category_id=request.category_id,
            job_id=job_id,
            **result.summary.model_dump(),
        )
        await self.sync_log.log(
            operation_id, op_type, SyncStatus.COMPLETED,
            f"Products sync complete: {result.summary.upserted} upserted",
            {"job_id": job_id, **result.summary.model_dump(), "has_more": result.has_more},
        )
        return result

    async def run_many(
        self,
        category_ids: list[int],
        token: CancellationToken | None = None,
        dry_run: bool = False,
        progress: asyncio.Queue[ProgressEvent] | None = None,
    ) -> list[ProductsSyncResult]:
        """Sync several categories in turn, checking `token` between them."""
        token = token or CancellationToken()
        results = []
        for category_id in category_ids:
            if token.cancelled:
                logger.info("run_many_cancelled", remaining=category_ids[len(results):])
                break
            results.append(
                await self.sync_products(
                    ProductsSyncRequest(category_id=category_id, dry_run=dry_run),
                    token=token,
                    progress=progress,
                )
            )
        return results
