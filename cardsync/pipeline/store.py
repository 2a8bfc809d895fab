"""
Card Catalog Sync — Persistence Sync

Deduplicate parsed records by key, then write them in chunks with
INSERT ... ON CONFLICT DO UPDATE. Each chunk commits on its own and is
retried with exponential backoff; nothing spans the whole sync, so a rerun
with overlapping data is always safe.
"""

from __future__ import annotations

import asyncio
import random
from datetime import datetime, timezone
from typing import Any, Hashable, Iterable, Iterator, Sequence

import structlog
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cardsync.config import settings
from cardsync.errors import PersistenceError
from cardsync.models import CatalogCategory, CatalogGroup, CatalogProduct

logger = structlog.get_logger(__name__)

KeySpec = str | Sequence[str]


# ---------------------------------------------------------------------------
# In-memory helpers
# ---------------------------------------------------------------------------


def _key_of(record: dict[str, Any], key: KeySpec) -> Hashable:
    if isinstance(key, str):
        return record.get(key)
    return tuple(record.get(k) for k in key)


def dedupe_by_key(records: Iterable[dict[str, Any]], key: KeySpec) -> list[dict[str, Any]]:
    """
    Collapse records sharing `key`. The last occurrence wins, placed at the
    position where the key was first seen. Records with a missing key are dropped.
    """
    unique: dict[Hashable, dict[str, Any]] = {}
    for record in records:
        value = _key_of(record, key)
        if value is None or (isinstance(value, tuple) and None in value):
            continue
        unique[value] = record
    return list(unique.values())


def chunked(records: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    if size < 1:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(records), size):
        yield records[start:start + size]


# ---------------------------------------------------------------------------
# Upsert
# ---------------------------------------------------------------------------


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise PersistenceError(f"Upsert not supported on dialect {dialect!r}")


def _upsert_statement(
    session: AsyncSession,
    model: type,
    rows: Sequence[dict[str, Any]],
    conflict_keys: list[str],
    preserve: tuple[str, ...],
):
    stmt = _insert_for(session)(model).values(list(rows))
    update_columns = {
        column: stmt.excluded[column]
        for column in rows[0].keys()
        if column not in conflict_keys and column not in preserve
    }
    if not update_columns:
        return stmt.on_conflict_do_nothing(index_elements=conflict_keys)
    return stmt.on_conflict_do_update(index_elements=conflict_keys, set_=update_columns)


async def upsert_records(
    session: AsyncSession,
    model: type,
    records: Iterable[dict[str, Any]],
    conflict_key: KeySpec,
    batch_size: int | None = None,
    max_retries: int | None = None,
    backoff_base: float | None = None,
    preserve: tuple[str, ...] = (),
) -> int:
    """
    Idempotently upsert `records` into `model`'s table.

    Args:
        session: Async database session; each chunk is committed on it.
        model: ORM class whose table receives the rows.
        records: Row dicts keyed by column name.
        conflict_key: Column (or columns) with a unique constraint.
        batch_size: Rows per INSERT statement.
        max_retries: Extra attempts per chunk after the first failure.
        backoff_base: Seconds; the n-th retry waits 2^n * base plus jitter.
        preserve: Columns written on insert but never overwritten on conflict.

    Returns:
        Number of unique rows written.

    Raises:
        PersistenceError: A chunk still failed after its retries.
    """
    batch_size = batch_size or settings.UPSERT_BATCH_SIZE
    max_retries = settings.UPSERT_MAX_RETRIES if max_retries is None else max_retries
    backoff_base = (
        settings.UPSERT_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
    )
    conflict_keys = [conflict_key] if isinstance(conflict_key, str) else list(conflict_key)

    records = list(records)
    unique = dedupe_by_key(records, conflict_key)
    if not unique:
        return 0

    table = model.__tablename__
    written = 0
    for index, chunk in enumerate(chunked(unique, batch_size)):
        retries = 0
        while True:
            try:
                stmt = _upsert_statement(session, model, chunk, conflict_keys, preserve)
                await session.execute(stmt)
                await session.commit()
                written += len(chunk)
                break
            except SQLAlchemyError as e:
                await session.rollback()
                retries += 1
                logger.warning(
                    "upsert_chunk_failed",
                    table=table,
                    chunk=index,
                    rows=len(chunk),
                    retry=retries,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if retries > max_retries:
                    raise PersistenceError(
                        f"Upsert into {table} failed after {max_retries} retries: {e}"
                    ) from e
                delay = (2 ** retries) * backoff_base + random.random() * backoff_base
                await asyncio.sleep(delay)

    logger.info(
        "records_upserted",
        table=table,
        count=written,
        duplicates_dropped=len(records) - len(unique),
    )
    return written


# ---------------------------------------------------------------------------
# Catalog wrappers
# ---------------------------------------------------------------------------


def _stamped(records: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    now = datetime.now(timezone.utc)
    return [{**record, "updated_at": now} for record in records]


async def upsert_categories(session: AsyncSession, records: Iterable[dict[str, Any]]) -> int:
    return await upsert_records(session, CatalogCategory, _stamped(records), "category_id")


async def upsert_groups(session: AsyncSession, records: Iterable[dict[str, Any]]) -> int:
    return await upsert_records(session, CatalogGroup, _stamped(records), "group_id")


async def upsert_products(session: AsyncSession, records: Iterable[dict[str, Any]]) -> int:
    return await upsert_records(session, CatalogProduct, _stamped(records), "product_id")
