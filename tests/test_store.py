"""
Tests for persistence sync (cardsync/pipeline/store.py).

Covers:
- dedupe_by_key / chunked helpers
- Idempotent ON CONFLICT upserts against SQLite
- Last write wins inside one batch
- Preserved columns, composite keys
- Per-chunk retry and PersistenceError after exhausting retries
"""

from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from cardsync.errors import PersistenceError
from cardsync.models import CardProductLink, CatalogGroup, CatalogProduct
from cardsync.pipeline.store import (
    chunked,
    dedupe_by_key,
    upsert_groups,
    upsert_products,
    upsert_records,
)


def _product(product_id: int, name: str, group_id: int = 1938) -> dict:
    return {"product_id": product_id, "group_id": group_id, "category_id": 3, "name": name}


class FlakySession:
    """Delegating session whose first `failures` executes raise."""

    def __init__(self, session, failures: int):
        self._session = session
        self.failures = failures
        self.executes = 0
        self.rollbacks = 0

    def get_bind(self):
        return self._session.get_bind()

    async def execute(self, stmt):
        self.executes += 1
        if self.failures:
            self.failures -= 1
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        return await self._session.execute(stmt)

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        self.rollbacks += 1
        await self._session.rollback()


async def _count(session, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_dedupe_last_wins_in_first_seen_position() -> None:
    records = [{"k": 1, "v": "a"}, {"k": 2, "v": "x"}, {"k": 1, "v": "b"}, {"k": None, "v": "z"}]

    assert dedupe_by_key(records, "k") == [{"k": 1, "v": "b"}, {"k": 2, "v": "x"}]


def test_dedupe_composite_key() -> None:
    records = [{"a": 1, "b": 1, "v": 1}, {"a": 1, "b": 2, "v": 2}, {"a": 1, "b": 1, "v": 3}, {"a": 1, "v": 4}]

    assert [r["v"] for r in dedupe_by_key(records, ("a", "b"))] == [3, 2]


def test_chunked() -> None:
    assert [list(c) for c in chunked([1, 2, 3, 4, 5], 2)] == [[1, 2], [3, 4], [5]]
    with pytest.raises(ValueError):
        list(chunked([1], 0))


# ---------------------------------------------------------------------------
# Upserts
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_upsert_products_is_idempotent(db_session) -> None:
    records = [_product(42346, "Alakazam"), _product(42347, "Pikachu, Promo"), _product(42349, "Charizard")]

    assert await upsert_products(db_session, records) == 3
    assert await upsert_products(db_session, records) == 3

    assert await _count(db_session, CatalogProduct) == 3


@pytest.mark.asyncio
async def test_upsert_overwrites_changed_fields(db_session) -> None:
    await upsert_products(db_session, [_product(1, "Alakazam")])
    await upsert_products(db_session, [_product(1, "Alakazam (Shadowless)")])

    name = (await db_session.execute(select(CatalogProduct.name))).scalar_one()
    assert name == "Alakazam (Shadowless)"


@pytest.mark.asyncio
async def test_duplicate_keys_in_batch_last_wins(db_session) -> None:
    written = await upsert_products(
        db_session, [_product(1, "first"), _product(2, "other"), _product(1, "second")]
    )

    assert written == 2
    rows = (await db_session.execute(select(CatalogProduct).order_by(CatalogProduct.product_id))).scalars().all()
    assert [r.name for r in rows] == ["second", "other"]


@pytest.mark.asyncio
async def test_upsert_in_small_chunks(db_session) -> None:
    records = [_product(i, f"Card {i}") for i in range(1, 6)]

    assert await upsert_records(db_session, CatalogProduct, records, "product_id", batch_size=2) == 5
    assert await _count(db_session, CatalogProduct) == 5


@pytest.mark.asyncio
async def test_empty_input_writes_nothing(db_session) -> None:
    assert await upsert_groups(db_session, []) == 0


@pytest.mark.asyncio
async def test_preserved_columns_survive_conflict(db_session) -> None:
    link = {"card_id": "c1", "tcgcsv_product_id": 42346, "match_method": "number"}

    await upsert_records(
        db_session, CardProductLink, [{**link, "id": "first", "match_confidence": 0.8}],
        ("card_id", "tcgcsv_product_id"), preserve=("id",),
    )
    await upsert_records(
        db_session, CardProductLink, [{**link, "id": "second", "match_confidence": 1.0}],
        ("card_id", "tcgcsv_product_id"), preserve=("id",),
    )

    row = (await db_session.execute(select(CardProductLink))).scalar_one()
    assert row.id == "first"
    assert row.match_confidence == 1.0
    assert row.verified is False


@pytest.mark.asyncio
async def test_group_upsert_stamps_updated_at(db_session) -> None:
    await upsert_groups(
        db_session, [{"group_id": 1938, "category_id": 3, "name": "Base Set"}]
    )

    group = (await db_session.execute(select(CatalogGroup))).scalar_one()
    assert group.updated_at is not None


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_chunk_retried_after_transient_failure(db_session) -> None:
    flaky = FlakySession(db_session, failures=2)

    written = await upsert_records(
        flaky, CatalogProduct, [_product(1, "Alakazam")], "product_id",
        max_retries=3, backoff_base=0,
    )

    assert written == 1
    assert flaky.executes == 3
    assert flaky.rollbacks == 2
    assert await _count(db_session, CatalogProduct) == 1


@pytest.mark.asyncio
async def test_persistence_error_after_exhausting_retries(db_session) -> None:
    flaky = FlakySession(db_session, failures=10)

    with pytest.raises(PersistenceError):
        await upsert_records(
            flaky, CatalogProduct, [_product(1, "Alakazam")], "product_id",
            max_retries=2, backoff_base=0,
        )

    assert flaky.executes == 3
