"""
Tests for the JSON request handlers (cardsync/service.py).

Covers:
- camelCase request aliases and camelCase responses
- 400 on validation failure, 404 on unknown jobs / games
- background=true scheduling (202 + operationId)
- match, throttle-stats, cancel and dispatch routing
- sync-pricing against the pricing feed
- store failures answered as 500 bodies
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest
import respx
from sqlalchemy import func, select

from cardsync.errors import PersistenceError
from cardsync.models import (
    CatalogGroup,
    CatalogProduct,
    PricingCard,
    PricingGame,
    PricingSet,
    SyncLogEntry,
)
from cardsync.pipeline.jobs import SyncJobTracker
from cardsync.pipeline.justtcg import JustTCGClient
from cardsync.pipeline.store import upsert_groups
from cardsync.pipeline.tcgcsv import TcgCsvClient
from cardsync.service import (
    ServiceState,
    camelize,
    dispatch,
    handle_cancel,
    handle_match,
    handle_sync_products,
    handle_throttle_stats,
)

BASE = "https://tcgcsv.test/tcgplayer"
JT = "https://api.justtcg.test/v1"

PRODUCTS_CSV = (
    "productId,name,number,rarity\n"
    "42346,Alakazam,1/102,Holo Rare\n"
    '42347,"Pikachu, Promo",25,Promo\n'
    "42348,,3/102,Holo Rare\n"
    "42349,Charizard,4/102,Holo Rare\n"
)


@pytest.fixture
def state(session_factory, throttle, make_throttle) -> ServiceState:
    return ServiceState(
        session_factory,
        throttle=throttle,
        client_factory=lambda t: TcgCsvClient(t, base_url=BASE),
        pricing_throttle=make_throttle(),
        pricing_client_factory=lambda t: JustTCGClient(api_key="test-key", throttle=t, base_url=JT),
    )


@pytest.fixture
async def base_set(session_factory) -> None:
    async with session_factory() as session:
        await upsert_groups(session, [{"group_id": 1938, "category_id": 3, "name": "Base Set"}])


def test_camelize_nested() -> None:
    assert camelize({"per_group": [{"group_id": 1}], "has_more": False}) == {
        "perGroup": [{"groupId": 1}],
        "hasMore": False,
    }


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_validation_failure_returns_400(state) -> None:
    status, body = await handle_sync_products(state, {"groupIds": "not-a-list"})

    assert status == 400
    assert body["success"] is False
    assert body["error"]


@pytest.mark.asyncio
async def test_negative_page_rejected(state) -> None:
    status, body = await handle_sync_products(state, {"categoryId": 3, "page": 0})

    assert status == 400
    assert "page" in body["error"]


@pytest.mark.asyncio
@respx.mock
async def test_sync_products_camel_case_round_trip(state, base_set) -> None:
    respx.get(f"{BASE}/3/1938/ProductsAndPrices.csv").mock(
        return_value=httpx.Response(200, text=PRODUCTS_CSV)
    )

    status, body = await handle_sync_products(
        state, {"categoryId": 3, "groupIds": [1938], "maxGroups": 5}
    )

    assert status == 200
    assert body["success"] is True
    assert body["perGroup"][0]["groupId"] == 1938
    assert body["perGroup"][0]["fetched"] == 4
    assert body["perGroup"][0]["upserted"] == 3
    assert body["perGroup"][0]["skipped"] == 1
    assert body["hasMore"] is False
    assert body["nextPage"] is None
    assert {"concurrency", "tokens", "circuitOpen"} <= set(body["throttle"])


@pytest.mark.asyncio
@respx.mock
async def test_background_returns_202_then_completes(state, base_set, session_factory) -> None:
    respx.get(f"{BASE}/3/1938/ProductsAndPrices.csv").mock(
        return_value=httpx.Response(200, text=PRODUCTS_CSV)
    )

    status, body = await handle_sync_products(state, {"categoryId": 3, "background": True})

    assert status == 202
    assert body["operationId"].startswith("tcgcsv-products-3-")
    assert body["operationId"] in state.tasks

    await state.drain()

    assert state.tasks == {}
    async with session_factory() as session:
        count = (await session.execute(select(func.count()).select_from(CatalogProduct))).scalar_one()
    assert count == 3


@pytest.mark.asyncio
async def test_retry_unknown_job_returns_404(state) -> None:
    status, body = await handle_sync_products(state, {"retryFailedJobId": "nope"})

    assert status == 404
    assert body["success"] is False


# ---------------------------------------------------------------------------
# Match
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_match_groups_pokemon_go(state, db_session) -> None:
    db_session.add_all(
        [
            PricingGame(id="g1", jt_game_id="pokemon", name="Pokemon", tcgcsv_category_id=3),
            CatalogGroup(group_id=1, category_id=3, name="Pokémon GO"),
            PricingSet(id="s1", jt_set_id="pgo", game_id="g1", name="Pokemon Go"),
        ]
    )
    await db_session.commit()

    status, body = await handle_match(
        state, {"gameId": "g1", "matchType": "groups", "dryRun": False}
    )

    assert status == 200
    match = body["groups"]["matches"][0]
    assert match["score"] == 1.0
    assert match["method"] == "group_name_exact"
    assert match["applied"] is True
    assert body["groups"]["autoMatched"] == 1
    assert "products" not in body


@pytest.mark.asyncio
async def test_match_unknown_game_returns_404(state) -> None:
    status, body = await handle_match(state, {"gameId": "missing"})

    assert status == 404
    assert "missing" in body["error"]


@pytest.mark.asyncio
async def test_match_rejects_unknown_type(state) -> None:
    status, _ = await handle_match(state, {"gameId": "g1", "matchType": "cards"})

    assert status == 400


# ---------------------------------------------------------------------------
# Misc
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_throttle_stats(state) -> None:
    status, body = await handle_throttle_stats(state, {})

    assert status == 200
    assert body["throttle"]["circuitOpen"] is False
    assert body["activeOperations"] == []


@pytest.mark.asyncio
async def test_cancel_unknown_operation(state) -> None:
    status, _ = await handle_cancel(state, {"operationId": "tcgcsv-products-3-x"})

    assert status == 404


@pytest.mark.asyncio
async def test_dispatch_routes_and_rejects_unknown(state) -> None:
    status, body = await dispatch(state, {"operation": "throttle-stats"})
    assert status == 200

    status, body = await dispatch(state, {"operation": "explode"})
    assert status == 400
    assert "explode" in body["error"]


@pytest.mark.asyncio
async def test_store_failure_answers_500(state, base_set, session_factory, monkeypatch) -> None:
    monkeypatch.setattr(
        SyncJobTracker, "start", AsyncMock(side_effect=PersistenceError("job table unavailable"))
    )

    status, body = await dispatch(state, {"operation": "sync-products", "categoryId": 3})

    assert status == 500
    assert body["success"] is False
    assert body["error"] == "job table unavailable"
    async with session_factory() as session:
        statuses = (await session.execute(select(SyncLogEntry.status))).scalars().all()
    assert "error" in statuses


# ---------------------------------------------------------------------------
# Pricing feed
# ---------------------------------------------------------------------------


def _mock_pricing_feed() -> None:
    respx.get(f"{JT}/games").mock(
        return_value=httpx.Response(200, json={"data": [{"id": "pokemon", "name": "Pokemon"}]})
    )
    respx.get(f"{JT}/sets").mock(
        return_value=httpx.Response(200, json={"data": [{"id": "base1", "name": "Base Set"}]})
    )
    respx.get(f"{JT}/cards").mock(
        return_value=httpx.Response(
            200,
            json={
                "data": [{"id": "c1", "name": "Alakazam", "number": "1"}],
                "meta": {"hasMore": False},
            },
        )
    )


@pytest.mark.asyncio
@respx.mock
async def test_sync_pricing_stores_game_sets_and_cards(state, session_factory) -> None:
    _mock_pricing_feed()

    status, body = await dispatch(
        state, {"operation": "sync-pricing", "gameId": "pokemon", "categoryId": 3}
    )

    assert status == 200
    assert body["success"] is True
    assert body["gamesStored"] == 1
    assert body["sets"] == 1
    assert body["cards"] == 1
    assert body["failedSets"] == []
    assert "circuitOpen" in body["throttle"]
    async with session_factory() as session:
        game = (await session.execute(select(PricingGame))).scalar_one()
        cards = (await session.execute(select(PricingCard.jt_card_id))).scalars().all()
    assert game.tcgcsv_category_id == 3
    assert cards == ["c1"]


@pytest.mark.asyncio
@respx.mock
async def test_sync_pricing_in_background(state, session_factory) -> None:
    _mock_pricing_feed()

    status, body = await dispatch(
        state, {"operation": "sync-pricing", "gameId": "pokemon", "background": True}
    )
    assert status == 202
    await state.drain()

    async with session_factory() as session:
        count = (await session.execute(select(func.count()).select_from(PricingCard))).scalar_one()
        statuses = (await session.execute(select(SyncLogEntry.status))).scalars().all()
    assert count == 1
    assert sorted(statuses) == ["completed", "started"]


@pytest.mark.asyncio
@respx.mock
async def test_sync_pricing_unknown_game_returns_404(state) -> None:
    _mock_pricing_feed()

    status, body = await dispatch(state, {"operation": "sync-pricing", "gameId": "lorcana"})

    assert status == 404
    assert "lorcana" in body["error"]


@pytest.mark.asyncio
@respx.mock
async def test_sync_pricing_upstream_failure_answers_500(state) -> None:
    respx.get(f"{JT}/games").mock(return_value=httpx.Response(401))

    status, body = await dispatch(state, {"operation": "sync-pricing", "gameId": "pokemon"})

    assert status == 500
    assert body["success"] is False
    assert "401" in body["error"]
