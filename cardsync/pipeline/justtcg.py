"""
Card Catalog Sync — JustTCG Pricing Feed Client

Fetches games, sets and cards from the JustTCG API and stores them as the
pricing-side entities (games / sets / cards) that entity resolution links
to the catalog feed.

Requests share a dedicated ThrottleContext (the API has its own quota) and
go through the same RateGateway as the catalog feed. Card listings are
paginated with limit/offset until the API reports no more pages.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import httpx
import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cardsync.config import settings
from cardsync.errors import CardSyncError, MalformedPayloadError, UpstreamError
from cardsync.models import PricingCard, PricingGame, PricingSet
from cardsync.pipeline.parser import extract_records, kebab, sniff_body, to_datetime
from cardsync.pipeline.rate import RateGateway, ThrottleContext
from cardsync.pipeline.store import upsert_records

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Pydantic Response Models
# ---------------------------------------------------------------------------


class JustTCGGame(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., description="JustTCG game id (e.g. 'pokemon')")
    name: str = Field(default="")


class JustTCGSet(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., description="JustTCG set id")
    name: str = Field(default="")
    code: str | None = Field(default=None, validation_alias=AliasChoices("code", "abbreviation"))
    release_date: datetime | None = Field(
        default=None, validation_alias=AliasChoices("release_date", "releaseDate")
    )
    total_cards: int | None = Field(
        default=None, validation_alias=AliasChoices("cards_count", "total_cards", "cardsCount")
    )

    @field_validator("release_date", mode="before")
    @classmethod
    def parse_release_date(cls, v: Any) -> datetime | None:
        return to_datetime(v)


class JustTCGCard(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., description="JustTCG card id")
    name: str = Field(default="")
    number: str | None = None
    rarity: str | None = None
    tcgplayer_id: str | None = Field(
        default=None, validation_alias=AliasChoices("tcgplayerId", "tcgplayer_id")
    )
    variants: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("number", "tcgplayer_id", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> str | None:
        if v is None or v == "":
            return None
        return str(v)


# ---------------------------------------------------------------------------
# API Client
# ---------------------------------------------------------------------------


class JustTCGClient:
    """
    Async client for the JustTCG API.

    Usage:
        async with JustTCGClient() as client:
            games = await client.fetch_games()
            count = await client.store_games(games, db_session)
    """

    def __init__(
        self,
        api_key: str | None = None,
        throttle: ThrottleContext | None = None,
        base_url: str | None = None,
        page_size: int | None = None,
        max_pages: int | None = None,
        gateway: RateGateway | None = None,
    ):
        self._api_key = api_key or settings.JUSTTCG_API_KEY
        self._base_url = (base_url or settings.JUSTTCG_BASE_URL).rstrip("/")
        self._page_size = page_size or settings.JUSTTCG_PAGE_SIZE
        self._max_pages = max_pages or settings.JUSTTCG_MAX_PAGES
        self.throttle = throttle or ThrottleContext.from_settings(
            rps=settings.JUSTTCG_TARGET_RPS, burst=settings.JUSTTCG_BURST_TOKENS
        )
        self._gateway = gateway
        self._owns_gateway = gateway is None

    async def __aenter__(self) -> JustTCGClient:
        if self._gateway is None:
            self._gateway = RateGateway(
                self.throttle,
                headers={
                    "Accept": "application/json",
                    "X-API-Key": self._api_key,
                    "User-Agent": settings.TCGCSV_USER_AGENT,
                },
            )
        await self._gateway.__aenter__()
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._gateway and self._owns_gateway:
            await self._gateway.__aexit__(*args)

    async def _request(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET `path` and decode the JSON body, raising on any failure."""
        assert self._gateway is not None, "Client not initialized. Use 'async with'."

        url = str(httpx.URL(f"{self._base_url}/{path.lstrip('/')}", params=params))
        result = await self._gateway.fetch(url)
        if not result.ok:
            logger.error(
                "justtcg_http_error",
                status_code=result.status_code,
                attempt=result.attempt,
                path=path,
                reason=result.reason,
            )
            raise UpstreamError(
                f"JustTCG {path} failed with HTTP {result.status_code}",
                status_code=result.status_code,
            )

        try:
            return result.response.json()
        except ValueError as e:
            body = result.response.text
            diagnostic = sniff_body(body)
            logger.error("justtcg_malformed_payload", path=path, diagnostic=diagnostic)
            raise MalformedPayloadError(
                f"JustTCG {path} returned a non-JSON body", diagnostic=diagnostic, sample=body[:200]
            ) from e

    async def _paginate(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """
        Walk limit/offset pages. Stops on an empty page, meta.hasMore == false,
        a short page, or the page safety cap.
        """
        records: list[dict[str, Any]] = []
        offset = 0
        for page in range(1, self._max_pages + 1):
            payload = await self._request(
                path, {**params, "limit": self._page_size, "offset": offset}
            )
            rows, _ = extract_records(payload)
            if not rows:
                break
            records.extend(rows)
            offset += len(rows)

            meta = {}
            if isinstance(payload, dict):
                meta = payload.get("meta") or payload.get("_metadata") or {}
            if meta.get("hasMore") is False or len(rows) < self._page_size:
                break
        else:
            logger.warning("justtcg_page_cap_reached", path=path, pages=self._max_pages)

        logger.info("justtcg_paginated", path=path, pages=page, records=len(records))
        return records

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def fetch_games(self) -> list[JustTCGGame]:
        rows, _ = extract_records(await self._request("games"))
        games = [JustTCGGame.model_validate(row) for row in rows if isinstance(row, dict)]
        logger.info("justtcg_fetch_games_complete", results_count=len(games))
        return games

    async def fetch_sets(self, game: str) -> list[JustTCGSet]:
        rows, _ = extract_records(await self._request("sets", {"game": game}))
        sets = [JustTCGSet.model_validate(row) for row in rows if isinstance(row, dict)]
        logger.info("justtcg_fetch_sets_complete", game=game, results_count=len(sets))
        return sets

    async def fetch_cards(self, game: str, set_id: str) -> list[JustTCGCard]:
        """
        Fetch every card of one set.

        Args:
            game: JustTCG game id (e.g. "pokemon").
            set_id: JustTCG set id.
        """
        rows = await self._paginate("cards", {"game": game, "set": set_id})
        cards = [JustTCGCard.model_validate(row) for row in rows if isinstance(row, dict)]
        logger.info("justtcg_fetch_cards_complete", game=game, set_id=set_id, results_count=len(cards))
        return cards

    # -----------------------------------------------------------------------
    # Storage
    # -----------------------------------------------------------------------

    async def store_games(
        self,
        games: list[JustTCGGame],
        session: AsyncSession,
        category_ids: dict[str, int] | None = None,
    ) -> int:
        """
        Upsert games keyed by jt_game_id.

        `category_ids` maps JustTCG game ids to catalog category ids; games
        not in the map keep whatever mapping they already have.
        """
        category_ids = category_ids or {}
        records = []
        for game in games:
            record = {
                "id": str(uuid.uuid4()),
                "jt_game_id": game.id,
                "name": game.name or game.id,
                "slug": kebab(game.id),
            }
            if game.id in category_ids:
                record["tcgcsv_category_id"] = category_ids[game.id]
            records.append(record)

        # Mixed key sets cannot share one multi-row INSERT.
        mapped = [r for r in records if "tcgcsv_category_id" in r]
        unmapped = [r for r in records if "tcgcsv_category_id" not in r]
        count = 0
        for batch in (mapped, unmapped):
            count += await upsert_records(
                session, PricingGame, batch, "jt_game_id", preserve=("id",)
            )
        logger.info("justtcg_games_stored", count=count)
        return count

    async def store_sets(
        self, sets: list[JustTCGSet], game_id: str, session: AsyncSession
    ) -> int:
        """Upsert sets of one game (games.id). Existing match links are untouched."""
        count = await upsert_records(
            session,
            PricingSet,
            [
                {
                    "id": str(uuid.uuid4()),
                    "jt_set_id": s.id,
                    "game_id": game_id,
                    "code": s.code,
                    "name": s.name or s.id,
                    "release_date": s.release_date,
                    "total_cards": s.total_cards,
                }
                for s in sets
            ],
            "jt_set_id",
            preserve=("id",),
        )
        logger.info("justtcg_sets_stored", game_id=game_id, count=count)
        return count

    async def store_cards(
        self,
        cards: list[JustTCGCard],
        game_id: str,
        set_id: str,
        session: AsyncSession,
    ) -> int:
        """Upsert cards of one set (sets.id), keeping any product link already made."""
        count = await upsert_records(
            session,
            PricingCard,
            [
                {
                    "id": str(uuid.uuid4()),
                    "jt_card_id": c.id,
                    "set_id": set_id,
                    "game_id": game_id,
                    "name": c.name or c.id,
                    "number": c.number,
                    "rarity": c.rarity,
                    "data": {"variants": c.variants, "tcgplayer_id": c.tcgplayer_id},
                }
                for c in cards
            ],
            "jt_card_id",
            preserve=("id",),
        )
        logger.info("justtcg_cards_stored", set_id=set_id, count=count)
        return count

    async def sync_game(self, game: str, session: AsyncSession) -> dict[str, Any]:
        """
        Pull every set and card of one game into the pricing tables.

        The game row must already exist (see store_games). A set whose cards
        cannot be fetched or stored is logged and listed under failed_sets;
        the remaining sets still sync.
        """
        game_row = (
            await session.execute(select(PricingGame).where(PricingGame.jt_game_id == game))
        ).scalar_one_or_none()
        if game_row is None:
            raise CardSyncError(f"Game {game} has not been stored yet")
        game_row_id = game_row.id

        sets = await self.fetch_sets(game)
        await self.store_sets(sets, game_row_id, session)
        set_ids = dict(
            (
                await session.execute(
                    select(PricingSet.jt_set_id, PricingSet.id).where(
                        PricingSet.game_id == game_row_id
                    )
                )
            ).all()
        )

        cards_stored = 0
        failed_sets: list[str] = []
        for jt_set in sets:
            try:
                cards = await self.fetch_cards(game, jt_set.id)
                cards_stored += await self.store_cards(
                    cards, game_row_id, set_ids[jt_set.id], session
                )
            except CardSyncError as e:
                logger.error(
                    "justtcg_set_failed",
                    game=game,
                    set_id=jt_set.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                failed_sets.append(jt_set.id)

        logger.info(
            "justtcg_game_synced",
            game=game,
            sets=len(sets),
            cards=cards_stored,
            failed_sets=len(failed_sets),
        )
        return {"sets": len(sets), "cards": cards_stored, "failed_sets": failed_sets}
