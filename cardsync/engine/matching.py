"""
Card Catalog Sync — Entity Resolution

Links pricing-feed entities to catalog-feed entities in two passes:

1. Groups -> sets: every catalog group of the game's category is scored
   against every not-yet-linked pricing set. 1.0 for equal normalized names,
   0.95 for a set code equal to the group abbreviation or name, otherwise
   Levenshtein similarity. A link is auto-applied only when the best score
   is >= 0.9 AND beats the runner-up by more than 0.1. Everything else is
   an AmbiguousMatch for manual review.

2. Products -> cards: for every linked set, each product of its group is
   matched by normalized collector number first (confidence 1.0), falling
   back to name similarity >= 0.8 when the card pool is small enough.
   Accepted matches (>= 0.7) are written to card_product_links and
   denormalized onto cards.tcgplayer_product_id.

No entity receives more than one automatic match per run; the first
sufficiently confident candidate wins. Both passes run under a TimeBudget
checked between groups/sets and report where they stopped.
"""

from __future__ import annotations

import time
import uuid
from typing import Callable

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cardsync.config import MatchMethod, settings
from cardsync.engine.normalize import (
    normalize_card_name,
    normalize_card_number,
    normalize_set_name,
    normalize_text,
    similarity,
)
from cardsync.errors import MatchingError
from cardsync.models import (
    CardProductLink,
    CatalogGroup,
    CatalogProduct,
    PricingCard,
    PricingGame,
    PricingSet,
)
from cardsync.pipeline.store import upsert_records

logger = structlog.get_logger(__name__)

# Ambiguous matches keep this many candidates for the reviewer
MAX_CANDIDATES = 3
# Unmatched product samples returned in a result
MAX_UNMATCHED_SAMPLES = 20


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------


class TimeBudget:
    """Soft wall-clock budget; callers poll expired() at safe points."""

    def __init__(self, seconds: float | None = None, clock: Callable[[], float] = time.monotonic):
        self.seconds = settings.MATCH_TIME_BUDGET_SECONDS if seconds is None else seconds
        self._clock = clock
        self._started = clock()

    def elapsed(self) -> float:
        return self._clock() - self._started

    def remaining(self) -> float:
        return max(0.0, self.seconds - self.elapsed())

    def expired(self) -> bool:
        return self.elapsed() >= self.seconds


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------


class MatchCandidate(BaseModel):
    set_id: str
    set_name: str
    score: float


class SetMatch(BaseModel):
    group_id: int
    group_name: str
    set_id: str
    set_name: str
    score: float
    method: MatchMethod
    applied: bool


class AmbiguousMatch(BaseModel):
    group_id: int
    group_name: str
    best_score: float
    second_score: float
    candidates: list[MatchCandidate] = Field(default_factory=list)


class GroupMatchResult(BaseModel):
    game_id: str
    dry_run: bool
    matches: list[SetMatch] = Field(default_factory=list)
    ambiguous: list[AmbiguousMatch] = Field(default_factory=list)
    auto_matched: int = 0
    total_groups: int = 0
    total_sets: int = 0
    stopped_early: bool = False
    resume_from: int | None = None

    def links(self) -> dict[str, int]:
        """set id -> group id for every applied (or would-be applied) match."""
        return {m.set_id: m.group_id for m in self.matches if m.applied}


class CardMatch(BaseModel):
    product_id: int
    card_id: str
    set_id: str
    method: MatchMethod
    confidence: float


class ProductMatchResult(BaseModel):
    game_id: str
    dry_run: bool
    matches: list[CardMatch] = Field(default_factory=list)
    total_matched: int = 0
    number_matches: int = 0
    name_matches: int = 0
    updated: int = 0
    sets_processed: int = 0
    name_fallback_skipped: int = 0
    unmatched: list[dict] = Field(default_factory=list)
    unmatched_count: int = 0
    stopped_early: bool = False
    resume_from: str | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _load_game(session: AsyncSession, game_id: str) -> PricingGame:
    game = await session.get(PricingGame, game_id)
    if game is None:
        raise MatchingError(f"Game {game_id} not found")
    if game.tcgcsv_category_id is None:
        raise MatchingError(f"Game {game_id} is not mapped to a catalog category")
    return game


def score_set(group: CatalogGroup, pricing_set: PricingSet) -> tuple[float, MatchMethod]:
    """Score one group/set pair and name the rule that produced the score."""
    group_name = normalize_set_name(group.name)
    if normalize_set_name(pricing_set.name) == group_name:
        return 1.0, MatchMethod.GROUP_NAME_EXACT

    code = normalize_text(pricing_set.code)
    if code and code in (normalize_text(group.abbreviation), normalize_text(group.name)):
        return settings.SET_CODE_MATCH_SCORE, MatchMethod.GROUP_CODE

    return (
        similarity(group_name, normalize_set_name(pricing_set.name)),
        MatchMethod.GROUP_NAME_SIMILARITY,
    )


def _skip_until(items: list, start_after, key: Callable) -> list:
    if start_after is None:
        return items
    for index, item in enumerate(items):
        if key(item) == start_after:
            return items[index + 1:]
    return items


# ---------------------------------------------------------------------------
# Pass 1: groups -> sets
# ---------------------------------------------------------------------------


async def match_groups_to_sets(
    session: AsyncSession,
    game_id: str,
    dry_run: bool = True,
    budget: TimeBudget | None = None,
    start_after: int | None = None,
) -> GroupMatchResult:
    """
    Link catalog groups to pricing sets of one game.

    Groups are visited ordered by (name, group_id) and sets by (name, id), so
    repeated runs over the same rows produce identical results. Ties keep the
    first-seen set and, having no gap, are always ambiguous.

    Args:
        session: Async database session.
        game_id: games.id of the pricing-feed game.
        dry_run: Score and report without writing links.
        budget: Stop cleanly between groups when it expires.
        start_after: Resume after this group id (a previous resume_from).
    """
    budget = budget or TimeBudget()
    game = await _load_game(session, game_id)

    groups = list(
        (
            await session.execute(
                select(CatalogGroup)
                .where(CatalogGroup.category_id == game.tcgcsv_category_id)
                .order_by(CatalogGroup.name, CatalogGroup.group_id)
            )
        ).scalars()
    )
    sets = list(
        (
            await session.execute(
                select(PricingSet)
                .where(PricingSet.game_id == game.id)
                .order_by(PricingSet.name, PricingSet.id)
            )
        ).scalars()
    )

    result = GroupMatchResult(
        game_id=game_id, dry_run=dry_run, total_groups=len(groups), total_sets=len(sets)
    )
    linked_groups = {s.tcgcsv_group_id for s in sets if s.tcgcsv_group_id is not None}
    claimed_sets = {s.id for s in sets if s.tcgcsv_group_id is not None}

    for group in _skip_until(groups, start_after, lambda g: g.group_id):
        if budget.expired():
            result.stopped_early = True
            logger.warning(
                "group_matching_budget_exhausted",
                game_id=game_id,
                resume_from=result.resume_from,
                elapsed=round(budget.elapsed(), 2),
            )
            break
        result.resume_from = group.group_id
        if group.group_id in linked_groups:
            continue

        scored: list[tuple[float, MatchMethod, PricingSet]] = []
        best: tuple[float, MatchMethod, PricingSet] | None = None
        second_score = 0.0
        for pricing_set in sets:
            if pricing_set.id in claimed_sets:
                continue
            score, method = score_set(group, pricing_set)
            scored.append((score, method, pricing_set))
            if best is None or score > best[0]:
                second_score = best[0] if best is not None else 0.0
                best = (score, method, pricing_set)
            elif score > second_score:
                second_score = score

        if best is None:
            continue

        best_score, method, best_set = best
        confident = (
            best_score >= settings.SET_MATCH_MIN_SCORE
            and best_score - second_score > settings.SET_MATCH_MIN_GAP
        )
        result.matches.append(
            SetMatch(
                group_id=group.group_id,
                group_name=group.name,
                set_id=best_set.id,
                set_name=best_set.name,
                score=best_score,
                method=method,
                applied=confident,
            )
        )

        if not confident:
            ranked = sorted(scored, key=lambda item: -item[0])[:MAX_CANDIDATES]
            result.ambiguous.append(
                AmbiguousMatch(
                    group_id=group.group_id,
                    group_name=group.name,
                    best_score=best_score,
                    second_score=second_score,
                    candidates=[
                        MatchCandidate(set_id=s.id, set_name=s.name, score=score)
                        for score, _, s in ranked
                    ],
                )
            )
            continue

        claimed_sets.add(best_set.id)
        linked_groups.add(group.group_id)
        result.auto_matched += 1
        if not dry_run:
            best_set.tcgcsv_group_id = group.group_id
            best_set.match_confidence = best_score
            best_set.match_method = method.value

    if not dry_run and result.auto_matched:
        await session.commit()

    logger.info(
        "group_matching_complete",
        game_id=game_id,
        auto_matched=result.auto_matched,
        ambiguous=len(result.ambiguous),
        total_groups=result.total_groups,
        total_sets=result.total_sets,
        dry_run=dry_run,
        stopped_early=result.stopped_early,
    )
    return result


# ---------------------------------------------------------------------------
# Pass 2: products -> cards
# ---------------------------------------------------------------------------


def _match_product(
    product: CatalogProduct,
    cards: list[PricingCard],
    claimed: set[str],
    name_allowed: bool,
) -> tuple[PricingCard | None, MatchMethod | None, float]:
    number = normalize_card_number(product.number)
    if number:
        for card in cards:
            if card.id not in claimed and normalize_card_number(card.number) == number:
                return card, MatchMethod.NUMBER, 1.0

    if not name_allowed:
        return None, None, 0.0

    product_name = normalize_card_name(product.name)
    best: PricingCard | None = None
    best_score = 0.0
    for card in cards:
        if card.id in claimed:
            continue
        score = similarity(product_name, normalize_card_name(card.name))
        if score >= settings.CARD_NAME_MIN_SIMILARITY and score > best_score:
            best, best_score = card, score
    if best is None:
        return None, None, 0.0
    return best, MatchMethod.NAME, best_score


async def match_products_to_cards(
    session: AsyncSession,
    game_id: str,
    dry_run: bool = True,
    only_unmapped: bool = True,
    budget: TimeBudget | None = None,
    start_after: str | None = None,
    pending_links: dict[str, int] | None = None,
) -> ProductMatchResult:
    """
    Link catalog products to pricing cards within already-linked sets.

    `pending_links` (set id -> group id) adds links that a dry-run group pass
    decided on but did not write, so both passes can be previewed together.
    """
    budget = budget or TimeBudget()
    game = await _load_game(session, game_id)
    pending_links = pending_links or {}

    # Plain tuples: the loop commits, and expired ORM rows cannot lazy-load under asyncio.
    sets = [
        (s.id, s.name, s.tcgcsv_group_id or pending_links.get(s.id))
        for s in (
            await session.execute(
                select(PricingSet)
                .where(PricingSet.game_id == game.id)
                .order_by(PricingSet.name, PricingSet.id)
            )
        ).scalars()
        if s.tcgcsv_group_id is not None or s.id in pending_links
    ]

    result = ProductMatchResult(game_id=game_id, dry_run=dry_run)
    if not sets:
        logger.warning("product_matching_no_linked_sets", game_id=game_id)
        return result

    claimed: set[str] = set()
    for set_id, set_name, group_id in _skip_until(sets, start_after, lambda s: s[0]):
        if budget.expired():
            result.stopped_early = True
            logger.warning(
                "product_matching_budget_exhausted",
                game_id=game_id,
                resume_from=result.resume_from,
                elapsed=round(budget.elapsed(), 2),
            )
            break
        result.resume_from = set_id

        products = list(
            (
                await session.execute(
                    select(CatalogProduct)
                    .where(CatalogProduct.group_id == group_id)
                    .order_by(CatalogProduct.product_id)
                )
            ).scalars()
        )
        card_query = (
            select(PricingCard)
            .where(PricingCard.set_id == set_id)
            .order_by(PricingCard.name, PricingCard.id)
        )
        if only_unmapped:
            card_query = card_query.where(PricingCard.tcgplayer_product_id.is_(None))
        cards = list((await session.execute(card_query)).scalars())

        name_allowed = len(cards) < settings.NAME_MATCH_POOL_CUTOFF
        accepted: list[CardMatch] = []
        for product in products:
            card, method, confidence = _match_product(product, cards, claimed, name_allowed)
            if card is None or confidence < settings.CARD_MATCH_MIN_CONFIDENCE:
                if not name_allowed and not normalize_card_number(product.number):
                    result.name_fallback_skipped += 1
                result.unmatched_count += 1
                if len(result.unmatched) < MAX_UNMATCHED_SAMPLES:
                    result.unmatched.append(
                        {
                            "product_id": product.product_id,
                            "name": product.name,
                            "number": product.number,
                            "set_name": set_name,
                        }
                    )
                continue

            claimed.add(card.id)
            accepted.append(
                CardMatch(
                    product_id=product.product_id,
                    card_id=card.id,
                    set_id=set_id,
                    method=method,
                    confidence=confidence,
                )
            )
            if method is MatchMethod.NUMBER:
                result.number_matches += 1
            else:
                result.name_matches += 1

        result.matches.extend(accepted)
        result.total_matched += len(accepted)
        result.sets_processed += 1

        if accepted and not dry_run:
            await upsert_records(
                session,
                CardProductLink,
                [
                    {
                        "id": str(uuid.uuid4()),
                        "card_id": m.card_id,
                        "tcgcsv_product_id": m.product_id,
                        "match_confidence": m.confidence,
                        "match_method": m.method.value,
                    }
                    for m in accepted
                ],
                ("card_id", "tcgcsv_product_id"),
                preserve=("id",),
            )
            for m in accepted:
                await session.execute(
                    update(PricingCard)
                    .where(PricingCard.id == m.card_id)
                    .values(tcgplayer_product_id=m.product_id)
                )
            await session.commit()
            result.updated += len(accepted)

        logger.debug(
            "product_matching_set_done",
            set_id=set_id,
            group_id=group_id,
            products=len(products),
            cards=len(cards),
            matched=len(accepted),
            name_fallback=name_allowed,
        )

    logger.info(
        "product_matching_complete",
        game_id=game_id,
        total_matched=result.total_matched,
        number_matches=result.number_matches,
        name_matches=result.name_matches,
        unmatched=result.unmatched_count,
        dry_run=dry_run,
        stopped_early=result.stopped_early,
    )
    return result
