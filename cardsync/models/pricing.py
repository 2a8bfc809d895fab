"""
Card Catalog Sync — Pricing Feed Models

Games, sets and cards from the JustTCG pricing API, keyed by local uuids with
the upstream string ids kept unique. These are the "local" entities that
entity resolution links to catalog groups and products.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import FLOAT, INTEGER, TIMESTAMP, String, func
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.models.base import Base, JSONType


def _uuid() -> str:
    return str(uuid.uuid4())


class PricingGame(Base):
    __tablename__ = "games"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    jt_game_id: Mapped[str] = mapped_column(
        String, unique=True, nullable=False, comment="JustTCG game id"
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    slug: Mapped[str | None] = mapped_column(String, nullable=True)
    tcgcsv_category_id: Mapped[int | None] = mapped_column(
        INTEGER, nullable=True, comment="Catalog category this game maps to"
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<PricingGame jt_game_id={self.jt_game_id!r} name={self.name!r}>"


class PricingSet(Base):
    """
    A set from the pricing feed.

    tcgcsv_group_id is the set match link, written by entity resolution.
    """

    __tablename__ = "sets"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    jt_set_id: Mapped[str] = mapped_column(
        String, unique=True, nullable=False, comment="JustTCG set id"
    )
    game_id: Mapped[str] = mapped_column(
        String, nullable=False, index=True, comment="games.id"
    )
    code: Mapped[str | None] = mapped_column(String, nullable=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    release_date: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    total_cards: Mapped[int | None] = mapped_column(INTEGER, nullable=True)
    tcgcsv_group_id: Mapped[int | None] = mapped_column(
        INTEGER, nullable=True, index=True, comment="Linked catalog group"
    )
    match_confidence: Mapped[float | None] = mapped_column(
        FLOAT, nullable=True, comment="Score recorded when the link was applied"
    )
    match_method: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<PricingSet jt_set_id={self.jt_set_id!r} name={self.name!r} "
            f"group={self.tcgcsv_group_id}>"
        )


class PricingCard(Base):
    __tablename__ = "cards"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    jt_card_id: Mapped[str] = mapped_column(
        String, unique=True, nullable=False, comment="JustTCG card id"
    )
    set_id: Mapped[str] = mapped_column(String, nullable=False, index=True, comment="sets.id")
    game_id: Mapped[str] = mapped_column(String, nullable=False, comment="games.id")
    name: Mapped[str] = mapped_column(String, nullable=False)
    number: Mapped[str | None] = mapped_column(String, nullable=True)
    rarity: Mapped[str | None] = mapped_column(String, nullable=True)
    tcgplayer_product_id: Mapped[int | None] = mapped_column(
        INTEGER, nullable=True, comment="Denormalized card/product link"
    )
    data: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType, nullable=True, comment="Raw pricing payload (variants, prices)"
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<PricingCard jt_card_id={self.jt_card_id!r} name={self.name!r} "
            f"number={self.number!r}>"
        )
