"""
Card Catalog Sync — Card/Product Link Model

One row per (local card, catalog product) pair written by entity resolution.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BOOLEAN, FLOAT, INTEGER, TIMESTAMP, String, UniqueConstraint, false, func
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.models.base import Base
from cardsync.models.pricing import _uuid


class CardProductLink(Base):
    __tablename__ = "card_product_links"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    card_id: Mapped[str] = mapped_column(String, nullable=False, comment="cards.id")
    tcgcsv_product_id: Mapped[int] = mapped_column(INTEGER, nullable=False)
    match_confidence: Mapped[float] = mapped_column(
        FLOAT, nullable=False, comment="Score in [0, 1] recorded at match time"
    )
    match_method: Mapped[str] = mapped_column(
        String, nullable=False, comment="'number' or 'name'"
    )
    verified: Mapped[bool] = mapped_column(
        BOOLEAN, nullable=False, default=False, server_default=false(),
        comment="Set by a human reviewer",
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("card_id", "tcgcsv_product_id", name="uq_card_product_link"),
    )

    def __repr__(self) -> str:
        return (
            f"<CardProductLink card={self.card_id!r} product={self.tcgcsv_product_id} "
            f"method={self.match_method!r} confidence={self.match_confidence}>"
        )
