"""
Card Catalog Sync — Catalog Feed Models

Categories, groups and products mirrored from the TCGCSV catalog feed.
Keys are the upstream numeric ids; rows are upserted, never deleted.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import BOOLEAN, INTEGER, TIMESTAMP, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.models.base import Base, JSONType


class CatalogCategory(Base):
    """A top-level game (e.g. category 3 = Pokemon)."""

    __tablename__ = "tcgcsv_categories"

    category_id: Mapped[int] = mapped_column(
        INTEGER, primary_key=True, autoincrement=False, comment="Upstream categoryId"
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    seo_category_name: Mapped[str | None] = mapped_column(String, nullable=True)
    slug: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        comment="Last time this row was written by a sync",
    )

    def __repr__(self) -> str:
        return f"<CatalogCategory id={self.category_id} name={self.name!r}>"


class CatalogGroup(Base):
    """
    An expansion / product line within a category.

    Identity (group_id) is immutable; name and flags follow the upstream.
    """

    __tablename__ = "tcgcsv_groups"

    group_id: Mapped[int] = mapped_column(
        INTEGER, primary_key=True, autoincrement=False, comment="Upstream groupId"
    )
    category_id: Mapped[int] = mapped_column(INTEGER, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    abbreviation: Mapped[str | None] = mapped_column(String, nullable=True)
    release_date: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    is_supplemental: Mapped[bool | None] = mapped_column(BOOLEAN, nullable=True)
    sealed_product: Mapped[bool | None] = mapped_column(BOOLEAN, nullable=True)
    url_slug: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<CatalogGroup id={self.group_id} category={self.category_id} "
            f"name={self.name!r}>"
        )


class CatalogProduct(Base):
    """
    A single sellable product (card or sealed item).

    group_id is a soft reference: products may arrive before their group.
    """

    __tablename__ = "tcgcsv_products"

    product_id: Mapped[int] = mapped_column(
        INTEGER, primary_key=True, autoincrement=False, comment="Upstream productId"
    )
    group_id: Mapped[int] = mapped_column(INTEGER, nullable=False)
    category_id: Mapped[int] = mapped_column(
        INTEGER, nullable=False, comment="Denormalized from the group"
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    clean_name: Mapped[str | None] = mapped_column(String, nullable=True)
    number: Mapped[str | None] = mapped_column(String, nullable=True)
    rarity: Mapped[str | None] = mapped_column(String, nullable=True)
    product_type: Mapped[str | None] = mapped_column(String, nullable=True)
    url_slug: Mapped[str | None] = mapped_column(String, nullable=True)
    extended_data: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType, nullable=True, comment="Every other non-empty upstream column"
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        Index("ix_tcgcsv_products_group", "group_id"),
        Index("ix_tcgcsv_products_category", "category_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<CatalogProduct id={self.product_id} group={self.group_id} "
            f"name={self.name!r} number={self.number!r}>"
        )
