"""
Models package — export all SQLAlchemy models.
"""

from cardsync.models.base import Base
from cardsync.models.catalog import CatalogCategory, CatalogGroup, CatalogProduct
from cardsync.models.link import CardProductLink
from cardsync.models.pricing import PricingCard, PricingGame, PricingSet
from cardsync.models.sync_job import SyncJob
from cardsync.models.sync_log import SyncLogEntry

__all__ = [
    "Base",
    "CardProductLink",
    "CatalogCategory",
    "CatalogGroup",
    "CatalogProduct",
    "PricingCard",
    "PricingGame",
    "PricingSet",
    "SyncJob",
    "SyncLogEntry",
]
