"""
SQLAlchemy 2.0 async DeclarativeBase for Card Catalog Sync.

All models inherit from this Base. JSON columns use JSONType so the schema
builds on PostgreSQL (JSONB) and on SQLite.
"""

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all Card Catalog Sync database models."""
    pass
