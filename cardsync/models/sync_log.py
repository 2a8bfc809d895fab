"""
Card Catalog Sync — Sync Log Model

Append-only audit trail of sync operations. Written by the engine, read only
by external observers.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import TIMESTAMP, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.models.base import Base, JSONType


class SyncLogEntry(Base):
    __tablename__ = "sync_logs"

    id: Mapped[str] = mapped_column(
        String, primary_key=True, default=lambda: str(uuid.uuid4())
    )
    operation_id: Mapped[str] = mapped_column(String, nullable=False)
    operation_type: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, comment="SyncStatus value")
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_sync_logs_operation", "operation_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<SyncLogEntry op={self.operation_id!r} status={self.status!r}>"
