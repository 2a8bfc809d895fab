"""
Card Catalog Sync — Sync Job Model

One row per bulk operation. succeeded/failed group-id lists grow as groups
complete; the failed list drives "retry failed only" runs. A row with
finished_at set is immutable (enforced by SyncJobTracker).
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import INTEGER, TIMESTAMP, String, func
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.models.base import Base, JSONType


class SyncJob(Base):
    __tablename__ = "tcgcsv_jobs"

    id: Mapped[str] = mapped_column(
        String, primary_key=True, default=lambda: str(uuid.uuid4())
    )
    job_type: Mapped[str] = mapped_column(String, nullable=False, comment="JobType value")
    category_id: Mapped[int | None] = mapped_column(INTEGER, nullable=True, index=True)
    total_groups: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    succeeded_group_ids: Mapped[list[int]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    failed_group_ids: Mapped[list[int]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    started_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None

    def __repr__(self) -> str:
        return (
            f"<SyncJob id={self.id!r} type={self.job_type!r} "
            f"ok={len(self.succeeded_group_ids or [])} "
            f"failed={len(self.failed_group_ids or [])}>"
        )
