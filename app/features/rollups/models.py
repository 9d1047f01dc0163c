"""ORM model recording the refresh state of each materialized rollup."""

from __future__ import annotations

import datetime
from enum import Enum

from sqlalchemy import Boolean, CheckConstraint, Date, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class RefreshStatus(str, Enum):
    """Outcome of the last refresh attempt."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RollupRefresh(Base):
    """Refresh bookkeeping, one row per rollup.

    Attributes:
        name: Materialized view name (primary key).
        status: Outcome of the last attempt.
        refreshed_at: When the rollup was last refreshed successfully.
        covered_until: Last fact date included in the rollup at that refresh.
        concurrent: Whether the last refresh ran CONCURRENTLY.
        duration_ms: Wall time of the last attempt.
        error_message: Failure details if status=FAILED.
        updated_at: Row write time, set by the database.
    """

    __tablename__ = "rollup_refresh"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), default=RefreshStatus.SUCCEEDED.value)
    refreshed_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    covered_until: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    concurrent: Mapped[bool] = mapped_column(Boolean, default=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('succeeded', 'failed')",
            name="ck_rollup_refresh_valid_status",
        ),
    )
