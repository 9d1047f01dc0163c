"""Pydantic schemas for rollup refresh and freshness."""

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from app.features.rollups.models import RefreshStatus


class RollupFreshness(BaseModel):
    """Coverage of one rollup as seen by route selection."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    name: str
    status: RefreshStatus
    refreshed_at: datetime | None = None
    covered_until: date | None = None


class RollupRefreshResult(BaseModel):
    """Outcome of refreshing one rollup."""

    name: str
    status: RefreshStatus
    concurrent: bool = Field(
        ..., description="False when the concurrent refresh failed and a plain refresh was used."
    )
    duration_ms: int = Field(..., ge=0)
    covered_until: date | None = None
    error_message: str | None = None


class RollupRefreshResponse(BaseModel):
    """Outcome of a full refresh run, in refresh order."""

    results: list[RollupRefreshResult]
    succeeded: bool = Field(..., description="True when every rollup refreshed.")


class RollupStatusResponse(BaseModel):
    """Freshness of every known rollup."""

    rollups: list[RollupFreshness]
