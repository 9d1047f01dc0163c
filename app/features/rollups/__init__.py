"""Materialized rollups backing the FAST query route."""

from app.features.rollups.catalog import ROLLUP_FILTER_COLUMNS, ROLLUPS, RollupDefinition
from app.features.rollups.models import RefreshStatus, RollupRefresh
from app.features.rollups.routes import router
from app.features.rollups.schemas import RollupFreshness
from app.features.rollups.service import (
    RollupFreshnessProvider,
    RollupService,
    get_freshness_provider,
)

__all__ = [
    "ROLLUPS",
    "ROLLUP_FILTER_COLUMNS",
    "RefreshStatus",
    "RollupDefinition",
    "RollupFreshness",
    "RollupFreshnessProvider",
    "RollupRefresh",
    "RollupService",
    "get_freshness_provider",
    "router",
]
