"""KPI aggregation and query routing engine.

Builds filter predicates, routes each aggregation to the monthly rollups or
the raw facts, derives period comparisons and orchestrates cached,
cancellable multi-entity comparisons.
"""

from app.features.kpi.routes import router
from app.features.kpi.schemas import (
    ComparisonResult,
    FilterSpec,
    MetricRecord,
    PeriodRequest,
    QueryRoute,
)
from app.features.kpi.service import KpiService

__all__ = [
    "ComparisonResult",
    "FilterSpec",
    "KpiService",
    "MetricRecord",
    "PeriodRequest",
    "QueryRoute",
    "router",
]
