"""API routes for KPI metrics and comparisons.

The reporting layer calls these endpoints with the caller's role and tenant
scope in ``X-Access-Role`` / ``X-Tenant-Scope``; authentication happens
upstream in the gateway.
"""

from fastapi import APIRouter, Depends, Header

from app.core.logging import get_logger
from app.features.kpi.schemas import (
    AccessContext,
    ComparisonRequest,
    ComparisonResponse,
    EntityComparisonRequest,
    EntityComparisonResponse,
    MetricsRequest,
    MetricsResponse,
)
from app.features.kpi.service import KpiService, get_kpi_service

logger = get_logger(__name__)

router = APIRouter(prefix="/kpis", tags=["kpis"])


def get_access_context(
    x_access_role: str | None = Header(None, alias="X-Access-Role"),
    x_tenant_scope: str | None = Header(None, alias="X-Tenant-Scope"),
) -> AccessContext:
    """Read the caller's role and tenant scope from gateway headers."""
    return AccessContext(
        role=x_access_role or "analyst",
        tenant_scope_id=x_tenant_scope or None,
    )


# =============================================================================
# Metrics
# =============================================================================


@router.post(
    "/metrics",
    response_model=MetricsResponse,
    summary="Aggregate KPIs for a period",
    description="""
Aggregate every KPI for one period under a filter.

**Metrics** (stable keys): `revenue`, `revenue_net`, `quantity_sold`,
`purchase_amount`, `quantity_purchased`, `gross_margin`, `gross_margin_rate`,
`stock_value`, `stock_quantity`, `days_of_stock_cover`, `distinct_references`,
`pharmacy_count`. A `null` value means "not computable" (e.g. margin rate
with zero net sales), which is distinct from a computed `0`.

**Filters**: per dimension (`pharmacy`, `laboratory`, `category`, `product`,
`generic_group`) an `included` and an `excluded` set. An empty `included`
set means unrestricted; exclusion always wins. Scalar constraints:
`price_ranges`, `tva_rates`, `generic_status`, `reimbursement_status`,
`exclusion_mode`, `product_groups`.

**Routing**: whole-month periods with rollup-compatible filters are served
from the monthly rollups (`route: FAST`), everything else from raw facts
(`route: FLEXIBLE`). Both return the same numbers.

**Caching**: results are cached for 12 hours; `force_refresh: true` skips
the cache read and refreshes the entry.

Example:
```json
{
  "period": {"start": "2024-01-01", "end": "2024-03-31"},
  "filters": {
    "laboratory": {"included": ["SANOFI"], "excluded": []},
    "generic_status": "GENERIC"
  }
}
```

**Errors**: 422 `INVALID_FILTER` for contradictory filters, 403 when the
filter names pharmacies outside the tenant scope, 503 `AGGREGATION_ERROR`
(retryable) when the data store fails.
""",
)
async def get_metrics(
    request: MetricsRequest,
    access: AccessContext = Depends(get_access_context),
    service: KpiService = Depends(get_kpi_service),
) -> MetricsResponse:
    """Aggregate KPIs for one period.

    Args:
        request: Period, filters and cache bypass flag.
        access: Caller role and tenant scope.
        service: KPI service.

    Returns:
        Metrics with execution metadata.
    """
    return await service.get_metrics(
        period=request.period,
        filter_spec=request.filters,
        access=access,
        force_refresh=request.force_refresh,
    )


# =============================================================================
# Comparisons
# =============================================================================


@router.post(
    "/comparison",
    response_model=ComparisonResponse,
    summary="Compare a period with a comparison period",
    description="""
Aggregate KPIs for a period and a comparison period and derive deltas.

If `comparison_start` / `comparison_end` are omitted, the same window one
year earlier is used (month ends are preserved across leap years).

**Per metric**:
- `delta_absolute` = current - previous
- `delta_percent` = delta / |previous| x 100, `null` when previous is 0 or null
- `trend`: `up` above +0.5 %, `down` below -0.5 %, otherwise `neutral`
""",
)
async def get_comparison(
    request: ComparisonRequest,
    access: AccessContext = Depends(get_access_context),
    service: KpiService = Depends(get_kpi_service),
) -> ComparisonResponse:
    """Compare two periods under one filter."""
    return await service.get_comparison(
        period=request.period,
        filter_spec=request.filters,
        access=access,
        force_refresh=request.force_refresh,
    )


@router.post(
    "/entities/compare",
    response_model=EntityComparisonResponse,
    summary="Compare up to three entities",
    description="""
Compare up to three products, laboratories or categories side by side,
each against its comparison period (N-1 by default).

Laboratories and categories are expanded to their products and
intersected with the product filter. Entities are computed concurrently;
an entity that fails gets an `error` marker while the others still return
(`partial: true`).

**Slots**: a new request on the same `slot` cancels the one still running
for the same role and tenant; the superseded request answers 409
`COMPARISON_SUPERSEDED`.

Example:
```json
{
  "entities": [
    {"id": "a", "kind": "laboratory", "source_ids": ["SANOFI"]},
    {"id": "b", "kind": "laboratory", "source_ids": ["BIOGARAN"]}
  ],
  "period": {"start": "2024-01-01", "end": "2024-06-30"},
  "slot": "lab-comparison"
}
```
""",
)
async def compare_entities(
    request: EntityComparisonRequest,
    access: AccessContext = Depends(get_access_context),
    service: KpiService = Depends(get_kpi_service),
) -> EntityComparisonResponse:
    """Compare entities side by side."""
    return await service.compare_entities(
        entities=request.entities,
        period=request.period,
        filter_spec=request.filters,
        access=access,
        force_refresh=request.force_refresh,
        slot=request.slot,
    )
