"""Pydantic schemas for the KPI engine.

Filter specifications, periods, metric records and comparison results are
immutable (frozen=True) value objects: one instance describes one
aggregation and is safe to share between concurrent entity pipelines.
"""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

# =============================================================================
# Enums
# =============================================================================


class Dimension(str, Enum):
    """Orthogonal filter dimensions."""

    PHARMACY = "pharmacy"
    LABORATORY = "laboratory"
    CATEGORY = "category"
    PRODUCT = "product"
    GENERIC_GROUP = "generic_group"


class PriceField(str, Enum):
    """Product price attributes that accept a [min, max] range filter.

    Rates are expressed in percent.
    """

    PURCHASE_PRICE_NET = "purchase_price_net"
    PURCHASE_PRICE_GROSS = "purchase_price_gross"
    SELL_PRICE = "sell_price"
    DISCOUNT_RATE = "discount_rate"
    MARGIN_RATE = "margin_rate"


class ScalarField(str, Enum):
    """Non-dimension product attributes a predicate can constrain."""

    TVA_RATE = "tva_rate"
    GENERIC_STATUS = "generic_status"
    REIMBURSABLE = "reimbursable"


class GenericStatus(str, Enum):
    """Generic-drug status filter.

    ALL applies no constraint; BOTH keeps products that belong to a generic
    group either as generic or as referent.
    """

    GENERIC = "GENERIC"
    REFERENT = "REFERENT"
    BOTH = "BOTH"
    ALL = "ALL"


class ReimbursementStatus(str, Enum):
    """Social-security reimbursement filter."""

    ALL = "ALL"
    REIMBURSED = "REIMBURSED"
    NOT_REIMBURSED = "NOT_REIMBURSED"


class ExclusionMode(str, Enum):
    """How per-dimension exclusion sets are applied.

    EXCLUDE: exclusion sets remove members (exclusion wins over inclusion).
    INCLUDE: exclusion sets are ignored.
    ONLY: keep only rows that belong to at least one non-pharmacy exclusion
    set, e.g. "show me just what I would otherwise exclude".
    """

    EXCLUDE = "EXCLUDE"
    INCLUDE = "INCLUDE"
    ONLY = "ONLY"


class MetricUnit(str, Enum):
    """Unit of a metric value."""

    CURRENCY = "currency"
    COUNT = "count"
    PERCENTAGE = "percentage"
    DAYS = "days"


class QueryRoute(str, Enum):
    """Physical execution route for an aggregation."""

    FAST = "FAST"
    FLEXIBLE = "FLEXIBLE"


class Trend(str, Enum):
    """Direction of a metric between two periods."""

    UP = "up"
    DOWN = "down"
    NEUTRAL = "neutral"


class EntityKind(str, Enum):
    """Kind of a comparison entity."""

    PRODUCT = "product"
    LABORATORY = "laboratory"
    CATEGORY = "category"


# =============================================================================
# Filter Specification
# =============================================================================


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class DimensionFilter(_Frozen):
    """Inclusion and exclusion sets for one dimension.

    An empty ``included`` set means unrestricted, never "match nothing".
    """

    included: frozenset[str] = Field(default_factory=frozenset)
    excluded: frozenset[str] = Field(default_factory=frozenset)

    @property
    def is_empty(self) -> bool:
        return not self.included and not self.excluded


class PriceRange(_Frozen):
    """Inclusive bounds; a missing bound is open."""

    min: Decimal | None = None
    max: Decimal | None = None

    @property
    def is_open(self) -> bool:
        return self.min is None and self.max is None


class ProductGroupRef(_Frozen):
    """A product-picker selection made by laboratory or category."""

    kind: EntityKind
    id: str = Field(..., min_length=1)


class FilterSpec(_Frozen):
    """Complete, explicit filter for one aggregation.

    Every toggle that changes the result is a field here; nothing is read
    from ambient state.
    """

    pharmacy: DimensionFilter = Field(default_factory=DimensionFilter)
    laboratory: DimensionFilter = Field(default_factory=DimensionFilter)
    category: DimensionFilter = Field(default_factory=DimensionFilter)
    product: DimensionFilter = Field(default_factory=DimensionFilter)
    generic_group: DimensionFilter = Field(default_factory=DimensionFilter)

    price_ranges: dict[PriceField, PriceRange] = Field(default_factory=dict)
    tva_rates: frozenset[Decimal] = Field(default_factory=frozenset)
    generic_status: GenericStatus = GenericStatus.ALL
    reimbursement_status: ReimbursementStatus = ReimbursementStatus.ALL
    exclusion_mode: ExclusionMode = ExclusionMode.EXCLUDE
    product_groups: frozenset[ProductGroupRef] = Field(default_factory=frozenset)

    def dimension(self, dimension: Dimension) -> DimensionFilter:
        """Return the filter of one dimension."""
        filt: DimensionFilter = getattr(self, dimension.value)
        return filt

    def with_dimension(self, dimension: Dimension, filt: DimensionFilter) -> FilterSpec:
        """Return a copy with one dimension replaced."""
        return self.model_copy(update={dimension.value: filt})

    def canonical(self) -> dict[str, Any]:
        """Order-independent JSON-ready representation used for cache keys."""
        dimensions = {
            dim.value: {
                "included": sorted(self.dimension(dim).included),
                "excluded": sorted(self.dimension(dim).excluded),
            }
            for dim in Dimension
        }
        return {
            "dimensions": dimensions,
            "price_ranges": {
                field.value: [
                    None if rng.min is None else str(rng.min),
                    None if rng.max is None else str(rng.max),
                ]
                for field, rng in sorted(self.price_ranges.items(), key=lambda kv: kv[0].value)
            },
            "tva_rates": sorted(str(rate.normalize()) for rate in self.tva_rates),
            "generic_status": self.generic_status.value,
            "reimbursement_status": self.reimbursement_status.value,
            "exclusion_mode": self.exclusion_mode.value,
            "product_groups": sorted([g.kind.value, g.id] for g in self.product_groups),
        }


# =============================================================================
# Periods
# =============================================================================


class DateRange(_Frozen):
    """Closed date interval [start, end]."""

    start: date
    end: date

    @model_validator(mode="after")
    def validate_order(self) -> DateRange:
        if self.start > self.end:
            raise ValueError("start must be on or before end")
        return self

    @property
    def days(self) -> int:
        """Number of calendar days, both bounds included."""
        return (self.end - self.start).days + 1

    @property
    def is_month_aligned(self) -> bool:
        """True when the range starts on a 1st and ends on a month's last day."""
        return self.start.day == 1 and (self.end + timedelta(days=1)).day == 1


class PeriodRequest(_Frozen):
    """Main window and optional, independent comparison window."""

    start: date = Field(..., description="Start of the main period (inclusive).")
    end: date = Field(..., description="End of the main period (inclusive).")
    comparison_start: date | None = Field(
        None, description="Start of the comparison period (inclusive)."
    )
    comparison_end: date | None = Field(
        None, description="End of the comparison period (inclusive)."
    )

    @model_validator(mode="after")
    def validate_bounds(self) -> PeriodRequest:
        if self.start > self.end:
            raise ValueError("start must be on or before end")
        if (self.comparison_start is None) != (self.comparison_end is None):
            raise ValueError("comparison_start and comparison_end must be given together")
        if (
            self.comparison_start is not None
            and self.comparison_end is not None
            and self.comparison_start > self.comparison_end
        ):
            raise ValueError("comparison_start must be on or before comparison_end")
        return self

    @property
    def current(self) -> DateRange:
        return DateRange(start=self.start, end=self.end)

    @property
    def comparison(self) -> DateRange | None:
        if self.comparison_start is None or self.comparison_end is None:
            return None
        return DateRange(start=self.comparison_start, end=self.comparison_end)


# =============================================================================
# Metrics and Comparisons
# =============================================================================


class MetricValue(_Frozen):
    """One metric value; None means "not computable", never zero."""

    value: Decimal | None
    unit: MetricUnit


class MetricRecord(_Frozen):
    """Metric key to value map for one period."""

    metrics: dict[str, MetricValue]

    def get(self, key: str) -> MetricValue | None:
        return self.metrics.get(key)


TREND_DEAD_BAND = Decimal("0.5")


class ComparisonResult(BaseModel):
    """Current metrics, optional previous metrics and their deltas.

    ``trend`` is derived from ``delta_percent`` on access and is never
    read back from a cached payload.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    current: dict[str, MetricValue]
    previous: dict[str, MetricValue] | None = None
    delta_absolute: dict[str, Decimal | None] | None = None
    delta_percent: dict[str, Decimal | None] | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def trend(self) -> dict[str, Trend]:
        percents = self.delta_percent or {}
        trends: dict[str, Trend] = {}
        for key in self.current:
            pct = percents.get(key)
            if pct is None:
                trends[key] = Trend.NEUTRAL
            elif pct > TREND_DEAD_BAND:
                trends[key] = Trend.UP
            elif pct < -TREND_DEAD_BAND:
                trends[key] = Trend.DOWN
            else:
                trends[key] = Trend.NEUTRAL
        return trends


class ComparisonEntity(_Frozen):
    """One side of a multi-entity comparison."""

    id: str = Field(..., min_length=1, max_length=100, description="Caller-chosen entity id.")
    kind: EntityKind
    source_ids: frozenset[str] = Field(
        ...,
        min_length=1,
        description="Product codes, laboratory names or category names, depending on kind.",
    )
    label: str | None = Field(None, max_length=200)
    resolved_product_codes: frozenset[str] | None = Field(
        None,
        description="Member product codes, set by entity expansion; caller values are ignored.",
    )

    def canonical(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "source_ids": sorted(self.source_ids)}


class AccessContext(_Frozen):
    """Caller role and tenant scope, set by the upstream gateway."""

    role: str = "analyst"
    tenant_scope_id: str | None = None


# =============================================================================
# Request Schemas
# =============================================================================


class MetricsRequest(BaseModel):
    """Metrics for a single period."""

    model_config = ConfigDict(extra="forbid")

    period: DateRange = Field(..., description="Period to aggregate (inclusive bounds).")
    filters: FilterSpec = Field(default_factory=FilterSpec)
    force_refresh: bool = Field(
        False, description="Skip the cache read and write the fresh result through."
    )


class ComparisonRequest(BaseModel):
    """Metrics for a period compared with another period.

    When no comparison window is given, the same window one year earlier
    is used.
    """

    model_config = ConfigDict(extra="forbid")

    period: PeriodRequest
    filters: FilterSpec = Field(default_factory=FilterSpec)
    force_refresh: bool = False


class EntityComparisonRequest(BaseModel):
    """Side-by-side comparison of up to three entities."""

    model_config = ConfigDict(extra="forbid")

    entities: list[ComparisonEntity] = Field(..., min_length=1, max_length=3)
    period: PeriodRequest
    filters: FilterSpec = Field(default_factory=FilterSpec)
    force_refresh: bool = False
    slot: str = Field(
        "default",
        min_length=1,
        max_length=100,
        description="Comparison slot; a newer request on the same slot supersedes an older one.",
    )

    @model_validator(mode="after")
    def validate_unique_ids(self) -> EntityComparisonRequest:
        ids = [entity.id for entity in self.entities]
        if len(ids) != len(set(ids)):
            raise ValueError("entity ids must be unique")
        return self


# =============================================================================
# Response Schemas
# =============================================================================


class MetricsResponse(BaseModel):
    """Metrics for one period with execution metadata."""

    metrics: dict[str, MetricValue]
    period: DateRange
    route: QueryRoute = Field(..., description="Execution route used (FAST rollup or FLEXIBLE).")
    cached: bool = Field(..., description="True when served from the result cache.")
    query_time_ms: float = Field(..., ge=0)


class ComparisonResponse(BaseModel):
    """Comparison of two periods with execution metadata."""

    result: ComparisonResult
    period: PeriodRequest = Field(..., description="Resolved periods, comparison included.")
    route: QueryRoute
    comparison_route: QueryRoute
    cached: bool
    query_time_ms: float = Field(..., ge=0)


class EntityError(BaseModel):
    """Error marker for one failed entity pipeline."""

    code: str
    message: str
    retryable: bool = False


class EntityOutcome(BaseModel):
    """Result or error of one entity pipeline."""

    entity_id: str
    kind: EntityKind
    label: str | None = None
    result: ComparisonResult | None = None
    error: EntityError | None = None
    route: QueryRoute | None = None
    comparison_route: QueryRoute | None = None
    cached: bool = False


class EntityComparisonResponse(BaseModel):
    """Per-entity outcomes of a multi-entity comparison."""

    results: dict[str, EntityOutcome]
    period: PeriodRequest
    partial: bool = Field(..., description="True when at least one entity failed.")
    generation: int = Field(..., ge=1)
    query_time_ms: float = Field(..., ge=0)
