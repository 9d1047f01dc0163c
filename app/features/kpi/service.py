"""KPI service: the engine's outbound facade.

Per aggregated result the flow is:

1. apply the caller's tenant scope and validate the filter (no I/O),
2. select the route per period (FAST rollups or FLEXIBLE raw facts),
3. look up the result cache, keyed by everything that shapes the answer,
4. on a miss, expand product groups / entities, build the predicate,
   aggregate each period and derive the comparison,
5. write the result back to the cache.

Entity comparisons run step 2-5 once per entity through the
``ComparisonOrchestrator``, each pipeline with its own database session.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from functools import partial
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.cache import get_cache_backend
from app.core.config import get_settings
from app.core.database import get_session_maker
from app.core.exceptions import ForbiddenError
from app.core.logging import get_logger
from app.features.kpi.aggregator import COLUMN_MAPS, MetricAggregator
from app.features.kpi.cache import ResultCache
from app.features.kpi.cancellation import CancellationToken
from app.features.kpi.orchestrator import ComparisonOrchestrator, get_orchestrator
from app.features.kpi.periods import compare, comparison_windows, default_comparison_period
from app.features.kpi.predicate import build, validate_filter_spec
from app.features.kpi.resolver import EntityResolver, scope_to_products
from app.features.kpi.routing import RouteDecision, RoutingPolicy, select_route
from app.features.kpi.schemas import (
    AccessContext,
    ComparisonEntity,
    ComparisonResponse,
    ComparisonResult,
    DateRange,
    Dimension,
    DimensionFilter,
    EntityComparisonResponse,
    EntityOutcome,
    FilterSpec,
    MetricRecord,
    MetricsResponse,
    PeriodRequest,
    QueryRoute,
)
from app.features.rollups.schemas import RollupFreshness
from app.features.rollups.service import get_freshness_provider

logger = get_logger(__name__)


class FreshnessSource(Protocol):
    async def get(self) -> Mapping[str, RollupFreshness]: ...


def apply_access_scope(spec: FilterSpec, access: AccessContext) -> FilterSpec:
    """Restrict the pharmacy dimension to the caller's tenant scope.

    Raises:
        ForbiddenError: If the filter names pharmacies outside the scope.
    """
    if access.tenant_scope_id is None:
        return spec
    pharmacy = spec.dimension(Dimension.PHARMACY)
    outside = pharmacy.included - {access.tenant_scope_id}
    if outside:
        raise ForbiddenError(
            "Filter names pharmacies outside the caller's scope",
            details={"pharmacies": sorted(outside)},
        )
    return spec.with_dimension(
        Dimension.PHARMACY,
        DimensionFilter(included=frozenset({access.tenant_scope_id}), excluded=pharmacy.excluded),
    )


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 1)


class KpiService:
    """Metrics, period comparisons and entity comparisons.

    Dependencies are injected so tests can substitute the cache backend,
    the freshness source and the session factory.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        cache: ResultCache,
        orchestrator: ComparisonOrchestrator,
        freshness: FreshnessSource,
        policy: RoutingPolicy,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session_maker = session_maker
        self.cache = cache
        self.orchestrator = orchestrator
        self.freshness = freshness
        self.policy = policy
        self._now = clock or (lambda: datetime.now(UTC))

    # =========================================================================
    # Public operations
    # =========================================================================

    async def get_metrics(
        self,
        period: DateRange,
        filter_spec: FilterSpec,
        access: AccessContext,
        force_refresh: bool = False,
        token: CancellationToken | None = None,
    ) -> MetricsResponse:
        """Aggregate every metric for one period.

        Args:
            period: Period to aggregate.
            filter_spec: Filter as requested by the caller.
            access: Caller role and tenant scope.
            force_refresh: Skip the cache read; the fresh result is written.
            token: Optional cancellation token.

        Returns:
            Metrics with route, cache and timing metadata.

        Raises:
            InvalidFilterError: If the filter is contradictory.
            ForbiddenError: If the filter leaves the tenant scope.
            AggregationError: If the data store fails.
        """
        started = time.perf_counter()
        token = token or CancellationToken()
        spec = apply_access_scope(filter_spec, access)
        validate_filter_spec(spec)

        freshness = await self.freshness.get()
        decision = self._select(period, spec, access, freshness, False, token)
        key = self.cache.key(
            "metrics",
            spec,
            PeriodRequest(start=period.start, end=period.end),
            (decision.route,),
            access,
        )

        if not force_refresh:
            cached = await self.cache.get(key, MetricRecord)
            if cached is not None:
                return MetricsResponse(
                    metrics=cached.metrics,
                    period=period,
                    route=decision.route,
                    cached=True,
                    query_time_ms=_elapsed_ms(started),
                )

        async with self.session_maker() as db:
            flat = await EntityResolver(db).flatten_product_groups(spec, token)
            record = await self._aggregate(db, decision.route, flat, period, token)

        await self.cache.put(key, record)
        query_time_ms = _elapsed_ms(started)
        logger.info(
            "kpi.metrics_computed",
            route=decision.route.value,
            days=period.days,
            query_time_ms=query_time_ms,
        )
        return MetricsResponse(
            metrics=record.metrics,
            period=period,
            route=decision.route,
            cached=False,
            query_time_ms=query_time_ms,
        )

    async def get_comparison(
        self,
        period: PeriodRequest,
        filter_spec: FilterSpec,
        access: AccessContext,
        force_refresh: bool = False,
        token: CancellationToken | None = None,
    ) -> ComparisonResponse:
        """Compare a period with its comparison period.

        The comparison window defaults to the same window one year back.

        Raises:
            InvalidFilterError: If the filter is contradictory.
            ForbiddenError: If the filter leaves the tenant scope.
            AggregationError: If the data store fails.
        """
        started = time.perf_counter()
        token = token or CancellationToken()
        period = default_comparison_period(period)
        current_period, comparison_period = comparison_windows(period)
        spec = apply_access_scope(filter_spec, access)
        validate_filter_spec(spec)

        freshness = await self.freshness.get()
        current = self._select(current_period, spec, access, freshness, False, token)
        previous = self._select(comparison_period, spec, access, freshness, False, token)
        key = self.cache.key(
            "comparison", spec, period, (current.route, previous.route), access
        )

        result: ComparisonResult | None = None
        if not force_refresh:
            result = await self.cache.get(key, ComparisonResult)
        cached = result is not None

        if result is None:
            async with self.session_maker() as db:
                flat = await EntityResolver(db).flatten_product_groups(spec, token)
                current_record = await self._aggregate(
                    db, current.route, flat, current_period, token
                )
                previous_record = await self._aggregate(
                    db, previous.route, flat, comparison_period, token
                )
            result = compare(current_record, previous_record)
            await self.cache.put(key, result)

        return ComparisonResponse(
            result=result,
            period=period,
            route=current.route,
            comparison_route=previous.route,
            cached=cached,
            query_time_ms=_elapsed_ms(started),
        )

    async def compare_entities(
        self,
        entities: list[ComparisonEntity],
        period: PeriodRequest,
        filter_spec: FilterSpec,
        access: AccessContext,
        force_refresh: bool = False,
        slot: str = "default",
    ) -> EntityComparisonResponse:
        """Compare up to three entities side by side, each against its N-1.

        Entities are computed concurrently. A failing entity gets an error
        marker; the others still return. A newer call on the same slot (for
        the same tenant and role) supersedes this one.

        Raises:
            InvalidFilterError: If the shared filter is contradictory.
            ForbiddenError: If the filter leaves the tenant scope.
            ComparisonSupersededError: If superseded before completion.
        """
        started = time.perf_counter()
        period = default_comparison_period(period)
        spec = apply_access_scope(filter_spec, access)
        validate_filter_spec(spec)
        freshness = await self.freshness.get()

        pipeline = partial(
            self._entity_pipeline,
            period=period,
            spec=spec,
            access=access,
            force_refresh=force_refresh,
            freshness=freshness,
        )
        slot_key = f"{access.tenant_scope_id or '*'}:{access.role}:{slot}"
        result = await self.orchestrator.compare_entities(slot_key, entities, pipeline)

        return EntityComparisonResponse(
            results=result.outcomes,
            period=period,
            partial=result.partial,
            generation=result.generation,
            query_time_ms=_elapsed_ms(started),
        )

    # =========================================================================
    # Pipeline steps
    # =========================================================================

    async def _entity_pipeline(
        self,
        entity: ComparisonEntity,
        token: CancellationToken,
        *,
        period: PeriodRequest,
        spec: FilterSpec,
        access: AccessContext,
        force_refresh: bool,
        freshness: Mapping[str, RollupFreshness],
    ) -> EntityOutcome:
        current_period, comparison_period = comparison_windows(period)
        current = self._select(current_period, spec, access, freshness, True, token)
        previous = self._select(comparison_period, spec, access, freshness, True, token)
        key = self.cache.key(
            "comparison",
            spec,
            period,
            (current.route, previous.route),
            access,
            entity=entity,
        )

        result: ComparisonResult | None = None
        if not force_refresh:
            result = await self.cache.get(key, ComparisonResult)
        cached = result is not None

        if result is None:
            async with self.session_maker() as db:
                resolver = EntityResolver(db)
                flat = await resolver.flatten_product_groups(spec, token)
                resolved = await resolver.resolve_entity(entity, token)
                scoped = scope_to_products(
                    flat, resolved.resolved_product_codes or frozenset(), entity.id
                )
                current_record = await self._aggregate(
                    db, current.route, scoped, current_period, token
                )
                previous_record = await self._aggregate(
                    db, previous.route, scoped, comparison_period, token
                )
            result = compare(current_record, previous_record)
            await self.cache.put(key, result)

        return EntityOutcome(
            entity_id=entity.id,
            kind=entity.kind,
            label=entity.label,
            result=result,
            route=current.route,
            comparison_route=previous.route,
            cached=cached,
        )

    def _select(
        self,
        period: DateRange,
        spec: FilterSpec,
        access: AccessContext,
        freshness: Mapping[str, RollupFreshness],
        has_entity_filter: bool,
        token: CancellationToken,
    ) -> RouteDecision:
        decision = select_route(
            period,
            has_entity_filter,
            access.role,
            spec,
            freshness,
            self.policy,
            self._now(),
            token,
        )
        logger.info(
            "kpi.route_selected",
            route=decision.route.value,
            reason=decision.reason,
            period_start=str(period.start),
            period_end=str(period.end),
        )
        return decision

    async def _aggregate(
        self,
        db: AsyncSession,
        route: QueryRoute,
        spec: FilterSpec,
        period: DateRange,
        token: CancellationToken,
    ) -> MetricRecord:
        predicate = build(spec, COLUMN_MAPS[route], token)
        return await MetricAggregator(db).aggregate(route, predicate, period, token)


def get_kpi_service() -> KpiService:
    """Build the service from the process-wide singletons."""
    settings = get_settings()
    return KpiService(
        session_maker=get_session_maker(),
        cache=ResultCache(
            get_cache_backend(),
            ttl_seconds=settings.cache_ttl_seconds,
            key_prefix=settings.cache_key_prefix,
        ),
        orchestrator=get_orchestrator(),
        freshness=get_freshness_provider(),
        policy=RoutingPolicy.from_settings(settings),
    )
