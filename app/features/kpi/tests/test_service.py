"""Tests for KpiService with a fake aggregator and an in-memory cache."""

import asyncio
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import ProgrammingError

from app.core.exceptions import (
    AggregationError,
    ComparisonSupersededError,
    ForbiddenError,
    InvalidFilterError,
)
from app.features.kpi.orchestrator import ComparisonOrchestrator
from app.features.kpi.routing import RoutingPolicy
from app.features.kpi.schemas import (
    AccessContext,
    ComparisonEntity,
    DateRange,
    DimensionFilter,
    EntityKind,
    FilterSpec,
    PeriodRequest,
    ProductGroupRef,
    QueryRoute,
    Trend,
)
from app.features.kpi.service import KpiService, apply_access_scope
from app.features.rollups.service import RollupFreshnessProvider

Q1_2024 = DateRange(start=date(2024, 1, 1), end=date(2024, 3, 31))
Q1_2023 = DateRange(start=date(2023, 1, 1), end=date(2023, 3, 31))
ANALYST = AccessContext(role="analyst")


def _lab(entity_id: str, name: str) -> ComparisonEntity:
    return ComparisonEntity(
        id=entity_id, kind=EntityKind.LABORATORY, source_ids=frozenset({name}), label=name
    )


class TestApplyAccessScope:
    """Tests for tenant scoping."""

    def test_no_scope_is_identity(self):
        spec = FilterSpec()

        assert apply_access_scope(spec, ANALYST) is spec

    def test_scope_restricts_pharmacies(self):
        access = AccessContext(role="pharmacist", tenant_scope_id="ph-1")

        scoped = apply_access_scope(FilterSpec(), access)

        assert scoped.pharmacy.included == {"ph-1"}

    def test_scope_keeps_exclusions(self):
        access = AccessContext(role="pharmacist", tenant_scope_id="ph-1")
        spec = FilterSpec(pharmacy=DimensionFilter(excluded=frozenset({"ph-2"})))

        scoped = apply_access_scope(spec, access)

        assert scoped.pharmacy.excluded == {"ph-2"}

    def test_pharmacy_outside_scope_is_forbidden(self):
        access = AccessContext(role="pharmacist", tenant_scope_id="ph-1")
        spec = FilterSpec(pharmacy=DimensionFilter(included=frozenset({"ph-1", "ph-9"})))

        with pytest.raises(ForbiddenError) as exc_info:
            apply_access_scope(spec, access)

        assert exc_info.value.details == {"pharmacies": ["ph-9"]}


class TestGetMetrics:
    """Tests for KpiService.get_metrics()."""

    @pytest.mark.asyncio
    async def test_computes_then_serves_from_cache(self, kpi_service, fake_aggregator, record_factory):
        fake_aggregator.records[(Q1_2024.start, Q1_2024.end)] = record_factory(revenue="150000")

        first = await kpi_service.get_metrics(Q1_2024, FilterSpec(), ANALYST)
        second = await kpi_service.get_metrics(Q1_2024, FilterSpec(), ANALYST)

        assert first.cached is False
        assert second.cached is True
        assert first.route is QueryRoute.FAST
        assert first.metrics["revenue"].value == Decimal("150000")
        assert second.metrics == first.metrics
        assert len(fake_aggregator.calls) == 1

    @pytest.mark.asyncio
    async def test_force_refresh_recomputes(self, kpi_service, fake_aggregator):
        await kpi_service.get_metrics(Q1_2024, FilterSpec(), ANALYST)

        refreshed = await kpi_service.get_metrics(
            Q1_2024, FilterSpec(), ANALYST, force_refresh=True
        )

        assert refreshed.cached is False
        assert len(fake_aggregator.calls) == 2

    @pytest.mark.asyncio
    async def test_partial_month_uses_raw_facts(self, kpi_service, fake_aggregator):
        period = DateRange(start=date(2024, 1, 5), end=date(2024, 1, 20))

        response = await kpi_service.get_metrics(period, FilterSpec(), ANALYST)

        assert response.route is QueryRoute.FLEXIBLE
        route, predicate_text, _ = fake_aggregator.calls[0]
        assert route is QueryRoute.FLEXIBLE
        assert predicate_text == "TRUE"

    @pytest.mark.asyncio
    async def test_invalid_filter_rejected_before_any_query(self, kpi_service, fake_aggregator, session_maker):
        spec = FilterSpec(laboratory=DimensionFilter(included=frozenset({"A"}), excluded=frozenset({"A"})))

        with pytest.raises(InvalidFilterError):
            await kpi_service.get_metrics(Q1_2024, spec, ANALYST)

        assert fake_aggregator.calls == []
        session_maker.assert_not_called()

    @pytest.mark.asyncio
    async def test_roles_do_not_share_entries(self, kpi_service, fake_aggregator):
        await kpi_service.get_metrics(Q1_2024, FilterSpec(), ANALYST)
        other = await kpi_service.get_metrics(Q1_2024, FilterSpec(), AccessContext(role="auditor"))

        assert other.cached is False
        assert len(fake_aggregator.calls) == 2

    @pytest.mark.asyncio
    async def test_tenant_scope_reaches_predicate(self, kpi_service, fake_aggregator):
        access = AccessContext(role="pharmacist", tenant_scope_id="ph-1")

        await kpi_service.get_metrics(Q1_2024, FilterSpec(), access)

        _, predicate_text, _ = fake_aggregator.calls[0]
        assert predicate_text == "mv.pharmacy_id = ANY(:f_pharmacy_in_0)"

    @pytest.mark.asyncio
    async def test_product_groups_are_flattened(self, kpi_service, fake_aggregator):
        spec = FilterSpec(
            product_groups=frozenset({ProductGroupRef(kind=EntityKind.LABORATORY, id="SANOFI")})
        )

        await kpi_service.get_metrics(Q1_2024, spec, ANALYST)

        _, predicate_text, _ = fake_aggregator.calls[0]
        assert predicate_text == "mv.code_13_ref = ANY(:f_product_in_0)"

    @pytest.mark.asyncio
    async def test_aggregation_error_is_not_cached(self, kpi_service, fake_aggregator, memory_backend):
        fake_aggregator.failures = {"ph-1": AggregationError("timeout")}
        spec = FilterSpec(pharmacy=DimensionFilter(included=frozenset({"ph-1"})))

        with pytest.raises(AggregationError):
            await kpi_service.get_metrics(Q1_2024, spec, ANALYST)

        assert len(memory_backend) == 0

    @pytest.mark.asyncio
    async def test_restricted_role_reads_raw_facts(self, make_service, fake_aggregator):
        service = make_service(policy=RoutingPolicy(flexible_only_roles=frozenset({"auditor"})))

        response = await service.get_metrics(Q1_2024, FilterSpec(), AccessContext(role="auditor"))

        assert response.route is QueryRoute.FLEXIBLE

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "period",
        [DateRange(start=date(2024, 1, 1), end=date(2024, 1, 15)), Q1_2024],
    )
    async def test_unreadable_refresh_table_falls_back_to_raw_facts(
        self, period, session_maker, result_cache, fake_aggregator, now
    ):
        """Rollups not bootstrapped yet: requests still succeed on raw facts."""
        failing_maker = MagicMock()
        failing_session = AsyncMock()
        failing_session.execute.side_effect = ProgrammingError(
            "SELECT", {}, Exception('relation "rollup_refresh" does not exist')
        )
        failing_maker.return_value.__aenter__.return_value = failing_session
        service = KpiService(
            session_maker=session_maker,
            cache=result_cache,
            orchestrator=ComparisonOrchestrator(max_entities=3),
            freshness=RollupFreshnessProvider(failing_maker),
            policy=RoutingPolicy(),
            clock=lambda: now,
        )

        response = await service.get_metrics(period, FilterSpec(), ANALYST)

        assert response.route is QueryRoute.FLEXIBLE
        assert fake_aggregator.calls[0][0] is QueryRoute.FLEXIBLE


class TestGetComparison:
    """Tests for KpiService.get_comparison()."""

    @pytest.mark.asyncio
    async def test_defaults_to_previous_year(self, kpi_service, fake_aggregator, record_factory):
        fake_aggregator.records = {
            (Q1_2024.start, Q1_2024.end): record_factory(revenue="150000"),
            (Q1_2023.start, Q1_2023.end): record_factory(revenue="100000"),
        }
        period = PeriodRequest(start=Q1_2024.start, end=Q1_2024.end)

        response = await kpi_service.get_comparison(period, FilterSpec(), ANALYST)

        assert response.period.comparison_start == date(2023, 1, 1)
        assert response.period.comparison_end == date(2023, 3, 31)
        assert response.result.delta_absolute["revenue"] == Decimal("50000")
        assert response.result.delta_percent["revenue"] == Decimal("50.00")
        assert response.result.trend["revenue"] is Trend.UP

    @pytest.mark.asyncio
    async def test_cached_comparison_is_identical(self, kpi_service, fake_aggregator, record_factory):
        fake_aggregator.records = {
            (Q1_2024.start, Q1_2024.end): record_factory(revenue="120"),
            (Q1_2023.start, Q1_2023.end): record_factory(revenue="0"),
        }
        period = PeriodRequest(start=Q1_2024.start, end=Q1_2024.end)

        first = await kpi_service.get_comparison(period, FilterSpec(), ANALYST)
        second = await kpi_service.get_comparison(period, FilterSpec(), ANALYST)

        assert second.cached is True
        assert second.result.model_dump_json() == first.result.model_dump_json()
        assert second.result.delta_percent["revenue"] is None
        assert len(fake_aggregator.calls) == 2

    @pytest.mark.asyncio
    async def test_each_period_routed_separately(self, make_service, fake_aggregator, freshness_factory):
        """A partial comparison window is routed to raw facts on its own."""
        service = make_service(freshness=freshness_factory())
        period = PeriodRequest(
            start=date(2024, 1, 1),
            end=date(2024, 1, 31),
            comparison_start=date(2023, 12, 1),
            comparison_end=date(2023, 12, 15),
        )

        response = await service.get_comparison(period, FilterSpec(), ANALYST)

        assert response.route is QueryRoute.FAST
        assert response.comparison_route is QueryRoute.FLEXIBLE


class TestCompareEntities:
    """Tests for KpiService.compare_entities()."""

    @pytest.mark.asyncio
    async def test_laboratories_side_by_side(self, kpi_service, fake_aggregator):
        period = PeriodRequest(start=Q1_2024.start, end=Q1_2024.end)

        response = await kpi_service.compare_entities(
            [_lab("a", "SANOFI"), _lab("b", "BIOGARAN")], period, FilterSpec(), ANALYST
        )

        assert response.partial is False
        assert set(response.results) == {"a", "b"}
        assert response.results["a"].label == "SANOFI"
        assert response.results["a"].route is QueryRoute.FAST
        # two entities x two periods
        assert len(fake_aggregator.calls) == 4

    @pytest.mark.asyncio
    async def test_entity_failure_is_isolated(self, kpi_service, fake_aggregator):
        fake_aggregator.failures = {"3400930000010": AggregationError("timeout")}
        period = PeriodRequest(start=Q1_2024.start, end=Q1_2024.end)

        response = await kpi_service.compare_entities(
            [_lab("a", "SANOFI"), _lab("b", "BIOGARAN")], period, FilterSpec(), ANALYST
        )

        assert response.partial is True
        assert response.results["a"].result is not None
        assert response.results["b"].result is None
        assert response.results["b"].error.code == "AGGREGATION_ERROR"

    @pytest.mark.asyncio
    async def test_entity_outside_filter_gets_error_marker(self, kpi_service, fake_aggregator):
        spec = FilterSpec(product=DimensionFilter(included=frozenset({"3400930000001"})))
        period = PeriodRequest(start=Q1_2024.start, end=Q1_2024.end)

        response = await kpi_service.compare_entities(
            [_lab("a", "SANOFI"), _lab("b", "BIOGARAN")], period, spec, ANALYST
        )

        assert response.results["a"].error is None
        assert response.results["b"].error.code == "INVALID_FILTER"

    @pytest.mark.asyncio
    async def test_second_call_served_from_cache(self, kpi_service, fake_aggregator):
        period = PeriodRequest(start=Q1_2024.start, end=Q1_2024.end)
        entities = [_lab("a", "SANOFI")]

        await kpi_service.compare_entities(entities, period, FilterSpec(), ANALYST)
        response = await kpi_service.compare_entities(entities, period, FilterSpec(), ANALYST)

        assert response.results["a"].cached is True
        assert response.generation == 2
        assert len(fake_aggregator.calls) == 2

    @pytest.mark.asyncio
    async def test_caller_supplied_product_codes_are_ignored(self, kpi_service, fake_aggregator):
        """Entities are always expanded from the catalogue, so cached results stay honest."""
        fake_aggregator.failures = {"9999999999999": AggregationError("unexpected product")}
        period = PeriodRequest(start=Q1_2024.start, end=Q1_2024.end)
        forged = _lab("a", "SANOFI").model_copy(
            update={"resolved_product_codes": frozenset({"9999999999999"})}
        )

        first = await kpi_service.compare_entities([forged], period, FilterSpec(), ANALYST)
        second = await kpi_service.compare_entities(
            [_lab("a", "SANOFI")], period, FilterSpec(), ANALYST
        )

        assert first.results["a"].error is None
        assert second.results["a"].cached is True
        assert second.results["a"].result == first.results["a"].result
        assert len(fake_aggregator.calls) == 2

    @pytest.mark.asyncio
    async def test_newer_request_on_slot_supersedes(self, kpi_service, fake_aggregator):
        fake_aggregator.delay = 0.05
        period = PeriodRequest(start=Q1_2024.start, end=Q1_2024.end)

        first = asyncio.create_task(
            kpi_service.compare_entities(
                [_lab("a", "SANOFI")], period, FilterSpec(), ANALYST, slot="widget"
            )
        )
        await asyncio.sleep(0.01)
        second = await kpi_service.compare_entities(
            [_lab("b", "BIOGARAN")], period, FilterSpec(), ANALYST, slot="widget"
        )

        with pytest.raises(ComparisonSupersededError):
            await first
        assert set(second.results) == {"b"}

    @pytest.mark.asyncio
    async def test_slots_are_scoped_by_tenant(self, kpi_service, fake_aggregator):
        fake_aggregator.delay = 0.05
        period = PeriodRequest(start=Q1_2024.start, end=Q1_2024.end)

        first = asyncio.create_task(
            kpi_service.compare_entities(
                [_lab("a", "SANOFI")],
                period,
                FilterSpec(),
                AccessContext(role="pharmacist", tenant_scope_id="ph-1"),
            )
        )
        await asyncio.sleep(0.01)
        await kpi_service.compare_entities(
            [_lab("b", "SANOFI")],
            period,
            FilterSpec(),
            AccessContext(role="pharmacist", tenant_scope_id="ph-2"),
        )

        response = await first
        assert response.results["a"].error is None
