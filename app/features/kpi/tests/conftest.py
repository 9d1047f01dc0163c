"""Test fixtures for the KPI engine."""

import asyncio
from collections.abc import Callable
from datetime import UTC, date, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.core.cache import MemoryCacheBackend
from app.core.exceptions import PharmaKpiError
from app.features.kpi import service as service_module
from app.features.kpi.aggregator import METRIC_UNITS
from app.features.kpi.cache import ResultCache
from app.features.kpi.orchestrator import ComparisonOrchestrator
from app.features.kpi.resolver import EntityResolver
from app.features.kpi.routing import RoutingPolicy
from app.features.kpi.schemas import (
    DateRange,
    EntityKind,
    MetricRecord,
    MetricValue,
    QueryRoute,
)
from app.features.kpi.service import KpiService
from app.features.rollups.models import RefreshStatus
from app.features.rollups.schemas import RollupFreshness

NOW = datetime(2024, 7, 15, 6, 0, tzinfo=UTC)

LAB_MEMBERS: dict[tuple[EntityKind, str], tuple[str, ...]] = {
    (EntityKind.LABORATORY, "SANOFI"): ("3400930000001", "3400930000002"),
    (EntityKind.LABORATORY, "BIOGARAN"): ("3400930000010",),
    (EntityKind.LABORATORY, "EMPTYLAB"): (),
    (EntityKind.CATEGORY, "ANTALGIQUES"): ("3400930000001", "3400930000010"),
}


def make_record(**values: Decimal | int | str | None) -> MetricRecord:
    """Build a complete metric record; unspecified metrics are zero."""
    metrics = {}
    for key, unit in METRIC_UNITS.items():
        raw = values.get(key, 0)
        metrics[key] = MetricValue(value=None if raw is None else Decimal(str(raw)), unit=unit)
    return MetricRecord(metrics=metrics)


def make_freshness(
    covered_until: date = date(2024, 7, 14),
    refreshed_at: datetime = NOW,
    status: RefreshStatus = RefreshStatus.SUCCEEDED,
) -> dict[str, RollupFreshness]:
    return {
        name: RollupFreshness(
            name=name,
            status=status,
            refreshed_at=refreshed_at,
            covered_until=covered_until,
        )
        for name in ("mv_product_stats_monthly", "mv_stock_monthly")
    }


class StaticFreshness:
    """Freshness source returning a fixed snapshot."""

    def __init__(self, snapshot: dict[str, RollupFreshness] | None = None) -> None:
        self.snapshot = snapshot if snapshot is not None else make_freshness()

    async def get(self) -> dict[str, RollupFreshness]:
        return self.snapshot


class FakeAggregator:
    """Stand-in for MetricAggregator returning canned records per period.

    ``failures`` maps a product code to an exception raised whenever the
    predicate restricts to that product; ``delay`` makes every call wait.
    """

    calls: list[tuple[QueryRoute, str, DateRange]] = []
    records: dict[tuple[date, date], MetricRecord] = {}
    failures: dict[str, PharmaKpiError] = {}
    delay: float = 0.0

    def __init__(self, db: object) -> None:
        self.db = db

    async def aggregate(self, route, predicate, period, token=None):
        type(self).calls.append((route, predicate.text, period))
        if type(self).delay:
            await asyncio.sleep(type(self).delay)
        if token is not None:
            token.raise_if_cancelled()
        for code, error in type(self).failures.items():
            if any(code in (v if isinstance(v, list) else [v]) for v in predicate.params.values()):
                raise error
        return type(self).records.get((period.start, period.end), make_record())


class FakeResolver(EntityResolver):
    """Entity resolver backed by ``LAB_MEMBERS`` instead of the catalogue."""

    async def expand(self, kind, ids, token=None):
        if kind is EntityKind.PRODUCT:
            return ids
        return frozenset(code for i in ids for code in LAB_MEMBERS.get((kind, i), ()))


@pytest.fixture
def fake_aggregator(monkeypatch) -> type[FakeAggregator]:
    """Patch the service to use FakeAggregator with fresh class state."""
    FakeAggregator.calls = []
    FakeAggregator.records = {}
    FakeAggregator.failures = {}
    FakeAggregator.delay = 0.0
    monkeypatch.setattr(service_module, "MetricAggregator", FakeAggregator)
    monkeypatch.setattr(service_module, "EntityResolver", FakeResolver)
    return FakeAggregator


@pytest.fixture
def session_maker() -> MagicMock:
    """Session factory whose sessions are AsyncMocks."""
    maker = MagicMock()
    maker.return_value.__aenter__.return_value = AsyncMock()
    return maker


@pytest.fixture
def memory_backend() -> MemoryCacheBackend:
    return MemoryCacheBackend()


@pytest.fixture
def result_cache(memory_backend: MemoryCacheBackend) -> ResultCache:
    return ResultCache(memory_backend, ttl_seconds=43200, key_prefix="test:kpi")


@pytest.fixture
def make_service(
    session_maker: MagicMock,
    result_cache: ResultCache,
    fake_aggregator: type[FakeAggregator],
) -> Callable[..., KpiService]:
    """Factory for a KpiService wired to fakes."""

    def _make(
        freshness: dict[str, RollupFreshness] | None = None,
        policy: RoutingPolicy | None = None,
        orchestrator: ComparisonOrchestrator | None = None,
    ) -> KpiService:
        return KpiService(
            session_maker=session_maker,
            cache=result_cache,
            orchestrator=orchestrator or ComparisonOrchestrator(max_entities=3),
            freshness=StaticFreshness(freshness),
            policy=policy or RoutingPolicy(),
            clock=lambda: NOW,
        )

    return _make


@pytest.fixture
def kpi_service(make_service: Callable[..., KpiService]) -> KpiService:
    return make_service()


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def freshness_factory() -> Callable[..., dict[str, RollupFreshness]]:
    """Build rollup freshness snapshots (fresh and complete by default)."""
    return make_freshness


@pytest.fixture
def record_factory() -> Callable[..., MetricRecord]:
    """Build complete metric records."""
    return make_record
