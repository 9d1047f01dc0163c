"""Query route selection: precomputed rollup (FAST) or raw facts (FLEXIBLE).

FLEXIBLE is always correct. FAST is chosen only when the rollups can
answer exactly the same question:

- the role is not restricted to raw facts,
- the period is whole calendar months (the rollup grain),
- every constrained field is a rollup column,
- an entity restriction can be expressed on the rollup's product key,
- every rollup was refreshed successfully, recently enough, and covers
  the period end.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta

from app.core.config import Settings
from app.features.kpi.cancellation import CancellationToken
from app.features.kpi.predicate import referenced_fields, to_ast
from app.features.kpi.schemas import DateRange, Dimension, FilterSpec, QueryRoute
from app.features.rollups.catalog import ROLLUP_FILTER_COLUMNS, ROLLUP_NAMES
from app.features.rollups.models import RefreshStatus
from app.features.rollups.schemas import RollupFreshness


@dataclass(frozen=True)
class RoutingPolicy:
    """Deployment knobs for route selection."""

    flexible_only_roles: frozenset[str] = frozenset()
    max_staleness: timedelta = timedelta(hours=36)
    rollup_columns: frozenset[str] = frozenset(ROLLUP_FILTER_COLUMNS)
    required_rollups: tuple[str, ...] = ROLLUP_NAMES

    @classmethod
    def from_settings(cls, settings: Settings) -> RoutingPolicy:
        return cls(
            flexible_only_roles=frozenset(settings.kpi_flexible_only_roles),
            max_staleness=timedelta(hours=settings.kpi_rollup_max_staleness_hours),
        )


@dataclass(frozen=True)
class RouteDecision:
    route: QueryRoute
    reason: str


def select_route(
    period: DateRange,
    has_entity_filter: bool,
    role: str,
    filter_spec: FilterSpec,
    freshness: Mapping[str, RollupFreshness],
    policy: RoutingPolicy,
    now: datetime,
    token: CancellationToken | None = None,
) -> RouteDecision:
    """Choose the execution route for one period.

    Pure: the decision depends only on the arguments.

    Args:
        period: Period to aggregate.
        has_entity_filter: Whether an entity restriction will be applied to
            the product dimension.
        role: Caller role.
        filter_spec: Filter to apply (product groups already flattened).
        freshness: Refresh record per rollup name.
        policy: Routing policy.
        now: Current time, used for the staleness check.
        token: Optional cancellation token.

    Returns:
        The route and a human-readable reason.
    """
    if token is not None:
        token.raise_if_cancelled()

    if role in policy.flexible_only_roles:
        return RouteDecision(QueryRoute.FLEXIBLE, f"role '{role}' reads raw facts only")

    if not period.is_month_aligned:
        return RouteDecision(QueryRoute.FLEXIBLE, "period is not whole calendar months")

    unsupported = sorted(referenced_fields(to_ast(filter_spec)) - policy.rollup_columns)
    if unsupported:
        return RouteDecision(
            QueryRoute.FLEXIBLE,
            f"filter on {', '.join(unsupported)} is not a rollup column",
        )

    if has_entity_filter and Dimension.PRODUCT.value not in policy.rollup_columns:
        return RouteDecision(QueryRoute.FLEXIBLE, "entity filter needs a product key")

    stale = _uncovered_rollups(period, freshness, policy, now)
    if stale:
        return RouteDecision(QueryRoute.FLEXIBLE, f"rollups not covering period: {stale}")

    return RouteDecision(QueryRoute.FAST, "rollups cover the period and filters")


def _uncovered_rollups(
    period: DateRange,
    freshness: Mapping[str, RollupFreshness],
    policy: RoutingPolicy,
    now: datetime,
) -> str:
    problems: list[str] = []
    for name in policy.required_rollups:
        record = freshness.get(name)
        if record is None or record.refreshed_at is None:
            problems.append(f"{name} (never refreshed)")
        elif record.status is not RefreshStatus.SUCCEEDED:
            problems.append(f"{name} (last refresh failed)")
        elif record.covered_until is None or record.covered_until < period.end:
            problems.append(f"{name} (covers until {record.covered_until})")
        elif now - record.refreshed_at > policy.max_staleness:
            problems.append(f"{name} (stale)")
    return ", ".join(problems)
