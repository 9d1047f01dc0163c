"""Metric aggregation on the FAST (rollup) or FLEXIBLE (raw fact) route.

Sales, purchases and stock are aggregated in independent CTEs that each
return one row, then cross-joined. No fact row can be counted twice:

- a sale joins exactly one inventory snapshot (the one that priced it),
- a purchase line is valued at the single latest snapshot on or before
  its order date,
- stock is read from the single latest snapshot on or before the period
  end.

Derived metrics (margin, margin rate, days of stock cover) are computed in
Python from the summed components so both routes share one definition.
"""

from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AggregationError
from app.core.logging import get_logger
from app.features.kpi.cancellation import CancellationToken
from app.features.kpi.predicate import ColumnMap, CompiledPredicate
from app.features.kpi.schemas import (
    DateRange,
    Dimension,
    MetricRecord,
    MetricUnit,
    MetricValue,
    PriceField,
    QueryRoute,
    ScalarField,
)
from app.features.rollups.catalog import ROLLUP_FILTER_COLUMNS

logger = get_logger(__name__)

# =============================================================================
# Metric catalogue
# =============================================================================

METRIC_UNITS: dict[str, MetricUnit] = {
    "revenue": MetricUnit.CURRENCY,
    "revenue_net": MetricUnit.CURRENCY,
    "quantity_sold": MetricUnit.COUNT,
    "purchase_amount": MetricUnit.CURRENCY,
    "quantity_purchased": MetricUnit.COUNT,
    "gross_margin": MetricUnit.CURRENCY,
    "gross_margin_rate": MetricUnit.PERCENTAGE,
    "stock_value": MetricUnit.CURRENCY,
    "stock_quantity": MetricUnit.COUNT,
    "days_of_stock_cover": MetricUnit.DAYS,
    "distinct_references": MetricUnit.COUNT,
    "pharmacy_count": MetricUnit.COUNT,
}

QUANTA: dict[MetricUnit, Decimal] = {
    MetricUnit.CURRENCY: Decimal("0.01"),
    MetricUnit.PERCENTAGE: Decimal("0.01"),
    MetricUnit.DAYS: Decimal("0.1"),
    MetricUnit.COUNT: Decimal("1"),
}

# =============================================================================
# Column maps
# =============================================================================

# Net sell price (tax excluded) of the latest snapshot.
_LATEST_NET_PRICE = "(lp.price_with_tax / (1 + COALESCE(gp.tva_percentage, 0) / 100.0))"

FLEXIBLE_COLUMNS = ColumnMap(
    name="raw facts",
    columns={
        Dimension.PHARMACY.value: "ip.pharmacy_id",
        Dimension.LABORATORY.value: "gp.bcb_lab",
        Dimension.CATEGORY.value: "gp.bcb_segment_l1",
        Dimension.PRODUCT.value: "ip.code_13_ref_id",
        Dimension.GENERIC_GROUP.value: "gp.bcb_generic_group_id",
        ScalarField.TVA_RATE.value: "gp.tva_percentage",
        ScalarField.GENERIC_STATUS.value: "gp.bcb_generic_status",
        ScalarField.REIMBURSABLE.value: "gp.is_reimbursable",
        PriceField.PURCHASE_PRICE_NET.value: "lp.weighted_average_price",
        PriceField.PURCHASE_PRICE_GROSS.value: "gp.prix_achat_ht_fabricant",
        PriceField.SELL_PRICE.value: "lp.price_with_tax",
        PriceField.DISCOUNT_RATE.value: (
            "(CASE WHEN gp.prix_achat_ht_fabricant > 0 THEN "
            "(gp.prix_achat_ht_fabricant - lp.weighted_average_price) "
            "/ gp.prix_achat_ht_fabricant * 100 END)"
        ),
        PriceField.MARGIN_RATE.value: (
            f"(CASE WHEN lp.price_with_tax > 0 THEN "
            f"({_LATEST_NET_PRICE} - lp.weighted_average_price) / {_LATEST_NET_PRICE} * 100 END)"
        ),
    },
)

FAST_COLUMNS = ColumnMap(name="monthly rollups", columns=ROLLUP_FILTER_COLUMNS)

COLUMN_MAPS: dict[QueryRoute, ColumnMap] = {
    QueryRoute.FAST: FAST_COLUMNS,
    QueryRoute.FLEXIBLE: FLEXIBLE_COLUMNS,
}

# Fields read from the latest-price lateral join ``lp``.
_LATEST_PRICE_FIELDS = frozenset(
    {
        PriceField.PURCHASE_PRICE_NET.value,
        PriceField.SELL_PRICE.value,
        PriceField.DISCOUNT_RATE.value,
        PriceField.MARGIN_RATE.value,
    }
)

# =============================================================================
# SQL
# =============================================================================

_LATEST_PRICE_JOIN = """
    LEFT JOIN LATERAL (
        SELECT x.price_with_tax, x.weighted_average_price
        FROM data_inventorysnapshot x
        WHERE x.product_id = ip.id
        ORDER BY x.date DESC, x.id DESC
        LIMIT 1
    ) lp ON TRUE"""

FLEXIBLE_SQL = """
WITH period_sales AS (
    SELECT
        COALESCE(SUM(s.quantity), 0) AS quantity_sold,
        COALESCE(SUM(s.quantity * ins.price_with_tax), 0) AS revenue,
        COALESCE(SUM(
            s.quantity * ins.price_with_tax / (1 + COALESCE(gp.tva_percentage, 0) / 100.0)
        ), 0) AS revenue_net,
        COALESCE(SUM(s.quantity * ins.weighted_average_price), 0) AS cogs,
        COUNT(DISTINCT ip.code_13_ref_id) AS distinct_references,
        COUNT(DISTINCT ip.pharmacy_id) AS pharmacy_count
    FROM data_sales s
    JOIN data_inventorysnapshot ins ON ins.id = s.snapshot_id
    JOIN data_internalproduct ip ON ip.id = ins.product_id
    JOIN data_globalproduct gp ON gp.code_13_ref = ip.code_13_ref_id{price_join}
    WHERE s.date >= :period_start AND s.date <= :period_end
      AND {predicate}
),
period_purchases AS (
    SELECT
        COALESCE(SUM(po.qte), 0) AS quantity_purchased,
        COALESCE(SUM(po.qte * COALESCE(snap.weighted_average_price, 0)), 0) AS purchase_amount
    FROM data_productorder po
    JOIN data_order o ON o.id = po.order_id
    JOIN data_internalproduct ip ON ip.id = po.product_id
    JOIN data_globalproduct gp ON gp.code_13_ref = ip.code_13_ref_id{price_join}
    LEFT JOIN LATERAL (
        SELECT y.weighted_average_price
        FROM data_inventorysnapshot y
        WHERE y.product_id = po.product_id AND y.date <= o.created_at::date
        ORDER BY y.date DESC, y.id DESC
        LIMIT 1
    ) snap ON TRUE
    WHERE o.created_at::date >= :period_start AND o.created_at::date <= :period_end
      AND {predicate}
),
period_stock AS (
    SELECT
        COALESCE(SUM(ls.stock), 0) AS stock_quantity,
        COALESCE(SUM(ls.stock * ls.weighted_average_price), 0) AS stock_value
    FROM data_internalproduct ip
    JOIN data_globalproduct gp ON gp.code_13_ref = ip.code_13_ref_id{price_join}
    JOIN LATERAL (
        SELECT z.stock, z.weighted_average_price
        FROM data_inventorysnapshot z
        WHERE z.product_id = ip.id AND z.date <= :period_end
        ORDER BY z.date DESC, z.id DESC
        LIMIT 1
    ) ls ON TRUE
    WHERE {predicate}
)
SELECT *
FROM period_sales, period_purchases, period_stock
"""

FAST_SQL = """
WITH period_flows AS (
    SELECT
        COALESCE(SUM(mv.qty_sold), 0) AS quantity_sold,
        COALESCE(SUM(mv.ca_ttc), 0) AS revenue,
        COALESCE(SUM(mv.ht_sold), 0) AS revenue_net,
        COALESCE(SUM(mv.cogs), 0) AS cogs,
        COUNT(DISTINCT mv.code_13_ref) FILTER (WHERE mv.sales_lines > 0) AS distinct_references,
        COUNT(DISTINCT mv.pharmacy_id) FILTER (WHERE mv.sales_lines > 0) AS pharmacy_count,
        COALESCE(SUM(mv.qty_purchased), 0) AS quantity_purchased,
        COALESCE(SUM(mv.ht_purchased), 0) AS purchase_amount
    FROM mv_product_stats_monthly mv
    WHERE mv.month >= :period_start AND mv.month <= :period_end
      AND {predicate}
),
period_stock AS (
    SELECT
        COALESCE(SUM(latest.stock), 0) AS stock_quantity,
        COALESCE(SUM(latest.stock_value_ht), 0) AS stock_value
    FROM (
        SELECT DISTINCT ON (mv.product_id) mv.stock, mv.stock_value_ht
        FROM mv_stock_monthly mv
        WHERE mv.month_end_date <= :period_end
          AND {predicate}
        ORDER BY mv.product_id, mv.month_end_date DESC
    ) latest
)
SELECT *
FROM period_flows, period_stock
"""


def render_sql(route: QueryRoute, predicate: CompiledPredicate) -> str:
    """Render the aggregation statement for ``route``."""
    if route is QueryRoute.FAST:
        return FAST_SQL.format(predicate=predicate.text)
    price_join = _LATEST_PRICE_JOIN if predicate.fields & _LATEST_PRICE_FIELDS else ""
    return FLEXIBLE_SQL.format(predicate=predicate.text, price_join=price_join)


# =============================================================================
# Derived metrics
# =============================================================================


def _dec(value: Any) -> Decimal:
    if value is None:
        return Decimal(0)
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def build_metric_record(row: Mapping[str, Any], period: DateRange) -> MetricRecord:
    """Turn one aggregated row into the full metric record.

    - gross margin = net revenue - cost of goods sold
    - gross margin rate = margin / net revenue * 100, None on zero revenue
    - days of stock cover = stock value / (COGS / days in period), None
      when COGS is zero
    """
    revenue_net = _dec(row["revenue_net"])
    cogs = _dec(row["cogs"])
    stock_value = _dec(row["stock_value"])
    gross_margin = revenue_net - cogs

    gross_margin_rate = gross_margin / revenue_net * 100 if revenue_net != 0 else None
    days_of_stock_cover = stock_value / (cogs / period.days) if cogs != 0 else None

    raw: dict[str, Decimal | None] = {
        "revenue": _dec(row["revenue"]),
        "revenue_net": revenue_net,
        "quantity_sold": _dec(row["quantity_sold"]),
        "purchase_amount": _dec(row["purchase_amount"]),
        "quantity_purchased": _dec(row["quantity_purchased"]),
        "gross_margin": gross_margin,
        "gross_margin_rate": gross_margin_rate,
        "stock_value": stock_value,
        "stock_quantity": _dec(row["stock_quantity"]),
        "days_of_stock_cover": days_of_stock_cover,
        "distinct_references": _dec(row["distinct_references"]),
        "pharmacy_count": _dec(row["pharmacy_count"]),
    }
    return MetricRecord(
        metrics={
            key: MetricValue(
                value=None if value is None else value.quantize(QUANTA[METRIC_UNITS[key]]),
                unit=METRIC_UNITS[key],
            )
            for key, value in raw.items()
        }
    )


# =============================================================================
# Aggregator
# =============================================================================


class MetricAggregator:
    """Run one aggregation statement and build the metric record.

    The session is owned by the caller and must not be shared with
    concurrently running aggregations.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def aggregate(
        self,
        route: QueryRoute,
        predicate: CompiledPredicate,
        period: DateRange,
        token: CancellationToken | None = None,
    ) -> MetricRecord:
        """Aggregate every metric for ``period`` on ``route``.

        Args:
            route: FAST (rollups) or FLEXIBLE (raw facts).
            predicate: Predicate compiled with ``COLUMN_MAPS[route]``.
            period: Period to aggregate.
            token: Optional cancellation token.

        Returns:
            Complete metric record; zero rows yield zeros and Nones.

        Raises:
            AggregationError: On any data-store failure, timeouts included.
        """
        if token is not None:
            token.raise_if_cancelled()

        sql = render_sql(route, predicate)
        params = {
            **predicate.params,
            "period_start": period.start,
            "period_end": period.end,
        }
        try:
            result = await self.db.execute(text(sql), params)
            row = result.mappings().one()
        except SQLAlchemyError as e:
            logger.error(
                "kpi.aggregation_failed",
                route=route.value,
                period_start=str(period.start),
                period_end=str(period.end),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise AggregationError(
                f"Aggregation on the {route.value} route failed",
                details={"route": route.value, "cause": type(e).__name__},
            ) from e

        if token is not None:
            token.raise_if_cancelled()

        logger.debug(
            "kpi.aggregated",
            route=route.value,
            period_start=str(period.start),
            period_end=str(period.end),
        )
        return build_metric_record(row, period)
