"""Materialized rollup definitions.

Both rollups are at calendar-month grain per internal product (and hence per
pharmacy) and carry the product attributes the KPI filters need as plain
columns. They are built from the same expressions as the raw-fact
aggregation, so a FAST answer equals the FLEXIBLE one for any month-aligned
period the rollups cover.

- ``mv_product_stats_monthly``: sales and purchases per month and product.
  Sales and purchases are grouped separately and then joined on the grain,
  so each fact row is counted exactly once.
- ``mv_stock_monthly``: last inventory snapshot of each month per product.
"""

from dataclasses import dataclass

# Filterable field -> column on every rollup (queried under the alias ``mv``).
# Keys match the KPI filter dimension and attribute names.
ROLLUP_FILTER_COLUMNS: dict[str, str] = {
    "pharmacy": "mv.pharmacy_id",
    "laboratory": "mv.laboratory_name",
    "category": "mv.category_name",
    "product": "mv.code_13_ref",
    "tva_rate": "mv.tva_rate",
    "generic_status": "mv.bcb_generic_status",
    "reimbursable": "mv.is_reimbursable",
}


@dataclass(frozen=True)
class RollupDefinition:
    """One materialized view and the indexes it needs.

    A unique index on the grain is required for REFRESH ... CONCURRENTLY.
    """

    name: str
    create_sql: str
    index_sql: tuple[str, ...]
    grain: str = "month"


PRODUCT_STATS_MONTHLY = RollupDefinition(
    name="mv_product_stats_monthly",
    create_sql="""
CREATE MATERIALIZED VIEW IF NOT EXISTS mv_product_stats_monthly AS
WITH monthly_sales AS (
    SELECT
        date_trunc('month', s.date)::date AS month,
        ins.product_id,
        SUM(s.quantity) AS qty_sold,
        SUM(s.quantity * ins.price_with_tax) AS ca_ttc,
        SUM(
            s.quantity * ins.price_with_tax
            / (1 + COALESCE(gp.tva_percentage, 0) / 100.0)
        ) AS ht_sold,
        SUM(s.quantity * ins.weighted_average_price) AS cogs,
        COUNT(*) AS sales_lines
    FROM data_sales s
    JOIN data_inventorysnapshot ins ON ins.id = s.snapshot_id
    JOIN data_internalproduct ip ON ip.id = ins.product_id
    JOIN data_globalproduct gp ON gp.code_13_ref = ip.code_13_ref_id
    GROUP BY 1, 2
),
monthly_purchases AS (
    SELECT
        date_trunc('month', o.created_at::date)::date AS month,
        po.product_id,
        SUM(po.qte) AS qty_purchased,
        SUM(po.qte * COALESCE(snap.weighted_average_price, 0)) AS ht_purchased
    FROM data_productorder po
    JOIN data_order o ON o.id = po.order_id
    LEFT JOIN LATERAL (
        SELECT x.weighted_average_price
        FROM data_inventorysnapshot x
        WHERE x.product_id = po.product_id AND x.date <= o.created_at::date
        ORDER BY x.date DESC, x.id DESC
        LIMIT 1
    ) snap ON TRUE
    GROUP BY 1, 2
),
grain AS (
    SELECT month, product_id FROM monthly_sales
    UNION
    SELECT month, product_id FROM monthly_purchases
)
SELECT
    g.month,
    g.product_id,
    ip.pharmacy_id,
    ip.code_13_ref_id AS code_13_ref,
    gp.bcb_lab AS laboratory_name,
    gp.bcb_segment_l1 AS category_name,
    gp.bcb_generic_status,
    gp.is_reimbursable,
    gp.tva_percentage AS tva_rate,
    COALESCE(ms.qty_sold, 0) AS qty_sold,
    COALESCE(ms.ca_ttc, 0) AS ca_ttc,
    COALESCE(ms.ht_sold, 0) AS ht_sold,
    COALESCE(ms.cogs, 0) AS cogs,
    COALESCE(ms.ht_sold, 0) - COALESCE(ms.cogs, 0) AS margin_sold,
    COALESCE(ms.sales_lines, 0) AS sales_lines,
    COALESCE(mp.qty_purchased, 0) AS qty_purchased,
    COALESCE(mp.ht_purchased, 0) AS ht_purchased
FROM grain g
JOIN data_internalproduct ip ON ip.id = g.product_id
JOIN data_globalproduct gp ON gp.code_13_ref = ip.code_13_ref_id
LEFT JOIN monthly_sales ms ON ms.month = g.month AND ms.product_id = g.product_id
LEFT JOIN monthly_purchases mp ON mp.month = g.month AND mp.product_id = g.product_id
WITH DATA
""",
    index_sql=(
        "CREATE UNIQUE INDEX IF NOT EXISTS ux_mv_product_stats_monthly_grain "
        "ON mv_product_stats_monthly (month, product_id)",
        "CREATE INDEX IF NOT EXISTS ix_mv_product_stats_monthly_pharmacy "
        "ON mv_product_stats_monthly (pharmacy_id, month)",
        "CREATE INDEX IF NOT EXISTS ix_mv_product_stats_monthly_lab "
        "ON mv_product_stats_monthly (laboratory_name, month)",
    ),
)

STOCK_MONTHLY = RollupDefinition(
    name="mv_stock_monthly",
    create_sql="""
CREATE MATERIALIZED VIEW IF NOT EXISTS mv_stock_monthly AS
SELECT DISTINCT ON (ins.product_id, date_trunc('month', ins.date))
    (date_trunc('month', ins.date) + INTERVAL '1 month - 1 day')::date AS month_end_date,
    ins.product_id,
    ip.pharmacy_id,
    ip.code_13_ref_id AS code_13_ref,
    gp.bcb_lab AS laboratory_name,
    gp.bcb_segment_l1 AS category_name,
    gp.bcb_generic_status,
    gp.is_reimbursable,
    gp.tva_percentage AS tva_rate,
    ins.stock,
    ins.stock * ins.weighted_average_price AS stock_value_ht
FROM data_inventorysnapshot ins
JOIN data_internalproduct ip ON ip.id = ins.product_id
JOIN data_globalproduct gp ON gp.code_13_ref = ip.code_13_ref_id
ORDER BY ins.product_id, date_trunc('month', ins.date), ins.date DESC, ins.id DESC
WITH DATA
""",
    index_sql=(
        "CREATE UNIQUE INDEX IF NOT EXISTS ux_mv_stock_monthly_grain "
        "ON mv_stock_monthly (month_end_date, product_id)",
        "CREATE INDEX IF NOT EXISTS ix_mv_stock_monthly_product "
        "ON mv_stock_monthly (product_id, month_end_date DESC)",
    ),
)

# Refresh order. Later rollups may read earlier ones.
ROLLUPS: tuple[RollupDefinition, ...] = (PRODUCT_STATS_MONTHLY, STOCK_MONTHLY)

ROLLUP_NAMES: tuple[str, ...] = tuple(rollup.name for rollup in ROLLUPS)
