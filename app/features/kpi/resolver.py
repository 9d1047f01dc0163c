"""Expansion of laboratories and categories into member product codes.

Comparison entities and product-picker groupings name laboratories or
categories; the predicate builder only knows dimensions. The resolver
turns them into product-code sets, memoizing each lookup for the lifetime
of one resolver (one request or one entity pipeline).
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AggregationError, InvalidFilterError
from app.core.logging import get_logger
from app.features.data_platform.models import GlobalProduct
from app.features.kpi.cancellation import CancellationToken
from app.features.kpi.schemas import (
    ComparisonEntity,
    Dimension,
    DimensionFilter,
    EntityKind,
    FilterSpec,
)

logger = get_logger(__name__)


class EntityResolver:
    """Resolve entity kinds to product codes with a per-instance memo."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db
        self._memo: dict[tuple[EntityKind, str], frozenset[str]] = {}

    async def expand(
        self,
        kind: EntityKind,
        ids: frozenset[str],
        token: CancellationToken | None = None,
    ) -> frozenset[str]:
        """Return the product codes of every member of ``ids``.

        Product ids are product codes already and are returned unchanged.

        Raises:
            AggregationError: If the catalogue lookup fails.
        """
        if kind is EntityKind.PRODUCT:
            return ids

        missing = sorted(i for i in ids if (kind, i) not in self._memo)
        if missing:
            if token is not None:
                token.raise_if_cancelled()
            column = (
                GlobalProduct.bcb_lab
                if kind is EntityKind.LABORATORY
                else GlobalProduct.bcb_segment_l1
            )
            stmt = select(column, GlobalProduct.code_13_ref).where(column.in_(missing))
            try:
                result = await self.db.execute(stmt)
            except SQLAlchemyError as e:
                raise AggregationError(
                    f"Could not expand {kind.value} members",
                    details={"kind": kind.value, "cause": type(e).__name__},
                ) from e
            found: dict[str, set[str]] = {i: set() for i in missing}
            for owner, code in result.all():
                found[owner].add(code)
            for owner, codes in found.items():
                self._memo[(kind, owner)] = frozenset(codes)
            logger.debug("kpi.entities_expanded", kind=kind.value, count=len(missing))

        codes: set[str] = set()
        for i in ids:
            codes |= self._memo[(kind, i)]
        return frozenset(codes)

    async def resolve_entity(
        self,
        entity: ComparisonEntity,
        token: CancellationToken | None = None,
    ) -> ComparisonEntity:
        """Return ``entity`` with ``resolved_product_codes`` filled in.

        Codes always come from the catalogue; values set by the caller are
        replaced, so the result depends only on ``kind`` and ``source_ids``.
        """
        codes = await self.expand(entity.kind, entity.source_ids, token)
        return entity.model_copy(update={"resolved_product_codes": codes})

    async def flatten_product_groups(
        self,
        spec: FilterSpec,
        token: CancellationToken | None = None,
    ) -> FilterSpec:
        """Fold product-picker groupings into the product inclusion set.

        Raises:
            InvalidFilterError: If the groupings contain no product at all,
                which would otherwise widen the filter to every product.
        """
        if not spec.product_groups:
            return spec

        codes: set[str] = set()
        for kind in (EntityKind.LABORATORY, EntityKind.CATEGORY):
            ids = frozenset(g.id for g in spec.product_groups if g.kind is kind)
            if ids:
                codes |= await self.expand(kind, ids, token)
        codes |= {g.id for g in spec.product_groups if g.kind is EntityKind.PRODUCT}

        if not codes:
            raise InvalidFilterError(
                "Product groups match no product",
                details={"groups": sorted([g.kind.value, g.id] for g in spec.product_groups)},
            )

        product = spec.dimension(Dimension.PRODUCT)
        flattened = spec.with_dimension(
            Dimension.PRODUCT,
            DimensionFilter(included=product.included | codes, excluded=product.excluded),
        )
        return flattened.model_copy(update={"product_groups": frozenset()})


def scope_to_products(spec: FilterSpec, codes: frozenset[str], entity_id: str) -> FilterSpec:
    """Restrict ``spec`` to ``codes`` on the product dimension.

    An empty product inclusion set means "all products", so the entity
    codes become the inclusion set; otherwise the two are intersected.

    Raises:
        InvalidFilterError: If no product remains.
    """
    product = spec.dimension(Dimension.PRODUCT)
    included = codes if not product.included else product.included & codes
    if not included:
        raise InvalidFilterError(
            f"Entity '{entity_id}' has no product within the filter",
            details={"entity_id": entity_id},
        )
    return spec.with_dimension(
        Dimension.PRODUCT,
        DimensionFilter(included=included, excluded=product.excluded),
    )
