"""Filter predicate builder.

Turns a ``FilterSpec`` into a parameterized PostgreSQL boolean expression in
two stages:

1. ``to_ast`` describes *what* to filter as a small tree of nodes
   (membership, range, enum match, boolean match, AND, OR).
2. ``compile_ast`` renders the tree against a ``ColumnMap``, which says
   *how* each dimension or attribute is spelled on a given route.

Caller-supplied values are always bound parameters. Only code-controlled
literals (generic status labels, booleans) are inlined.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from app.core.exceptions import InvalidFilterError
from app.features.data_platform.models import GENERIC_STATUS_GENERIC, GENERIC_STATUS_REFERENT
from app.features.kpi.cancellation import CancellationToken
from app.features.kpi.schemas import (
    Dimension,
    ExclusionMode,
    FilterSpec,
    GenericStatus,
    PriceField,
    ReimbursementStatus,
    ScalarField,
)

# =============================================================================
# AST
# =============================================================================


@dataclass(frozen=True)
class Membership:
    """``field`` is (not) one of ``values``."""

    field: str
    values: tuple[Any, ...]
    negated: bool = False


@dataclass(frozen=True)
class Range:
    """``min <= field <= max``; a None bound is open."""

    field: str
    min: Decimal | None = None
    max: Decimal | None = None


@dataclass(frozen=True)
class EnumMatch:
    """``field`` equals one of a fixed set of code-controlled literals."""

    field: str
    literals: tuple[str, ...]


@dataclass(frozen=True)
class BoolMatch:
    field: str
    value: bool


@dataclass(frozen=True)
class AllOf:
    """Conjunction; an empty conjunction is TRUE."""

    children: tuple[Node, ...] = ()


@dataclass(frozen=True)
class AnyOf:
    """Disjunction; an empty disjunction is FALSE."""

    children: tuple[Node, ...] = ()


Node = Membership | Range | EnumMatch | BoolMatch | AllOf | AnyOf

TRUE = AllOf()

GENERIC_STATUS_LITERALS: dict[GenericStatus, tuple[str, ...]] = {
    GenericStatus.GENERIC: (GENERIC_STATUS_GENERIC,),
    GenericStatus.REFERENT: (GENERIC_STATUS_REFERENT,),
    GenericStatus.BOTH: (GENERIC_STATUS_GENERIC, GENERIC_STATUS_REFERENT),
}


# =============================================================================
# Column maps and compiled output
# =============================================================================


@dataclass(frozen=True)
class ColumnMap:
    """Column expression for each filterable field on one route.

    Keys are ``Dimension``, ``PriceField`` or ``ScalarField`` values.
    """

    name: str
    columns: Mapping[str, str]

    def column(self, field_name: str) -> str:
        try:
            return self.columns[field_name]
        except KeyError:
            raise InvalidFilterError(
                f"Filter on '{field_name}' cannot be expressed on {self.name}",
                details={"field": field_name, "column_map": self.name},
            ) from None

    def supports(self, field_name: str) -> bool:
        return field_name in self.columns


@dataclass(frozen=True)
class CompiledPredicate:
    """SQL boolean expression plus its bound parameters."""

    text: str
    params: dict[str, Any] = field(default_factory=dict)
    fields: frozenset[str] = frozenset()


# =============================================================================
# Stage 1: FilterSpec -> AST
# =============================================================================


def validate_filter_spec(spec: FilterSpec) -> None:
    """Reject contradictory or malformed filters.

    Raises:
        InvalidFilterError: On identical non-empty include/exclude sets or
            on a price range whose min exceeds its max.
    """
    for dim in Dimension:
        filt = spec.dimension(dim)
        if filt.included and filt.included == filt.excluded:
            raise InvalidFilterError(
                f"Dimension '{dim.value}' includes and excludes the same members",
                details={"dimension": dim.value, "members": sorted(filt.included)},
            )
    for price_field, rng in spec.price_ranges.items():
        if rng.min is not None and rng.max is not None and rng.min > rng.max:
            raise InvalidFilterError(
                f"Range on '{price_field.value}' has min greater than max",
                details={"field": price_field.value, "min": str(rng.min), "max": str(rng.max)},
            )


def to_ast(spec: FilterSpec) -> AllOf:
    """Describe ``spec`` as a predicate tree.

    Raises:
        InvalidFilterError: If the filter is contradictory or malformed.
    """
    validate_filter_spec(spec)
    nodes: list[Node] = []

    if spec.exclusion_mode is ExclusionMode.ONLY:
        pharmacy = spec.dimension(Dimension.PHARMACY)
        if pharmacy.included:
            nodes.append(Membership(Dimension.PHARMACY.value, _sorted(pharmacy.included)))
        if pharmacy.excluded:
            nodes.append(
                Membership(Dimension.PHARMACY.value, _sorted(pharmacy.excluded), negated=True)
            )
        selections: list[Node] = [
            Membership(dim.value, _sorted(spec.dimension(dim).excluded))
            for dim in Dimension
            if dim is not Dimension.PHARMACY and spec.dimension(dim).excluded
        ]
        if selections:
            nodes.append(AnyOf(tuple(selections)))
    else:
        for dim in Dimension:
            filt = spec.dimension(dim)
            if filt.included:
                nodes.append(Membership(dim.value, _sorted(filt.included)))
            if filt.excluded and spec.exclusion_mode is ExclusionMode.EXCLUDE:
                nodes.append(Membership(dim.value, _sorted(filt.excluded), negated=True))

    if spec.tva_rates:
        nodes.append(Membership(ScalarField.TVA_RATE.value, tuple(sorted(spec.tva_rates))))

    literals = GENERIC_STATUS_LITERALS.get(spec.generic_status)
    if literals:
        nodes.append(EnumMatch(ScalarField.GENERIC_STATUS.value, literals))

    if spec.reimbursement_status is ReimbursementStatus.REIMBURSED:
        nodes.append(BoolMatch(ScalarField.REIMBURSABLE.value, True))
    elif spec.reimbursement_status is ReimbursementStatus.NOT_REIMBURSED:
        nodes.append(BoolMatch(ScalarField.REIMBURSABLE.value, False))

    for price_field in PriceField:
        rng = spec.price_ranges.get(price_field)
        if rng is not None and not rng.is_open:
            nodes.append(Range(price_field.value, rng.min, rng.max))

    return AllOf(tuple(nodes))


def _sorted(values: frozenset[str]) -> tuple[str, ...]:
    return tuple(sorted(values))


def referenced_fields(node: Node) -> frozenset[str]:
    """All field names a tree constrains."""
    if isinstance(node, AllOf | AnyOf):
        found: set[str] = set()
        for child in node.children:
            found |= referenced_fields(child)
        return frozenset(found)
    return frozenset({node.field})


# =============================================================================
# Stage 2: AST -> SQL
# =============================================================================


class _Compiler:
    def __init__(self, column_map: ColumnMap) -> None:
        self.column_map = column_map
        self.params: dict[str, Any] = {}
        self._counter = 0

    def bind(self, label: str, value: Any) -> str:
        name = f"f_{label}_{self._counter}"
        self._counter += 1
        self.params[name] = value
        return f":{name}"

    def render(self, node: Node) -> str:
        if isinstance(node, Membership):
            col = self.column_map.column(node.field)
            if node.negated:
                param = self.bind(f"{node.field}_ex", list(node.values))
                return f"({col} IS NULL OR {col} <> ALL({param}))"
            param = self.bind(f"{node.field}_in", list(node.values))
            return f"{col} = ANY({param})"

        if isinstance(node, Range):
            col = self.column_map.column(node.field)
            parts = []
            if node.min is not None:
                parts.append(f"{col} >= {self.bind(f'{node.field}_min', node.min)}")
            if node.max is not None:
                parts.append(f"{col} <= {self.bind(f'{node.field}_max', node.max)}")
            return parts[0] if len(parts) == 1 else f"({' AND '.join(parts)})"

        if isinstance(node, EnumMatch):
            col = self.column_map.column(node.field)
            quoted = ", ".join("'" + literal.replace("'", "''") + "'" for literal in node.literals)
            return f"{col} IN ({quoted})"

        if isinstance(node, BoolMatch):
            col = self.column_map.column(node.field)
            return f"{col} IS {'TRUE' if node.value else 'FALSE'}"

        if isinstance(node, AllOf):
            return self._join(node.children, " AND ", empty="TRUE")

        return self._join(node.children, " OR ", empty="FALSE")

    def _join(self, children: tuple[Node, ...], sep: str, empty: str) -> str:
        if not children:
            return empty
        rendered = [self.render(child) for child in children]
        if len(rendered) == 1:
            return rendered[0]
        return f"({sep.join(rendered)})"


def compile_ast(node: Node, column_map: ColumnMap) -> CompiledPredicate:
    """Render a predicate tree to SQL text with named bound parameters.

    Raises:
        InvalidFilterError: If a constrained field has no column on this route.
    """
    compiler = _Compiler(column_map)
    text = compiler.render(node)
    return CompiledPredicate(text=text, params=compiler.params, fields=referenced_fields(node))


def build(
    spec: FilterSpec,
    column_map: ColumnMap,
    token: CancellationToken | None = None,
) -> CompiledPredicate:
    """Build the predicate for ``spec`` on the route described by ``column_map``.

    Pure: the same arguments always yield the same text and parameters.
    """
    if token is not None:
        token.raise_if_cancelled()
    return compile_ast(to_ast(spec), column_map)
