"""Tests for the filter predicate builder."""

import asyncio
from decimal import Decimal

import pytest

from app.core.exceptions import InvalidFilterError
from app.features.kpi.aggregator import FAST_COLUMNS, FLEXIBLE_COLUMNS
from app.features.kpi.cancellation import CancellationToken
from app.features.kpi.predicate import (
    AllOf,
    AnyOf,
    BoolMatch,
    ColumnMap,
    EnumMatch,
    Membership,
    Range,
    build,
    compile_ast,
    referenced_fields,
    to_ast,
)
from app.features.kpi.schemas import (
    DimensionFilter,
    ExclusionMode,
    FilterSpec,
    GenericStatus,
    PriceField,
    PriceRange,
    ReimbursementStatus,
)


def _dim(included=(), excluded=()) -> DimensionFilter:
    return DimensionFilter(included=frozenset(included), excluded=frozenset(excluded))


class TestToAst:
    """Tests for FilterSpec -> predicate tree."""

    def test_empty_spec_is_true(self):
        """No constraint yields an empty conjunction."""
        assert to_ast(FilterSpec()) == AllOf()

    def test_empty_included_set_is_unrestricted(self):
        """An empty inclusion set adds no node at all."""
        spec = FilterSpec(laboratory=_dim(excluded={"SANOFI"}))

        tree = to_ast(spec)

        assert tree.children == (Membership("laboratory", ("SANOFI",), negated=True),)

    def test_include_and_exclude_both_emitted(self):
        """Exclusion is ANDed after inclusion, so it wins on overlap."""
        spec = FilterSpec(laboratory=_dim(included={"A", "B"}, excluded={"B"}))

        tree = to_ast(spec)

        assert tree.children == (
            Membership("laboratory", ("A", "B")),
            Membership("laboratory", ("B",), negated=True),
        )

    def test_include_mode_ignores_exclusions(self):
        """INCLUDE mode drops exclusion sets."""
        spec = FilterSpec(
            laboratory=_dim(included={"A"}, excluded={"B"}),
            exclusion_mode=ExclusionMode.INCLUDE,
        )

        assert to_ast(spec).children == (Membership("laboratory", ("A",)),)

    def test_only_mode_selects_exclusion_sets(self):
        """ONLY mode keeps rows belonging to any non-pharmacy exclusion set."""
        spec = FilterSpec(
            pharmacy=_dim(included={"ph-1"}),
            laboratory=_dim(included={"A"}, excluded={"B"}),
            category=_dim(excluded={"ANTALGIQUES"}),
            exclusion_mode=ExclusionMode.ONLY,
        )

        tree = to_ast(spec)

        assert tree.children == (
            Membership("pharmacy", ("ph-1",)),
            AnyOf(
                (
                    Membership("laboratory", ("B",)),
                    Membership("category", ("ANTALGIQUES",)),
                )
            ),
        )

    def test_scalar_constraints(self):
        """TVA, generic status, reimbursement and price ranges become nodes."""
        spec = FilterSpec(
            tva_rates=frozenset({Decimal("5.5"), Decimal("2.1")}),
            generic_status=GenericStatus.BOTH,
            reimbursement_status=ReimbursementStatus.NOT_REIMBURSED,
            price_ranges={
                PriceField.SELL_PRICE: PriceRange(min=Decimal("1"), max=Decimal("10")),
                PriceField.MARGIN_RATE: PriceRange(),
            },
        )

        tree = to_ast(spec)

        assert tree.children == (
            Membership("tva_rate", (Decimal("2.1"), Decimal("5.5"))),
            EnumMatch("generic_status", ("GÉNÉRIQUE", "RÉFÉRENT")),
            BoolMatch("reimbursable", False),
            Range("sell_price", Decimal("1"), Decimal("10")),
        )

    def test_generic_status_all_adds_nothing(self):
        """ALL is no constraint."""
        assert to_ast(FilterSpec(generic_status=GenericStatus.ALL)) == AllOf()

    def test_identical_include_exclude_raises(self):
        """Including and excluding exactly the same members is contradictory."""
        spec = FilterSpec(product=_dim(included={"340"}, excluded={"340"}))

        with pytest.raises(InvalidFilterError) as exc_info:
            to_ast(spec)

        assert exc_info.value.code == "INVALID_FILTER"
        assert exc_info.value.details["dimension"] == "product"

    def test_inverted_price_range_raises(self):
        """A range with min > max is rejected."""
        spec = FilterSpec(
            price_ranges={PriceField.SELL_PRICE: PriceRange(min=Decimal("5"), max=Decimal("1"))}
        )

        with pytest.raises(InvalidFilterError):
            to_ast(spec)

    def test_referenced_fields(self):
        """Every constrained field is reported, including inside AnyOf."""
        spec = FilterSpec(
            pharmacy=_dim(included={"ph-1"}),
            generic_group=_dim(excluded={"G1"}),
            exclusion_mode=ExclusionMode.ONLY,
            reimbursement_status=ReimbursementStatus.REIMBURSED,
        )

        assert referenced_fields(to_ast(spec)) == {"pharmacy", "generic_group", "reimbursable"}


class TestCompile:
    """Tests for predicate tree -> SQL."""

    def test_empty_tree_compiles_to_true(self):
        compiled = compile_ast(AllOf(), FLEXIBLE_COLUMNS)

        assert compiled.text == "TRUE"
        assert compiled.params == {}

    def test_empty_disjunction_compiles_to_false(self):
        assert compile_ast(AnyOf(), FLEXIBLE_COLUMNS).text == "FALSE"

    def test_values_are_bound_parameters(self):
        """Caller values never appear in the SQL text."""
        spec = FilterSpec(laboratory=_dim(included={"O'BRIEN; DROP TABLE x"}))

        compiled = build(spec, FLEXIBLE_COLUMNS)

        assert "DROP" not in compiled.text
        assert compiled.text == "gp.bcb_lab = ANY(:f_laboratory_in_0)"
        assert compiled.params == {"f_laboratory_in_0": ["O'BRIEN; DROP TABLE x"]}

    def test_exclusion_keeps_null_attributes(self):
        """Rows without the attribute are not removed by an exclusion."""
        spec = FilterSpec(generic_group=_dim(excluded={"G1"}))

        compiled = build(spec, FLEXIBLE_COLUMNS)

        assert compiled.text == (
            "(gp.bcb_generic_group_id IS NULL OR gp.bcb_generic_group_id <> ALL(:f_generic_group_ex_0))"
        )

    def test_conjunction_and_ranges(self):
        spec = FilterSpec(
            laboratory=_dim(included={"A"}),
            price_ranges={PriceField.PURCHASE_PRICE_GROSS: PriceRange(min=Decimal("2"))},
        )

        compiled = build(spec, FLEXIBLE_COLUMNS)

        assert compiled.text == (
            "(gp.bcb_lab = ANY(:f_laboratory_in_0) AND "
            "gp.prix_achat_ht_fabricant >= :f_purchase_price_gross_min_1)"
        )
        assert compiled.params["f_purchase_price_gross_min_1"] == Decimal("2")

    def test_enum_and_bool_literals_are_inlined(self):
        spec = FilterSpec(
            generic_status=GenericStatus.REFERENT,
            reimbursement_status=ReimbursementStatus.REIMBURSED,
        )

        compiled = build(spec, FAST_COLUMNS)

        assert compiled.text == (
            "(mv.bcb_generic_status IN ('RÉFÉRENT') AND mv.is_reimbursable IS TRUE)"
        )
        assert compiled.params == {}

    def test_deterministic(self):
        """Same spec, same text and parameters."""
        spec = FilterSpec(
            laboratory=_dim(included={"B", "A", "C"}),
            product=_dim(excluded={"2", "1"}),
        )

        first = build(spec, FLEXIBLE_COLUMNS)
        second = build(spec, FLEXIBLE_COLUMNS)

        assert first == second
        assert first.params["f_laboratory_in_0"] == ["A", "B", "C"]

    def test_unknown_column_raises(self):
        """A field with no column on the route is rejected."""
        spec = FilterSpec(generic_group=_dim(included={"G1"}))

        with pytest.raises(InvalidFilterError) as exc_info:
            build(spec, FAST_COLUMNS)

        assert exc_info.value.details["field"] == "generic_group"

    def test_custom_column_map(self):
        column_map = ColumnMap(name="test", columns={"pharmacy": "t.pharmacy"})

        compiled = build(FilterSpec(pharmacy=_dim(included={"p"})), column_map)

        assert compiled.text == "t.pharmacy = ANY(:f_pharmacy_in_0)"
        assert compiled.fields == {"pharmacy"}

    def test_cancelled_token_aborts(self):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(asyncio.CancelledError):
            build(FilterSpec(), FLEXIBLE_COLUMNS, token)
