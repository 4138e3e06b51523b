"""The three handle types must answer every question identically."""

from __future__ import annotations

import pyarrow as pa
import pytest

from explorer_core.errors import ValidationError
from explorer_core.schemas import Backend
from registry.handles import normalize_aggregations, normalize_predicates, open_handle
from registry.registry import DataRegistry

SIZE_HINTS = {Backend.MEMORY: 500, Backend.COLUMNAR: 5_000, Backend.RELATIONAL: 50_000}


@pytest.fixture(params=list(SIZE_HINTS), ids=lambda backend: backend.value)
def handle(request, registry: DataRegistry):
    table = pa.table(
        {
            "city": ["paris", "lyon", "paris", "nice", "lyon", None],
            "visits": [10, 3, 7, 1, 5, 2],
            "score": [1.5, 2.0, None, 4.0, 3.5, 0.5],
        }
    )
    registry.store("visits", table, size_hint=SIZE_HINTS[request.param])
    h = registry.get("visits")
    assert h.backend == request.param
    return h


def test_count_and_columns(handle) -> None:
    assert handle.columns == ["city", "visits", "score"]
    assert handle.count() == 6
    assert len(handle) == 6


def test_filter_is_lazy_and_chainable(handle) -> None:
    filtered = handle.filter(("visits", ">", 2)).where("city", "!=", "nice")

    assert handle.count() == 6
    assert filtered.count() == 4
    assert sorted(filtered.collect().column("visits").to_pylist()) == [3, 5, 7, 10]


def test_set_and_null_predicates(handle) -> None:
    assert handle.where("city", "in", ["paris", "nice"]).count() == 3
    assert handle.where("city", "not in", ["paris"]).count() == 3
    assert handle.where("city", "is null").count() == 1
    assert handle.where("score", "is not null").count() == 5


def test_collect_projection_and_limit(handle) -> None:
    table = handle.collect(columns=["visits"], limit=2)

    assert table.column_names == ["visits"]
    assert table.num_rows == 2


def test_head_returns_first_rows(handle) -> None:
    assert handle.head(3).column("visits").to_pylist() == [10, 3, 7]


def test_scan_batches_respect_limit(handle) -> None:
    batches = list(handle.scan(batch_size=2, limit=5))

    assert sum(batch.num_rows for batch in batches) == 5
    assert all(batch.num_rows <= 2 for batch in batches)


def test_aggregate_without_groups(handle) -> None:
    result = handle.aggregate({"visits": ["sum", "max"], "*": "count"}).to_pylist()

    assert result == [{"visits_sum": 28, "visits_max": 10, "count": 6}]


def test_aggregate_grouped_is_ordered(handle) -> None:
    result = handle.where("city", "is not null").aggregate(
        [("visits", "sum"), ("*", "count")], group_by="city"
    )

    assert result.to_pylist() == [
        {"city": "lyon", "visits_sum": 8, "count": 2},
        {"city": "nice", "visits_sum": 1, "count": 1},
        {"city": "paris", "visits_sum": 17, "count": 2},
    ]


def test_aggregate_mean_ignores_nulls(handle) -> None:
    result = handle.aggregate({"score": "avg"}).to_pylist()
    assert result[0]["score_mean"] == pytest.approx(2.3)


def test_sample_is_bounded(handle) -> None:
    assert handle.sample(3, seed=7).num_rows == 3
    assert handle.sample(50).num_rows == 6


def test_summary_counts_nulls(handle) -> None:
    summary = {row["column"]: row for row in handle.summary().to_pylist()}

    assert summary["city"]["nulls"] == 1
    assert summary["score"]["nulls"] == 1
    assert summary["visits"]["max"] == 10


def test_unknown_column_rejected(handle) -> None:
    with pytest.raises(ValidationError):
        handle.where("missing", "==", 1)
    with pytest.raises(ValidationError):
        handle.collect(columns=["missing"])
    with pytest.raises(ValidationError):
        handle.aggregate({"visits": "sum"}, group_by="missing")


def test_reopened_reference_matches(handle, registry: DataRegistry) -> None:
    reopened = open_handle(registry.reference("visits"))

    assert reopened.backend == handle.backend
    assert reopened.collect().to_pylist() == handle.collect().to_pylist()


class TestNormalization:
    def test_operator_aliases(self) -> None:
        assert normalize_predicates([("a", "=", 1), ("a", "isnull")], ["a"]) == (
            ("a", "==", 1),
            ("a", "is null", None),
        )

    def test_comparison_needs_value(self) -> None:
        with pytest.raises(ValidationError, match="needs a value"):
            normalize_predicates([("a", "==")], ["a"])

    def test_set_operator_needs_list(self) -> None:
        with pytest.raises(ValidationError):
            normalize_predicates([("a", "in", 3)], ["a"])

    def test_unknown_operator(self) -> None:
        with pytest.raises(ValidationError):
            normalize_predicates([("a", "like", "x%")], ["a"])

    def test_star_only_counts(self) -> None:
        with pytest.raises(ValidationError):
            normalize_aggregations({"*": "sum"}, ["a"])

    def test_duplicate_outputs_collapse(self) -> None:
        assert normalize_aggregations([("a", "mean"), ("a", "avg")], ["a"]) == [
            ("a", "mean", "a_mean")
        ]
