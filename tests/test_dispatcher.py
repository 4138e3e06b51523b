"""End-to-end tests of the tool surface."""

from __future__ import annotations

from pathlib import Path

import pytest

from explorer_core.config import ExplorerConfig
from explorer_core.errors import AccessDenied, ValidationError
from server.dispatcher import Dispatcher, dataset_name_for

MB = 1024 * 1024
GB = 1024 * MB


@pytest.fixture
def dispatcher(config: ExplorerConfig):
    with Dispatcher(config) as d:
        yield d


@pytest.fixture
def loaded(dispatcher: Dispatcher, make_csv) -> Dispatcher:
    sales = make_csv("sales.csv", "region,amount", ["north,10", "south,20", "north,5"])
    events = make_csv("events.csv", "user,kind", ["1,click", "2,view", "1,view", "3,click"])
    logs = make_csv("logs.csv", "level,message", ["INFO,start", "ERROR,boom", "ERROR,again"])
    for name, path, size_hint in (
        ("sales", sales, 50 * MB),
        ("events", events, 500 * MB),
        ("logs", logs, 2 * GB),
    ):
        response = dispatcher.handle(
            "load", {"path": str(path), "name": name, "size_hint": size_hint}
        )
        assert response.ok, response.error
    return dispatcher


def test_size_hints_place_datasets_in_tiers(loaded: Dispatcher) -> None:
    backends = {info.name: info.backend.value for info in loaded.list_datasets()}
    assert backends == {"events": "columnar", "logs": "relational", "sales": "memory"}


def test_load_response_describes_dataset(dispatcher: Dispatcher, make_csv) -> None:
    path = make_csv("2024 sales.csv", "region,amount", ["north,10", "south,NA"])

    response = dispatcher.handle("load", {"path": str(path)})

    assert response.ok
    assert response.data["name"] == "d_2024_sales"
    assert response.data["row_count"] == 2
    assert "Successfully loaded dataset 'd_2024_sales'" in response.text
    assert "50.0% missing" in response.text


def test_execute_across_tiers(loaded: Dispatcher) -> None:
    code = (
        "by_region = sales.aggregate({'amount': 'sum'}, group_by='region').to_pylist()\n"
        "clicks = events.where('kind', '==', 'click').count()\n"
        "print(clicks)\n"
        "by_region"
    )

    response = loaded.handle("execute", {"code": code, "datasets": ["sales", "events"]})

    assert response.ok, response.error
    assert response.data["output"] == "2\n"
    assert response.data["result"] == [
        {"region": "north", "amount_sum": 15},
        {"region": "south", "amount_sum": 20},
    ]
    assert "Execution time" in response.text


def test_query_relational_dataset_without_promotion(loaded: Dispatcher) -> None:
    response = loaded.handle("query", {"text": "SELECT COUNT(*) AS n FROM logs"})

    assert response.ok, response.error
    assert response.data["rows"] == [[3]]
    assert loaded.registry.relational_tables() == ["logs"]
    assert "Query executed successfully" in response.text


def test_query_promotes_referenced_datasets(loaded: Dispatcher) -> None:
    response = loaded.handle(
        "query",
        {"text": "SELECT region, SUM(amount) AS total FROM sales GROUP BY region ORDER BY region"},
    )

    assert response.ok, response.error
    assert response.data["rows"] == [["north", 15], ["south", 20]]
    assert loaded.describe("sales").backend.value == "relational"
    assert loaded.describe("events").backend.value == "columnar"


def test_query_with_explicit_dataset(loaded: Dispatcher) -> None:
    response = loaded.handle(
        "query", {"text": "SELECT COUNT(*) FROM events", "dataset": "events"}
    )
    assert response.data["rows"] == [[4]]


def test_describe_and_list(loaded: Dispatcher) -> None:
    described = loaded.handle("describe", {"name": "events"})
    listed = loaded.handle("list_datasets", {})

    assert described.ok
    assert "Storage backend: columnar" in described.text
    assert "First 4 rows:" in described.text
    assert listed.text.startswith("3 dataset(s):")
    assert [item["name"] for item in listed.data["datasets"]] == ["events", "logs", "sales"]


class TestErrorResponses:
    def test_unknown_tool(self, dispatcher: Dispatcher) -> None:
        response = dispatcher.handle("shell", {"cmd": "ls"})

        assert not response.ok
        assert response.error.code == "validation_error"
        assert "Unknown tool 'shell'" in response.error.message

    def test_missing_arguments(self, dispatcher: Dispatcher) -> None:
        response = dispatcher.handle("execute", {})
        assert response.error.code == "validation_error"

    def test_unknown_dataset(self, dispatcher: Dispatcher) -> None:
        assert dispatcher.handle("describe", {"name": "nope"}).error.code == "not_found"
        response = dispatcher.handle("execute", {"code": "1", "datasets": ["nope"]})
        assert response.error.code == "not_found"

    def test_drop_table_rejected(self, loaded: Dispatcher) -> None:
        response = loaded.handle("query", {"text": "DROP TABLE logs"})

        assert response.error.code == "validation_error"
        assert "DROP TABLE" in response.error.message
        assert loaded.registry.relational_tables() == ["logs"]

    def test_load_outside_allowlist(self, dispatcher: Dispatcher, tmp_path: Path) -> None:
        outside = tmp_path / "outside.csv"
        outside.write_text("a\n1\n")

        response = dispatcher.handle("load", {"path": str(outside)})

        assert response.error.code == "access_denied"
        assert dispatcher.list_datasets() == []

    def test_load_missing_file(self, dispatcher: Dispatcher, data_dir: Path) -> None:
        response = dispatcher.handle("load", {"path": str(data_dir / "missing.csv")})
        assert response.error.code == "not_found"

    def test_internal_access_rejected_before_spawning(self, dispatcher: Dispatcher) -> None:
        response = dispatcher.handle("execute", {"code": "().__class__.__bases__"})

        assert response.error.code == "access_denied"
        assert dispatcher.executor.active_workers() == 0

    def test_unexpected_exception_becomes_internal_error(
        self, dispatcher: Dispatcher, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def broken() -> list[object]:
            raise RuntimeError("catalog corrupted")

        monkeypatch.setattr(dispatcher.registry, "list", broken)

        response = dispatcher.handle("list_datasets")

        assert response.error.code == "internal_error"
        assert "catalog corrupted" in response.error.message


class TestTimeouts:
    def test_default_when_unset(self, dispatcher: Dispatcher) -> None:
        assert dispatcher.clamp_timeout(None) == 20

    def test_clamped_to_maximum(self, dispatcher: Dispatcher) -> None:
        assert dispatcher.clamp_timeout(1_000) == 60
        assert dispatcher.clamp_timeout(5) == 5

    def test_non_positive_rejected(self, dispatcher: Dispatcher) -> None:
        with pytest.raises(ValidationError):
            dispatcher.clamp_timeout(0)

    def test_request_timeout_applies(self, dispatcher: Dispatcher) -> None:
        response = dispatcher.handle(
            "execute", {"code": "while True:\n    pass", "timeout_s": 3}
        )

        assert response.error.code == "timeout"
        assert response.data["state"] == "timed_out"


def test_direct_load_guards_path(dispatcher: Dispatcher) -> None:
    with pytest.raises(AccessDenied):
        dispatcher.load("/etc/passwd")


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("data/sales.csv", "sales"),
        ("2024 sales.csv", "d_2024_sales"),
        ("weird-name.v2.parquet", "weird_name_v2"),
        ("---.csv", "dataset"),
    ],
)
def test_dataset_name_for(path: str, expected: str) -> None:
    assert dataset_name_for(path) == expected
