"""Tests for the SQL safety filter."""

import pytest

from explorer_core.errors import ValidationError
from query.validator import referenced_datasets, strip_comments, validate


@pytest.mark.parametrize(
    "query",
    [
        "SELECT * FROM sales",
        "select region, sum(amount) from sales group by region order by 2 desc",
        "WITH t AS (SELECT 1 AS x) SELECT x FROM t",
        "SELECT COUNT(*) FROM logs WHERE level = 'ERROR'",
    ],
)
def test_read_queries_pass(query: str) -> None:
    assert validate(query) == query


@pytest.mark.parametrize(
    ("query", "label"),
    [
        ("DROP TABLE sales", "DROP TABLE"),
        ("drop   table sales", "DROP TABLE"),
        ("SELECT 1; DELETE FROM sales", "DELETE"),
        ("INSERT INTO sales VALUES (1)", "INSERT"),
        ("insert or replace into sales values (1)", "INSERT"),
        ("UPDATE sales SET amount = 0", "UPDATE"),
        ("ALTER TABLE sales ADD COLUMN x", "ALTER TABLE"),
        ("ATTACH DATABASE '/tmp/x.db' AS x", "ATTACH"),
        ("PRAGMA table_info(sales)", "PRAGMA"),
        ("VACUUM", "VACUUM"),
        ("GRANT ALL ON sales TO bob", "GRANT"),
    ],
)
def test_mutating_queries_rejected(query: str, label: str) -> None:
    with pytest.raises(ValidationError, match=f"{label} statements are not allowed"):
        validate(query)


def test_comments_do_not_hide_statements() -> None:
    with pytest.raises(ValidationError):
        validate("SELECT 1 /* harmless */; DROP /**/ TABLE sales")


def test_comments_stripped_from_returned_query() -> None:
    cleaned = validate("SELECT * FROM sales -- all rows\n/* note */")
    assert cleaned == "SELECT * FROM sales"


def test_commented_out_statement_is_ignored() -> None:
    assert validate("SELECT 1 -- DROP TABLE sales") == "SELECT 1"


@pytest.mark.parametrize("query", ["", "   ", "-- only a comment", "/* nothing */"])
def test_empty_query_rejected(query: str) -> None:
    with pytest.raises(ValidationError, match="empty"):
        validate(query)


def test_unterminated_block_comment_is_stripped() -> None:
    assert strip_comments("SELECT 1 /* DROP TABLE x").strip() == "SELECT 1"


def test_referenced_datasets_in_order_of_use() -> None:
    query = 'SELECT * FROM Events e JOIN "sales" s ON e.id = s.id JOIN events x ON 1'
    assert referenced_datasets(query, ["sales", "events", "logs"]) == ["events", "sales"]


def test_referenced_datasets_ignores_comments_and_unknown() -> None:
    query = "SELECT * FROM logs -- join sales later"
    assert referenced_datasets(query, ["sales", "logs"]) == ["logs"]
    assert referenced_datasets("SELECT 1", ["sales"]) == []


@pytest.mark.parametrize(
    "query",
    [
        "SELECT count(*) FROM logs",
        "SELECT SUM (amount), count( * ) FROM logs",
    ],
)
def test_referenced_datasets_skips_function_calls(query: str) -> None:
    assert referenced_datasets(query, ["count", "sum", "logs"]) == ["logs"]


def test_referenced_datasets_quoted_keyword_name_counts() -> None:
    query = 'SELECT * FROM "count" JOIN logs USING (id)'
    assert referenced_datasets(query, ["count", "logs"]) == ["count", "logs"]
