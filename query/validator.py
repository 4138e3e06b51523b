"""
Heuristic safety filter for submitted SQL.

This is a first-pass lexical check, not a grammar-based authorizer: it can be
fooled by sufficiently creative SQL and can reject harmless queries whose
string literals mention a blocked statement. Queries additionally run against
a read-only SQLite connection in a worker process.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from explorer_core.errors import ValidationError

logger = logging.getLogger(__name__)

_BLOCK_COMMENT = re.compile(r"/\*.*?(\*/|$)", re.DOTALL)
_LINE_COMMENT = re.compile(r"--[^\n]*")

_IDENTIFIER = re.compile(r'"([^"]+)"|`([^`]+)`|\[([^\]]+)\]|\b([A-Za-z_][A-Za-z0-9_]*)\b')
_CALL_OPEN = re.compile(r"\s*\(")

# (statement class, pattern) pairs; matched against lower-cased, comment-free text
DANGEROUS_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (label, re.compile(pattern, re.DOTALL))
    for label, pattern in (
        ("DROP TABLE", r"\bdrop\s+table\b"),
        ("DROP DATABASE", r"\bdrop\s+database\b"),
        ("DROP SCHEMA", r"\bdrop\s+schema\b"),
        ("DROP VIEW", r"\bdrop\s+view\b"),
        ("DROP INDEX", r"\bdrop\s+index\b"),
        ("DROP TRIGGER", r"\bdrop\s+trigger\b"),
        ("CREATE DATABASE", r"\bcreate\s+database\b"),
        ("ALTER DATABASE", r"\balter\s+database\b"),
        ("ALTER TABLE", r"\balter\s+table\b"),
        ("TRUNCATE", r"\btruncate\b"),
        ("INSERT", r"\binsert\s+(or\s+\w+\s+)?into\b"),
        ("REPLACE", r"\breplace\s+into\b"),
        ("UPDATE", r"\bupdate\s+.+?\bset\b"),
        ("DELETE", r"\bdelete\s+from\b"),
        ("GRANT", r"\bgrant\b"),
        ("REVOKE", r"\brevoke\b"),
        ("CREATE USER", r"\bcreate\s+user\b"),
        ("ALTER USER", r"\balter\s+user\b"),
        ("DROP USER", r"\bdrop\s+user\b"),
        ("ATTACH", r"\battach\b"),
        ("DETACH", r"\bdetach\b"),
        ("PRAGMA", r"\bpragma\b"),
        ("VACUUM", r"\bvacuum\b"),
    )
)


def strip_comments(query_text: str) -> str:
    without_blocks = _BLOCK_COMMENT.sub(" ", query_text)
    return _LINE_COMMENT.sub(" ", without_blocks)


def validate(query_text: str) -> str:
    """Reject queries containing mutating or administrative statements.

    Returns the query with comments stripped.

    Raises:
        ValidationError: query is empty or matches a blocked statement class.
    """
    if not isinstance(query_text, str):
        raise ValidationError("Query must be a string")
    cleaned = strip_comments(query_text).strip()
    if not cleaned:
        raise ValidationError("Query is empty")
    lowered = cleaned.lower()
    for label, pattern in DANGEROUS_PATTERNS:
        if pattern.search(lowered):
            logger.warning(f"Rejected query containing {label}")
            raise ValidationError(f"Query rejected: {label} statements are not allowed")
    return cleaned


def referenced_datasets(query_text: str, known_names: Iterable[str]) -> list[str]:
    """Registered dataset names mentioned in the query, in order of first use.

    Matching is case-insensitive, as SQLite identifiers are. A bare word
    followed by ``(`` is a function call (``count(*)``), not a table.
    """
    by_lower = {name.lower(): name for name in known_names}
    found: dict[str, None] = {}
    cleaned = strip_comments(query_text)
    for match in _IDENTIFIER.finditer(cleaned):
        if match.group(4) is not None and _CALL_OPEN.match(cleaned, match.end()):
            continue
        token = next(group for group in match.groups() if group is not None)
        name = by_lower.get(token.lower())
        if name is not None:
            found.setdefault(name, None)
    return list(found)
