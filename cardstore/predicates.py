"""
Structured filter predicates for card queries.

Filters are built as small immutable nodes and rendered to SQL by
``SqliteCompiler``. Column names are checked against the ``cards`` schema
when a node is created; user values only ever reach the database as bound
parameters.
"""

from dataclasses import dataclass
from typing import Any, Sequence, Union

from .database import CARD_COLUMNS, CARD_TAGS_TABLE
from .tag_index import escape_like

_COLUMNS = frozenset(CARD_COLUMNS)

COMPARISON_OPERATORS = frozenset({"=", "!=", "<", "<=", ">", ">="})


def _check_column(column: str) -> None:
    if column not in _COLUMNS:
        raise ValueError(f"Unknown card column: {column!r}")


@dataclass(frozen=True)
class TextMatch:
    """Substring match of ``needle`` in any of ``columns``."""
    columns: tuple[str, ...]
    needle: str

    def __post_init__(self):
        if not self.columns:
            raise ValueError("TextMatch needs at least one column")
        for column in self.columns:
            _check_column(column)


@dataclass(frozen=True)
class TagExists:
    """Card has at least one index row whose normalized tag is in ``variants``."""
    variants: tuple[str, ...]


@dataclass(frozen=True)
class TagNotExists:
    """Card has no index row whose normalized tag is in ``variants``."""
    variants: tuple[str, ...]


@dataclass(frozen=True)
class NumericCompare:
    column: str
    op: str
    value: Union[int, float]

    def __post_init__(self):
        _check_column(self.column)
        if self.op not in COMPARISON_OPERATORS:
            raise ValueError(f"Unsupported operator: {self.op!r}")


@dataclass(frozen=True)
class Equals:
    column: str
    value: Any

    def __post_init__(self):
        _check_column(self.column)


@dataclass(frozen=True)
class InList:
    """Column value in ``values``; with ``lowercase`` the column is lowercased first."""
    column: str
    values: tuple[Any, ...]
    lowercase: bool = False

    def __post_init__(self):
        _check_column(self.column)


@dataclass(frozen=True)
class Flag:
    """Boolean column is set."""
    column: str

    def __post_init__(self):
        _check_column(self.column)


@dataclass(frozen=True)
class NotFlag:
    """Boolean column is unset or NULL."""
    column: str

    def __post_init__(self):
        _check_column(self.column)


Predicate = Union[TextMatch, TagExists, TagNotExists, NumericCompare, Equals, InList, Flag, NotFlag]


class SqliteCompiler:
    """Renders predicates to SQLite WHERE-clause fragments."""

    def __init__(self, table: str = "cards", tag_table: str = CARD_TAGS_TABLE):
        self.table = table
        self.tag_table = tag_table

    def compile(self, predicate: Predicate) -> tuple[str, list[Any]]:
        """
        Render one predicate.

        Returns:
            (sql fragment, parameters in placeholder order)
        """
        if isinstance(predicate, TextMatch):
            pattern = f"%{escape_like(predicate.needle)}%"
            parts = [f"{c} LIKE ? ESCAPE '\\'" for c in predicate.columns]
            return f"({' OR '.join(parts)})", [pattern] * len(predicate.columns)

        if isinstance(predicate, (TagExists, TagNotExists)):
            operator = "EXISTS" if isinstance(predicate, TagExists) else "NOT EXISTS"
            placeholders = _placeholders(predicate.variants)
            sql = (
                f"{operator} (SELECT 1 FROM {self.tag_table} ct "
                f"WHERE ct.cardId = {self.table}.id AND ct.normalizedTag IN ({placeholders}))"
            )
            return sql, list(predicate.variants)

        if isinstance(predicate, NumericCompare):
            return f"{predicate.column} {predicate.op} ?", [predicate.value]

        if isinstance(predicate, Equals):
            return f"{predicate.column} = ?", [predicate.value]

        if isinstance(predicate, InList):
            column = f"LOWER({predicate.column})" if predicate.lowercase else predicate.column
            return f"{column} IN ({_placeholders(predicate.values)})", list(predicate.values)

        if isinstance(predicate, Flag):
            return f"{predicate.column} = 1", []

        if isinstance(predicate, NotFlag):
            return f"({predicate.column} IS NULL OR {predicate.column} = 0)", []

        raise TypeError(f"Not a predicate: {predicate!r}")

    def compile_all(self, predicates: Sequence[Predicate]) -> tuple[str, list[Any]]:
        """AND all predicates together into a WHERE clause ('' when empty)."""
        clauses: list[str] = []
        params: list[Any] = []
        for predicate in predicates:
            sql, clause_params = self.compile(predicate)
            clauses.append(sql)
            params.extend(clause_params)
        if not clauses:
            return "", params
        return " WHERE " + " AND ".join(clauses), params


def _placeholders(values: Sequence[Any]) -> str:
    if not values:
        raise ValueError("IN list must not be empty")
    return ", ".join("?" for _ in values)
