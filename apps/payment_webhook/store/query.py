"""Structured read queries for the document store.

Lookups in the reconciliation engine are all of the same shape: "documents
of these types where any of these fields holds one of these values". Rather
than passing raw query strings around, callers build a ``DocumentQuery``
which the HTTP client renders to the store's query language and the
in-memory store evaluates directly.

Path syntax:
    ``field``           top-level field
    ``slug.current``    nested object field
    ``stripePrices[].priceId``
                        any element of an array whose ``priceId`` matches

Example:
    >>> q = DocumentQuery(
    ...     doc_types=("order",),
    ...     any_of=(
    ...         FieldMatch("stripeSessionId", ("cs_test_1",)),
    ...         FieldMatch("paymentIntentId", ("pi_1",)),
    ...     ),
    ... )
    >>> q.to_groq()[0]
    '*[_type in $types && (stripeSessionId in $v0 || paymentIntentId in $v1)] | order(_createdAt asc) [0...1]'
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

ARRAY_MARKER = "[]."


def _clean_values(values: Iterable[Any], case_insensitive: bool) -> tuple[Any, ...]:
    cleaned: list[Any] = []
    for value in values:
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
            if case_insensitive:
                value = value.lower()
        if value not in cleaned:
            cleaned.append(value)
    return tuple(cleaned)


@dataclass(frozen=True)
class FieldMatch:
    """One disjunct of a lookup: ``path`` equals any of ``values``.

    Blank strings and None are dropped from ``values`` at construction, so a
    match built from absent metadata is simply empty and is skipped.
    """

    path: str
    values: tuple[Any, ...]
    case_insensitive: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", _clean_values(self.values, self.case_insensitive))

    @property
    def is_empty(self) -> bool:
        return not self.values

    def render(self, param: str) -> str:
        """Render this match as a query-language predicate bound to ``$param``."""
        if ARRAY_MARKER in self.path:
            array_path, _, member = self.path.partition(ARRAY_MARKER)
            target = f"lower({member})" if self.case_insensitive else member
            return f"count({array_path}[{target} in ${param}]) > 0"
        target = f"lower({self.path})" if self.case_insensitive else self.path
        return f"{target} in ${param}"


@dataclass(frozen=True)
class DocumentQuery:
    """A read-only lookup against the document store.

    Attributes:
        doc_types: Document ``_type`` values to consider
        any_of: Field matches combined with OR; empty matches are ignored
        limit: Maximum number of documents returned (oldest first)
    """

    doc_types: tuple[str, ...]
    any_of: tuple[FieldMatch, ...] = field(default_factory=tuple)
    limit: int = 1

    @property
    def active_matches(self) -> tuple[FieldMatch, ...]:
        return tuple(match for match in self.any_of if not match.is_empty)

    @property
    def is_empty(self) -> bool:
        """True when no disjunct carries a value, i.e. the query can match nothing."""
        return not self.active_matches

    def to_groq(self) -> tuple[str, dict[str, Any]]:
        """Render as a GROQ query string plus its parameters."""
        params: dict[str, Any] = {"types": list(self.doc_types)}
        clauses: list[str] = []
        for index, match in enumerate(self.active_matches):
            name = f"v{index}"
            params[name] = list(match.values)
            clauses.append(match.render(name))
        predicate = " || ".join(clauses) if clauses else "false"
        query = (
            f"*[_type in $types && ({predicate})] | order(_createdAt asc) [0...{self.limit}]"
        )
        return query, params


def read_path(document: dict[str, Any], path: str) -> list[Any]:
    """Resolve ``path`` on a document, returning every value it reaches.

    Array paths fan out over elements, so the result is always a list.
    """
    if ARRAY_MARKER in path:
        array_path, _, member = path.partition(ARRAY_MARKER)
        values: list[Any] = []
        for container in read_path(document, array_path):
            if isinstance(container, list):
                for item in container:
                    if isinstance(item, dict):
                        values.extend(read_path(item, member))
        return values

    current: Any = document
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return []
        current = current[part]
    return [current] if current is not None else []


def document_matches(document: dict[str, Any], query: DocumentQuery) -> bool:
    """Evaluate ``query`` against one in-memory document."""
    if document.get("_type") not in query.doc_types:
        return False
    for match in query.active_matches:
        for value in read_path(document, match.path):
            if match.case_insensitive and isinstance(value, str):
                value = value.lower()
            if value in match.values:
                return True
    return False
