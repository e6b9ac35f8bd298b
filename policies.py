"""Row-level authorization predicates, evaluated at the access boundary.

One table, keyed by (entity, operation), lists which relationships between
the acting identity and the row grant access. Nothing outside this module
decides who may read or write what.
"""
import logging
from typing import Any, Mapping, Optional

from errors import AccessDenied

logger = logging.getLogger(__name__)

ANYONE = "anyone"
SELF = "self"
OWNER = "owner"
BORROWER = "borrower"
AUTHOR = "author"

SELECT = "select"
INSERT = "insert"
UPDATE = "update"
DELETE = "delete"

POLICIES: dict[tuple[str, str], frozenset[str]] = {
    ("profile", SELECT): frozenset({ANYONE}),
    ("profile", INSERT): frozenset({SELF}),
    ("profile", UPDATE): frozenset({SELF}),
    ("book", SELECT): frozenset({ANYONE}),
    ("book", INSERT): frozenset({OWNER}),
    ("book", UPDATE): frozenset({OWNER}),
    ("book", DELETE): frozenset({OWNER}),
    ("transaction", SELECT): frozenset({BORROWER, OWNER}),
    ("transaction", INSERT): frozenset({BORROWER}),
    ("transaction", UPDATE): frozenset({OWNER}),
    ("review", SELECT): frozenset({ANYONE}),
    ("review", INSERT): frozenset({AUTHOR}),
    ("review", UPDATE): frozenset({AUTHOR}),
    ("review", DELETE): frozenset({AUTHOR}),
    ("payment", SELECT): frozenset({BORROWER, OWNER}),
    ("payment", INSERT): frozenset({BORROWER}),
}

# Row column holding the identity for each (entity, relationship).
# Transactions and payments carry their book's owner as book_owner_id (joined).
_RELATION_COLUMNS: dict[str, dict[str, str]] = {
    "profile": {SELF: "id"},
    "book": {OWNER: "owner_id"},
    "transaction": {BORROWER: "borrower_id", OWNER: "book_owner_id"},
    "review": {AUTHOR: "user_id"},
    "payment": {BORROWER: "borrower_id", OWNER: "book_owner_id"},
}


def relationships(entity: str, actor_id: Optional[str], row: Mapping[str, Any]) -> set[str]:
    """Relationships the actor holds to row. Anonymous actors only get ANYONE."""
    rels = {ANYONE}
    if not actor_id:
        return rels
    for rel, column in _RELATION_COLUMNS.get(entity, {}).items():
        if row.get(column) is not None and row.get(column) == actor_id:
            rels.add(rel)
    return rels


def allows(entity: str, operation: str, actor_id: Optional[str], row: Optional[Mapping[str, Any]]) -> bool:
    """True if the predicate for (entity, operation) passes. Missing rows and entries deny."""
    granted = POLICIES.get((entity, operation))
    if not granted or row is None:
        return False
    return bool(granted & relationships(entity, actor_id, row))


def check(entity: str, operation: str, actor_id: Optional[str], row: Optional[Mapping[str, Any]]) -> None:
    """Raise AccessDenied unless allowed. Same error for missing and forbidden rows."""
    if not allows(entity, operation, actor_id, row):
        logger.warning(
            "Access denied: entity=%s op=%s actor=%s exists=%s",
            entity, operation, actor_id, row is not None,
        )
        raise AccessDenied()


def visible(entity: str, actor_id: Optional[str], rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Filter rows down to those the actor may select."""
    return [r for r in rows if allows(entity, SELECT, actor_id, r)]
