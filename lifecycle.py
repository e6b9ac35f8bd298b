"""Lending state machine for transactions.

plan_transition() is the single place that decides whether a status change is
legal and what it implies for the book. db.apply_transition() runs it inside
the same database transaction as the writes it describes.
"""
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

import policies
from errors import ConstraintViolation, IllegalTransition

LOAN_PERIOD = timedelta(days=14)

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"
COMPLETED = "completed"
TRANSACTION_STATUSES = (PENDING, APPROVED, REJECTED, COMPLETED)
TERMINAL_STATUSES = frozenset({REJECTED, COMPLETED})

TYPE_BORROW = "borrow"
TYPE_RETURN = "return"
TRANSACTION_TYPES = (TYPE_BORROW, TYPE_RETURN)

BOOK_AVAILABLE = "available"
BOOK_BORROWED = "borrowed"
BOOK_RESERVED = "reserved"
BOOK_STATUSES = (BOOK_AVAILABLE, BOOK_BORROWED, BOOK_RESERVED)

# (old, new) -> (book status required before, book status after)
_TRANSITIONS: dict[tuple[str, str], tuple[Optional[str], Optional[str]]] = {
    (PENDING, APPROVED): (BOOK_AVAILABLE, BOOK_BORROWED),
    (PENDING, REJECTED): (None, None),
    (APPROVED, COMPLETED): (BOOK_BORROWED, BOOK_AVAILABLE),
}


@dataclass(frozen=True)
class Transition:
    """A validated status change plus everything that must be written with it."""

    transaction_id: str
    book_id: str
    old_status: str
    new_status: str
    expect_book_status: Optional[str] = None
    book_status: Optional[str] = None
    lend_date: Optional[str] = None
    due_date: Optional[str] = None
    return_date: Optional[str] = None
    pickup_token: Optional[str] = None

    def transaction_fields(self) -> dict[str, Any]:
        """Columns to set on the transaction row (status and any timestamps)."""
        fields: dict[str, Any] = {"status": self.new_status}
        for name in ("lend_date", "due_date", "return_date", "pickup_token"):
            value = getattr(self, name)
            if value is not None:
                fields[name] = value
        return fields


def is_legal(old_status: str, new_status: str) -> bool:
    return (old_status, new_status) in _TRANSITIONS


def allowed_next(status: str) -> list[str]:
    """Statuses reachable from status in one step (empty for terminal states)."""
    return [new for (old, new) in _TRANSITIONS if old == status]


def plan_transition(
    tx: Mapping[str, Any],
    new_status: str,
    *,
    actor_id: Optional[str],
    now: Optional[datetime] = None,
) -> Transition:
    """Validate tx -> new_status for actor and derive side effects.

    tx must carry book_owner_id (the referenced book's owner).
    Raises ConstraintViolation, AccessDenied or IllegalTransition.
    """
    # Authorization first: outsiders get AccessDenied whatever they send.
    policies.check("transaction", policies.UPDATE, actor_id, tx)
    if new_status not in TRANSACTION_STATUSES:
        raise ConstraintViolation("bad_status", f"Unknown transaction status: {new_status!r}")

    old_status = tx.get("status") or ""
    if tx.get("transaction_type") != TYPE_BORROW:
        raise IllegalTransition("unsupported_type", "Only borrow transactions follow the lending workflow.")
    if not is_legal(old_status, new_status):
        raise IllegalTransition(
            "illegal_transition",
            f"Cannot move a transaction from {old_status} to {new_status}.",
        )

    expect_book, book_after = _TRANSITIONS[(old_status, new_status)]
    now = now or datetime.now(timezone.utc)
    lend_date = due_date = return_date = token = None
    if new_status == APPROVED:
        lend_date = now.isoformat()
        due_date = (now + LOAN_PERIOD).isoformat()
        token = secrets.token_urlsafe(8)
    elif new_status == COMPLETED:
        return_date = now.isoformat()

    return Transition(
        transaction_id=tx["transaction_id"],
        book_id=tx["book_id"],
        old_status=old_status,
        new_status=new_status,
        expect_book_status=expect_book,
        book_status=book_after,
        lend_date=lend_date,
        due_date=due_date,
        return_date=return_date,
        pickup_token=token,
    )


def is_overdue(tx: Mapping[str, Any], now: datetime) -> bool:
    """Approved loan whose due date has passed."""
    if tx.get("status") != APPROVED or not tx.get("due_date"):
        return False
    try:
        due = datetime.fromisoformat(str(tx["due_date"]).replace("Z", "+00:00"))
    except ValueError:
        return False
    if due.tzinfo is None:
        due = due.replace(tzinfo=timezone.utc)
    return due < now
