"""Access boundary: every read and write on behalf of an identity goes through here.

Each function takes the acting identity id first, checks the relevant
predicate in policies.POLICIES, then calls into db. Book mutations are
announced on changefeed.book_feed after they commit.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Union

import db
import lifecycle
import policies
from changefeed import DELETE, INSERT, UPDATE, book_feed
from errors import AccessDenied, ConstraintViolation, PreconditionFailed

logger = logging.getLogger(__name__)

BOOK_EDITABLE_FIELDS = ("title", "author", "genre", "isbn", "tags")
PROFILE_EDITABLE_FIELDS = ("name", "address", "contact")
MAX_TEXT_LEN = 500


def _clean(value: Any, field: str, *, required: bool = False) -> Optional[str]:
    """Strip text input; empty becomes None. Raises ConstraintViolation for missing required values."""
    text = str(value).strip() if value is not None else ""
    if len(text) > MAX_TEXT_LEN:
        raise ConstraintViolation("too_long", f"{field} is too long.")
    if not text:
        if required:
            raise ConstraintViolation("required", f"{field} is required.")
        return None
    return text


def parse_tags(tags: Union[str, Iterable[str], None]) -> list[str]:
    """Tags from a list or a comma-separated string. Blanks and duplicates dropped, order kept."""
    if tags is None:
        return []
    items = tags.split(",") if isinstance(tags, str) else list(tags)
    out: list[str] = []
    for t in items:
        t = str(t).strip()
        if t and t not in out:
            out.append(t)
    return out


def matches_query(book: dict[str, Any], q: Optional[str]) -> bool:
    """Case-insensitive substring match on title, author, genre or any tag."""
    term = (q or "").strip().lower()
    if not term:
        return True
    fields = [book.get("title"), book.get("author"), book.get("genre")]
    if any(f and term in f.lower() for f in fields):
        return True
    return any(term in (t or "").lower() for t in book.get("tags") or [])


# ====== Profiles ======

def get_profile(actor_id: Optional[str], profile_id: str) -> Optional[dict[str, Any]]:
    profile = db.get_profile(profile_id)
    if profile is None:
        return None
    policies.check("profile", policies.SELECT, actor_id, profile)
    return profile


def update_profile(actor_id: Optional[str], profile_id: str, **fields: Any) -> dict[str, Any]:
    """Owner-only update of name, address and contact."""
    profile = db.get_profile(profile_id)
    policies.check("profile", policies.UPDATE, actor_id, profile)
    unknown = set(fields) - set(PROFILE_EDITABLE_FIELDS)
    if unknown:
        raise ConstraintViolation("read_only_field", f"Cannot change: {', '.join(sorted(unknown))}")
    changes: dict[str, Any] = {}
    for key, value in fields.items():
        changes[key] = _clean(value, key, required=(key == "name"))
    db.update_profile(profile_id, changes)
    return db.get_profile(profile_id)


# ====== Books ======

def list_books(actor_id: Optional[str], q: Optional[str] = None) -> list[dict[str, Any]]:
    """All books visible to actor, newest first, filtered by free text."""
    books = policies.visible("book", actor_id, db.list_books())
    return [b for b in books if matches_query(b, q)]


def list_own_books(actor_id: Optional[str]) -> list[dict[str, Any]]:
    if not actor_id:
        raise AccessDenied()
    return db.list_books(owner_id=actor_id)


def get_book(actor_id: Optional[str], book_id: str) -> Optional[dict[str, Any]]:
    book = db.get_book(book_id)
    if book is None:
        return None
    policies.check("book", policies.SELECT, actor_id, book)
    return book


def create_book(
    actor_id: Optional[str],
    title: str,
    author: str,
    genre: Optional[str] = None,
    isbn: Optional[str] = None,
    tags: Union[str, Iterable[str], None] = None,
    *,
    owner_id: Optional[str] = None,
) -> dict[str, Any]:
    """List a new book owned by the actor. Status always starts as available."""
    owner_id = owner_id or actor_id
    policies.check("book", policies.INSERT, actor_id, {"owner_id": owner_id})
    book = db.insert_book(
        owner_id=owner_id,
        title=_clean(title, "title", required=True),
        author=_clean(author, "author", required=True),
        genre=_clean(genre, "genre"),
        isbn=_clean(isbn, "isbn"),
        tags=parse_tags(tags),
    )
    logger.info("Book created: book_id=%s owner_id=%s", book["book_id"], owner_id)
    book_feed.publish(INSERT, book["book_id"])
    return book


def update_book(actor_id: Optional[str], book_id: str, **fields: Any) -> dict[str, Any]:
    """Owner-only edit of descriptive fields. Status is derived, never edited."""
    book = db.get_book(book_id)
    policies.check("book", policies.UPDATE, actor_id, book)
    unknown = set(fields) - set(BOOK_EDITABLE_FIELDS)
    if unknown:
        raise ConstraintViolation("read_only_field", f"Cannot change: {', '.join(sorted(unknown))}")
    changes: dict[str, Any] = {}
    for key, value in fields.items():
        if key == "tags":
            changes[key] = parse_tags(value)
        else:
            changes[key] = _clean(value, key, required=key in ("title", "author"))
    if db.update_book(book_id, changes):
        book_feed.publish(UPDATE, book_id)
    return db.get_book(book_id)


def delete_book(actor_id: Optional[str], book_id: str) -> None:
    """Owner-only delete; the book's transactions, reviews and payments go with it."""
    book = db.get_book(book_id)
    policies.check("book", policies.DELETE, actor_id, book)
    if db.delete_book(book_id):
        logger.info("Book deleted: book_id=%s owner_id=%s", book_id, actor_id)
        book_feed.publish(DELETE, book_id)


# ====== Transactions ======

def request_borrow(actor_id: Optional[str], book_id: str, *, borrower_id: Optional[str] = None) -> dict[str, Any]:
    """Create a pending borrow request for an available book, as the actor."""
    borrower_id = borrower_id or actor_id
    policies.check("transaction", policies.INSERT, actor_id, {"borrower_id": borrower_id})
    tx = db.create_borrow_request(book_id, borrower_id)
    logger.info("Borrow requested: transaction_id=%s book_id=%s borrower_id=%s", tx["transaction_id"], book_id, borrower_id)
    return tx


def get_transaction(actor_id: Optional[str], transaction_id: str) -> dict[str, Any]:
    tx = db.get_transaction(transaction_id)
    policies.check("transaction", policies.SELECT, actor_id, tx)
    return tx


def list_transactions(actor_id: Optional[str], status: Optional[str] = None) -> list[dict[str, Any]]:
    """Transactions where the actor is borrower or book owner, newest first."""
    if status is not None and status not in lifecycle.TRANSACTION_STATUSES:
        raise ConstraintViolation("bad_status", f"Unknown transaction status: {status!r}")
    if not actor_id:
        return []
    rows = db.list_transactions(involving=actor_id, status=status)
    return policies.visible("transaction", actor_id, rows)


def list_overdue(actor_id: Optional[str], now: Optional[datetime] = None) -> list[dict[str, Any]]:
    """Visible approved loans past their due date, oldest due first."""
    now = now or datetime.now(timezone.utc)
    rows = [t for t in list_transactions(actor_id, lifecycle.APPROVED) if lifecycle.is_overdue(t, now)]
    return sorted(rows, key=lambda t: t["due_date"])


def set_transaction_status(
    actor_id: Optional[str],
    transaction_id: str,
    status: str,
    *,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Move a transaction along the lending table; book status follows atomically."""
    plan = db.apply_transition(transaction_id, status, actor_id, now=now)
    if plan.book_status is not None:
        book_feed.publish(UPDATE, plan.book_id)
    return db.get_transaction(transaction_id)


def approve(actor_id: Optional[str], transaction_id: str, *, now: Optional[datetime] = None) -> dict[str, Any]:
    return set_transaction_status(actor_id, transaction_id, lifecycle.APPROVED, now=now)


def reject(actor_id: Optional[str], transaction_id: str, *, now: Optional[datetime] = None) -> dict[str, Any]:
    return set_transaction_status(actor_id, transaction_id, lifecycle.REJECTED, now=now)


def mark_returned(actor_id: Optional[str], transaction_id: str, *, now: Optional[datetime] = None) -> dict[str, Any]:
    return set_transaction_status(actor_id, transaction_id, lifecycle.COMPLETED, now=now)


# ====== Reviews ======

def _check_rating(rating: Any) -> int:
    try:
        value = int(rating)
    except (TypeError, ValueError):
        raise ConstraintViolation("bad_rating", "Rating must be a whole number from 1 to 5.") from None
    if not 1 <= value <= 5:
        raise ConstraintViolation("bad_rating", "Rating must be a whole number from 1 to 5.")
    return value


def list_reviews(actor_id: Optional[str], book_id: str) -> list[dict[str, Any]]:
    return policies.visible("review", actor_id, db.list_reviews(book_id))


def rating_summary(actor_id: Optional[str], book_id: str) -> dict[str, Any]:
    if not policies.allows("book", policies.SELECT, actor_id, db.get_book(book_id)):
        raise AccessDenied()
    return db.rating_summary(book_id)


def add_review(
    actor_id: Optional[str],
    book_id: str,
    rating: Any,
    comment: Optional[str] = None,
    *,
    user_id: Optional[str] = None,
) -> dict[str, Any]:
    user_id = user_id or actor_id
    policies.check("review", policies.INSERT, actor_id, {"user_id": user_id})
    if db.get_book(book_id) is None:
        raise ConstraintViolation("bad_reference", "Book does not exist.")
    return db.insert_review(book_id, user_id, _check_rating(rating), _clean(comment, "comment"))


def update_review(actor_id: Optional[str], review_id: str, *, rating: Any = None, comment: Optional[str] = None) -> dict[str, Any]:
    review = db.get_review(review_id)
    policies.check("review", policies.UPDATE, actor_id, review)
    changes: dict[str, Any] = {}
    if rating is not None:
        changes["rating"] = _check_rating(rating)
    if comment is not None:
        changes["comment"] = _clean(comment, "comment")
    db.update_review(review_id, changes)
    return db.get_review(review_id)


def delete_review(actor_id: Optional[str], review_id: str) -> None:
    review = db.get_review(review_id)
    policies.check("review", policies.DELETE, actor_id, review)
    db.delete_review(review_id)


# ====== Payments ======

def _parse_amount(amount: Any) -> Decimal:
    try:
        value = Decimal(str(amount).strip()).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        raise ConstraintViolation("bad_amount", "Amount must be a number.") from None
    if not value.is_finite() or value <= 0:
        raise ConstraintViolation("bad_amount", "Amount must be positive.")
    return value


def _payment_out(row: dict[str, Any]) -> dict[str, Any]:
    return {**row, "amount": Decimal(row["amount"])}


def record_payment(
    actor_id: Optional[str],
    transaction_id: str,
    amount: Any,
    method: Optional[str] = None,
) -> dict[str, Any]:
    """Borrower records a payment against a lent (approved or completed) transaction."""
    tx = db.get_transaction(transaction_id)
    policies.check("payment", policies.INSERT, actor_id, tx)
    if tx["status"] not in (lifecycle.APPROVED, lifecycle.COMPLETED):
        raise PreconditionFailed("not_lent", "Payments can only be recorded for lent books.")
    value = _parse_amount(amount)
    row = db.insert_payment(transaction_id, str(value), _clean(method, "payment_method"))
    logger.info("Payment recorded: transaction_id=%s amount=%s", transaction_id, value)
    return _payment_out(row)


def list_payments(actor_id: Optional[str], transaction_id: str) -> list[dict[str, Any]]:
    policies.check("transaction", policies.SELECT, actor_id, db.get_transaction(transaction_id))
    rows = policies.visible("payment", actor_id, db.list_payments(transaction_id))
    return [_payment_out(r) for r in rows]
