"""SQLite storage for VedaVault.

Each public function opens its own connection. Writes that must be
indivisible (registration, borrow request, status transitions) run under
BEGIN IMMEDIATE so competing writers are serialized by SQLite itself.
sqlite3 errors are translated into errors.VaultError subclasses here.
"""
import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

import config
import lifecycle
from errors import (
    AccessDenied,
    BackendUnavailable,
    ConstraintViolation,
    IllegalTransition,
    PreconditionFailed,
    VaultError,
)

logger = logging.getLogger(__name__)

DB_PATH = config.db_path()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def _get_conn() -> sqlite3.Connection:
    # timeout: wait for a competing writer instead of failing at once.
    # check_same_thread=False: the bot may touch a connection from executor threads.
    timeout = config.db_timeout_seconds()
    conn = sqlite3.connect(DB_PATH, timeout=timeout, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute(f"PRAGMA busy_timeout = {int(timeout * 1000)}")
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
    except sqlite3.DatabaseError:
        # Some filesystems can't do WAL; rollback journal still works.
        logger.debug("WAL not available for %s", DB_PATH)
    return conn


def _translate(exc: sqlite3.Error) -> Optional[VaultError]:
    """Map a sqlite3 error to the vault taxonomy. None means a programming error."""
    msg = str(exc)
    low = msg.lower()
    if isinstance(exc, sqlite3.IntegrityError):
        if "unique" in low and "email" in low:
            return ConstraintViolation("duplicate_email", "Email is already registered.")
        if "unique" in low and "identities.provider" in low:
            return ConstraintViolation("duplicate_identity", "This account is already registered.")
        if "unique" in low and "transactions.book_id" in low:
            return PreconditionFailed("not_available", "Book is already lent out.")
        if "foreign key" in low:
            return ConstraintViolation("bad_reference", msg)
        if "check" in low:
            return ConstraintViolation("check_failed", msg)
        return ConstraintViolation("constraint", msg)
    if isinstance(exc, sqlite3.OperationalError):
        if "locked" in low or "busy" in low:
            return BackendUnavailable("locked", "Database is busy, try again.")
        if "unable to open" in low or "disk i/o" in low:
            return BackendUnavailable("unavailable", msg)
    return None


@contextmanager
def _reading() -> Iterator[sqlite3.Connection]:
    conn = _get_conn()
    try:
        yield conn
    except sqlite3.Error as e:
        err = _translate(e)
        if err is None:
            raise
        raise err from e
    finally:
        conn.close()


@contextmanager
def _atomic() -> Iterator[sqlite3.Connection]:
    """One write transaction. Commits on success, rolls back on any exception."""
    try:
        conn = _get_conn()
    except sqlite3.Error as e:
        err = _translate(e)
        if err is None:
            raise
        raise err from e
    conn.isolation_level = None  # explicit BEGIN/COMMIT
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.execute("COMMIT")
    except BaseException as e:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        if isinstance(e, sqlite3.Error):
            err = _translate(e)
            if err is not None:
                raise err from e
        raise
    finally:
        conn.close()


def init_db() -> None:
    """Create tables and indexes if not exist."""
    with _reading() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS identities (
                id TEXT PRIMARY KEY,
                provider TEXT NOT NULL,
                subject TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                raw_metadata TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                UNIQUE (provider, subject)
            );
            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY REFERENCES identities(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                address TEXT,
                contact TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS books (
                book_id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                genre TEXT,
                isbn TEXT,
                tags TEXT NOT NULL DEFAULT '[]',
                status TEXT NOT NULL DEFAULT 'available'
                    CHECK (status IN ('available', 'borrowed', 'reserved')),
                owner_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS transactions (
                transaction_id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL REFERENCES books(book_id) ON DELETE CASCADE,
                borrower_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
                lend_date TEXT,
                return_date TEXT,
                due_date TEXT,
                transaction_type TEXT NOT NULL CHECK (transaction_type IN ('borrow', 'return')),
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'approved', 'rejected', 'completed')),
                pickup_token TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS reviews (
                review_id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL REFERENCES books(book_id) ON DELETE CASCADE,
                user_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
                rating INTEGER NOT NULL CHECK (rating >= 1 AND rating <= 5),
                comment TEXT,
                date TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS payments (
                payment_id TEXT PRIMARY KEY,
                transaction_id TEXT NOT NULL REFERENCES transactions(transaction_id) ON DELETE CASCADE,
                amount TEXT NOT NULL CHECK (CAST(amount AS REAL) > 0),
                payment_date TEXT NOT NULL,
                payment_method TEXT,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_books_owner ON books(owner_id);
            CREATE INDEX IF NOT EXISTS idx_books_created ON books(created_at);
            CREATE INDEX IF NOT EXISTS idx_transactions_book_status ON transactions(book_id, status);
            CREATE INDEX IF NOT EXISTS idx_transactions_borrower ON transactions(borrower_id);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_transactions_one_approved
                ON transactions(book_id) WHERE status = 'approved';
            CREATE INDEX IF NOT EXISTS idx_reviews_book ON reviews(book_id);
            CREATE INDEX IF NOT EXISTS idx_payments_transaction ON payments(transaction_id);
        """)
        conn.commit()


# ====== Identities & profiles ======

def create_identity_with_profile(
    *,
    provider: str,
    subject: str,
    email: str,
    name: str,
    metadata: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Insert identity and its profile in one transaction. Returns the profile."""
    identity_id = new_id()
    now = _now_iso()
    with _atomic() as conn:
        conn.execute(
            "INSERT INTO identities (id, provider, subject, email, raw_metadata, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (identity_id, provider, subject, email, json.dumps(metadata or {}, ensure_ascii=False), now),
        )
        conn.execute(
            "INSERT INTO profiles (id, name, email, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
            (identity_id, name, email, now, now),
        )
        row = conn.execute("SELECT * FROM profiles WHERE id = ?", (identity_id,)).fetchone()
    return dict(row)


def get_identity_id(provider: str, subject: str) -> Optional[str]:
    with _reading() as conn:
        cur = conn.execute(
            "SELECT id FROM identities WHERE provider = ? AND subject = ?",
            (provider, subject),
        )
        row = cur.fetchone()
        return row["id"] if row else None


def get_identity_subject(identity_id: str, provider: str) -> Optional[str]:
    """Provider-side user id for an identity (e.g. Telegram chat id), or None."""
    with _reading() as conn:
        row = conn.execute(
            "SELECT subject FROM identities WHERE id = ? AND provider = ?",
            (identity_id, provider),
        ).fetchone()
        return row["subject"] if row else None


def get_profile(profile_id: str) -> Optional[dict[str, Any]]:
    with _reading() as conn:
        row = conn.execute("SELECT * FROM profiles WHERE id = ?", (profile_id,)).fetchone()
        return dict(row) if row else None


def count_profiles_for_identity(identity_id: str) -> int:
    with _reading() as conn:
        return conn.execute("SELECT COUNT(*) FROM profiles WHERE id = ?", (identity_id,)).fetchone()[0]


def update_profile(profile_id: str, fields: dict[str, Any]) -> bool:
    """Update given profile columns (name, address, contact). Returns True if a row changed."""
    if not fields:
        return False
    fields = {**fields, "updated_at": _now_iso()}
    sets = ", ".join(f"{k} = ?" for k in fields)
    with _atomic() as conn:
        cur = conn.execute(f"UPDATE profiles SET {sets} WHERE id = ?", (*fields.values(), profile_id))
        return cur.rowcount > 0


# ====== Books ======

def _book_from_row(row: sqlite3.Row) -> dict[str, Any]:
    book = dict(row)
    try:
        book["tags"] = json.loads(book.get("tags") or "[]")
    except ValueError:
        book["tags"] = []
    return book


_BOOK_SELECT = (
    "SELECT b.*, o.name AS owner_name, o.email AS owner_email, br.name AS borrower_name "
    "FROM books b "
    "JOIN profiles o ON o.id = b.owner_id "
    "LEFT JOIN transactions t ON t.book_id = b.book_id AND t.status = 'approved' "
    "LEFT JOIN profiles br ON br.id = t.borrower_id"
)


def insert_book(
    *,
    owner_id: str,
    title: str,
    author: str,
    genre: Optional[str] = None,
    isbn: Optional[str] = None,
    tags: Optional[list[str]] = None,
) -> dict[str, Any]:
    """Insert an available book. Returns it."""
    book_id = new_id()
    now = _now_iso()
    with _atomic() as conn:
        conn.execute(
            "INSERT INTO books (book_id, title, author, genre, isbn, tags, status, owner_id, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, 'available', ?, ?, ?)",
            (book_id, title, author, genre, isbn, json.dumps(tags or [], ensure_ascii=False), owner_id, now, now),
        )
    return get_book(book_id)


def get_book(book_id: str) -> Optional[dict[str, Any]]:
    with _reading() as conn:
        row = conn.execute(f"{_BOOK_SELECT} WHERE b.book_id = ?", (book_id,)).fetchone()
        return _book_from_row(row) if row else None


def list_books(owner_id: Optional[str] = None) -> list[dict[str, Any]]:
    """All books (or one owner's), newest first, with owner and current borrower names."""
    sql = _BOOK_SELECT
    params: list[Any] = []
    if owner_id:
        sql += " WHERE b.owner_id = ?"
        params.append(owner_id)
    sql += " ORDER BY b.created_at DESC, b.rowid DESC"
    with _reading() as conn:
        return [_book_from_row(row) for row in conn.execute(sql, params).fetchall()]


def update_book(book_id: str, fields: dict[str, Any]) -> bool:
    """Update descriptive columns. Status is never written here."""
    fields = {k: v for k, v in fields.items() if k != "status"}
    if not fields:
        return False
    if "tags" in fields:
        fields["tags"] = json.dumps(fields["tags"] or [], ensure_ascii=False)
    fields["updated_at"] = _now_iso()
    sets = ", ".join(f"{k} = ?" for k in fields)
    with _atomic() as conn:
        cur = conn.execute(f"UPDATE books SET {sets} WHERE book_id = ?", (*fields.values(), book_id))
        return cur.rowcount > 0


def delete_book(book_id: str) -> bool:
    """Delete a book; transactions, reviews and payments cascade."""
    with _atomic() as conn:
        cur = conn.execute("DELETE FROM books WHERE book_id = ?", (book_id,))
        return cur.rowcount > 0


# ====== Transactions ======

_TX_SELECT = (
    "SELECT t.*, b.title AS book_title, b.author AS book_author, b.owner_id AS book_owner_id, "
    "b.status AS book_status, p.name AS borrower_name "
    "FROM transactions t "
    "JOIN books b ON b.book_id = t.book_id "
    "JOIN profiles p ON p.id = t.borrower_id"
)


def _fetch_transaction(conn: sqlite3.Connection, transaction_id: str) -> Optional[dict[str, Any]]:
    row = conn.execute(f"{_TX_SELECT} WHERE t.transaction_id = ?", (transaction_id,)).fetchone()
    return dict(row) if row else None


def create_borrow_request(book_id: str, borrower_id: str) -> dict[str, Any]:
    """Create a pending borrow transaction iff the book is available right now.

    Raises AccessDenied if the book does not exist, PreconditionFailed
    ("not_available" / "own_book") otherwise.
    """
    tx_id = new_id()
    now = _now_iso()
    with _atomic() as conn:
        book = conn.execute("SELECT book_id, owner_id, status FROM books WHERE book_id = ?", (book_id,)).fetchone()
        if not book:
            raise AccessDenied()
        if book["owner_id"] == borrower_id:
            raise PreconditionFailed("own_book", "You cannot borrow your own book.")
        if book["status"] != lifecycle.BOOK_AVAILABLE:
            raise PreconditionFailed("not_available", "Book is not available.")
        conn.execute(
            "INSERT INTO transactions (transaction_id, book_id, borrower_id, transaction_type, status, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (tx_id, book_id, borrower_id, lifecycle.TYPE_BORROW, lifecycle.PENDING, now, now),
        )
        tx = _fetch_transaction(conn, tx_id)
    return tx


def get_transaction(transaction_id: str) -> Optional[dict[str, Any]]:
    """Transaction with book title/author/owner and borrower name."""
    with _reading() as conn:
        return _fetch_transaction(conn, transaction_id)


def list_transactions(involving: Optional[str] = None, status: Optional[str] = None) -> list[dict[str, Any]]:
    """Transactions newest first. involving narrows to rows where the id is borrower or book owner."""
    where = []
    params: list[Any] = []
    if involving:
        where.append("(t.borrower_id = ? OR b.owner_id = ?)")
        params.extend([involving, involving])
    if status:
        where.append("t.status = ?")
        params.append(status)
    sql = _TX_SELECT
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY t.created_at DESC, t.rowid DESC"
    with _reading() as conn:
        return [dict(row) for row in conn.execute(sql, params).fetchall()]


def apply_transition(
    transaction_id: str,
    new_status: str,
    actor_id: Optional[str],
    now: Optional[datetime] = None,
) -> lifecycle.Transition:
    """Validate and apply a status change with its book side effect atomically.

    The book write is a compare-and-swap on the book's current status, so two
    approvals racing for one book cannot both commit.
    """
    with _atomic() as conn:
        tx = _fetch_transaction(conn, transaction_id)
        if tx is None:
            raise AccessDenied()
        plan = lifecycle.plan_transition(tx, new_status, actor_id=actor_id, now=now)
        ts = _now_iso()
        if plan.book_status is not None:
            cur = conn.execute(
                "UPDATE books SET status = ?, updated_at = ? WHERE book_id = ? AND status = ?",
                (plan.book_status, ts, plan.book_id, plan.expect_book_status),
            )
            if cur.rowcount != 1:
                raise PreconditionFailed(
                    "not_available",
                    f"Book is not {plan.expect_book_status}; nothing was changed.",
                )
        fields = {**plan.transaction_fields(), "updated_at": ts}
        sets = ", ".join(f"{k} = ?" for k in fields)
        cur = conn.execute(
            f"UPDATE transactions SET {sets} WHERE transaction_id = ? AND status = ?",
            (*fields.values(), transaction_id, plan.old_status),
        )
        if cur.rowcount != 1:
            raise IllegalTransition("stale_status", "Transaction changed concurrently.")
    logger.info(
        "Transaction %s: %s -> %s (book %s -> %s) by %s",
        transaction_id, plan.old_status, plan.new_status, plan.book_id, plan.book_status or "unchanged", actor_id,
    )
    return plan


# ====== Reviews ======

def insert_review(book_id: str, user_id: str, rating: int, comment: Optional[str] = None) -> dict[str, Any]:
    review_id = new_id()
    now = _now_iso()
    with _atomic() as conn:
        conn.execute(
            "INSERT INTO reviews (review_id, book_id, user_id, rating, comment, date, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (review_id, book_id, user_id, rating, comment, now, now),
        )
    return get_review(review_id)


def get_review(review_id: str) -> Optional[dict[str, Any]]:
    with _reading() as conn:
        row = conn.execute(
            "SELECT r.*, p.name AS user_name FROM reviews r JOIN profiles p ON p.id = r.user_id "
            "WHERE r.review_id = ?",
            (review_id,),
        ).fetchone()
        return dict(row) if row else None


def list_reviews(book_id: str) -> list[dict[str, Any]]:
    with _reading() as conn:
        cur = conn.execute(
            "SELECT r.*, p.name AS user_name FROM reviews r JOIN profiles p ON p.id = r.user_id "
            "WHERE r.book_id = ? ORDER BY r.date DESC, r.rowid DESC",
            (book_id,),
        )
        return [dict(row) for row in cur.fetchall()]


def rating_summary(book_id: str) -> dict[str, Any]:
    """{"count": int, "average": float | None}"""
    with _reading() as conn:
        row = conn.execute(
            "SELECT COUNT(*) AS n, AVG(rating) AS avg FROM reviews WHERE book_id = ?",
            (book_id,),
        ).fetchone()
        avg = row["avg"]
        return {"count": int(row["n"] or 0), "average": round(float(avg), 2) if avg is not None else None}


def update_review(review_id: str, fields: dict[str, Any]) -> bool:
    if not fields:
        return False
    fields = {**fields, "date": _now_iso()}
    sets = ", ".join(f"{k} = ?" for k in fields)
    with _atomic() as conn:
        cur = conn.execute(f"UPDATE reviews SET {sets} WHERE review_id = ?", (*fields.values(), review_id))
        return cur.rowcount > 0


def delete_review(review_id: str) -> bool:
    with _atomic() as conn:
        cur = conn.execute("DELETE FROM reviews WHERE review_id = ?", (review_id,))
        return cur.rowcount > 0


# ====== Payments ======

_PAYMENT_SELECT = (
    "SELECT pay.*, t.borrower_id, b.owner_id AS book_owner_id "
    "FROM payments pay "
    "JOIN transactions t ON t.transaction_id = pay.transaction_id "
    "JOIN books b ON b.book_id = t.book_id"
)


def insert_payment(transaction_id: str, amount: str, method: Optional[str] = None) -> dict[str, Any]:
    """amount is a decimal string with two places."""
    payment_id = new_id()
    now = _now_iso()
    with _atomic() as conn:
        conn.execute(
            "INSERT INTO payments (payment_id, transaction_id, amount, payment_date, payment_method, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (payment_id, transaction_id, amount, now, method, now),
        )
        row = conn.execute(f"{_PAYMENT_SELECT} WHERE pay.payment_id = ?", (payment_id,)).fetchone()
    return dict(row)


def list_payments(transaction_id: str) -> list[dict[str, Any]]:
    with _reading() as conn:
        cur = conn.execute(
            f"{_PAYMENT_SELECT} WHERE pay.transaction_id = ? ORDER BY pay.payment_date ASC, pay.rowid ASC",
            (transaction_id,),
        )
        return [dict(row) for row in cur.fetchall()]


# ====== Demo data ======

_DEMO_LIBRARY = [
    ("Alice Johnson", "alice@vedavault.com", "123 Main St", "+1234567890", [
        ("The Great Gatsby", "F. Scott Fitzgerald", "Fiction", "9780743273565", ["classic", "american"]),
        ("Pride and Prejudice", "Jane Austen", "Romance", "9780141439518", ["classic", "romance"]),
    ]),
    ("Bob Smith", "bob@vedavault.com", "456 Oak Ave", "+1234567891", [
        ("The Hobbit", "J.R.R. Tolkien", "Fantasy", "9780547928227", ["fantasy", "adventure"]),
        ("The Catcher in the Rye", "J.D. Salinger", "Fiction", "9780316769488", ["classic", "coming-of-age"]),
    ]),
    ("David Brown", "david@vedavault.com", "321 Elm St", "+1234567893", [
        ("Dune", "Frank Herbert", "Science Fiction", "9780441013593", ["sci-fi", "space"]),
        ("Foundation", "Isaac Asimov", "Science Fiction", "9780553293357", ["sci-fi", "series"]),
        ("Neuromancer", "William Gibson", "Cyberpunk", "9780441569595", ["sci-fi", "cyberpunk"]),
    ]),
]


def seed_demo() -> int:
    """Insert demo owners and books if there are no books yet. Returns books inserted."""
    with _atomic() as conn:
        if conn.execute("SELECT 1 FROM books LIMIT 1").fetchone():
            return 0
        inserted = 0
        for name, email, address, contact, books in _DEMO_LIBRARY:
            now = _now_iso()
            pid = new_id()
            conn.execute(
                "INSERT OR IGNORE INTO identities (id, provider, subject, email, raw_metadata, created_at) "
                "VALUES (?, 'demo', ?, ?, ?, ?)",
                (pid, email, email, json.dumps({"name": name}), now),
            )
            row = conn.execute("SELECT id FROM identities WHERE provider = 'demo' AND subject = ?", (email,)).fetchone()
            if not row:
                # Email already taken by a real account.
                continue
            pid = row["id"]
            conn.execute(
                "INSERT OR IGNORE INTO profiles (id, name, email, address, contact, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (pid, name, email, address, contact, now, now),
            )
            for title, author, genre, isbn, tags in books:
                conn.execute(
                    "INSERT INTO books (book_id, title, author, genre, isbn, tags, status, owner_id, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, 'available', ?, ?, ?)",
                    (new_id(), title, author, genre, isbn, json.dumps(tags), pid, now, now),
                )
                inserted += 1
    logger.info("Seeded %d demo books", inserted)
    return inserted
