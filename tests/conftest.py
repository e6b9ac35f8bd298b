"""Shared fixtures: a fresh SQLite file per test and a few registered readers."""

import pytest

import db
import identity
import vault


# ============================================================================
# Database
# ============================================================================

@pytest.fixture(autouse=True)
def fresh_db(tmp_path, monkeypatch):
    """Point db at an empty file under tmp_path and create the schema."""
    monkeypatch.setattr(db, "DB_PATH", tmp_path / "vault-test.db")
    db.init_db()
    yield db.DB_PATH


# ============================================================================
# Identities
# ============================================================================

def _register(name: str, email: str, subject: str) -> str:
    profile = identity.register_identity(
        email, provider="test", subject=subject, metadata={"name": name},
    )
    return profile["id"]


@pytest.fixture
def alice() -> str:
    """Book owner."""
    return _register("Alice Johnson", "alice@example.com", "1")


@pytest.fixture
def bob() -> str:
    """Borrower."""
    return _register("Bob Smith", "bob@example.com", "2")


@pytest.fixture
def carol() -> str:
    """Unrelated third reader."""
    return _register("Carol White", "carol@example.com", "3")


# ============================================================================
# Books & transactions
# ============================================================================

@pytest.fixture
def dune(alice) -> dict:
    return vault.create_book(alice, "Dune", "Frank Herbert", genre="Science Fiction", tags="sci-fi, space")


@pytest.fixture
def pending_tx(bob, dune) -> dict:
    return vault.request_borrow(bob, dune["book_id"])
