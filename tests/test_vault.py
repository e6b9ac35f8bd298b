"""Access boundary: books, lending, reviews, payments."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

import db
import lifecycle
import vault
from errors import AccessDenied, ConstraintViolation, IllegalTransition, PreconditionFailed


class TestBooks:

    def test_new_book_is_available(self, alice, dune):
        assert dune["status"] == lifecycle.BOOK_AVAILABLE
        assert dune["owner_id"] == alice
        assert dune["tags"] == ["sci-fi", "space"]
        assert dune["owner_name"] == "Alice Johnson"

    def test_anyone_can_list(self, dune):
        assert [b["book_id"] for b in vault.list_books(None)] == [dune["book_id"]]

    def test_listing_is_newest_first(self, alice, dune):
        second = vault.create_book(alice, "Foundation", "Isaac Asimov")
        assert [b["title"] for b in vault.list_books(alice)] == ["Foundation", "Dune"]
        assert second["book_id"] != dune["book_id"]

    @pytest.mark.parametrize("q", ["dune", "HERBERT", "science", "space"])
    def test_search_matches_fields_and_tags(self, alice, dune, q):
        vault.create_book(alice, "Emma", "Jane Austen")
        assert [b["title"] for b in vault.list_books(None, q=q)] == ["Dune"]

    def test_title_required(self, alice):
        with pytest.raises(ConstraintViolation):
            vault.create_book(alice, "  ", "Someone")

    def test_cannot_create_for_someone_else(self, alice, bob):
        with pytest.raises(AccessDenied):
            vault.create_book(bob, "Mine", "Me", owner_id=alice)

    def test_anonymous_cannot_create(self):
        with pytest.raises(AccessDenied):
            vault.create_book(None, "Mine", "Me")

    def test_owner_updates_descriptive_fields(self, alice, dune):
        book = vault.update_book(alice, dune["book_id"], genre="SF", tags=["classic"])
        assert book["genre"] == "SF"
        assert book["tags"] == ["classic"]

    def test_status_is_not_editable(self, alice, dune):
        with pytest.raises(ConstraintViolation) as exc:
            vault.update_book(alice, dune["book_id"], status=lifecycle.BOOK_BORROWED)
        assert exc.value.code == "read_only_field"
        assert db.get_book(dune["book_id"])["status"] == lifecycle.BOOK_AVAILABLE

    def test_non_owner_cannot_update_or_delete(self, bob, dune):
        with pytest.raises(AccessDenied):
            vault.update_book(bob, dune["book_id"], title="Stolen")
        with pytest.raises(AccessDenied):
            vault.delete_book(bob, dune["book_id"])
        assert db.get_book(dune["book_id"])["title"] == "Dune"

    def test_missing_book_looks_forbidden(self, alice):
        with pytest.raises(AccessDenied):
            vault.delete_book(alice, "no-such-book")

    def test_delete_cascades(self, alice, bob, dune, pending_tx):
        vault.add_review(bob, dune["book_id"], 5)
        vault.delete_book(alice, dune["book_id"])
        assert db.get_book(dune["book_id"]) is None
        assert db.get_transaction(pending_tx["transaction_id"]) is None
        assert db.list_reviews(dune["book_id"]) == []

    def test_own_books_requires_identity(self):
        with pytest.raises(AccessDenied):
            vault.list_own_books(None)


class TestLending:

    def test_request_creates_pending_borrow(self, bob, dune, pending_tx):
        assert pending_tx["status"] == lifecycle.PENDING
        assert pending_tx["transaction_type"] == lifecycle.TYPE_BORROW
        assert pending_tx["borrower_id"] == bob
        assert pending_tx["lend_date"] is None

    def test_cannot_borrow_own_book(self, alice, dune):
        with pytest.raises(PreconditionFailed) as exc:
            vault.request_borrow(alice, dune["book_id"])
        assert exc.value.code == "own_book"

    def test_cannot_request_for_someone_else(self, bob, carol, dune):
        with pytest.raises(AccessDenied):
            vault.request_borrow(carol, dune["book_id"], borrower_id=bob)

    def test_full_loan_cycle(self, alice, bob, dune, pending_tx):
        now = datetime(2026, 5, 1, 9, 30, tzinfo=timezone.utc)
        tx = vault.approve(alice, pending_tx["transaction_id"], now=now)
        assert tx["status"] == lifecycle.APPROVED
        assert tx["book_status"] == lifecycle.BOOK_BORROWED
        lend = datetime.fromisoformat(tx["lend_date"])
        due = datetime.fromisoformat(tx["due_date"])
        assert lend == now
        assert due - lend == timedelta(days=14)
        assert tx["pickup_token"]
        assert vault.get_book(bob, dune["book_id"])["borrower_name"] == "Bob Smith"

        later = now + timedelta(days=10)
        tx = vault.mark_returned(alice, pending_tx["transaction_id"], now=later)
        assert tx["status"] == lifecycle.COMPLETED
        assert tx["return_date"] == later.isoformat()
        assert db.get_book(dune["book_id"])["status"] == lifecycle.BOOK_AVAILABLE

    def test_borrow_while_lent_fails(self, alice, carol, dune, pending_tx):
        vault.approve(alice, pending_tx["transaction_id"])
        with pytest.raises(PreconditionFailed):
            vault.request_borrow(carol, dune["book_id"])

    def test_second_approval_fails_and_stays_pending(self, alice, bob, carol, dune, pending_tx):
        other = vault.request_borrow(carol, dune["book_id"])
        vault.approve(alice, pending_tx["transaction_id"])
        with pytest.raises(PreconditionFailed):
            vault.approve(alice, other["transaction_id"])
        assert db.get_transaction(other["transaction_id"])["status"] == lifecycle.PENDING
        assert db.get_transaction(pending_tx["transaction_id"])["status"] == lifecycle.APPROVED

    def test_reject_keeps_book_available(self, alice, dune, pending_tx):
        tx = vault.reject(alice, pending_tx["transaction_id"])
        assert tx["status"] == lifecycle.REJECTED
        assert tx["lend_date"] is None
        assert db.get_book(dune["book_id"])["status"] == lifecycle.BOOK_AVAILABLE

    def test_borrower_cannot_approve(self, bob, dune, pending_tx):
        with pytest.raises(AccessDenied):
            vault.approve(bob, pending_tx["transaction_id"])
        assert db.get_transaction(pending_tx["transaction_id"])["status"] == lifecycle.PENDING

    def test_illegal_transition_leaves_rows_unchanged(self, alice, dune, pending_tx):
        before_tx = db.get_transaction(pending_tx["transaction_id"])
        before_book = db.get_book(dune["book_id"])
        with pytest.raises(IllegalTransition):
            vault.mark_returned(alice, pending_tx["transaction_id"])
        assert db.get_transaction(pending_tx["transaction_id"]) == before_tx
        assert db.get_book(dune["book_id"]) == before_book

    def test_rejected_is_terminal(self, alice, pending_tx):
        vault.reject(alice, pending_tx["transaction_id"])
        with pytest.raises(IllegalTransition):
            vault.approve(alice, pending_tx["transaction_id"])

    def test_completed_is_terminal_for_both_sides(self, alice, bob, dune, pending_tx):
        tx_id = pending_tx["transaction_id"]
        vault.approve(alice, tx_id)
        vault.mark_returned(alice, tx_id)
        for status in (lifecycle.APPROVED, lifecycle.REJECTED):
            with pytest.raises(IllegalTransition):
                vault.set_transaction_status(alice, tx_id, status)
            with pytest.raises(AccessDenied):
                vault.set_transaction_status(bob, tx_id, status)
        assert db.get_transaction(tx_id)["status"] == lifecycle.COMPLETED
        assert db.get_book(dune["book_id"])["status"] == lifecycle.BOOK_AVAILABLE

    def test_outsider_bad_status_same_error_for_missing_and_existing(self, carol, pending_tx):
        with pytest.raises(AccessDenied) as missing:
            vault.set_transaction_status(carol, "no-such-transaction", "lost")
        with pytest.raises(AccessDenied) as existing:
            vault.set_transaction_status(carol, pending_tx["transaction_id"], "lost")
        assert missing.value.code == existing.value.code == "not_permitted"
        assert str(missing.value) == str(existing.value)

    def test_unknown_status(self, alice, pending_tx):
        with pytest.raises(ConstraintViolation):
            vault.set_transaction_status(alice, pending_tx["transaction_id"], "lost")

    def test_transactions_visible_to_both_sides_only(self, alice, bob, carol, pending_tx):
        assert [t["transaction_id"] for t in vault.list_transactions(alice)] == [pending_tx["transaction_id"]]
        assert [t["transaction_id"] for t in vault.list_transactions(bob)] == [pending_tx["transaction_id"]]
        assert vault.list_transactions(carol) == []
        assert vault.list_transactions(None) == []
        with pytest.raises(AccessDenied):
            vault.get_transaction(carol, pending_tx["transaction_id"])

    def test_list_by_status(self, alice, pending_tx):
        assert vault.list_transactions(alice, status=lifecycle.APPROVED) == []
        with pytest.raises(ConstraintViolation):
            vault.list_transactions(alice, status="lost")

    def test_overdue(self, alice, bob, pending_tx):
        lent = datetime(2026, 1, 1, tzinfo=timezone.utc)
        vault.approve(alice, pending_tx["transaction_id"], now=lent)
        assert vault.list_overdue(bob, now=lent + timedelta(days=13)) == []
        overdue = vault.list_overdue(bob, now=lent + timedelta(days=15))
        assert [t["transaction_id"] for t in overdue] == [pending_tx["transaction_id"]]


class TestReviews:

    def test_add_and_summarize(self, bob, carol, dune):
        vault.add_review(bob, dune["book_id"], 5, "Great")
        vault.add_review(carol, dune["book_id"], "4")
        reviews = vault.list_reviews(None, dune["book_id"])
        assert {r["user_name"] for r in reviews} == {"Bob Smith", "Carol White"}
        assert vault.rating_summary(None, dune["book_id"]) == {"count": 2, "average": 4.5}

    def test_empty_summary(self, dune):
        assert vault.rating_summary(None, dune["book_id"]) == {"count": 0, "average": None}

    @pytest.mark.parametrize("rating", [0, 6, "x", None])
    def test_rating_bounds(self, bob, dune, rating):
        with pytest.raises(ConstraintViolation):
            vault.add_review(bob, dune["book_id"], rating)

    def test_only_author_edits(self, bob, carol, dune):
        review = vault.add_review(bob, dune["book_id"], 3)
        with pytest.raises(AccessDenied):
            vault.update_review(carol, review["review_id"], rating=1)
        updated = vault.update_review(bob, review["review_id"], rating=4, comment="Better on reread")
        assert updated["rating"] == 4
        with pytest.raises(AccessDenied):
            vault.delete_review(carol, review["review_id"])
        vault.delete_review(bob, review["review_id"])
        assert vault.list_reviews(None, dune["book_id"]) == []

    def test_review_for_missing_book(self, bob):
        with pytest.raises(ConstraintViolation):
            vault.add_review(bob, "no-such-book", 5)


class TestPayments:

    def test_borrower_pays_lent_book(self, alice, bob, pending_tx):
        vault.approve(alice, pending_tx["transaction_id"])
        payment = vault.record_payment(bob, pending_tx["transaction_id"], "2.5", "cash")
        assert payment["amount"] == Decimal("2.50")
        assert payment["payment_method"] == "cash"
        listed = vault.list_payments(alice, pending_tx["transaction_id"])
        assert [p["amount"] for p in listed] == [Decimal("2.50")]

    def test_pending_transaction_cannot_be_paid(self, bob, pending_tx):
        with pytest.raises(PreconditionFailed):
            vault.record_payment(bob, pending_tx["transaction_id"], 5)

    @pytest.mark.parametrize("amount", [0, -1, "abc", "NaN"])
    def test_amount_must_be_positive(self, alice, bob, pending_tx, amount):
        vault.approve(alice, pending_tx["transaction_id"])
        with pytest.raises(ConstraintViolation):
            vault.record_payment(bob, pending_tx["transaction_id"], amount)

    def test_outsider_cannot_pay_or_read(self, alice, carol, pending_tx):
        vault.approve(alice, pending_tx["transaction_id"])
        with pytest.raises(AccessDenied):
            vault.record_payment(carol, pending_tx["transaction_id"], 1)
        with pytest.raises(AccessDenied):
            vault.list_payments(carol, pending_tx["transaction_id"])


class TestProfiles:

    def test_profiles_are_public(self, alice, carol):
        assert vault.get_profile(carol, alice)["name"] == "Alice Johnson"

    def test_self_update(self, alice):
        profile = vault.update_profile(alice, alice, address="1 Library Lane", contact="+100")
        assert profile["address"] == "1 Library Lane"
        assert profile["contact"] == "+100"

    def test_cannot_update_other_profile(self, alice, bob):
        with pytest.raises(AccessDenied):
            vault.update_profile(bob, alice, name="Mallory")

    def test_email_not_editable(self, alice):
        with pytest.raises(ConstraintViolation):
            vault.update_profile(alice, alice, email="new@example.com")


class TestSeedDemo:

    def test_seeds_once(self):
        assert db.seed_demo() == 7
        assert db.seed_demo() == 0
        titles = {b["title"] for b in vault.list_books(None)}
        assert {"Dune", "The Hobbit", "Neuromancer"} <= titles
        assert all(b["status"] == lifecycle.BOOK_AVAILABLE for b in vault.list_books(None))
