"""Authorization predicate table."""

import pytest

import policies
from errors import AccessDenied


BOOK = {"book_id": "b1", "owner_id": "alice"}
TX = {"transaction_id": "t1", "borrower_id": "bob", "book_owner_id": "alice"}


class TestRelationships:

    def test_anonymous_only_gets_anyone(self):
        assert policies.relationships("book", None, BOOK) == {policies.ANYONE}

    def test_owner_of_book(self):
        assert policies.OWNER in policies.relationships("book", "alice", BOOK)

    def test_transaction_sides(self):
        assert policies.BORROWER in policies.relationships("transaction", "bob", TX)
        assert policies.OWNER in policies.relationships("transaction", "alice", TX)
        assert policies.relationships("transaction", "carol", TX) == {policies.ANYONE}

    def test_null_column_never_matches(self):
        assert policies.relationships("book", "alice", {"owner_id": None}) == {policies.ANYONE}


class TestAllows:

    def test_books_readable_by_anyone(self):
        assert policies.allows("book", policies.SELECT, None, BOOK)
        assert policies.allows("book", policies.SELECT, "carol", BOOK)

    def test_only_owner_mutates_book(self):
        for op in (policies.UPDATE, policies.DELETE):
            assert policies.allows("book", op, "alice", BOOK)
            assert not policies.allows("book", op, "bob", BOOK)

    def test_transaction_update_is_owner_only(self):
        assert policies.allows("transaction", policies.UPDATE, "alice", TX)
        assert not policies.allows("transaction", policies.UPDATE, "bob", TX)

    def test_transaction_select_both_sides(self):
        assert policies.allows("transaction", policies.SELECT, "bob", TX)
        assert policies.allows("transaction", policies.SELECT, "alice", TX)
        assert not policies.allows("transaction", policies.SELECT, "carol", TX)

    def test_missing_row_denies(self):
        assert not policies.allows("book", policies.SELECT, "alice", None)

    def test_missing_entry_denies(self):
        # No delete predicate exists for transactions or profiles.
        assert not policies.allows("transaction", policies.DELETE, "alice", TX)
        assert not policies.allows("profile", policies.DELETE, "alice", {"id": "alice"})


class TestCheck:

    def test_raises_same_error_for_missing_and_forbidden(self):
        with pytest.raises(AccessDenied) as missing:
            policies.check("book", policies.DELETE, "bob", None)
        with pytest.raises(AccessDenied) as forbidden:
            policies.check("book", policies.DELETE, "bob", BOOK)
        assert str(missing.value) == str(forbidden.value)
        assert missing.value.code == forbidden.value.code == "not_permitted"

    def test_visible_filters_rows(self):
        rows = [TX, {**TX, "transaction_id": "t2", "borrower_id": "carol", "book_owner_id": "dave"}]
        assert [r["transaction_id"] for r in policies.visible("transaction", "bob", rows)] == ["t1"]
