"""Book change notifications."""

import pytest

import changefeed
import vault
from changefeed import BookFeed, book_feed
from errors import AccessDenied


class TestBookFeed:

    def test_publish_reaches_subscribers(self):
        feed = BookFeed()
        seen = []
        feed.subscribe(seen.append)
        event = feed.publish(changefeed.INSERT, "b1")
        assert seen == [event]
        assert event.op == changefeed.INSERT

    def test_unsubscribe(self):
        feed = BookFeed()
        seen = []
        unsubscribe = feed.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        feed.publish(changefeed.DELETE, "b1")
        assert seen == []
        assert len(feed) == 0

    def test_failing_subscriber_does_not_block_others(self):
        feed = BookFeed()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        feed.subscribe(broken)
        feed.subscribe(seen.append)
        feed.publish(changefeed.UPDATE, "b1")
        assert len(seen) == 1


@pytest.fixture
def events():
    seen = []
    unsubscribe = book_feed.subscribe(seen.append)
    yield seen
    unsubscribe()


class TestVaultPublishes:

    def test_book_mutations_publish(self, alice, events):
        book = vault.create_book(alice, "Dune", "Frank Herbert")
        vault.update_book(alice, book["book_id"], genre="SF")
        vault.delete_book(alice, book["book_id"])
        assert [e.op for e in events] == [changefeed.INSERT, changefeed.UPDATE, changefeed.DELETE]
        assert {e.book_id for e in events} == {book["book_id"]}

    def test_status_changes_publish(self, alice, pending_tx, events):
        vault.approve(alice, pending_tx["transaction_id"])
        vault.mark_returned(alice, pending_tx["transaction_id"])
        assert [e.op for e in events] == [changefeed.UPDATE, changefeed.UPDATE]

    def test_reject_does_not_touch_books(self, alice, pending_tx, events):
        vault.reject(alice, pending_tx["transaction_id"])
        assert events == []

    def test_denied_mutation_publishes_nothing(self, bob, dune, events):
        with pytest.raises(AccessDenied):
            vault.delete_book(bob, dune["book_id"])
        assert events == []
