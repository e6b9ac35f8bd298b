"""Competing writers against one SQLite file."""

import threading

import db
import identity
import lifecycle
import vault
from errors import VaultError


def _race(fn, args_list):
    """Run fn(*args) for each args at the same moment. Returns one result per call: "ok" or error code."""
    barrier = threading.Barrier(len(args_list))
    results = [None] * len(args_list)

    def run(i, args):
        barrier.wait()
        try:
            fn(*args)
            results[i] = "ok"
        except VaultError as e:
            results[i] = e.code

    threads = [threading.Thread(target=run, args=(i, a)) for i, a in enumerate(args_list)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


class TestConcurrentApproval:

    def test_exactly_one_approval_wins(self, alice, dune):
        readers = [
            identity.register_identity(f"reader{i}@example.com", provider="test", subject=f"r{i}")["id"]
            for i in range(5)
        ]
        txs = [vault.request_borrow(r, dune["book_id"])["transaction_id"] for r in readers]

        results = _race(vault.approve, [(alice, tx_id) for tx_id in txs])

        assert results.count("ok") == 1
        assert db.get_book(dune["book_id"])["status"] == lifecycle.BOOK_BORROWED
        approved = vault.list_transactions(alice, status=lifecycle.APPROVED)
        assert len(approved) == 1
        assert len(vault.list_transactions(alice, status=lifecycle.PENDING)) == 4

    def test_racing_registrations_with_one_email(self):
        results = _race(
            lambda subject: identity.register_identity("same@example.com", provider="test", subject=subject),
            [("a",), ("b",), ("c",)],
        )
        assert results.count("ok") == 1
        registered = [s for s in ("a", "b", "c") if identity.find_identity("test", s)]
        assert len(registered) == 1
