"""Book change notifications.

Events say only that the book set changed. Subscribers must re-query;
applying events as deltas is not supported.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

logger = logging.getLogger(__name__)

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"


@dataclass(frozen=True)
class BookChange:
    op: str
    book_id: Optional[str] = None
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Subscriber = Callable[[BookChange], None]


class BookFeed:
    """In-process pub/sub for book table mutations."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register callback; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, op: str, book_id: Optional[str] = None) -> BookChange:
        """Deliver one event to every subscriber. A failing subscriber is logged and skipped."""
        event = BookChange(op=op, book_id=book_id)
        with self._lock:
            targets = list(self._subscribers)
        for cb in targets:
            try:
                cb(event)
            except Exception:
                logger.exception("Book feed subscriber failed: op=%s book_id=%s", op, book_id)
        return event

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)


book_feed = BookFeed()
