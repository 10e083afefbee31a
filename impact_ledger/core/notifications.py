"""
Push channel for aggregate changes.

Subscribers receive an AggregateUpdate after every applied usage event.
Delivery is in-process and synchronous; a subscriber that raises is
logged and skipped so one bad listener cannot block the others.
"""

import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .log import get_logger
from impact_ledger.storage.models import GlobalAggregate, UserAggregate

logger = get_logger(__name__)

Subscriber = Callable[["AggregateUpdate"], None]


@dataclass(frozen=True)
class AggregateUpdate:
    """Snapshot pushed to clients after the aggregates moved."""
    user: UserAggregate
    global_stats: GlobalAggregate
    event_id: Optional[str] = None
    new_milestones: Tuple[int, ...] = field(default_factory=tuple)


class AggregatePublisher:
    """Fan-out of aggregate snapshots to registered subscribers.

    A subscriber registered for a user id only receives that user's
    updates; one registered with user_id=None receives all of them.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[int, Tuple[Optional[str], Subscriber]] = {}
        self._next_token = 0

    def subscribe(self, callback: Subscriber, user_id: Optional[str] = None) -> int:
        """Register a callback and return a token for unsubscribing."""
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = (user_id, callback)
        return token

    def unsubscribe(self, token: int) -> None:
        with self._lock:
            self._subscribers.pop(token, None)

    def publish(self, update: AggregateUpdate) -> int:
        """Deliver an update; returns how many subscribers received it."""
        with self._lock:
            targets: List[Subscriber] = [
                callback for user_id, callback in self._subscribers.values()
                if user_id is None or user_id == update.user.id
            ]

        delivered = 0
        for callback in targets:
            try:
                callback(update)
                delivered += 1
            except Exception:
                logger.warning("Subscriber failed for user %s", update.user.id, exc_info=True)
        return delivered
