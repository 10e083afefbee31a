"""
Client-side reconciliation of provisional impact figures.

A client shows an estimated tree credit as soon as a query is submitted,
then settles it one of two ways:

    PROVISIONAL -> CONFIRMED    authoritative figure replaces the estimate
    PROVISIONAL -> ROLLED_BACK  estimate removed, user told it wasn't confirmed

Totals reported by the server (push, poll or a confirmed reply) replace the
locally confirmed total. Each carries the revision of the user row it was
read from, so a snapshot that arrives late never overwrites a newer one.
"""

import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from .errors import ReconciliationMismatch
from .log import get_logger

logger = get_logger(__name__)

# Longest a provisional figure may stand without an answer
DEFAULT_MAX_PENDING_SECONDS = 60.0


class UpdateState(Enum):
    """Lifecycle of one optimistic update."""
    PROVISIONAL = "provisional"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


@dataclass
class ProvisionalUpdate:
    """An estimate shown before the server has answered."""
    request_id: str
    estimated_trees: Decimal
    started_at: float
    state: UpdateState = UpdateState.PROVISIONAL
    authoritative_trees: Optional[Decimal] = None


@dataclass(frozen=True)
class DisplayedImpact:
    """What the client should render right now."""
    total: Decimal
    provisional: bool
    pending_requests: int


@dataclass(frozen=True)
class ImpactNotice:
    """User-visible message that an impact figure was not confirmed."""
    request_id: str
    message: str


class ImpactTracker:
    """Tracks a user's displayed tree total across in-flight queries.

    Thread-safe: push notifications may arrive on another thread than the
    one settling requests.
    """

    def __init__(
        self,
        confirmed_total: Decimal = Decimal("0"),
        on_notice: Optional[Callable[[ImpactNotice], None]] = None,
        max_pending_seconds: float = DEFAULT_MAX_PENDING_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        revision: Optional[int] = None
    ):
        self._lock = threading.Lock()
        self._confirmed_total = Decimal(confirmed_total)
        self._revision = revision
        self._pending: Dict[str, ProvisionalUpdate] = {}
        self._settled: Dict[str, ProvisionalUpdate] = {}
        self._server_event_ids: Set[str] = set()
        self._on_notice = on_notice
        self._clock = clock
        self.max_pending_seconds = max_pending_seconds
        self.notices: List[ImpactNotice] = []

    @property
    def confirmed_total(self) -> Decimal:
        with self._lock:
            return self._confirmed_total

    def displayed(self) -> DisplayedImpact:
        """Confirmed total plus every outstanding estimate."""
        with self._lock:
            return self._displayed()

    def _displayed(self) -> DisplayedImpact:
        pending = sum((u.estimated_trees for u in self._pending.values()), Decimal("0"))
        return DisplayedImpact(
            total=self._confirmed_total + pending,
            provisional=bool(self._pending),
            pending_requests=len(self._pending)
        )

    def begin(self, request_id: str, estimated_trees: Decimal) -> ProvisionalUpdate:
        """Show an estimate for a request that has just been sent."""
        estimated_trees = Decimal(estimated_trees)
        if estimated_trees < 0:
            raise ValueError("estimated_trees cannot be negative")
        with self._lock:
            if request_id in self._pending or request_id in self._settled:
                raise ValueError(f"Request {request_id} already tracked")
            update = ProvisionalUpdate(
                request_id=request_id,
                estimated_trees=estimated_trees,
                started_at=self._clock()
            )
            self._pending[request_id] = update
            return update

    def confirm(
        self,
        request_id: str,
        trees: Decimal,
        event_id: Optional[str] = None,
        server_total: Optional[Decimal] = None,
        revision: Optional[int] = None
    ) -> DisplayedImpact:
        """Replace a request's estimate with the server's figure.

        When the reply carries the user's total and revision right after
        the event, that total is adopted unless a snapshot at least as new
        was already applied, in which case the event is already counted.
        Without them, the trees are added unless a push for the same event
        already reached this tracker. A reply arriving after a rollback is
        still applied: the server recorded it.
        """
        trees = Decimal(trees)
        with self._lock:
            update = self._pending.pop(request_id, None)
            if update is None:
                update = self._settled.get(request_id)
                if update is None:
                    raise KeyError(f"Unknown request {request_id}")
                if update.state == UpdateState.CONFIRMED:
                    return self._displayed()
                logger.info("Late confirmation for rolled back request %s", request_id)

            if update.estimated_trees != trees:
                mismatch = ReconciliationMismatch(
                    f"Estimate for {request_id} corrected",
                    provisional=update.estimated_trees,
                    authoritative=trees
                )
                logger.debug("%s: %s -> %s", mismatch, mismatch.provisional, mismatch.authoritative)

            if server_total is not None and revision is not None:
                if not self._is_stale(revision):
                    self._adopt(Decimal(server_total), revision)
            elif event_id is None or event_id not in self._server_event_ids:
                self._confirmed_total += trees
            if event_id is not None:
                self._server_event_ids.add(event_id)
            update.state = UpdateState.CONFIRMED
            update.authoritative_trees = trees
            self._settled[request_id] = update
            return self._displayed()

    def rollback(self, request_id: str, reason: str = "") -> DisplayedImpact:
        """Withdraw an estimate whose confirmation never arrived."""
        with self._lock:
            update = self._pending.pop(request_id, None)
            if update is None:
                return self._displayed()
            update.state = UpdateState.ROLLED_BACK
            self._settled[request_id] = update
            notice = ImpactNotice(
                request_id=request_id,
                message="Your impact for this message couldn't be confirmed"
                        + (f" ({reason})" if reason else "")
            )
            self.notices.append(notice)
            displayed = self._displayed()

        logger.warning("Rolled back provisional impact for %s: %s", request_id, reason or "no reply")
        if self._on_notice is not None:
            self._on_notice(notice)
        return displayed

    def expire_pending(self, now: Optional[float] = None) -> List[str]:
        """Roll back every estimate older than max_pending_seconds."""
        now = self._clock() if now is None else now
        with self._lock:
            expired = [
                request_id for request_id, update in self._pending.items()
                if now - update.started_at > self.max_pending_seconds
            ]
        for request_id in expired:
            self.rollback(request_id, "timed out")
        return expired

    def apply_server_total(
        self,
        total: Decimal,
        event_id: Optional[str] = None,
        revision: Optional[int] = None
    ) -> DisplayedImpact:
        """Adopt a server-reported total as the confirmed total.

        Args:
            total: The user's tree total on the server
            event_id: Event the snapshot was pushed for, if any
            revision: Revision of the user row the total was read from;
                a snapshot older than one already applied is ignored
        """
        total = Decimal(total)
        with self._lock:
            if event_id is not None:
                self._server_event_ids.add(event_id)
            if revision is not None and self._revision is not None and revision < self._revision:
                logger.debug("Ignoring server total at revision %s behind %s", revision, self._revision)
                return self._displayed()
            self._adopt(total, revision)
            return self._displayed()

    def apply_snapshot(self, user, event_id: Optional[str] = None) -> DisplayedImpact:
        """Adopt a polled or pushed UserAggregate."""
        return self.apply_server_total(user.trees_planted, event_id, user.revision)

    def on_aggregate_update(self, update) -> None:
        """Push-channel callback; takes an AggregateUpdate."""
        self.apply_snapshot(update.user, update.event_id)

    def _is_stale(self, revision: int) -> bool:
        return self._revision is not None and revision <= self._revision

    def _adopt(self, total: Decimal, revision: Optional[int]) -> None:
        if total != self._confirmed_total:
            logger.debug("Server total %s replaces local total %s", total, self._confirmed_total)
        self._confirmed_total = total
        if revision is not None:
            self._revision = revision

    def state_of(self, request_id: str) -> Optional[UpdateState]:
        with self._lock:
            update = self._pending.get(request_id) or self._settled.get(request_id)
            return update.state if update else None
