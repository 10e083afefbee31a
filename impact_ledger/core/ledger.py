"""
Usage ledger.

The only writer of usage events, aggregates and milestones. One recorded
interaction moves through these states:

    DRAFT -> PERSISTED -> AGGREGATED -> MILESTONE_CHECKED

The event row commits first and is the source of truth. Aggregates are
derived from it: if the fan-out fails the event stays PERSISTED and a
later `reconcile()` sweep rebuilds the aggregates from the events, rather
than a synchronous retry that could count the event twice.
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from .errors import LedgerWriteError, ValidationError
from .impact import DEFAULT_RATES, ImpactRates, TreeProgress, calculate_impact, get_tree_progress
from .log import get_logger, log_event
from .milestones import MilestoneProgress, crossed_milestones, next_milestone, reached_milestones
from .notifications import AggregatePublisher, AggregateUpdate
from .token_counter import TokenUsage
from impact_ledger.storage.db import DEFAULT_DB_PATH
from impact_ledger.storage.models import (
    EventStatus,
    GlobalAggregate,
    SessionAggregate,
    UsageEvent,
    UserAggregate,
)
from impact_ledger.storage.repository import LedgerRepository, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class RecordResult:
    """Outcome of recording one interaction."""
    event: UsageEvent
    new_milestones: Tuple[int, ...] = ()
    # User totals right after this event was applied; None when it was not
    user_trees: Optional[Decimal] = None
    user_revision: Optional[int] = None

    @property
    def aggregated(self) -> bool:
        return self.event.status in (EventStatus.AGGREGATED, EventStatus.MILESTONE_CHECKED)


@dataclass(frozen=True)
class ReconciliationReport:
    """Summary of one reconciliation sweep."""
    events_swept: int
    sessions_corrected: int
    users_corrected: int
    global_corrected: bool
    milestones_backfilled: int


@dataclass(frozen=True)
class UserImpact:
    """Everything a client needs to render a user's impact."""
    user: UserAggregate
    progress: TreeProgress
    next_milestone: MilestoneProgress
    milestones: List[int]


class UsageLedger:
    """Records usage events and keeps every aggregate in step with them."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        publisher: Optional[AggregatePublisher] = None,
        rates: ImpactRates = DEFAULT_RATES,
        repository: Optional[LedgerRepository] = None
    ):
        self.repository = repository or LedgerRepository(db_path)
        self.publisher = publisher
        self.rates = rates

    # ------------------------------------------------------ users & sessions

    def ensure_user(
        self,
        user_id: str,
        email: str,
        full_name: Optional[str] = None,
        preferred_model: Optional[str] = None
    ) -> UserAggregate:
        """Get or create a user profile; safe to call on every request."""
        if not user_id or not email:
            raise ValidationError("user_id and email are required")
        user, created = self.repository.ensure_user(user_id, email, full_name, preferred_model)
        if created:
            log_event(logger, "ledger.user.created", user_id=user_id)
        return user

    def get_or_create_session(
        self,
        user_id: str,
        conversation_key: str,
        title: Optional[str] = None
    ) -> SessionAggregate:
        """Return the single session for a conversation, creating it if needed."""
        if not user_id or not conversation_key:
            raise ValidationError("user_id and conversation_key are required")
        if self.repository.get_user(user_id) is None:
            raise ValidationError(f"Unknown user: {user_id}")
        session, created = self.repository.get_or_create_session(user_id, conversation_key, title)
        if created:
            log_event(logger, "ledger.session.created", user_id=user_id, session_id=session.id)
        return session

    def delete_user(self, user_id: str) -> bool:
        deleted = self.repository.delete_user(user_id)
        if deleted:
            log_event(logger, "ledger.user.deleted", user_id=user_id)
        return deleted

    def delete_session(self, session_id: str) -> bool:
        deleted = self.repository.delete_session(session_id)
        if deleted:
            log_event(logger, "ledger.session.deleted", session_id=session_id)
        return deleted

    def update_preferences(
        self,
        user_id: str,
        preferred_model: Optional[str] = None,
        selected_charity: Optional[str] = None
    ) -> UserAggregate:
        if preferred_model is not None:
            # Raises for models outside the pricing table
            calculate_impact(0, 0, preferred_model, self.rates)
        user = self.repository.update_preferences(user_id, preferred_model, selected_charity)
        if user is None:
            raise ValidationError(f"Unknown user: {user_id}")
        return user

    # ------------------------------------------------------------- recording

    def record_usage(
        self,
        user_id: str,
        session_id: str,
        usage: TokenUsage,
        model: str,
        response_time_ms: Optional[int] = None,
        rates: Optional[ImpactRates] = None
    ) -> UsageEvent:
        """Record one completed interaction and return its event."""
        return self.record(user_id, session_id, usage, model, response_time_ms, rates).event

    def record(
        self,
        user_id: str,
        session_id: str,
        usage: TokenUsage,
        model: str,
        response_time_ms: Optional[int] = None,
        rates: Optional[ImpactRates] = None
    ) -> RecordResult:
        """Record one completed interaction.

        Args:
            user_id: Owner of the interaction
            session_id: Session the interaction belongs to
            usage: Tokens counted by the model tokenizer
            model: Model identifier from the pricing table
            response_time_ms: Optional latency of the completion call
            rates: Impact rates; defaults to the ledger's rates

        Returns:
            RecordResult with the event in its furthest reached state and
            any milestones this event crossed

        Raises:
            ValidationError: Bad tokens, unknown model, unknown or foreign session
            sqlite3.Error: If the event itself could not be persisted
        """
        rates = rates or self.rates
        impact = calculate_impact(usage.input_tokens, usage.output_tokens, model, rates)

        session = self.repository.get_session(session_id)
        if session is None:
            raise ValidationError(f"Unknown session: {session_id}")
        if session.user_id != user_id:
            raise ValidationError(f"Session {session_id} does not belong to user {user_id}")

        draft = UsageEvent(
            id=str(uuid.uuid4()),
            user_id=user_id,
            session_id=session_id,
            model=model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            input_cost=impact.input_cost,
            output_cost=impact.output_cost,
            total_cost=impact.total_cost,
            donation=impact.donation,
            trees=impact.trees,
            rates_version=rates.version,
            created_at=utcnow(),
            response_time_ms=response_time_ms,
            status=EventStatus.DRAFT
        )

        event = self.repository.insert_usage_event(draft)
        log_event(
            logger, "ledger.event.persisted",
            event_id=event.id, user_id=user_id, trees=event.trees, cost=event.total_cost
        )

        try:
            delta = self.repository.apply_event_to_aggregates(event)
        except (sqlite3.Error, LookupError) as e:
            error = LedgerWriteError(f"Aggregate update failed: {e}", event.id)
            log_event(logger, "ledger.aggregate.failed", level=logging.WARNING, event_id=event.id, error=error)
            return RecordResult(event=event)

        if not delta.applied:
            # A sweep got there first and owns this event now
            current = self.repository.get_event(event.id) or event
            return RecordResult(event=current)

        event = replace(event, status=EventStatus.AGGREGATED)
        try:
            new_milestones = self.check_milestones(
                user_id, delta.previous_user_trees, delta.new_user_trees
            )
        except sqlite3.Error as e:
            log_event(logger, "ledger.milestone.failed", level=logging.WARNING, event_id=event.id, error=e)
            return RecordResult(
                event=event, user_trees=delta.new_user_trees, user_revision=delta.user_revision
            )

        if self.repository.set_event_status(
            event.id, EventStatus.MILESTONE_CHECKED, expected=EventStatus.AGGREGATED
        ):
            event = replace(event, status=EventStatus.MILESTONE_CHECKED)

        self._publish(user_id, event.id, new_milestones)
        return RecordResult(
            event=event,
            new_milestones=tuple(new_milestones),
            user_trees=delta.new_user_trees,
            user_revision=delta.user_revision
        )

    def check_milestones(self, user_id: str, previous_trees: Decimal, new_trees: Decimal) -> List[int]:
        """Record every threshold crossed between two totals.

        Repeating the call with the same totals records nothing new.

        Returns:
            Thresholds newly recorded by this call
        """
        crossed = [m.trees for m in crossed_milestones(previous_trees, new_trees)]
        if not crossed:
            return []
        inserted = self.repository.insert_milestones(user_id, crossed)
        for threshold in inserted:
            log_event(logger, "ledger.milestone.reached", user_id=user_id, threshold=threshold)
        return inserted

    def _publish(self, user_id: str, event_id: str, new_milestones: List[int]) -> None:
        if self.publisher is None:
            return
        user = self.repository.get_user(user_id)
        if user is None:
            return
        self.publisher.publish(AggregateUpdate(
            user=user,
            global_stats=self.repository.get_global(),
            event_id=event_id,
            new_milestones=tuple(new_milestones)
        ))

    # --------------------------------------------------------- reconciliation

    def find_unaggregated_events(self, grace: timedelta = timedelta(0)) -> List[UsageEvent]:
        """Events whose aggregate fan-out has not landed.

        Args:
            grace: Ignore events younger than this; they may still be in flight
        """
        older_than = utcnow() - grace if grace else None
        return self.repository.find_unaggregated_events(older_than)

    def find_stale_events(self, grace: timedelta = timedelta(0)) -> List[UsageEvent]:
        """Applied events the user's aggregate does not reflect yet."""
        older_than = utcnow() - grace if grace else None
        return self.repository.find_stale_events(older_than)

    def reconcile(self, now: Optional[datetime] = None) -> ReconciliationReport:
        """Rebuild every aggregate from its events and back-fill milestones."""
        rebuilt = self.repository.rebuild_aggregates(now)

        backfilled = 0
        for user_id, trees in self.repository.list_user_trees():
            thresholds = [m.trees for m in reached_milestones(trees)]
            if thresholds:
                backfilled += len(self.repository.insert_milestones(user_id, thresholds))

        report = ReconciliationReport(
            events_swept=rebuilt.events_swept,
            sessions_corrected=rebuilt.sessions_corrected,
            users_corrected=rebuilt.users_corrected,
            global_corrected=rebuilt.global_corrected,
            milestones_backfilled=backfilled
        )
        log_event(
            logger, "ledger.reconcile.complete",
            events=report.events_swept,
            sessions=report.sessions_corrected,
            users=report.users_corrected,
            global_fixed=report.global_corrected,
            milestones=report.milestones_backfilled
        )
        return report

    def refresh_weekly_trees(self, now: Optional[datetime] = None) -> GlobalAggregate:
        return self.repository.refresh_weekly_trees(now)

    # ------------------------------------------------------------- read side

    def get_user_impact(self, user_id: str) -> Optional[UserImpact]:
        user = self.repository.get_user(user_id)
        if user is None:
            return None
        return UserImpact(
            user=user,
            progress=get_tree_progress(user.trees_planted),
            next_milestone=next_milestone(user.trees_planted),
            milestones=[m.threshold for m in self.repository.get_user_milestones(user_id)]
        )

    def get_global_stats(self) -> GlobalAggregate:
        return self.repository.get_global()

    def get_session(self, session_id: str) -> Optional[SessionAggregate]:
        return self.repository.get_session(session_id)

    def list_sessions(self, user_id: str, limit: int = 50) -> List[SessionAggregate]:
        return self.repository.list_sessions(user_id, limit)

    def get_query_history(self, user_id: str, limit: int = 50) -> List[UsageEvent]:
        return self.repository.fetch_events(user_id=user_id, limit=limit)

    def get_session_events(self, session_id: str, limit: int = 500) -> List[UsageEvent]:
        return self.repository.fetch_events(session_id=session_id, limit=limit)

    def get_user_milestones(self, user_id: str) -> List[int]:
        return [m.threshold for m in self.repository.get_user_milestones(user_id)]
