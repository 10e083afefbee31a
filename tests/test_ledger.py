"""
Unit tests for the usage ledger.

Covers the recording pipeline, concurrent writers, the failed fan-out
path and its reconciliation, and milestone idempotency.
"""

import sqlite3
import threading
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from impact_ledger.core.errors import ValidationError
from impact_ledger.core.impact import ImpactRates
from impact_ledger.core.ledger import UsageLedger
from impact_ledger.core.notifications import AggregatePublisher
from impact_ledger.core.token_counter import TokenUsage
from impact_ledger.storage.models import EventStatus
from impact_ledger.storage.repository import utcnow


@pytest.fixture
def user_session(ledger):
    ledger.ensure_user("u1", "u1@example.com", "Ada")
    return ledger.get_or_create_session("u1", "conv-1", title="First chat")


class TestUsersAndSessions:

    def test_ensure_user_requires_id_and_email(self, ledger):
        with pytest.raises(ValidationError):
            ledger.ensure_user("", "a@example.com")
        with pytest.raises(ValidationError):
            ledger.ensure_user("u1", "")

    def test_session_for_unknown_user(self, ledger):
        with pytest.raises(ValidationError, match="Unknown user"):
            ledger.get_or_create_session("ghost", "conv")

    def test_concurrent_get_or_create_session(self, ledger):
        ledger.ensure_user("u1", "u1@example.com")
        results = []
        errors = []

        def create():
            try:
                results.append(ledger.get_or_create_session("u1", "same-conv").id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=create) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(set(results)) == 1
        assert len(ledger.list_sessions("u1")) == 1

    def test_update_preferences_validates_model(self, ledger):
        ledger.ensure_user("u1", "u1@example.com")
        assert ledger.update_preferences("u1", preferred_model="gpt-4o").preferred_model == "gpt-4o"
        with pytest.raises(ValidationError):
            ledger.update_preferences("u1", preferred_model="not-a-model")
        with pytest.raises(ValidationError):
            ledger.update_preferences("ghost", selected_charity="oceans")


class TestRecordUsage:

    def test_record_worked_example(self, ledger, user_session):
        event = ledger.record_usage(
            "u1", user_session.id, TokenUsage(input_tokens=100, output_tokens=200), "gpt-4o-mini",
            response_time_ms=420
        )

        assert event.status == EventStatus.MILESTONE_CHECKED
        assert event.total_cost == Decimal("0.000135")
        assert event.donation == Decimal("0.000054")
        assert event.trees == Decimal("0.000135")
        assert event.rates_version == "2024-01"
        assert event.response_time_ms == 420

        user = ledger.get_user_impact("u1").user
        assert user.total_queries == 1
        assert user.trees_planted == Decimal("0.000135")
        session = ledger.get_session(user_session.id)
        assert session.message_count == 1
        assert session.total_tokens == 300
        stats = ledger.get_global_stats()
        assert stats.total_queries == 1
        assert stats.total_trees == Decimal("0.000135")
        assert stats.total_donated == Decimal("0.000054")

    def test_stored_figures_survive_rate_change(self, db_path, user_session):
        first = UsageLedger(db_path).record_usage(
            "u1", user_session.id, TokenUsage(input_tokens=1000, output_tokens=0), "gpt-4"
        )
        new_rates = ImpactRates(
            donation_rate=Decimal("0.5"), trees_per_currency_unit=Decimal("3"), version="2025-01"
        )
        second = UsageLedger(db_path, rates=new_rates).record_usage(
            "u1", user_session.id, TokenUsage(input_tokens=1000, output_tokens=0), "gpt-4"
        )

        history = {e.id: e for e in UsageLedger(db_path).get_query_history("u1")}
        assert history[first.id].trees == Decimal("0.03")
        assert history[first.id].rates_version == "2024-01"
        assert history[second.id].trees == Decimal("0.045")
        assert history[second.id].rates_version == "2025-01"

    def test_unknown_model_records_nothing(self, ledger, user_session):
        with pytest.raises(ValidationError):
            ledger.record_usage("u1", user_session.id, TokenUsage(input_tokens=1, output_tokens=1), "gpt-5")
        assert ledger.get_query_history("u1") == []
        assert ledger.get_global_stats().total_queries == 0

    def test_foreign_session_rejected(self, ledger, user_session):
        ledger.ensure_user("u2", "u2@example.com")
        with pytest.raises(ValidationError, match="does not belong"):
            ledger.record_usage("u2", user_session.id, TokenUsage(input_tokens=1, output_tokens=1), "gpt-4")
        assert ledger.get_query_history("u2") == []

    def test_unknown_session_rejected(self, ledger, user_session):
        with pytest.raises(ValidationError, match="Unknown session"):
            ledger.record_usage("u1", "nope", TokenUsage(input_tokens=1, output_tokens=1), "gpt-4")

    def test_concurrent_records_sum_exactly(self, ledger, user_session):
        errors = []
        recorded = []
        lock = threading.Lock()

        def worker(n):
            try:
                for i in range(5):
                    event = ledger.record_usage(
                        "u1", user_session.id,
                        TokenUsage(input_tokens=97 * (n + 1) + i, output_tokens=31 * i + n),
                        "gpt-4o"
                    )
                    with lock:
                        recorded.append(event)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(recorded) == 40
        expected_trees = sum((e.trees for e in recorded), Decimal("0"))
        expected_cost = sum((e.total_cost for e in recorded), Decimal("0"))

        user = ledger.get_user_impact("u1").user
        assert user.total_queries == 40
        assert user.trees_planted == expected_trees
        assert user.total_cost == expected_cost
        assert ledger.get_session(user_session.id).total_trees == expected_trees
        assert ledger.get_global_stats().total_trees == expected_trees

    def test_publishes_update(self, db_path):
        publisher = AggregatePublisher()
        received = []
        publisher.subscribe(received.append, user_id="u1")
        ledger = UsageLedger(db_path, publisher=publisher)
        ledger.ensure_user("u1", "u1@example.com")
        session = ledger.get_or_create_session("u1", "conv")

        event = ledger.record_usage("u1", session.id, TokenUsage(input_tokens=1000, output_tokens=0), "gpt-4")

        assert len(received) == 1
        assert received[0].event_id == event.id
        assert received[0].user.trees_planted == event.trees
        assert received[0].global_stats.total_queries == 1
        assert received[0].user.revision == 1

    def test_result_carries_user_snapshot(self, ledger, user_session):
        usage = TokenUsage(input_tokens=1000, output_tokens=0)
        first = ledger.record("u1", user_session.id, usage, "gpt-4")
        second = ledger.record("u1", user_session.id, usage, "gpt-4")

        assert first.user_revision == 1
        assert first.user_trees == first.event.trees
        assert second.user_revision == 2
        assert second.user_trees == first.event.trees + second.event.trees


class TestMilestones:

    def test_burst_records_each_milestone_once(self, ledger, user_session):
        # gpt-4 with default rates: trees == cost; 30000 input tokens -> 0.9 trees
        first = ledger.record(
            "u1", user_session.id, TokenUsage(input_tokens=30000, output_tokens=0), "gpt-4"
        )
        assert first.event.trees == Decimal("0.9")
        assert first.new_milestones == ()

        second = ledger.record(
            "u1", user_session.id, TokenUsage(input_tokens=177000, output_tokens=0), "gpt-4"
        )
        assert second.new_milestones == (1, 5)
        assert ledger.get_user_impact("u1").user.trees_planted == Decimal("6.21")

        # A retry of the same check records nothing new
        assert ledger.check_milestones("u1", Decimal("0.9"), Decimal("6.21")) == []
        ledger.reconcile()
        assert ledger.get_user_milestones("u1") == [1, 5]

    def test_user_impact_progress(self, ledger, user_session):
        ledger.record_usage("u1", user_session.id, TokenUsage(input_tokens=110000, output_tokens=0), "gpt-4")
        impact = ledger.get_user_impact("u1")
        assert impact.progress.whole_trees == 3
        assert impact.progress.progress == Decimal("0.3")
        assert impact.next_milestone.next_milestone.trees == 5
        assert impact.milestones == [1]

    def test_unknown_user_impact(self, ledger):
        assert ledger.get_user_impact("ghost") is None


class TestFailedFanOut:

    def _record_with_failing_fanout(self, ledger, session_id, tokens=50000):
        with patch.object(
            ledger.repository, "apply_event_to_aggregates",
            side_effect=sqlite3.OperationalError("database disk image is malformed")
        ):
            return ledger.record_usage(
                "u1", session_id, TokenUsage(input_tokens=tokens, output_tokens=0), "gpt-4"
            )

    def test_event_persists_without_aggregates(self, ledger, user_session):
        event = self._record_with_failing_fanout(ledger, user_session.id)

        assert event.status == EventStatus.PERSISTED
        assert ledger.get_query_history("u1")[0].id == event.id
        assert ledger.get_user_impact("u1").user.trees_planted == 0
        assert [e.id for e in ledger.find_unaggregated_events()] == [event.id]

    def test_failed_fanout_result_has_no_snapshot(self, ledger, user_session):
        with patch.object(
            ledger.repository, "apply_event_to_aggregates",
            side_effect=sqlite3.OperationalError("database is locked")
        ):
            result = ledger.record(
                "u1", user_session.id, TokenUsage(input_tokens=1000, output_tokens=0), "gpt-4"
            )
        assert result.aggregated is False
        assert result.user_trees is None
        assert result.user_revision is None

    def test_reconcile_restores_totals_without_double_count(self, ledger, user_session):
        applied = ledger.record_usage(
            "u1", user_session.id, TokenUsage(input_tokens=10000, output_tokens=0), "gpt-4"
        )
        lagging = self._record_with_failing_fanout(ledger, user_session.id)

        report = ledger.reconcile()
        expected = applied.trees + lagging.trees
        assert report.events_swept == 1
        assert report.users_corrected == 1
        assert report.sessions_corrected == 1
        assert report.global_corrected is True
        assert report.milestones_backfilled == 1

        assert ledger.get_user_impact("u1").user.trees_planted == expected
        assert ledger.get_session(user_session.id).total_trees == expected
        assert ledger.get_global_stats().total_trees == expected
        assert ledger.get_user_milestones("u1") == [1]
        assert ledger.find_unaggregated_events() == []

        # A late fan-out for the swept event must not count it again
        assert ledger.repository.apply_event_to_aggregates(lagging).applied is False
        again = ledger.reconcile()
        assert again.users_corrected == 0
        assert again.milestones_backfilled == 0
        assert ledger.get_user_impact("u1").user.trees_planted == expected

    def test_grace_hides_recent_events(self, ledger, user_session):
        self._record_with_failing_fanout(ledger, user_session.id)
        assert ledger.find_unaggregated_events(grace=timedelta(hours=1)) == []

    def test_stale_events_cleared_by_reconcile(self, ledger, user_session):
        event = ledger.record_usage(
            "u1", user_session.id, TokenUsage(input_tokens=1000, output_tokens=0), "gpt-4"
        )
        assert ledger.find_stale_events() == []

        conn = sqlite3.connect(ledger.repository.db_path)
        conn.execute("UPDATE user_aggregate SET last_applied_at = NULL WHERE id = 'u1'")
        conn.commit()
        conn.close()

        assert [e.id for e in ledger.find_stale_events()] == [event.id]
        assert ledger.find_unaggregated_events() == []

        ledger.reconcile()
        assert ledger.find_stale_events() == []


class TestDeletes:

    def test_delete_session_backs_out_totals(self, ledger, user_session):
        other = ledger.get_or_create_session("u1", "conv-2")
        usage = TokenUsage(input_tokens=1000, output_tokens=0)
        ledger.record_usage("u1", user_session.id, usage, "gpt-4")
        ledger.record_usage("u1", user_session.id, usage, "gpt-4")
        kept = ledger.record_usage("u1", other.id, usage, "gpt-4")

        assert ledger.delete_session(user_session.id) is True

        user = ledger.get_user_impact("u1").user
        assert user.total_queries == 1
        assert user.trees_planted == kept.trees
        stats = ledger.get_global_stats()
        assert stats.total_queries == 1
        assert stats.total_trees == kept.trees
        assert ledger.get_session_events(user_session.id) == []
        assert ledger.reconcile().users_corrected == 0

    def test_delete_user(self, ledger, user_session):
        ledger.ensure_user("u2", "u2@example.com")
        ledger.record_usage("u1", user_session.id, TokenUsage(input_tokens=1000, output_tokens=0), "gpt-4")

        assert ledger.delete_user("u1") is True
        assert ledger.get_user_impact("u1") is None
        stats = ledger.get_global_stats()
        assert stats.total_users == 1
        assert stats.total_trees == 0
        assert ledger.delete_user("u1") is False


class TestWeeklyRefresh:

    def test_refresh_weekly_trees(self, ledger, user_session):
        event = ledger.record_usage("u1", user_session.id, TokenUsage(input_tokens=1000, output_tokens=0), "gpt-4")
        assert ledger.refresh_weekly_trees().trees_this_week == event.trees
        later = ledger.refresh_weekly_trees(now=utcnow() + timedelta(days=8))
        assert later.trees_this_week == 0
        assert later.total_trees == event.trees
