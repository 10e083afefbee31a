"""
Unit tests for the client-side optimistic update protocol.
"""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from impact_ledger.core.reconciliation import ImpactTracker, UpdateState


class FakeClock:

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestProvisionalUpdates:

    def test_estimate_shown_as_provisional(self):
        tracker = ImpactTracker(confirmed_total=Decimal("2.5"))
        tracker.begin("r1", Decimal("0.1"))

        displayed = tracker.displayed()
        assert displayed.total == Decimal("2.6")
        assert displayed.provisional is True
        assert displayed.pending_requests == 1
        assert tracker.state_of("r1") == UpdateState.PROVISIONAL

    def test_confirm_replaces_estimate(self):
        tracker = ImpactTracker(confirmed_total=Decimal("2.5"))
        tracker.begin("r1", Decimal("0.1"))

        displayed = tracker.confirm("r1", Decimal("0.125"))
        assert displayed.total == Decimal("2.625")
        assert displayed.provisional is False
        assert tracker.state_of("r1") == UpdateState.CONFIRMED

    def test_repeat_confirm_ignored(self):
        tracker = ImpactTracker()
        tracker.begin("r1", Decimal("1"))
        tracker.confirm("r1", Decimal("1"))
        tracker.confirm("r1", Decimal("1"))
        assert tracker.confirmed_total == Decimal("1")

    def test_rollback_reverts_exactly(self):
        notices = []
        tracker = ImpactTracker(confirmed_total=Decimal("7.123456"), on_notice=notices.append)
        before = tracker.displayed().total

        tracker.begin("r1", Decimal("0.333333"))
        assert tracker.displayed().total != before

        displayed = tracker.rollback("r1", "confirmation fetch failed")
        assert displayed.total == before
        assert displayed.provisional is False
        assert tracker.state_of("r1") == UpdateState.ROLLED_BACK
        assert len(notices) == 1
        assert "couldn't be confirmed" in notices[0].message
        assert tracker.notices == notices

    def test_rollback_only_removes_its_own_estimate(self):
        tracker = ImpactTracker()
        tracker.begin("r1", Decimal("0.2"))
        tracker.begin("r2", Decimal("0.3"))
        tracker.rollback("r1")
        assert tracker.displayed().total == Decimal("0.3")
        assert tracker.displayed().pending_requests == 1

    def test_late_confirmation_after_rollback_applies(self):
        tracker = ImpactTracker()
        tracker.begin("r1", Decimal("0.2"))
        tracker.rollback("r1", "timed out")
        tracker.confirm("r1", Decimal("0.25"))
        assert tracker.confirmed_total == Decimal("0.25")
        assert tracker.state_of("r1") == UpdateState.CONFIRMED

    def test_duplicate_and_negative_begin(self):
        tracker = ImpactTracker()
        tracker.begin("r1", Decimal("0.1"))
        with pytest.raises(ValueError):
            tracker.begin("r1", Decimal("0.1"))
        with pytest.raises(ValueError):
            tracker.begin("r2", Decimal("-0.1"))

    def test_confirm_unknown_request(self):
        with pytest.raises(KeyError):
            ImpactTracker().confirm("missing", Decimal("1"))


class TestExpiry:

    def test_expire_pending(self):
        clock = FakeClock()
        tracker = ImpactTracker(max_pending_seconds=30, clock=clock)
        tracker.begin("old", Decimal("0.5"))
        clock.now = 20
        tracker.begin("new", Decimal("0.25"))
        clock.now = 45

        assert tracker.expire_pending() == ["old"]
        assert tracker.state_of("old") == UpdateState.ROLLED_BACK
        assert tracker.displayed().total == Decimal("0.25")


class TestServerTotals:

    def test_server_total_is_authoritative(self):
        tracker = ImpactTracker(confirmed_total=Decimal("1"))
        tracker.begin("r1", Decimal("0.5"))
        displayed = tracker.apply_server_total(Decimal("4"))
        assert displayed.total == Decimal("4.5")
        assert tracker.confirmed_total == Decimal("4")

    def test_push_before_confirm_not_counted_twice(self):
        tracker = ImpactTracker(confirmed_total=Decimal("1"))
        tracker.begin("r1", Decimal("0.4"))

        update = SimpleNamespace(
            user=SimpleNamespace(trees_planted=Decimal("1.5"), revision=3), event_id="evt-1"
        )
        tracker.on_aggregate_update(update)
        tracker.confirm("r1", Decimal("0.5"), event_id="evt-1")

        assert tracker.confirmed_total == Decimal("1.5")
        assert tracker.displayed().provisional is False

    def test_poll_covering_event_before_reply(self):
        tracker = ImpactTracker(confirmed_total=Decimal("1"), revision=1)
        tracker.begin("r1", Decimal("0.1"))

        # Poll lands after the server applied the event but before the reply
        tracker.apply_server_total(Decimal("1.2"), revision=2)
        tracker.confirm("r1", Decimal("0.2"), event_id="e1", server_total=Decimal("1.2"), revision=2)

        assert tracker.confirmed_total == Decimal("1.2")
        assert tracker.displayed().total == Decimal("1.2")

    def test_reply_newer_than_last_snapshot_is_adopted(self):
        tracker = ImpactTracker(confirmed_total=Decimal("1"), revision=1)
        tracker.begin("r1", Decimal("0.1"))
        tracker.confirm("r1", Decimal("0.2"), event_id="e1", server_total=Decimal("1.2"), revision=2)
        assert tracker.confirmed_total == Decimal("1.2")

    def test_out_of_order_pushes_keep_newest(self):
        tracker = ImpactTracker()
        tracker.begin("rA", Decimal("0.2"))
        tracker.begin("rB", Decimal("0.3"))

        tracker.apply_server_total(Decimal("0.5"), event_id="eB", revision=2)
        tracker.apply_server_total(Decimal("0.2"), event_id="eA", revision=1)
        assert tracker.confirmed_total == Decimal("0.5")

        tracker.confirm("rB", Decimal("0.3"), event_id="eB", server_total=Decimal("0.5"), revision=2)
        tracker.confirm("rA", Decimal("0.2"), event_id="eA", server_total=Decimal("0.2"), revision=1)
        assert tracker.displayed().total == Decimal("0.5")
        assert tracker.displayed().provisional is False

    def test_snapshot_helper_reads_revision(self):
        tracker = ImpactTracker()
        tracker.apply_snapshot(SimpleNamespace(trees_planted=Decimal("3"), revision=5))
        tracker.apply_snapshot(SimpleNamespace(trees_planted=Decimal("2"), revision=4))
        assert tracker.confirmed_total == Decimal("3")
