"""
Tests for the CLI interface.
"""
import os
import sqlite3
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from impact_ledger.cli.main import EXIT_CODE_FAIL, EXIT_CODE_PASS, EXIT_CODE_UNAGGREGATED, app
from impact_ledger.core.ledger import UsageLedger
from impact_ledger.core.token_counter import TokenUsage

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep log handlers off the runner's captured stdout."""
    with patch('impact_ledger.cli.main.setup_logging'):
        yield


@pytest.fixture
def seeded(db_path):
    ledger = UsageLedger(db_path)
    ledger.ensure_user("u1", "u1@example.com", "Ada")
    session = ledger.get_or_create_session("u1", "conv")
    ledger.record_usage("u1", session.id, TokenUsage(input_tokens=50000, output_tokens=0), "gpt-4")
    return ledger, session


class TestCLI:
    """Test CLI commands."""

    def test_no_command(self):
        result = runner.invoke(app, [])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Impact Ledger" in result.output

    def test_init_creates_schema(self, tmp_path):
        db = str(tmp_path / "fresh.db")
        result = runner.invoke(app, ["init", "--db", db])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output
        assert os.path.exists(db)

    def test_init_with_bad_config(self, tmp_path):
        config = tmp_path / "ledger.yaml"
        config.write_text("impact:\n  donation_rate: 2\n  trees_per_currency_unit: 2.5\n  rates_version: v9\n")
        result = runner.invoke(app, ["init", "--db", str(tmp_path / "x.db"), "--config", str(config)])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error initializing database" in result.output

    def test_stats(self, seeded, db_path):
        result = runner.invoke(app, ["stats", "--db", db_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Global Impact" in result.output
        assert "1.500000" in result.output

    def test_stats_without_init(self, tmp_path):
        result = runner.invoke(app, ["stats", "--db", str(tmp_path / "missing.db")])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "No ledger found" in result.output

    def test_user_report(self, seeded, db_path):
        result = runner.invoke(app, ["user", "u1", "--db", db_path, "--history", "5"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "u1@example.com" in result.output
        assert "Trees planted: 1.500000" in result.output
        assert "Next milestone: 5 trees" in result.output
        assert "Milestones: 1" in result.output
        assert "Recent queries" in result.output

    def test_user_with_bad_config(self, seeded, db_path, tmp_path):
        config = tmp_path / "ledger.yaml"
        config.write_text("impact:\n  donation_rate: 2\n  trees_per_currency_unit: 2.5\n  rates_version: v9\n")
        result = runner.invoke(app, ["user", "u1", "--db", db_path, "--config", str(config)])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error loading configuration" in result.output

    def test_missing_config_file(self, db_path, tmp_path):
        missing = str(tmp_path / "absent.yaml")
        for command in (["user", "u1"], ["stats"], ["check"], ["reconcile"], ["refresh-week"]):
            result = runner.invoke(app, command + ["--db", db_path, "--config", missing])
            assert result.exit_code == EXIT_CODE_FAIL
            assert "Error loading configuration" in result.output

    def test_unknown_user(self, db_path):
        result = runner.invoke(app, ["user", "ghost", "--db", db_path])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown user" in result.output

    def test_milestones(self):
        result = runner.invoke(app, ["milestones"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Milestones (table v1)" in result.output
        assert "1000" in result.output

    def test_check_clean(self, seeded, db_path):
        result = runner.invoke(app, ["check", "--db", db_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "All events are reflected" in result.output

    def test_check_then_reconcile(self, seeded, db_path):
        ledger, session = seeded
        with patch.object(
            ledger.repository, "apply_event_to_aggregates",
            side_effect=sqlite3.OperationalError("database is locked")
        ):
            ledger.record_usage("u1", session.id, TokenUsage(input_tokens=1000, output_tokens=0), "gpt-4")

        result = runner.invoke(app, ["check", "--db", db_path])
        assert result.exit_code == EXIT_CODE_UNAGGREGATED
        assert "1 event(s) missing from aggregates" in result.output

        result = runner.invoke(app, ["reconcile", "--db", db_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Events swept: 1" in result.output
        assert "Users corrected: 1" in result.output

        result = runner.invoke(app, ["check", "--db", db_path])
        assert result.exit_code == EXIT_CODE_PASS

    def test_refresh_week(self, seeded, db_path):
        result = runner.invoke(app, ["refresh-week", "--db", db_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Trees this week: 1.500000" in result.output
