"""
Tests for the Typer command line interface.

Commands run against a SQLite file; state is checked through a separate
store rather than by parsing table output.
"""

import pendulum
import pytest
from typer.testing import CliRunner

from carecalendar import __version__
from carecalendar.adapters.sql_store import SqlSchedulingStore
from carecalendar.cli.app import app
from carecalendar.domain.models import SlotStatus

runner = CliRunner()

TZ = "America/New_York"


@pytest.fixture
def workspace(tmp_path):
    """Config and rule files for a daily 09:00-10:00 rule starting tomorrow."""
    database_url = f"sqlite:///{tmp_path / 'cli.db'}"
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        f"database_url: {database_url}\n"
        f"default_timezone: {TZ}\n"
        "log_level: WARNING\n",
        encoding="utf-8",
    )

    start = pendulum.now(TZ).add(days=1).date()
    rule_path = tmp_path / "rule.yaml"
    rule_path.write_text(
        "title: Morning calls\n"
        "recurrence_kind: DAILY\n"
        f"start_date: '{start.isoformat()}'\n"
        f"end_date: '{start.add(days=13).isoformat()}'\n"
        "start_time: '09:00'\n"
        "end_time: '10:00'\n"
        "slot_duration_minutes: 30\n"
        "location_kind: VIRTUAL\n"
        "appointment_kind: FOLLOW_UP\n",
        encoding="utf-8",
    )
    return {
        "config": str(config_path),
        "rule": str(rule_path),
        "store": SqlSchedulingStore.from_url(database_url),
        "start": start,
        "tmp_path": tmp_path,
    }


def _invoke(workspace, *args):
    return runner.invoke(app, ["--config", workspace["config"], *args])


def _create_rule(workspace):
    result = _invoke(workspace, "rules", "create", "dr-grey", "--file", workspace["rule"])
    assert result.exit_code == 0, result.output
    return workspace["store"].list_rules(provider_id="dr-grey")[0]


class TestRulesCommands:
    def test_create_materializes_slots(self, workspace):
        rule = _create_rule(workspace)

        assert rule.title == "Morning calls"
        assert len(workspace["store"].list_slots(rule_id=rule.id)) == 28

    def test_invalid_rule_file_fails(self, workspace):
        bad = workspace["tmp_path"] / "bad.yaml"
        bad.write_text("title: Broken\nrecurrence_kind: WEEKLY\n", encoding="utf-8")

        result = _invoke(workspace, "rules", "create", "dr-grey", "--file", str(bad))

        assert result.exit_code == 1
        assert "VALIDATION_ERROR" in result.output
        assert workspace["store"].list_rules() == []

    def test_missing_rule_file_fails(self, workspace):
        result = _invoke(workspace, "rules", "create", "dr-grey", "--file", "nowhere.yaml")

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_deactivate_and_list(self, workspace):
        rule = _create_rule(workspace)

        result = _invoke(workspace, "rules", "deactivate", rule.id)
        assert result.exit_code == 0
        assert not workspace["store"].get_rule(rule.id).is_active

        result = _invoke(workspace, "rules", "list", "dr-grey", "--active-only")
        assert result.exit_code == 0
        assert "No availability rules found" in result.output

    def test_overlapping_rule_is_reported(self, workspace):
        _create_rule(workspace)

        result = _invoke(workspace, "rules", "create", "dr-grey", "--file", workspace["rule"])

        assert result.exit_code == 1
        assert "SCHEDULE_CONFLICT" in result.output
        assert len(workspace["store"].list_rules()) == 1


class TestSlotsCommands:
    def test_book_and_cancel(self, workspace):
        rule = _create_rule(workspace)
        slot = workspace["store"].list_slots(rule_id=rule.id)[0]

        result = _invoke(workspace, "slots", "book", slot.id, "patient-1")
        assert result.exit_code == 0, result.output
        assert workspace["store"].get_slot(slot.id).status == SlotStatus.BOOKED

        result = _invoke(workspace, "slots", "book", slot.id, "patient-2")
        assert result.exit_code == 1
        assert "SLOT_UNAVAILABLE" in result.output

        result = _invoke(workspace, "slots", "cancel", slot.id, "patient-1", "--reason", "conflict at work")
        assert result.exit_code == 0, result.output
        cancelled = workspace["store"].get_slot(slot.id)
        assert cancelled.status == SlotStatus.CANCELLED
        assert cancelled.cancellation_reason == "conflict at work"

    def test_list_and_stats(self, workspace):
        _create_rule(workspace)
        first = workspace["start"].isoformat()
        last = workspace["start"].add(days=13).isoformat()

        result = _invoke(workspace, "slots", "list", "dr-grey", "--from", first, "--to", last)
        assert result.exit_code == 0

        result = _invoke(workspace, "stats", "dr-grey", "--from", first, "--to", last)
        assert result.exit_code == 0

    def test_bad_date_is_rejected(self, workspace):
        result = _invoke(workspace, "slots", "list", "dr-grey", "--from", "yesterday")

        assert result.exit_code != 0

    def test_unknown_slot(self, workspace):
        result = _invoke(workspace, "slots", "book", "missing", "patient-1")

        assert result.exit_code == 1
        assert "NOT_FOUND" in result.output


class TestJobsCommands:
    def test_materialize_and_purge(self, workspace):
        _create_rule(workspace)

        assert _invoke(workspace, "jobs", "materialize").exit_code == 0
        assert _invoke(workspace, "jobs", "reminders").exit_code == 0
        assert _invoke(workspace, "jobs", "purge").exit_code == 0
        assert len(workspace["store"].list_rules()) == 1


class TestGlobalOptions:
    def test_version(self, workspace):
        result = _invoke(workspace, "version")

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_missing_config_file(self, tmp_path):
        result = runner.invoke(app, ["--config", str(tmp_path / "absent.yaml"), "version"])

        assert result.exit_code == 1
        assert "Config file not found" in result.output

    def test_database_url_override(self, workspace, tmp_path):
        other = tmp_path / "other.db"

        result = _invoke(
            workspace, "--database-url", f"sqlite:///{other}", "rules", "create", "dr-grey", "--file", workspace["rule"]
        )

        assert result.exit_code == 0, result.output
        assert workspace["store"].list_rules() == []
        assert len(SqlSchedulingStore.from_url(f"sqlite:///{other}").list_rules()) == 1
