"""Tests for CLI commands."""

import json

import pytest
from typer.testing import CliRunner

from careslot.cli.commands import app
from careslot.config import get_settings

runner = CliRunner()

PROVIDER = "11111111-1111-4111-8111-111111111111"


@pytest.fixture
def cli_db(tmp_path, monkeypatch):
    """Point the CLI at a fresh SQLite file and create the schema."""
    monkeypatch.setenv("CARESLOT_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path}/cli.db")
    monkeypatch.setenv("CARESLOT_NOTIFICATION_SINK", "log")
    get_settings.cache_clear()
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0
    yield tmp_path
    get_settings.cache_clear()


@pytest.fixture
def hours_file(tmp_path):
    path = tmp_path / "hours.json"
    path.write_text(
        json.dumps(
            [
                {
                    "day_of_week": 0,
                    "start_time": "09:00",
                    "end_time": "12:00",
                    "slot_duration_minutes": 30,
                    "breaks": [{"start_time": "10:00", "end_time": "10:30"}],
                }
            ]
        )
    )
    return path


class TestCLICommands:
    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "CareSlot v" in result.output

    def test_init_db(self, cli_db):
        assert (cli_db / "cli.db").exists()

    def test_set_hours_and_publish(self, cli_db, hours_file):
        result = runner.invoke(app, ["set-hours", PROVIDER, "--file", str(hours_file)])
        assert result.exit_code == 0
        assert "09:00-12:00" in result.output

        result = runner.invoke(app, ["publish", PROVIDER, "--start", "2026-03-09", "--end", "2026-03-15"])
        assert result.exit_code == 0
        assert "Created 5 slots" in result.output

        result = runner.invoke(app, ["publish", PROVIDER, "--start", "2026-03-09", "--end", "2026-03-09"])
        assert result.exit_code == 0
        assert "Created 0 slots" in result.output
        assert "2026-03-09" in result.output

    def test_slots_json(self, cli_db, hours_file):
        runner.invoke(app, ["set-hours", PROVIDER, "--file", str(hours_file)])
        runner.invoke(app, ["publish", PROVIDER, "--start", "2026-03-09", "--end", "2026-03-09"])

        result = runner.invoke(app, ["slots", PROVIDER, "--start", "2026-03-09", "--end", "2026-03-09", "--json"])
        assert result.exit_code == 0
        listed = json.loads(result.output)
        assert [s["start_time"] for s in listed] == ["09:00:00", "09:30:00", "10:30:00", "11:00:00", "11:30:00"]

    def test_slots_empty(self, cli_db):
        result = runner.invoke(app, ["slots", PROVIDER, "--start", "2026-03-09"])
        assert result.exit_code == 0
        assert "No open slots" in result.output

    def test_stats(self, cli_db, hours_file):
        runner.invoke(app, ["set-hours", PROVIDER, "--file", str(hours_file)])
        runner.invoke(app, ["publish", PROVIDER, "--start", "2026-03-09", "--end", "2026-03-09"])

        result = runner.invoke(app, ["stats", PROVIDER, "--start", "2026-03-09", "--end", "2026-03-09"])
        assert result.exit_code == 0
        assert "Utilization: 0.0%" in result.output

    def test_publish_without_hours_fails(self, cli_db):
        result = runner.invoke(app, ["publish", PROVIDER, "--start", "2026-03-09"])
        assert result.exit_code == 1
        assert "validation_error" in result.output

    def test_invalid_provider(self, cli_db):
        result = runner.invoke(app, ["slots", "not-a-uuid"])
        assert result.exit_code == 1
        assert "Invalid provider id" in result.output

    def test_invalid_range(self, cli_db):
        result = runner.invoke(app, ["stats", PROVIDER, "--start", "2026-03-09", "--end", "2026-03-01"])
        assert result.exit_code == 1

    def test_set_hours_missing_file(self, cli_db, tmp_path):
        result = runner.invoke(app, ["set-hours", PROVIDER, "--file", str(tmp_path / "nope.json")])
        assert result.exit_code == 1
        assert "File not found" in result.output

    def test_audit_clean(self, cli_db):
        result = runner.invoke(app, ["audit"])
        assert result.exit_code == 0
        assert "No consistency violations" in result.output

    def test_dispatch_nothing_pending(self, cli_db):
        result = runner.invoke(app, ["dispatch"])
        assert result.exit_code == 0
        assert "Delivered 0 events" in result.output

    def test_prune_removes_unused_past_slots(self, cli_db, hours_file):
        runner.invoke(app, ["set-hours", PROVIDER, "--file", str(hours_file)])
        runner.invoke(app, ["publish", PROVIDER, "--start", "2025-03-03", "--end", "2025-03-03"])

        result = runner.invoke(app, ["prune", "--before", "2025-03-03", "--provider", PROVIDER])
        assert result.exit_code == 0
        assert "Deleted 0 unused slots" in result.output

        result = runner.invoke(app, ["prune", "--before", "2025-03-04"])
        assert result.exit_code == 0
        assert "Deleted 5 unused slots" in result.output

        result = runner.invoke(app, ["slots", PROVIDER, "--start", "2025-03-03", "--end", "2025-03-03"])
        assert "No open slots" in result.output

    def test_prune_default_cutoff(self, cli_db):
        result = runner.invoke(app, ["prune"])
        assert result.exit_code == 0
        assert "Deleted 0 unused slots" in result.output

    def test_prune_invalid_date(self, cli_db):
        result = runner.invoke(app, ["prune", "--before", "last-tuesday"])
        assert result.exit_code == 1
        assert "Invalid date" in result.output

    def test_prune_future_cutoff_fails(self, cli_db):
        result = runner.invoke(app, ["prune", "--before", "2999-01-01"])
        assert result.exit_code == 1
        assert "validation_error" in result.output
