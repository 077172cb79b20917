"""
Tests for the Typer CLI against a SQLite database in a temp directory.
"""

import pendulum
import pytest
from typer.testing import CliRunner

from slotsync.adapters.sql_store import (
    SqlDirectory,
    SqlRehearsalStore,
    create_db_engine,
    create_session_factory,
)
from slotsync.cli.app import app
from slotsync.domain.models import Rehearsal

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path):
    database_url = f"sqlite:///{tmp_path / 'cli.db'}"
    path = tmp_path / "slotsync.yaml"
    path.write_text(
        f"database_url: {database_url}\n"
        "default_timezone: UTC\n"
        "log_level: WARNING\n",
        encoding="utf-8",
    )

    result = runner.invoke(app, ["init-db", "--config", str(path)])
    assert result.exit_code == 0, result.output
    return path


def _invoke(config_file, *args):
    return runner.invoke(app, [*args, "--config", str(config_file)])


def _session_factory(tmp_path):
    return create_session_factory(create_db_engine(f"sqlite:///{tmp_path / 'cli.db'}"))


class TestMemberCommands:
    """Tests for member and manual-day commands."""

    def test_set_day_and_show(self, config_file):
        assert _invoke(config_file, "add-member", "alice", "--timezone", "Europe/Berlin").exit_code == 0

        result = _invoke(config_file, "set-day", "alice", "2025-07-20", "10:00-12:00", "11:00-13:00")
        assert result.exit_code == 0, result.output
        assert "1 manual slot(s) stored" in result.output

        result = _invoke(config_file, "show", "alice", "--start", "2025-07-20", "--end", "2025-07-21")
        assert result.exit_code == 0, result.output
        assert "10:00-13:00" in result.output
        assert "partial" in result.output
        assert "free" in result.output

    def test_clear_day(self, config_file):
        _invoke(config_file, "add-member", "bob")
        _invoke(config_file, "set-day", "bob", "2025-07-20", "08:00-09:00")

        result = _invoke(config_file, "clear-day", "bob", "2025-07-20")

        assert result.exit_code == 0, result.output
        assert "1 manual slot(s) deleted" in result.output

    def test_invalid_range_fails(self, config_file):
        _invoke(config_file, "add-member", "bob")

        result = _invoke(config_file, "set-day", "bob", "2025-07-20", "12:00-10:00")

        assert result.exit_code == 1
        assert "Error" in result.output

    def test_unknown_member_fails(self, config_file):
        result = _invoke(config_file, "set-day", "mallory", "2025-07-20", "10:00-11:00")

        assert result.exit_code == 1
        assert "mallory" in result.output

    def test_bad_timezone_fails(self, config_file):
        result = _invoke(config_file, "add-member", "bob", "--timezone", "Mars/Base")

        assert result.exit_code == 1
        assert "Unknown timezone" in result.output


class TestRehearsalCommands:
    """Tests for rehearsal repair commands."""

    def test_sync_and_delete(self, config_file, tmp_path):
        session_factory = _session_factory(tmp_path)
        directory = SqlDirectory(session_factory)
        directory.add_member("alice")
        directory.add_member("bob")
        directory.add_project("p1")
        directory.set_membership("p1", "alice")
        directory.set_membership("p1", "bob")
        SqlRehearsalStore(session_factory).save(
            Rehearsal(
                id="r1",
                project_id="p1",
                starts_at=pendulum.datetime(2025, 7, 20, 10, tz="UTC"),
                ends_at=pendulum.datetime(2025, 7, 20, 12, tz="UTC"),
            )
        )

        result = _invoke(config_file, "rehearsal-sync", "r1")
        assert result.exit_code == 0, result.output
        assert "booked 2" in result.output

        result = _invoke(config_file, "rehearsal-delete", "r1")
        assert result.exit_code == 0, result.output
        assert "2 slot(s)" in result.output

    def test_schedule_and_move_from_the_command_line(self, config_file):
        for args in (
            ("add-member", "alice", "--timezone", "Europe/Berlin"),
            ("add-member", "bob"),
            ("add-project", "p1", "--name", "Hamlet"),
            ("join", "p1", "alice"),
            ("join", "p1", "bob"),
        ):
            result = _invoke(config_file, *args)
            assert result.exit_code == 0, result.output

        result = _invoke(config_file, "rehearsal-add", "r1", "p1", "2025-07-20 10:00", "2025-07-20 12:00")
        assert result.exit_code == 0, result.output
        assert "booked 2" in result.output

        result = _invoke(config_file, "rehearsal-move", "r1", "2025-07-20 14:00", "2025-07-20 15:00")
        assert result.exit_code == 0, result.output
        assert "removed 2" in result.output

        result = _invoke(config_file, "show", "bob", "--start", "2025-07-20", "--end", "2025-07-20")
        assert "14:00-15:00" in result.output
        assert "10:00-12:00" not in result.output

        result = _invoke(config_file, "show", "alice", "--start", "2025-07-20", "--end", "2025-07-20")
        assert "16:00-17:00" in result.output

    def test_inactive_member_is_not_booked(self, config_file):
        _invoke(config_file, "add-member", "bob")
        _invoke(config_file, "add-project", "p1")
        _invoke(config_file, "join", "p1", "bob", "--inactive")

        result = _invoke(config_file, "rehearsal-add", "r1", "p1", "2025-07-20 10:00", "2025-07-20 12:00")

        assert result.exit_code == 0, result.output
        assert "booked 0" in result.output

    def test_join_unknown_project(self, config_file):
        _invoke(config_file, "add-member", "bob")

        result = _invoke(config_file, "join", "nowhere", "bob")

        assert result.exit_code == 1
        assert "Project not found" in result.output

    def test_rehearsal_for_unknown_project(self, config_file):
        result = _invoke(config_file, "rehearsal-add", "r1", "nowhere", "2025-07-20 10:00", "2025-07-20 12:00")

        assert result.exit_code == 1
        assert "Project not found" in result.output

    def test_unknown_rehearsal(self, config_file):
        result = _invoke(config_file, "rehearsal-sync", "missing")

        assert result.exit_code == 1
        assert "Rehearsal not found" in result.output


def test_version():
    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert "slotsync" in result.output


def test_missing_config_file(tmp_path):
    result = runner.invoke(app, ["show", "alice", "--config", str(tmp_path / "absent.yaml")])

    assert result.exit_code == 1
    assert "Config file not found" in result.output
