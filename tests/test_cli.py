"""
Tests for the CLI interface.
"""
import sqlite3

import pytest
from typer.testing import CliRunner

from kroniq_guard.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from kroniq_guard.config.loader import DB_ENV_VAR, CONFIG_ENV_VAR

runner = CliRunner()


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    """Point the CLI at an initialized temp database."""
    path = str(tmp_path / "cli.db")
    monkeypatch.setenv(DB_ENV_VAR, path)
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    result = runner.invoke(app, ["init"])
    assert result.exit_code == EXIT_CODE_PASS
    return path


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_hint(self):
        result = runner.invoke(app, [])
        assert result.exit_code == EXIT_CODE_PASS
        assert "--help" in result.output

    def test_init(self, db_path):
        result = runner.invoke(app, ["init"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output

    def test_status(self, db_path):
        result = runner.invoke(app, ["status"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "0 profiles" in result.output

    def test_status_uninitialized(self, tmp_path, monkeypatch):
        monkeypatch.setenv(DB_ENV_VAR, str(tmp_path / "fresh.db"))
        result = runner.invoke(app, ["status"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "kroniq-guard init" in result.output

    def test_provision(self, db_path):
        result = runner.invoke(app, ["provision", "u1", "--email", "u1@example.com"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "300,000 tokens" in result.output
        assert "early adopter" in result.output

        again = runner.invoke(app, ["provision", "u1"])
        assert "already exists" in again.output

    def test_access(self, db_path):
        runner.invoke(app, ["provision", "u1"])
        result = runner.invoke(app, ["access", "u1"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "300,000" in result.output
        assert "fresh" in result.output

    def test_access_unknown_user_fails(self, db_path):
        result = runner.invoke(app, ["access", "ghost"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "no_profile" in result.output

    def test_access_uninitialized(self, tmp_path, monkeypatch):
        monkeypatch.setenv(DB_ENV_VAR, str(tmp_path / "fresh.db"))
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        result = runner.invoke(app, ["access", "u1"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "kroniq-guard init" in result.output
        assert result.exception is None or isinstance(result.exception, SystemExit)

    def test_quota(self, db_path):
        runner.invoke(app, ["provision", "u1"])
        result = runner.invoke(app, ["quota", "u1"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "video" in result.output
        assert "ppt" in result.output

    def test_deduct(self, db_path):
        runner.invoke(app, ["provision", "u1"])
        result = runner.invoke(app, ["deduct", "u1", "0.01", "--request-id", "r1"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Deducted 20,000 tokens" in result.output
        assert "balance 280,000" in result.output

    def test_deduct_overdraft_warns(self, db_path):
        runner.invoke(app, ["provision", "u1"])
        result = runner.invoke(app, ["deduct", "u1", "1.0"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "overdrawn" in result.output

    def test_deduct_unknown_user(self, db_path):
        result = runner.invoke(app, ["deduct", "ghost", "0.01"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "profile not found" in result.output

    def test_deduct_negative_cost(self, db_path):
        runner.invoke(app, ["provision", "u1"])
        result = runner.invoke(app, ["deduct", "u1", "--", "-1"])
        assert result.exit_code == EXIT_CODE_FAIL

    def test_reset_check_not_due(self, db_path):
        runner.invoke(app, ["provision", "u1"])
        result = runner.invoke(app, ["reset-check", "u1"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "No reset due" in result.output

    def test_reset_check_unknown_user(self, db_path):
        result = runner.invoke(app, ["reset-check", "ghost"])
        assert result.exit_code == EXIT_CODE_FAIL

    def test_set_plan(self, db_path):
        runner.invoke(app, ["provision", "u1"])
        result = runner.invoke(app, ["set-plan", "u1", "pro"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "pro plan" in result.output

        access = runner.invoke(app, ["access", "u1"])
        assert "yes" in access.output

    def test_set_plan_invalid(self, db_path):
        runner.invoke(app, ["provision", "u1"])
        result = runner.invoke(app, ["set-plan", "u1", "platinum"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown plan" in result.output

    def test_set_plan_unknown_user(self, db_path):
        result = runner.invoke(app, ["set-plan", "ghost", "pro"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Profile not found" in result.output

    def test_classify(self):
        result = runner.invoke(app, ["classify", "Create a presentation about AI"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "slides" in result.output
        assert "PPT Studio" in result.output

    def test_route_new_project(self):
        result = runner.invoke(app, ["route", "generate an image of a sunset"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "execute_inline" in result.output
        assert "New project: Generate an image of a sunset" in result.output

    def test_route_overrides_open_project(self):
        result = runner.invoke(
            app, ["route", "make a song about summer", "--active-project", "image"]
        )
        assert result.exit_code == EXIT_CODE_PASS
        assert "Overrides open image project" in result.output

    def test_route_unknown_project_kind(self):
        result = runner.invoke(app, ["route", "hello", "--active-project", "hologram"])
        assert result.exit_code == EXIT_CODE_FAIL

    def test_migrate_legacy(self, db_path, tmp_path):
        legacy_path = str(tmp_path / "legacy.db")
        conn = sqlite3.connect(legacy_path)
        try:
            conn.execute("""
                CREATE TABLE profiles (id TEXT PRIMARY KEY, tokens_balance INTEGER,
                paid_tokens_balance INTEGER, email TEXT, display_name TEXT)
            """)
            conn.execute("INSERT INTO profiles VALUES ('vip', 500000, 0, NULL, NULL)")
            conn.execute("INSERT INTO profiles VALUES ('old', 100, 0, NULL, NULL)")
            conn.commit()
        finally:
            conn.close()

        result = runner.invoke(app, ["migrate-legacy", legacy_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Migrated 2 profiles" in result.output
        assert "Power users (balance honored): 1" in result.output

    def test_migrate_legacy_bad_source(self, db_path, tmp_path):
        result = runner.invoke(app, ["migrate-legacy", str(tmp_path / "nothing.db")])
        assert result.exit_code == EXIT_CODE_FAIL
