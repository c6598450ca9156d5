"""
Tests for the CLI interface.
"""
import os
import tempfile
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from lingua_meter.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL

runner = CliRunner()


@pytest.fixture
def db_path():
    """Temporary ledger database path."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield os.path.join(temp_dir, "ledger.db")


def invoke(db_path, *args):
    return runner.invoke(app, ["--db", db_path, "--mode", "simulated", *args])


class TestCLI:
    """Test CLI commands."""

    def test_init_command(self, db_path):
        """Test database initialization."""
        result = runner.invoke(app, ["--db", db_path, "init"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output
        assert os.path.exists(db_path)

    def test_plans_command(self):
        """Test that the plan table lists every tier."""
        result = runner.invoke(app, ["plans"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Subscription Plans" in result.output
        for tier in ("free", "basic", "premium", "gold"):
            assert tier in result.output

    def test_track_and_usage(self, db_path):
        """Test recording usage and reading it back."""
        result = invoke(db_path, "track", "u1", "--input-tokens", "2000000")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Usage recorded" in result.output

        result = invoke(db_path, "usage", "u1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Usage for u1" in result.output
        assert "40.0%" in result.output

    def test_quota_then_exceed(self, db_path):
        """Test quota exit codes before and after exhausting the limit."""
        result = invoke(db_path, "quota", "u1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Quota available" in result.output

        result = invoke(db_path, "exceed", "u1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "100.0%" in result.output

        result = invoke(db_path, "quota", "u1")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Quota exhausted" in result.output

    def test_reconcile_command(self, db_path):
        """Test reconciling a known user against the simulated provider."""
        invoke(db_path, "track", "u1", "--tts-chars", "10")
        result = invoke(db_path, "reconcile", "u1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Reconciled u1: unchanged" in result.output

    def test_reconcile_unknown_user(self, db_path):
        result = invoke(db_path, "reconcile", "ghost")
        assert result.exit_code == EXIT_CODE_PASS
        assert "no_record" in result.output

    def test_subscription_command(self, db_path):
        """Test showing live status and packages."""
        result = invoke(db_path, "subscription", "u1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Tier: free (live)" in result.output
        assert "Available Packages" in result.output

    def test_invalid_config_file(self, db_path):
        """Test that a bad config file fails with exit code 1."""
        config_path = os.path.join(os.path.dirname(db_path), "bad.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump({"budget": {"daily": 1}}, f)

        result = runner.invoke(app, ["--db", db_path, "--config", config_path, "plans"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid configuration" in result.output

    def test_config_file_changes_limits(self, db_path):
        config_path = os.path.join(os.path.dirname(db_path), "metering.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump({"provider": {"mode": "simulated"}, "pricing": {"llm_input_per_million": 0.25}}, f)

        result = runner.invoke(app, ["--db", db_path, "--config", config_path,
                                     "track", "u1", "--input-tokens", "1000000"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "50.0%" in result.output

    def test_real_mode_without_key_fails(self, db_path):
        """Test that the real provider refuses to start without an API key."""
        with patch.dict(os.environ, {"REVENUECAT_API_KEY": ""}):
            result = runner.invoke(app, ["--db", db_path, "--mode", "real", "usage", "u1"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "API key" in result.output

    def test_no_command(self):
        result = runner.invoke(app, [])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.output
