"""
Tests for Engine CLI Module
===========================

Tests for cli/engine_cli.py - .env loading and command error handling.
"""

import importlib
import json
import os
import sys

import pytest

from ruleforge.cli import engine_cli


DOTENV_NAME = "RULEFORGE_CLI_TEST_MARKER"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Run in an empty directory without LLM credentials."""
    for name in ("RULEFORGE_LLM_API_KEY", "OPENAI_API_KEY", DOTENV_NAME):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    yield tmp_path
    os.environ.pop(DOTENV_NAME, None)


def run_cli(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["ruleforge", *argv])
    return engine_cli.main()


# =============================================================================
# Environment Tests
# =============================================================================

class TestDotenv:
    """Tests for loading .env when the CLI is imported."""

    def test_env_file_in_working_directory_loaded(self, workdir):
        """Test that a .env in the working directory is loaded on import."""
        (workdir / ".env").write_text(f"{DOTENV_NAME}=loaded\n")

        importlib.reload(engine_cli)

        assert os.environ[DOTENV_NAME] == "loaded"

    def test_existing_variable_not_overridden(self, workdir, monkeypatch):
        """Test that .env values never replace variables already set."""
        (workdir / ".env").write_text(f"{DOTENV_NAME}=from_file\n")
        monkeypatch.setenv(DOTENV_NAME, "from_shell")

        importlib.reload(engine_cli)

        assert os.environ[DOTENV_NAME] == "from_shell"


# =============================================================================
# Import Command Tests
# =============================================================================

class TestImportSessions:
    """Tests for the import-sessions command."""

    def test_import_file(self, workdir, monkeypatch):
        """Test importing a valid file."""
        path = workdir / "sessions.json"
        path.write_text(json.dumps({"sessions": [{"id": "s1", "created_at": "2026-01-05T10:00:00Z"}]}))

        assert run_cli(monkeypatch, "--project-dir", str(workdir), "import-sessions", str(path)) == 0

    def test_malformed_item_reports_error(self, workdir, monkeypatch, capsys):
        """Test that a malformed item exits 1 with the error code, not a traceback."""
        path = workdir / "sessions.json"
        path.write_text(json.dumps([{"id": "s1", "outcome": "won"}]))

        assert run_cli(monkeypatch, "--project-dir", str(workdir), "import-sessions", str(path)) == 1
        assert "MALFORMED_IMPORT" in capsys.readouterr().out
