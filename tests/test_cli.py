"""Tests for the CLI commands that work without a model."""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from ops_agent.cli import app
from ops_agent.config import settings
from ops_agent.sessions import SessionStore

runner = CliRunner()


@pytest.fixture
def session_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "session_dir", str(tmp_path))
    return tmp_path


def test_sessions_show_one(session_dir):
    session = SessionStore("qry", directory=session_dir).create_session({"intent": "what runs?"})

    result = runner.invoke(app, ["sessions", session.session_id])

    assert result.exit_code == 0
    assert "what runs?" in result.output


def test_sessions_unknown_id(session_dir):
    result = runner.invoke(app, ["sessions", "plt-0-deadbeef"])
    assert result.exit_code == 1
    assert "Session not found" in result.output


def test_validate_docs_list_empty(session_dir):
    result = runner.invoke(app, ["validate-docs", "list"])
    assert result.exit_code == 0
    assert json.loads(result.output) == {"success": True, "sessions": [], "total": 0}


def test_platform_execute_rejects_malformed_answer(session_dir):
    result = runner.invoke(app, ["platform", "execute", "plt-0-deadbeef", "--answer", "host-name"])
    assert result.exit_code == 2
    assert "expected name=value" in result.output


def test_plugins_without_config(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "plugins_config_path", str(tmp_path / "plugins.json"))
    result = runner.invoke(app, ["plugins"])
    assert result.exit_code == 0
    assert "No plugins configured" in result.output
