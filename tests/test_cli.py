"""
Tests for the chatkeep CLI, run against a temporary state directory.
"""

import json

import pytest
from typer.testing import CliRunner

from chatkeep.cli import app


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def state(tmp_path):
    return str(tmp_path / "cli-state")


def _run(runner, *args):
    return runner.invoke(app, list(args))


def test_init(runner, state):
    result = _run(runner, "init", "--state", state)
    assert result.exit_code == 0
    assert "Migrated settings into default profile" in result.output
    assert "Tier: free" in result.output

    again = _run(runner, "init", "--state", state)
    assert "Profiles already present" in again.output


def test_settings_set_and_get(runner, state):
    result = _run(runner, "settings", "set", '{"welcome": {"enabled": true}}', "--state", state)
    assert result.exit_code == 0

    result = _run(runner, "settings", "get", "welcome", "--state", state)
    assert json.loads(result.output)["enabled"] is True


def test_settings_set_rejects_bad_json(runner, state):
    result = _run(runner, "settings", "set", "{nope", "--state", state)
    assert result.exit_code == 1


def test_settings_set_validation_error(runner, state):
    result = _run(runner, "settings", "set", '{"welcome": {"delay": "x"}}', "--state", state)
    assert result.exit_code == 1


def test_profiles(runner, state):
    result = _run(runner, "profiles", "create", "Evening", "--state", state)
    assert result.exit_code == 0
    profile_id = result.output.split()[1]

    assert _run(runner, "profiles", "switch", profile_id, "--state", state).exit_code == 0
    listing = _run(runner, "--json", "profiles", "list", "--state", state)
    data = json.loads(listing.output)
    assert [p["isActive"] for p in data] == [False, True]

    assert _run(runner, "profiles", "delete", "default", "--state", state).exit_code == 1


def test_status_and_credits(runner, state):
    result = _run(runner, "status", "--state", state)
    assert result.exit_code == 0
    assert "Bot: disabled" in result.output
    assert "AI credits: 500/500" in result.output

    result = _run(runner, "credits", "--state", state)
    assert "Remaining: 500/500 (100%)" in result.output


def test_apikey_lifecycle(runner, state):
    created = _run(runner, "--json", "apikey", "create", "deck", "--state", state)
    data = json.loads(created.output)
    assert data["key"].startswith("bz_live_")

    listing = _run(runner, "apikey", "list", "--state", state)
    assert data["id"] in listing.output
    assert data["key"] not in listing.output

    assert _run(runner, "apikey", "revoke", data["id"], "--state", state).exit_code == 0
    assert "No API keys" in _run(runner, "apikey", "list", "--state", state).output


def test_provider_key(runner, state):
    assert _run(runner, "provider-key", "set", "bad-key", "--state", state).exit_code == 1
    result = _run(runner, "provider-key", "set", "sk-ant-api03-secret1234", "--state", state)
    assert "sk-ant-***...1234" in result.output
    assert "sk-ant-***...1234" in _run(runner, "provider-key", "show", "--state", state).output
    assert "Key removed" in _run(runner, "provider-key", "clear", "--state", state).output


def test_license_trial(runner, state):
    result = _run(runner, "license", "trial", "--state", state)
    assert result.exit_code == 0
    assert "Trial started: 7 days left" in result.output or "Trial started: 6 days left" in result.output

    assert _run(runner, "license", "trial", "--state", state).exit_code == 1
    assert "Tier: pro" in _run(runner, "license", "show", "--state", state).output


def test_upgrade_url(runner, state):
    result = _run(runner, "license", "upgrade-url", "--plan", "business", "--state", state)
    assert result.output.strip() == "https://extensionpay.com/pay/buzzchat?plan=business"
