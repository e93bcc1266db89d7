"""CLI tests for configuration commands and argument handling."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from keenotes.core.config import Config
from tests.helpers import run_cli


@pytest.mark.cli
class TestConfigShow:
    """Test config show command."""

    def test_show_json(self, test_config_dir: Path) -> None:
        result = run_cli(test_config_dir, "--format", "json", "config", "show")
        assert result.returncode == 0
        data = json.loads(result.stdout)
        assert data["channel"] == "cli"
        assert data["password_set"] is False
        assert "password" not in data

    def test_token_masked(self, test_config_dir: Path, test_config: Config) -> None:
        test_config.set("token", "abcdefghijklmnop")
        result = run_cli(test_config_dir, "config", "show")
        assert result.returncode == 0
        assert "token: abcd..." in result.stdout
        assert "abcdefghijklmnop" not in result.stdout

    def test_password_from_environment(self, test_config_dir: Path) -> None:
        result = run_cli(
            test_config_dir, "--format", "json", "config", "show",
            env={"KEENOTES_PASSWORD": "secret"},
        )
        data = json.loads(result.stdout)
        assert data["password_set"] is True
        assert "secret" not in result.stdout


@pytest.mark.cli
class TestConfigSet:
    """Test config set command."""

    def test_set_endpoint(self, test_config_dir: Path) -> None:
        result = run_cli(
            test_config_dir, "config", "set", "endpoint_url", "https://notes.example.com/api/notes"
        )
        assert result.returncode == 0
        assert "Set endpoint_url" in result.stdout
        assert Config(config_dir=test_config_dir).get_endpoint_url() == (
            "https://notes.example.com/api/notes"
        )

    def test_set_converts_number(self, test_config_dir: Path) -> None:
        result = run_cli(test_config_dir, "--format", "json", "config", "set", "review_days", "3")
        assert json.loads(result.stdout) == {"key": "review_days", "value": 3}

    def test_set_invalid_value(self, test_config_dir: Path) -> None:
        result = run_cli(test_config_dir, "config", "set", "endpoint_url", "ftp://example.com")
        assert result.returncode == 1
        assert "Error: Invalid endpoint_url" in result.stderr

    def test_set_unknown_key(self, test_config_dir: Path) -> None:
        result = run_cli(test_config_dir, "config", "set", "colour", "blue")
        assert result.returncode == 1
        assert "unknown config key 'colour'" in result.stderr

    def test_password_not_stored(self, test_config_dir: Path) -> None:
        result = run_cli(test_config_dir, "config", "set", "password", "hunter2")
        assert result.returncode == 1
        assert "hunter2" not in (test_config_dir / "config.json").read_text()


@pytest.mark.cli
class TestArguments:
    """Test top-level argument handling."""

    def test_no_command(self, test_config_dir: Path) -> None:
        result = run_cli(test_config_dir)
        assert result.returncode == 1
        assert "usage: keenotes" in result.stdout

    def test_help(self, test_config_dir: Path) -> None:
        result = run_cli(test_config_dir, "--help")
        assert result.returncode == 0
        for command in ("post", "sync", "list-notes", "search", "import", "config"):
            assert command in result.stdout

    def test_config_without_subcommand(self, test_config_dir: Path) -> None:
        result = run_cli(test_config_dir, "config")
        assert result.returncode == 1
        assert "No config command specified" in result.stderr

    def test_invalid_format(self, test_config_dir: Path) -> None:
        result = run_cli(test_config_dir, "--format", "xml", "list-notes")
        assert result.returncode == 2
