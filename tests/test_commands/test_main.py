"""Tests for pwrsync.__main__ module."""

import json
import re

from click.testing import CliRunner

from pwrsync.__main__ import main


class TestMainCLI:
    """Tests for main CLI functionality."""

    def test_main_help(self) -> None:
        """Test main command help output."""
        runner = CliRunner()
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Patch updater for game client instances" in result.output
        for command in ("versions", "mirror", "instances", "update"):
            assert command in result.output

    def test_version_command(self, config_file) -> None:
        """Test version command."""
        runner = CliRunner()
        result = runner.invoke(main, ["--config", str(config_file), "version"])
        assert result.exit_code == 0
        # Remove ANSI color codes for testing
        clean_output = re.sub(r'\x1b\[[0-9;]*m', '', result.output)
        assert "pwrsync 0.1.0" in clean_output

    def test_version_json(self, config_file) -> None:
        """Test version command with JSON output."""
        runner = CliRunner()
        result = runner.invoke(main, ["--config", str(config_file), "--output", "json", "version"])
        assert result.exit_code == 0
        info = json.loads(result.output)
        assert info["name"] == "pwrsync"
        assert info["version"] == "0.1.0"

    def test_version_option(self) -> None:
        """Test --version option."""
        runner = CliRunner()
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_verbose_flag(self, config_file) -> None:
        """Test verbose flag shows directories."""
        runner = CliRunner()
        result = runner.invoke(main, ["--config", str(config_file), "--verbose", "--output", "plain", "version"])
        assert result.exit_code == 0
        assert "Instance root" in result.output

    def test_debug_flag(self, config_file) -> None:
        """Test debug flag is accepted."""
        runner = CliRunner()
        result = runner.invoke(main, ["--config", str(config_file), "--debug", "version"])
        assert result.exit_code == 0

    def test_invalid_config(self, tmp_path) -> None:
        """Test an invalid config file exits with an error."""
        path = tmp_path / "config.json"
        path.write_text('{"output_format": "xml"}')
        runner = CliRunner()
        result = runner.invoke(main, ["--config", str(path), "version"])
        assert result.exit_code == 1
