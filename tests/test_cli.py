"""Tests for the click CLI entry points that need no external services."""

from pathlib import Path

from click.testing import CliRunner

from commintel.cli import cli


class TestValidateConfigCommand:
    """Tests for `commintel validate-config`."""

    def test_valid_config_exits_zero(self, config_file: Path) -> None:
        result = CliRunner().invoke(cli, ["validate-config", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "Configuration valid" in result.output

    def test_missing_config_exits_one(self, temp_config_dir: Path) -> None:
        result = CliRunner().invoke(cli, ["validate-config", "-c", str(temp_config_dir / "nope.yaml")])
        assert result.exit_code == 1
        assert "Load error" in result.output

    def test_invalid_config_exits_one(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("scheduler:\n  interval_minutes: 0\n")
        result = CliRunner().invoke(cli, ["validate-config", "-c", str(path)])
        assert result.exit_code == 1
        assert "Validation error" in result.output


class TestIngestCommand:
    """Tests for `commintel ingest` argument handling."""

    def test_missing_payload_file_is_usage_error(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(cli, ["ingest", str(tmp_path / "missing.json")])
        assert result.exit_code == 2
