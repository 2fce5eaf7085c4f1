"""Tests for the click CLI commands that need no network access."""

from click.testing import CliRunner

from mailflow.cli import cli


class TestValidateConfig:
    def test_valid(self, config_file):
        result = CliRunner().invoke(cli, ["validate-config", "-c", str(config_file)])

        assert result.exit_code == 0
        assert "Configuration valid" in result.output

    def test_invalid(self, temp_config_dir):
        path = temp_config_dir / "config.yaml"
        path.write_text("quota:\n  daily_limit: -5\n")

        result = CliRunner().invoke(cli, ["validate-config", "-c", str(path)])

        assert result.exit_code == 1
        assert "quota.daily_limit" in result.output


class TestRuntimeCommands:
    def test_stats_on_fresh_store(self, set_config_env):
        result = CliRunner().invoke(cli, ["stats"])

        assert result.exit_code == 0
        assert "Daily quota: 0/300" in result.output

    def test_send_test_without_provider(self, set_config_env, monkeypatch):
        for var in ("SENDGRID_API_KEY", "BREVO_API_KEY", "MAILGUN_API_KEY", "SMTP_HOST"):
            monkeypatch.delenv(var, raising=False)

        result = CliRunner().invoke(cli, ["send-test", "--to", "you@example.com"])

        assert result.exit_code == 0
        assert "No provider configured" in result.output

    def test_missing_config(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MAILFLOW_CONFIG_PATH", str(tmp_path / "missing.yaml"))

        result = CliRunner().invoke(cli, ["sweep"])

        assert result.exit_code == 1
        assert "Config error" in result.output
