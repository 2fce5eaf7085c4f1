"""Tests for configuration loading, environment overrides and hot reload."""

import os
import time
from pathlib import Path

import pytest

from mailflow.config import (
    apply_env_overrides,
    get_config,
    load_config,
    reload_config_if_changed,
    validate_config_file,
)
from mailflow.config_schema import (
    DEFAULT_AUTOMATIONS,
    MIN_CART_SCAN_INTERVAL_SECONDS,
    AppConfig,
)
from mailflow.core.errors import ConfigLoadError, ConfigValidationError


def _touch_later(path: Path, content: str) -> None:
    """Rewrite a file and push its mtime forward so reload sees the change."""
    path.write_text(content)
    stamp = time.time() + 5
    os.utime(path, (stamp, stamp))


# ---------------------------------------------------------------------------
# Tests: Loading
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_load_from_file(self, config_file):
        config = load_config(config_file)

        assert config.schema_version == 1
        assert config.delivery.from_email == "shop@example.com"
        assert config.delivery.provider_priority == ["brevo", "smtp"]
        assert config.automations["WELCOME_SERIES"].delay_hours == 1

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigLoadError, match="not found"):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, temp_config_dir):
        path = temp_config_dir / "config.yaml"
        path.write_text("automations: [unclosed")

        with pytest.raises(ConfigLoadError, match="Failed to parse YAML"):
            load_config(path)

    def test_non_mapping(self, temp_config_dir):
        path = temp_config_dir / "config.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigLoadError, match="mapping"):
            load_config(path)

    def test_empty_file_uses_defaults(self, temp_config_dir, monkeypatch):
        monkeypatch.delenv("EMAIL_PROVIDER_PRIORITY", raising=False)
        path = temp_config_dir / "config.yaml"
        path.write_text("")

        config = load_config(path)

        assert config.quota.daily_limit == 300
        assert set(config.automations) == set(DEFAULT_AUTOMATIONS)

    def test_invalid_timezone(self, temp_config_dir):
        path = temp_config_dir / "config.yaml"
        path.write_text('timezone: "Mars/Olympus"\n')

        with pytest.raises(ConfigValidationError, match="Unknown timezone"):
            load_config(path)

    def test_field_error_names_path(self, temp_config_dir):
        path = temp_config_dir / "config.yaml"
        path.write_text("quota:\n  daily_limit: lots\n")

        with pytest.raises(ConfigValidationError, match="quota.daily_limit"):
            load_config(path)

    def test_newer_schema_rejected(self, temp_config_dir):
        path = temp_config_dir / "config.yaml"
        path.write_text("schema_version: 99\n")

        with pytest.raises(ConfigValidationError, match="newer than"):
            load_config(path)

    def test_env_overrides_applied(self, config_file, monkeypatch):
        monkeypatch.setenv("MAILFLOW_DAILY_LIMIT", "25")
        monkeypatch.setenv("BREVO_API_KEY", "xkeysib-test")

        config = load_config(config_file)

        assert config.quota.daily_limit == 25
        assert config.delivery.brevo.api_key == "xkeysib-test"


# ---------------------------------------------------------------------------
# Tests: Environment overrides
# ---------------------------------------------------------------------------


class TestEnvOverrides:
    def test_nested_keys_created(self):
        data = apply_env_overrides(
            {},
            {"MAILGUN_API_KEY": "key-1", "MAILGUN_DOMAIN": "mg.example.com", "SMTP_PORT": "465"},
        )

        assert data["delivery"]["mailgun"] == {"api_key": "key-1", "domain": "mg.example.com"}
        assert data["delivery"]["smtp"] == {"port": "465"}

    def test_input_not_mutated(self):
        original = {"delivery": {"from_email": "a@example.com"}}

        data = apply_env_overrides(original, {"EMAIL_FROM": "b@example.com"})

        assert data["delivery"]["from_email"] == "b@example.com"
        assert original["delivery"]["from_email"] == "a@example.com"

    def test_empty_values_ignored(self):
        data = apply_env_overrides({"quota": {"daily_limit": 10}}, {"MAILFLOW_DAILY_LIMIT": ""})

        assert data["quota"]["daily_limit"] == 10

    def test_provider_priority_list(self):
        data = apply_env_overrides({}, {"EMAIL_PROVIDER_PRIORITY": "Brevo, smtp,,"})

        assert data["delivery"]["provider_priority"] == ["brevo", "smtp"]

    def test_cart_settings(self):
        data = apply_env_overrides(
            {},
            {"ABANDONED_CART_SCAN_SECONDS": "1", "BREVO_LIST_ABANDONED": "7"},
        )
        config = AppConfig(**data)

        assert config.abandoned_cart.scan_interval_seconds == MIN_CART_SCAN_INTERVAL_SECONDS
        assert config.abandoned_cart.list_id == 7


# ---------------------------------------------------------------------------
# Tests: Schema
# ---------------------------------------------------------------------------


class TestSchema:
    def test_partial_automation_keeps_defaults(self):
        config = AppConfig(automations={"ORDER_CONFIRMATION": {"enabled": False}})

        order = config.automations["ORDER_CONFIRMATION"]
        assert order.enabled is False
        assert order.max_attempts == DEFAULT_AUTOMATIONS["ORDER_CONFIRMATION"].max_attempts
        assert "WELCOME_SERIES" in config.automations

    def test_type_names_upper_cased(self):
        config = AppConfig(automations={"care_guide": {"delay_hours": 1}})

        assert config.automations["CARE_GUIDE"].delay_hours == 1
        assert config.automations["CARE_GUIDE"].segment_conditions.quality_tier == "premium"
        assert "care_guide" not in config.automations

    def test_custom_type_added(self):
        config = AppConfig(automations={"BIRTHDAY": {"delay_hours": 0}})

        assert config.automations["BIRTHDAY"].max_attempts == 1

    def test_priority_deduped(self):
        config = AppConfig(delivery={"provider_priority": ["smtp", "brevo", "smtp"]})

        assert config.delivery.provider_priority == ["smtp", "brevo"]

    def test_unknown_provider_rejected(self):
        with pytest.raises(ValueError):
            AppConfig(delivery={"provider_priority": ["postmark"]})

    def test_sqlite_path_traversal_rejected(self):
        with pytest.raises(ValueError, match="path traversal"):
            AppConfig(storage={"backend": "sqlite", "sqlite_path": "../etc/mail.db"})

    def test_automation_durations(self):
        config = AppConfig()

        assert config.automations["REVIEW_REQUEST"].delay.days == 7
        assert config.automations["ABANDONED_CART_2"].frequency_cap.days == 3


# ---------------------------------------------------------------------------
# Tests: Singleton & hot reload
# ---------------------------------------------------------------------------


class TestSingleton:
    def test_get_config_cached(self, set_config_env):
        first = get_config()

        assert get_config() is first

    def test_get_config_missing(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MAILFLOW_CONFIG_PATH", str(tmp_path / "missing.yaml"))

        with pytest.raises(ConfigLoadError):
            get_config()

    def test_reload_before_load(self):
        assert reload_config_if_changed() is False

    def test_reload_unchanged(self, set_config_env):
        get_config()

        assert reload_config_if_changed() is False

    def test_reload_on_change(self, set_config_env, config_file, sample_config_yaml):
        get_config()
        _touch_later(config_file, sample_config_yaml.replace("daily_limit: 300", "daily_limit: 50"))

        assert reload_config_if_changed() is True
        assert get_config().quota.daily_limit == 50

    def test_invalid_reload_keeps_previous(self, set_config_env, config_file):
        original = get_config()
        _touch_later(config_file, "quota:\n  daily_limit: -1\n")

        assert reload_config_if_changed() is False
        assert get_config() is original
        # Not retried until the file changes again
        assert reload_config_if_changed() is False


# ---------------------------------------------------------------------------
# Tests: validate_config_file
# ---------------------------------------------------------------------------


class TestValidateConfigFile:
    def test_valid(self, config_file):
        is_valid, message = validate_config_file(config_file)

        assert is_valid is True
        assert "provider priority: brevo, smtp" in message
        assert "storage: memory" in message

    def test_missing(self, tmp_path):
        is_valid, message = validate_config_file(tmp_path / "missing.yaml")

        assert is_valid is False
        assert message.startswith("Load error")

    def test_invalid(self, temp_config_dir):
        path = temp_config_dir / "config.yaml"
        path.write_text("sweep:\n  interval_seconds: 1\n")

        is_valid, message = validate_config_file(path)

        assert is_valid is False
        assert "sweep.interval_seconds" in message
