"""Tests for settings loading and duration parsing."""

from __future__ import annotations

import pathlib

import pytest

from cloudkey.config.settings import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_CREDENTIALS_FILE,
    SettingsError,
    load_settings,
    parse_duration_to_seconds,
)


class TestParseDuration:
    def test_minutes(self) -> None:
        assert parse_duration_to_seconds("5m") == 300

    def test_hours(self) -> None:
        assert parse_duration_to_seconds("12h") == 43200

    def test_seconds_suffix(self) -> None:
        assert parse_duration_to_seconds("300s") == 300

    def test_bare_number(self) -> None:
        assert parse_duration_to_seconds("300") == 300
        assert parse_duration_to_seconds(45) == 45

    def test_garbage(self) -> None:
        with pytest.raises(SettingsError, match="Invalid duration"):
            parse_duration_to_seconds("soon")


class TestLoadSettings:
    @pytest.fixture(autouse=True)
    def _no_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("AWS_SHARED_CREDENTIALS_FILE", raising=False)

    def test_missing_file_gives_defaults(self, tmp_path: pathlib.Path) -> None:
        settings = load_settings(tmp_path / "absent.yaml")

        assert settings.credentials_file == DEFAULT_CREDENTIALS_FILE
        assert settings.active_identity_section == "default"
        assert settings.intermediate_profile_suffix == "-mfa-session"
        assert settings.session_token_duration == 43200
        assert settings.sweep_interval == 30
        assert settings.auto_renew_threshold == 300
        assert settings.expiry_warning_threshold == 600
        assert settings.cache_safety_margin == 300

    def test_shipped_settings_file_loads(self) -> None:
        settings = load_settings(DEFAULT_CONFIG_PATH)
        assert settings.session_token_duration == 43200
        assert settings.sessions_file.name == "sessions.json"

    def test_values_from_yaml(self, tmp_path: pathlib.Path) -> None:
        config = tmp_path / "settings.yaml"
        config.write_text(
            "credentials_file: {creds}\n"
            "data_dir: {data}\n"
            "cli_path: /opt/aws/bin/aws\n"
            "active_identity_section: current\n"
            "session_token_duration: 1h\n"
            "sweep_interval: 10\n"
            "auto_renew_threshold: 2m\n".format(creds=tmp_path / "creds", data=tmp_path / "data")
        )

        settings = load_settings(config)

        assert settings.credentials_file == tmp_path / "creds"
        assert settings.mfa_cache_file == tmp_path / "data" / "mfa-cache.json"
        assert settings.recent_file == tmp_path / "data" / "recent.json"
        assert settings.cli_path == "/opt/aws/bin/aws"
        assert settings.active_identity_section == "current"
        assert settings.session_token_duration == 3600
        assert settings.sweep_interval == 10
        assert settings.auto_renew_threshold == 120

    def test_env_overrides_default_credentials_file(
        self, tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("AWS_SHARED_CREDENTIALS_FILE", str(tmp_path / "env-creds"))
        settings = load_settings(tmp_path / "absent.yaml")
        assert settings.credentials_file == tmp_path / "env-creds"

    @pytest.mark.parametrize(
        "body",
        [
            "session_token_duration: 5m\n",
            "session_token_duration: 48h\n",
            "sweep_interval: 0\n",
            "active_identity_section: ''\n",
            "intermediate_profile_suffix: ''\n",
            "intermediate_profile_suffix: '  '\n",
            "expiry_warning_threshold: later\n",
        ],
    )
    def test_invalid_values(self, tmp_path: pathlib.Path, body: str) -> None:
        config = tmp_path / "settings.yaml"
        config.write_text(body)
        with pytest.raises(SettingsError):
            load_settings(config)

    def test_non_mapping_rejected(self, tmp_path: pathlib.Path) -> None:
        config = tmp_path / "settings.yaml"
        config.write_text("- just\n- a list\n")
        with pytest.raises(SettingsError, match="mapping"):
            load_settings(config)

    def test_malformed_yaml_rejected(self, tmp_path: pathlib.Path) -> None:
        config = tmp_path / "settings.yaml"
        config.write_text("key: [unclosed\n")
        with pytest.raises(SettingsError, match="Cannot read"):
            load_settings(config)
