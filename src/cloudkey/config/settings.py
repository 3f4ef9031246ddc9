"""Application settings loaded from ``config/settings.yaml``.

Every key is optional; a missing file yields the defaults.  Durations use the
same short notation throughout (``"5m"``, ``"1h"``, ``"300s"`` or a bare
number of seconds).
"""

from __future__ import annotations

import dataclasses
import os
import pathlib
from typing import Any

import yaml

DEFAULT_CONFIG_PATH = pathlib.Path(__file__).resolve().parents[3] / "config" / "settings.yaml"
DEFAULT_CREDENTIALS_FILE = pathlib.Path.home() / ".aws" / "credentials"
DEFAULT_DATA_DIR = pathlib.Path.home() / ".cloudkey"


class SettingsError(Exception):
    """Raised when the settings file is unreadable or holds invalid values."""


def parse_duration_to_seconds(value: str | int) -> int:
    """Parse a duration string to seconds.

    Examples: ``"5m"`` → 300, ``"1h"`` → 3600, ``"300"`` → 300.
    """
    if isinstance(value, int):
        return value
    s = str(value).strip()
    try:
        if s.endswith("m"):
            return int(s[:-1]) * 60
        if s.endswith("h"):
            return int(s[:-1]) * 3600
        if s.endswith("s"):
            return int(s[:-1])
        return int(s)
    except ValueError as exc:
        raise SettingsError(f"Invalid duration: {value!r}") from exc


@dataclasses.dataclass(frozen=True)
class Settings:
    """Resolved settings.

    Attributes:
        credentials_file:          Shared INI credential file.
        data_dir:                  Where sessions and the MFA cache persist.
        cli_path:                  Provider CLI executable; probed when unset.
        active_identity_section:   Reserved section holding the active identity.
        intermediate_profile_suffix: Appended to the source identity to name
                                   the section holding a cached MFA token.
        session_token_duration:    Lifetime requested for MFA session tokens.
        sweep_interval:            Seconds between expiration sweeps.
        auto_renew_threshold:      Remaining time that triggers auto-renewal.
        expiry_warning_threshold:  Remaining time that triggers a warning.
        cache_safety_margin:       Minimum remaining validity of a usable
                                   cached MFA token.
    """

    credentials_file: pathlib.Path = DEFAULT_CREDENTIALS_FILE
    data_dir: pathlib.Path = DEFAULT_DATA_DIR
    cli_path: str | None = None
    active_identity_section: str = "default"
    intermediate_profile_suffix: str = "-mfa-session"
    session_token_duration: int = 43200
    sweep_interval: int = 30
    auto_renew_threshold: int = 300
    expiry_warning_threshold: int = 600
    cache_safety_margin: int = 300

    @property
    def sessions_file(self) -> pathlib.Path:
        return self.data_dir / "sessions.json"

    @property
    def recent_file(self) -> pathlib.Path:
        return self.data_dir / "recent.json"

    @property
    def mfa_cache_file(self) -> pathlib.Path:
        return self.data_dir / "mfa-cache.json"


def load_settings(path: str | pathlib.Path | None = None) -> Settings:
    """Read settings from *path* (default ``config/settings.yaml``).

    Raises ``SettingsError`` on malformed YAML or invalid values.
    """
    config_path = pathlib.Path(path) if path is not None else DEFAULT_CONFIG_PATH
    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as fh:
                loaded = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError) as exc:
            raise SettingsError(f"Cannot read settings file {config_path}: {exc}") from exc
        if loaded is not None and not isinstance(loaded, dict):
            raise SettingsError("Settings file must contain a mapping at the top level")
        data = loaded or {}
    return _from_mapping(data)


def _from_mapping(data: dict[str, Any]) -> Settings:
    env_credentials = os.environ.get("AWS_SHARED_CREDENTIALS_FILE")
    credentials_file = data.get("credentials_file") or env_credentials or DEFAULT_CREDENTIALS_FILE

    section = str(data.get("active_identity_section", "default")).strip()
    if not section:
        raise SettingsError("active_identity_section must not be empty")

    token_duration = parse_duration_to_seconds(data.get("session_token_duration", "12h"))
    # STS accepts 15 minutes to 36 hours for get-session-token.
    if not 900 <= token_duration <= 129600:
        raise SettingsError(
            f"session_token_duration must be between 15m and 36h, got {token_duration}s"
        )

    sweep_interval = parse_duration_to_seconds(data.get("sweep_interval", "30s"))
    if sweep_interval <= 0:
        raise SettingsError("sweep_interval must be positive")

    suffix = str(data.get("intermediate_profile_suffix", "-mfa-session") or "")
    if not suffix.strip():
        raise SettingsError("intermediate_profile_suffix must not be empty")

    return Settings(
        credentials_file=pathlib.Path(credentials_file).expanduser(),
        data_dir=pathlib.Path(data.get("data_dir") or DEFAULT_DATA_DIR).expanduser(),
        cli_path=data.get("cli_path") or None,
        active_identity_section=section,
        intermediate_profile_suffix=suffix,
        session_token_duration=token_duration,
        sweep_interval=sweep_interval,
        auto_renew_threshold=parse_duration_to_seconds(data.get("auto_renew_threshold", "5m")),
        expiry_warning_threshold=parse_duration_to_seconds(
            data.get("expiry_warning_threshold", "10m")
        ),
        cache_safety_margin=parse_duration_to_seconds(data.get("cache_safety_margin", "5m")),
    )
