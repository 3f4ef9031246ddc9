"""Thin wrapper around the provider CLI (``aws``).

Pattern: Stateless Command Adapter
-----------------------------------
Every method spawns exactly one CLI process, blocks until it exits and
decodes its JSON output.  There are no retries, no caching and no timeout:
failures surface to the caller as ``ProviderError`` with the stderr text
classified into a small taxonomy.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import pathlib
import shutil
import subprocess
from collections.abc import Sequence
from typing import Any

from cloudkey.auth.session import TemporaryCredentials
from cloudkey.provider.errors import ProviderError, ProviderErrorKind

logger = logging.getLogger(__name__)

CANDIDATE_PATHS: tuple[str, ...] = (
    "/opt/homebrew/bin/aws",
    "/usr/local/bin/aws",
    "/usr/bin/aws",
)

DEFAULT_SESSION_TOKEN_DURATION = 43200


@dataclasses.dataclass(frozen=True)
class IdentitySummary:
    """Result of ``sts get-caller-identity``."""

    account: str
    arn: str
    user_id: str

    @property
    def name(self) -> str:
        return self.arn.rsplit("/", 1)[-1] if "/" in self.arn else self.arn


def resolve_cli_path(configured: str | None = None) -> str:
    """Return the configured CLI path, else the first installed candidate."""
    if configured:
        return configured
    for candidate in CANDIDATE_PATHS:
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
    return shutil.which("aws") or "aws"


def _masked(args: Sequence[str]) -> str:
    shown = list(args)
    for i, arg in enumerate(shown[:-1]):
        if arg == "--token-code":
            shown[i + 1] = "******"
    return " ".join(shown)


class ProviderClient:
    """Invokes ``aws`` subcommands and parses their JSON responses."""

    def __init__(
        self,
        cli_path: str | None = None,
        credentials_file: str | pathlib.Path | None = None,
    ) -> None:
        self._cli_path = cli_path
        self._credentials_file = credentials_file

    @property
    def cli_path(self) -> str:
        return resolve_cli_path(self._cli_path)

    def assume_role(
        self,
        role_arn: str,
        session_name: str,
        source_profile: str,
        mfa_device_id: str | None = None,
        mfa_code: str | None = None,
    ) -> TemporaryCredentials:
        args = [
            "sts", "assume-role",
            "--role-arn", role_arn,
            "--role-session-name", session_name,
            "--profile", source_profile,
        ]
        if mfa_device_id and mfa_code:
            args += ["--serial-number", mfa_device_id, "--token-code", mfa_code]
        args += ["--output", "json"]
        return self._credentials(self._run_json(args))

    def get_session_token(
        self,
        source_profile: str,
        mfa_device_id: str,
        mfa_code: str,
        duration_seconds: int = DEFAULT_SESSION_TOKEN_DURATION,
    ) -> TemporaryCredentials:
        args = [
            "sts", "get-session-token",
            "--serial-number", mfa_device_id,
            "--token-code", mfa_code,
            "--duration-seconds", str(duration_seconds),
            "--profile", source_profile,
            "--output", "json",
        ]
        return self._credentials(self._run_json(args))

    def get_caller_identity(self, profile: str) -> IdentitySummary:
        data = self._run_json(["sts", "get-caller-identity", "--profile", profile, "--output", "json"])
        try:
            return IdentitySummary(
                account=str(data["Account"]),
                arn=str(data["Arn"]),
                user_id=str(data.get("UserId", "")),
            )
        except KeyError as exc:
            raise ProviderError(
                ProviderErrorKind.MALFORMED, f"get-caller-identity response missing {exc}"
            ) from exc

    def sso_login(self, profile: str) -> None:
        self._run(["sso", "login", "--profile", profile])

    # -- private helpers -------------------------------------------------------

    @staticmethod
    def _credentials(data: dict[str, Any]) -> TemporaryCredentials:
        try:
            return TemporaryCredentials.from_sts(data["Credentials"])
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise ProviderError(
                ProviderErrorKind.MALFORMED, f"Unexpected STS response: {exc!r}"
            ) from exc

    def _run_json(self, args: list[str]) -> dict[str, Any]:
        stdout = self._run(args)
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise ProviderError(
                ProviderErrorKind.MALFORMED, f"Invalid JSON from provider CLI: {exc}"
            ) from exc
        if not isinstance(data, dict):
            raise ProviderError(ProviderErrorKind.MALFORMED, "Provider CLI returned non-object JSON")
        return data

    def _run(self, args: list[str]) -> str:
        cli = self.cli_path
        env = None
        if self._credentials_file is not None:
            env = dict(os.environ)
            env["AWS_SHARED_CREDENTIALS_FILE"] = str(self._credentials_file)

        logger.debug("Running: %s %s", cli, _masked(args))
        try:
            completed = subprocess.run(
                [cli, *args],
                capture_output=True,
                text=True,
                env=env,
                check=False,
            )
        except OSError as exc:
            raise ProviderError(
                ProviderErrorKind.OTHER, f"Cannot execute provider CLI {cli}: {exc}"
            ) from exc

        logger.debug("Exit code %d from %s %s", completed.returncode, args[0], args[1])
        if completed.returncode != 0:
            stderr = completed.stderr or completed.stdout or f"exit code {completed.returncode}"
            error = ProviderError.from_stderr(stderr)
            logger.warning("%s %s failed: %s", args[0], args[1], error.kind.value)
            raise error
        return completed.stdout
