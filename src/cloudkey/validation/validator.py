"""Pre-flight diagnostics for a session configuration.

Runs the same provider calls an activation would, in order, and reports
each step as success / warning / error without touching session state or
the credential file.  The first error stops the pipeline.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import re

from cloudkey.auth.session import Session, SessionKind
from cloudkey.credentials.file_store import CredentialFileStore
from cloudkey.provider.client import ProviderClient
from cloudkey.provider.errors import ProviderError, ProviderErrorKind, truncate

logger = logging.getLogger(__name__)

ROLE_ARN_PATTERN = re.compile(r"^arn:aws:iam::\d{12}:role/[\w+=,.@-]+$")
MFA_SERIAL_PATTERN = re.compile(r"^arn:aws:iam::\d{12}:mfa/[\w+=,.@-]+$")

VALIDATION_SESSION_NAME = "validation-test"


class Severity(enum.Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclasses.dataclass(frozen=True)
class ValidationResult:
    severity: Severity
    message: str

    @classmethod
    def success(cls, message: str) -> ValidationResult:
        return cls(Severity.SUCCESS, message)

    @classmethod
    def warning(cls, message: str) -> ValidationResult:
        return cls(Severity.WARNING, message)

    @classmethod
    def error(cls, message: str) -> ValidationResult:
        return cls(Severity.ERROR, message)


@dataclasses.dataclass(frozen=True)
class ValidationReport:
    results: tuple[ValidationResult, ...]

    @property
    def is_valid(self) -> bool:
        return not any(r.severity is Severity.ERROR for r in self.results)

    @property
    def errors(self) -> list[ValidationResult]:
        return [r for r in self.results if r.severity is Severity.ERROR]


def _assume_role_failure(exc: ProviderError) -> str:
    if exc.kind is ProviderErrorKind.ACCESS_DENIED:
        return "Access denied: you don't have permission to assume this role"
    if exc.kind is ProviderErrorKind.INVALID_CREDENTIALS:
        return "Invalid credentials for source profile"
    if exc.kind in (ProviderErrorKind.MFA_REQUIRED, ProviderErrorKind.MFA_INVALID):
        return "MFA required but token invalid or missing"
    return f"Role assumption failed: {truncate(exc.raw_message, 150)}"


class ProfileValidator:
    """Dry-runs a session configuration against the provider."""

    def __init__(self, file_store: CredentialFileStore, provider: ProviderClient) -> None:
        self._store = file_store
        self._provider = provider

    def validate_session(self, session: Session, mfa_code: str | None = None) -> ValidationReport:
        source = session.source_identity
        if session.kind is not SessionKind.ASSUMED_ROLE:
            source = session.effective_profile
        return self.validate(
            kind=session.kind,
            source_identity=source or "",
            role_arn=session.role_arn,
            mfa_device_id=session.mfa_device_id,
            mfa_code=mfa_code,
        )

    def validate(
        self,
        kind: SessionKind,
        source_identity: str,
        role_arn: str | None = None,
        mfa_device_id: str | None = None,
        mfa_code: str | None = None,
    ) -> ValidationReport:
        results: list[ValidationResult] = []
        is_role = kind is SessionKind.ASSUMED_ROLE

        def done() -> ValidationReport:
            report = ValidationReport(tuple(results))
            logger.info(
                "Validated %s: %s (%d checks)",
                source_identity or "<no source>",
                "valid" if report.is_valid else "invalid",
                len(results),
            )
            return report

        # 1. Source identity present in the credential file.
        if is_role:
            if not source_identity:
                results.append(ValidationResult.error("Source profile is required for assumed roles"))
                return done()
            if not self._store.has_section(source_identity):
                results.append(ValidationResult.error(
                    f"Source profile '{source_identity}' not found in {self._store.path}"
                ))
                return done()
            results.append(ValidationResult.success(f"Source profile '{source_identity}' found"))

        # 2. Source credentials accepted by the provider.
        if source_identity and kind is not SessionKind.FEDERATED_SSO:
            try:
                identity = self._provider.get_caller_identity(source_identity)
            except ProviderError as exc:
                results.append(ValidationResult.error(
                    f"Invalid credentials: {truncate(exc.raw_message, 100)}"
                ))
                return done()
            results.append(ValidationResult.success(f"Credentials valid (User: {identity.name})"))

        # 3. Role ARN format.
        if is_role:
            if not role_arn:
                results.append(ValidationResult.error("Role ARN is required for assumed roles"))
                return done()
            if not ROLE_ARN_PATTERN.match(role_arn):
                results.append(ValidationResult.error(
                    "Invalid role ARN format. Expected: arn:aws:iam::ACCOUNT:role/ROLE_NAME"
                ))
                return done()
            results.append(ValidationResult.success("Role ARN format is valid"))

        # 4. MFA serial format (advisory).
        if mfa_device_id:
            if MFA_SERIAL_PATTERN.match(mfa_device_id):
                results.append(ValidationResult.success("MFA serial format is valid"))
            else:
                results.append(ValidationResult.warning(
                    "MFA serial format may be invalid. Expected: arn:aws:iam::ACCOUNT:mfa/USERNAME"
                ))

        # 5. Live role assumption.
        if is_role and role_arn:
            if mfa_device_id and not mfa_code:
                results.append(ValidationResult.warning(
                    "MFA token required to test role assumption. Provide token for full validation."
                ))
                return done()
            try:
                self._provider.assume_role(
                    role_arn,
                    VALIDATION_SESSION_NAME,
                    source_identity,
                    mfa_device_id if mfa_code else None,
                    mfa_code,
                )
            except ProviderError as exc:
                results.append(ValidationResult.error(_assume_role_failure(exc)))
                return done()
            role_name = role_arn.rsplit("/", 1)[-1]
            results.append(ValidationResult.success(f"Role assumption successful (Role: {role_name})"))

        return done()
