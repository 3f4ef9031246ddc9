"""Provider error taxonomy and stderr classification."""

from __future__ import annotations

import enum

MAX_MESSAGE_LENGTH = 300


class ProviderErrorKind(enum.Enum):
    ACCESS_DENIED = "AccessDenied"
    INVALID_CREDENTIALS = "InvalidCredentials"
    MFA_REQUIRED = "MFARequired"
    MFA_INVALID = "MFAInvalid"
    MALFORMED = "Malformed"
    OTHER = "Other"


# Checked in order; the first matching substring wins.  MFA failures are
# reported by STS as AccessDenied, so they must be matched first.
_CLASSIFIERS: list[tuple[str, ProviderErrorKind]] = [
    ("MultiFactorAuthentication failed", ProviderErrorKind.MFA_INVALID),
    ("invalid MFA one time pass code", ProviderErrorKind.MFA_INVALID),
    ("MultiFactorAuthentication", ProviderErrorKind.MFA_REQUIRED),
    ("AccessDenied", ProviderErrorKind.ACCESS_DENIED),
    ("InvalidClientTokenId", ProviderErrorKind.INVALID_CREDENTIALS),
    ("SignatureDoesNotMatch", ProviderErrorKind.INVALID_CREDENTIALS),
    ("ExpiredToken", ProviderErrorKind.INVALID_CREDENTIALS),
    ("Unable to locate credentials", ProviderErrorKind.INVALID_CREDENTIALS),
    ("could not be found", ProviderErrorKind.INVALID_CREDENTIALS),
]

_DESCRIPTIONS = {
    ProviderErrorKind.ACCESS_DENIED: "Access denied",
    ProviderErrorKind.INVALID_CREDENTIALS: "Invalid credentials for the source profile",
    ProviderErrorKind.MFA_REQUIRED: "MFA code required",
    ProviderErrorKind.MFA_INVALID: "MFA code rejected",
    ProviderErrorKind.MALFORMED: "Unexpected response from the provider CLI",
    ProviderErrorKind.OTHER: "Provider CLI failed",
}


def classify(stderr: str) -> ProviderErrorKind:
    for needle, kind in _CLASSIFIERS:
        if needle in stderr:
            return kind
    return ProviderErrorKind.OTHER


def truncate(message: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    message = message.strip()
    if len(message) <= limit:
        return message
    return message[:limit].rstrip() + "..."


class ProviderError(Exception):
    """Raised when a provider CLI call fails.

    Attributes:
        kind:        Classified failure category.
        raw_message: Truncated stderr (or decode error) text.
    """

    def __init__(self, kind: ProviderErrorKind, raw_message: str = "") -> None:
        self.kind = kind
        self.raw_message = truncate(raw_message)
        super().__init__(self.describe())

    @classmethod
    def from_stderr(cls, stderr: str) -> ProviderError:
        return cls(classify(stderr), stderr)

    def describe(self) -> str:
        label = _DESCRIPTIONS[self.kind]
        if self.raw_message:
            return f"{label}: {self.raw_message}"
        return label
