"""Session record that carries one configured identity through its lifecycle.

Pattern: Immutable Session Snapshot
------------------------------------
A ``Session`` describes *how* to obtain credentials (kind, role, MFA device,
source identity) together with the state of its latest activation (expiry,
active access key, activity log).  The record is frozen: every lifecycle
transition returns a new ``Session`` built with ``dataclasses.replace`` so a
caller never sees a half-applied transition.

``status`` is derived from the ``active`` flag and ``expires_at``; it cannot
be set directly.
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
import uuid
from typing import Any

# Active sessions with this much time left or less are reported as expiring.
EXPIRING_SOON_WINDOW = datetime.timedelta(minutes=10)


class SessionKind(enum.Enum):
    DIRECT_CREDENTIALS = "DirectCredentials"
    ASSUMED_ROLE = "AssumedRole"
    FEDERATED_SSO = "FederatedSSO"


class SessionStatus(enum.Enum):
    INACTIVE = "Inactive"
    ACTIVE = "Active"
    EXPIRING_SOON = "ExpiringSoon"


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclasses.dataclass(frozen=True)
class TemporaryCredentials:
    """Time-bounded credentials returned by the provider's STS calls."""

    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime.datetime

    @classmethod
    def from_sts(cls, data: dict[str, Any]) -> TemporaryCredentials:
        """Build from the ``Credentials`` object of an STS response.

        Raises ``KeyError`` or ``ValueError`` when the shape is wrong.
        """
        return cls(
            access_key_id=data["AccessKeyId"],
            secret_access_key=data["SecretAccessKey"],
            session_token=data["SessionToken"],
            expiration=parse_timestamp(data["Expiration"]),
        )

    def to_sts(self) -> dict[str, str]:
        return {
            "AccessKeyId": self.access_key_id,
            "SecretAccessKey": self.secret_access_key,
            "SessionToken": self.session_token,
            "Expiration": format_timestamp(self.expiration),
        }

    def __repr__(self) -> str:
        return (
            f"TemporaryCredentials(access_key_id={self.access_key_id!r}, "
            f"expiration={self.expiration.isoformat()})"
        )


def parse_timestamp(value: str) -> datetime.datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.UTC)
    return parsed


def format_timestamp(value: datetime.datetime) -> str:
    return value.astimezone(datetime.UTC).isoformat().replace("+00:00", "Z")


@dataclasses.dataclass(frozen=True)
class Session:
    """One configured identity-to-use mapping.

    Attributes:
        alias:               Unique user-facing name; also the credential
                             file section written while an assumed role is
                             active.
        kind:                How credentials are obtained.
        region:              Descriptive only.
        account_id:          Descriptive only.
        role_arn:            Role to assume (AssumedRole only).
        mfa_device_id:       MFA serial, if the role requires a second factor.
        source_identity:     Stored profile the role is assumed from.
        profile_name:        Provider profile for SSO login / direct keys.
        group:               Free-form label used when listing.
        bypass_token_cache:  Always prompt for MFA and never cache the token.
        auto_renew:          Renew proactively instead of warning.
        active:              Whether the latest activation succeeded and has
                             not been stopped.
        expires_at:          Expiry of the active credentials, if tracked.
        active_access_key_id: Access key id of the active credentials.
        activity_log:        Timestamped human-readable events.
        id:                  Opaque identifier, immutable once created.
    """

    alias: str
    kind: SessionKind
    region: str = ""
    account_id: str = ""
    role_arn: str | None = None
    mfa_device_id: str | None = None
    source_identity: str | None = None
    profile_name: str | None = None
    group: str | None = None
    bypass_token_cache: bool = False
    auto_renew: bool = False
    active: bool = False
    expires_at: datetime.datetime | None = None
    active_access_key_id: str | None = None
    activity_log: tuple[str, ...] = ()
    id: str = dataclasses.field(default_factory=_new_id)

    def __post_init__(self) -> None:
        if not self.alias.strip():
            raise ValueError("Session alias must not be empty")
        if self.kind is SessionKind.ASSUMED_ROLE:
            if not self.role_arn:
                raise ValueError(f"Session '{self.alias}': role ARN is required for assumed roles")
            if not self.source_identity:
                raise ValueError(
                    f"Session '{self.alias}': source identity is required for assumed roles"
                )
            if self.active != (self.expires_at is not None):
                raise ValueError(
                    f"Session '{self.alias}': an active assumed role must carry an expiry"
                )
        elif self.expires_at is not None:
            raise ValueError(f"Session '{self.alias}': only assumed roles track an expiry")
        if not self.active and self.active_access_key_id is not None:
            raise ValueError(f"Session '{self.alias}': inactive sessions hold no access key")

    @property
    def effective_profile(self) -> str:
        return self.profile_name or self.alias

    @property
    def status(self) -> SessionStatus:
        return self.status_at(utcnow())

    def status_at(
        self, now: datetime.datetime, window: datetime.timedelta = EXPIRING_SOON_WINDOW
    ) -> SessionStatus:
        """Status at *now*; ExpiringSoon once at most *window* remains."""
        if not self.active:
            return SessionStatus.INACTIVE
        if self.expires_at is not None and self.expires_at - now <= window:
            return SessionStatus.EXPIRING_SOON
        return SessionStatus.ACTIVE

    def remaining_at(self, now: datetime.datetime) -> datetime.timedelta | None:
        if self.expires_at is None:
            return None
        return self.expires_at - now

    def with_log(self, *lines: str) -> Session:
        """Return a copy with *lines* appended to the activity log."""
        return dataclasses.replace(self, activity_log=self.activity_log + tuple(lines))

    def configuration(self) -> dict[str, Any]:
        """The configuration fields only, as exported/imported between machines."""
        return {
            "alias": self.alias,
            "kind": self.kind.value,
            "region": self.region,
            "account_id": self.account_id,
            "group": self.group,
            "role_arn": self.role_arn,
            "mfa_device_id": self.mfa_device_id,
            "source_identity": self.source_identity,
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.configuration()
        data.update({
            "id": self.id,
            "profile_name": self.profile_name,
            "bypass_token_cache": self.bypass_token_cache,
            "auto_renew": self.auto_renew,
            "active": self.active,
            "expires_at": format_timestamp(self.expires_at) if self.expires_at else None,
            "active_access_key_id": self.active_access_key_id,
            "activity_log": list(self.activity_log),
        })
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        expires_at = data.get("expires_at")
        kwargs: dict[str, Any] = {
            "alias": data["alias"],
            "kind": SessionKind(data["kind"]),
            "region": data.get("region", ""),
            "account_id": data.get("account_id", ""),
            "role_arn": data.get("role_arn"),
            "mfa_device_id": data.get("mfa_device_id"),
            "source_identity": data.get("source_identity"),
            "profile_name": data.get("profile_name"),
            "group": data.get("group"),
            "bypass_token_cache": bool(data.get("bypass_token_cache", False)),
            "auto_renew": bool(data.get("auto_renew", False)),
            "active": bool(data.get("active", False)),
            "expires_at": parse_timestamp(expires_at) if expires_at else None,
            "active_access_key_id": data.get("active_access_key_id"),
            "activity_log": tuple(data.get("activity_log", ())),
        }
        if data.get("id"):
            kwargs["id"] = data["id"]
        return cls(**kwargs)

    def __str__(self) -> str:
        return f"Session(alias={self.alias}, kind={self.kind.value}, status={self.status.value})"
