"""Tests for the Session data class."""

from __future__ import annotations

import dataclasses
import datetime

import pytest

from cloudkey.auth.session import (
    Session,
    SessionKind,
    SessionStatus,
    TemporaryCredentials,
    format_timestamp,
    parse_timestamp,
)
from tests.conftest import START


class TestSessionInvariants:
    def test_empty_alias_rejected(self) -> None:
        with pytest.raises(ValueError, match="alias"):
            Session(alias="  ", kind=SessionKind.DIRECT_CREDENTIALS)

    def test_assumed_role_requires_role_arn(self) -> None:
        with pytest.raises(ValueError, match="role ARN"):
            Session(alias="x", kind=SessionKind.ASSUMED_ROLE, source_identity="base")

    def test_assumed_role_requires_source_identity(self) -> None:
        with pytest.raises(ValueError, match="source identity"):
            Session(alias="x", kind=SessionKind.ASSUMED_ROLE, role_arn="arn:aws:iam::1:role/R")

    def test_active_assumed_role_must_carry_expiry(self, role_session: Session) -> None:
        with pytest.raises(ValueError, match="expiry"):
            dataclasses.replace(role_session, active=True)

    def test_inactive_assumed_role_cannot_carry_expiry(self, role_session: Session) -> None:
        with pytest.raises(ValueError, match="expiry"):
            dataclasses.replace(role_session, expires_at=START)

    def test_direct_session_never_tracks_expiry(self) -> None:
        with pytest.raises(ValueError, match="only assumed roles"):
            Session(alias="base", kind=SessionKind.DIRECT_CREDENTIALS, active=True, expires_at=START)

    def test_inactive_session_holds_no_access_key(self) -> None:
        with pytest.raises(ValueError, match="access key"):
            Session(alias="base", kind=SessionKind.DIRECT_CREDENTIALS, active_access_key_id="AKIA")

    def test_immutable(self, role_session: Session) -> None:
        with pytest.raises(AttributeError):
            role_session.alias = "other"  # type: ignore[misc]

    def test_ids_are_unique(self) -> None:
        a = Session(alias="a", kind=SessionKind.FEDERATED_SSO)
        b = Session(alias="b", kind=SessionKind.FEDERATED_SSO)
        assert a.id != b.id


class TestSessionStatus:
    def _active(self, role_session: Session, expires_in: datetime.timedelta) -> Session:
        return dataclasses.replace(
            role_session, active=True, expires_at=START + expires_in, active_access_key_id="ASIA1"
        )

    def test_inactive(self, role_session: Session) -> None:
        assert role_session.status_at(START) is SessionStatus.INACTIVE

    def test_active_with_time_left(self, role_session: Session) -> None:
        session = self._active(role_session, datetime.timedelta(minutes=30))
        assert session.status_at(START) is SessionStatus.ACTIVE

    def test_expiring_soon_inside_ten_minutes(self, role_session: Session) -> None:
        session = self._active(role_session, datetime.timedelta(minutes=9))
        assert session.status_at(START) is SessionStatus.EXPIRING_SOON

    def test_expiring_soon_at_exactly_ten_minutes(self, role_session: Session) -> None:
        session = self._active(role_session, datetime.timedelta(minutes=10))
        assert session.status_at(START) is SessionStatus.EXPIRING_SOON

    def test_custom_window(self, role_session: Session) -> None:
        session = self._active(role_session, datetime.timedelta(minutes=12))
        assert session.status_at(START, datetime.timedelta(minutes=15)) is SessionStatus.EXPIRING_SOON
        assert session.status_at(START, datetime.timedelta(minutes=5)) is SessionStatus.ACTIVE

    def test_active_sso_without_expiry_is_active(self) -> None:
        session = Session(alias="sso", kind=SessionKind.FEDERATED_SSO, active=True)
        assert session.status_at(START) is SessionStatus.ACTIVE
        assert session.remaining_at(START) is None

    def test_remaining(self, role_session: Session) -> None:
        session = self._active(role_session, datetime.timedelta(minutes=42))
        assert session.remaining_at(START) == datetime.timedelta(minutes=42)


class TestSessionSerialization:
    def test_dict_round_trip_preserves_state(self, role_session: Session) -> None:
        session = dataclasses.replace(
            role_session,
            active=True,
            expires_at=START + datetime.timedelta(hours=1),
            active_access_key_id="ASIA1",
            auto_renew=True,
            group="prod",
        ).with_log("[12:00:00] Session started")

        assert Session.from_dict(session.to_dict()) == session

    def test_configuration_omits_runtime_state(self, role_session: Session) -> None:
        config = role_session.configuration()
        assert config["kind"] == "AssumedRole"
        assert config["source_identity"] == "base"
        assert "active" not in config
        assert "activity_log" not in config
        assert "id" not in config

    def test_with_log_appends(self, role_session: Session) -> None:
        logged = role_session.with_log("one").with_log("two", "three")
        assert logged.activity_log == ("one", "two", "three")
        assert role_session.activity_log == ()

    def test_str_representation(self, role_session: Session) -> None:
        text = str(role_session)
        assert "dev-admin" in text
        assert "AssumedRole" in text


class TestTimestamps:
    def test_parse_zulu(self) -> None:
        parsed = parse_timestamp("2025-06-01T13:00:00Z")
        assert parsed == START + datetime.timedelta(hours=1)

    def test_parse_naive_is_utc(self) -> None:
        assert parse_timestamp("2025-06-01T12:00:00") == START

    def test_format_uses_zulu_suffix(self) -> None:
        assert format_timestamp(START) == "2025-06-01T12:00:00Z"


class TestTemporaryCredentials:
    def test_from_sts(self) -> None:
        creds = TemporaryCredentials.from_sts({
            "AccessKeyId": "ASIA1",
            "SecretAccessKey": "secret",
            "SessionToken": "token",
            "Expiration": "2025-06-01T13:00:00+00:00",
        })
        assert creds.access_key_id == "ASIA1"
        assert creds.expiration == START + datetime.timedelta(hours=1)

    def test_from_sts_missing_field_raises(self) -> None:
        with pytest.raises(KeyError):
            TemporaryCredentials.from_sts({"AccessKeyId": "ASIA1"})

    def test_repr_hides_secrets(self) -> None:
        creds = TemporaryCredentials("ASIA1", "very-secret", "very-token", START)
        text = repr(creds)
        assert "very-secret" not in text
        assert "very-token" not in text
        assert "ASIA1" in text
