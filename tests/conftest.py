"""Shared fixtures for tests."""

from __future__ import annotations

import datetime
import pathlib

import pytest

from cloudkey.auth.session import Session, SessionKind, TemporaryCredentials
from cloudkey.cache.mfa_cache import MemoryCacheBackend, MFATokenCache
from cloudkey.credentials.file_store import CredentialFileStore
from cloudkey.lifecycle.manager import SessionLifecycleManager
from cloudkey.provider.client import IdentitySummary
from cloudkey.provider.errors import ProviderError

START = datetime.datetime(2025, 6, 1, 12, 0, tzinfo=datetime.UTC)

BASE_CREDENTIALS = (
    "# long-lived keys\n"
    "[base]\n"
    "aws_access_key_id = AKIABASE\n"
    "aws_secret_access_key = base-secret\n"
)


class FakeClock:
    """Callable clock whose time only moves when told to."""

    def __init__(self, now: datetime.datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += datetime.timedelta(**kwargs)


class FakeProvider:
    """Records every provider call and returns fresh credentials."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.calls: list[tuple[str, dict]] = []
        self.failures: dict[str, ProviderError] = {}
        self.role_ttl = datetime.timedelta(hours=1)
        self.token_ttl = datetime.timedelta(hours=12)
        self._counter = 0

    def _record(self, name: str, **kwargs: object) -> None:
        self.calls.append((name, kwargs))
        if name in self.failures:
            raise self.failures[name]

    def _credentials(self, prefix: str, ttl: datetime.timedelta) -> TemporaryCredentials:
        self._counter += 1
        return TemporaryCredentials(
            access_key_id=f"{prefix}{self._counter:04d}",
            secret_access_key=f"secret-{self._counter}",
            session_token=f"token-{self._counter}",
            expiration=self.clock() + ttl,
        )

    def calls_to(self, name: str) -> list[dict]:
        return [kwargs for call, kwargs in self.calls if call == name]

    def assume_role(self, role_arn, session_name, source_profile, mfa_device_id=None, mfa_code=None):
        self._record(
            "assume_role",
            role_arn=role_arn,
            session_name=session_name,
            source_profile=source_profile,
            mfa_device_id=mfa_device_id,
            mfa_code=mfa_code,
        )
        return self._credentials("ASIAROLE", self.role_ttl)

    def get_session_token(self, source_profile, mfa_device_id, mfa_code, duration_seconds=43200):
        self._record(
            "get_session_token",
            source_profile=source_profile,
            mfa_device_id=mfa_device_id,
            mfa_code=mfa_code,
            duration_seconds=duration_seconds,
        )
        return self._credentials("ASIATOKEN", self.token_ttl)

    def get_caller_identity(self, profile):
        self._record("get_caller_identity", profile=profile)
        return IdentitySummary(
            account="123456789012",
            arn="arn:aws:iam::123456789012:user/alice",
            user_id="AIDAALICE",
        )

    def sso_login(self, profile):
        self._record("sso_login", profile=profile)


class RecordingNotifier:
    def __init__(self) -> None:
        self.expiring: list[tuple[str, int]] = []
        self.needs_mfa: list[str] = []
        self.failed: list[tuple[str, Exception]] = []
        self.succeeded: list[str] = []

    def notify_expiring_soon(self, session: Session, minutes_remaining: int) -> None:
        self.expiring.append((session.alias, minutes_remaining))

    def notify_auto_renew_needs_mfa(self, session: Session) -> None:
        self.needs_mfa.append(session.alias)

    def notify_auto_renew_failed(self, session: Session, error: Exception) -> None:
        self.failed.append((session.alias, error))

    def notify_auto_renew_succeeded(self, session: Session) -> None:
        self.succeeded.append(session.alias)


def make_credentials(
    expiration: datetime.datetime,
    access_key_id: str = "ASIACACHED",
) -> TemporaryCredentials:
    return TemporaryCredentials(
        access_key_id=access_key_id,
        secret_access_key="cached-secret",
        session_token="cached-token",
        expiration=expiration,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def credentials_path(tmp_path: pathlib.Path) -> pathlib.Path:
    path = tmp_path / ".aws" / "credentials"
    path.parent.mkdir()
    path.write_text(BASE_CREDENTIALS)
    return path


@pytest.fixture
def file_store(credentials_path: pathlib.Path) -> CredentialFileStore:
    return CredentialFileStore(credentials_path)


@pytest.fixture
def cache_backend() -> MemoryCacheBackend:
    return MemoryCacheBackend()


@pytest.fixture
def token_cache(cache_backend: MemoryCacheBackend, clock: FakeClock) -> MFATokenCache:
    return MFATokenCache(cache_backend, clock=clock)


@pytest.fixture
def provider(clock: FakeClock) -> FakeProvider:
    return FakeProvider(clock)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def manager(
    file_store: CredentialFileStore,
    provider: FakeProvider,
    token_cache: MFATokenCache,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> SessionLifecycleManager:
    return SessionLifecycleManager(
        file_store=file_store,
        provider=provider,
        token_cache=token_cache,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def role_session() -> Session:
    return Session(
        alias="dev-admin",
        kind=SessionKind.ASSUMED_ROLE,
        region="eu-west-1",
        account_id="987654321098",
        role_arn="arn:aws:iam::987654321098:role/DeveloperRole",
        mfa_device_id="mfa-1",
        source_identity="base",
    )


@pytest.fixture
def plain_role_session() -> Session:
    return Session(
        alias="readonly",
        kind=SessionKind.ASSUMED_ROLE,
        role_arn="arn:aws:iam::987654321098:role/ReadOnly",
        source_identity="base",
    )
