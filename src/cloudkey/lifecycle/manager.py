"""Session lifecycle state machine.

Pattern: Explicitly Wired Orchestrator
---------------------------------------
``SessionLifecycleManager`` owns no global state.  It receives the credential
file store, the provider client, the MFA token cache, a notification sink and
a clock at construction, and every transition takes a ``Session`` and returns
the resulting ``Session``:

  - ``activate``   Inactive → Active (or fails, leaving the session as it was).
  - ``deactivate`` Active → Inactive; file cleanup is best-effort.
  - ``renew``      ``deactivate`` followed by ``activate``.
  - ``expiration_sweep`` is called by an external scheduler at a fixed
    cadence; it expires, renews or warns about active sessions.

For an assumed role with an MFA device, activation goes through an
*intermediate profile*: a credential file section holding an MFA session
token for the source identity.  That token is cached, so later activations
assume the role from the intermediate profile without a new MFA code.
Sessions with ``bypass_token_cache`` pass the MFA code straight to
``assume-role`` instead; their credentials are never cached.
"""

from __future__ import annotations

import dataclasses
import datetime
import logging
import re
import threading
from collections.abc import Callable, Iterable

from cloudkey.auth.session import (
    Session,
    SessionKind,
    TemporaryCredentials,
    utcnow,
)
from cloudkey.cache.mfa_cache import MFATokenCache
from cloudkey.credentials.file_store import CredentialFileError, CredentialFileStore
from cloudkey.lifecycle.notifications import LoggingNotificationSink, NotificationSink
from cloudkey.provider.client import DEFAULT_SESSION_TOKEN_DURATION, ProviderClient
from cloudkey.provider.errors import ProviderError, ProviderErrorKind

logger = logging.getLogger(__name__)

AUTO_RENEW_THRESHOLD = datetime.timedelta(minutes=5)
EXPIRY_WARNING_THRESHOLD = datetime.timedelta(minutes=10)
INTERMEDIATE_PROFILE_SUFFIX = "-mfa-session"

_MFA_CODE = re.compile(r"^\d{6}$")
_SESSION_NAME_INVALID = re.compile(r"[^\w+=,.@-]")

_AUTO_RENEW_FLAG = "auto-renew"
_WARNING_FLAG = "expiry-warning"


class LifecycleError(Exception):
    """Raised when a lifecycle transition fails.

    Attributes:
        transition: Name of the attempted transition.
        cause:      The underlying ``ProviderError`` or ``CredentialFileError``.
        session:    The pre-transition session with the failure logged.
    """

    def __init__(
        self,
        transition: str,
        cause: ProviderError | CredentialFileError,
        session: Session,
    ) -> None:
        self.transition = transition
        self.cause = cause
        self.session = session
        super().__init__(f"{transition} of '{session.alias}' failed: {cause}")

    @property
    def kind(self) -> ProviderErrorKind | None:
        if isinstance(self.cause, ProviderError):
            return self.cause.kind
        return None


def role_session_name(alias: str) -> str:
    """Derive a valid ``--role-session-name`` (2-64 chars of ``[\\w+=,.@-]``)."""
    name = _SESSION_NAME_INVALID.sub("-", alias.strip())[:64]
    return name if len(name) >= 2 else f"{name}-session"


class SessionLifecycleManager:
    """Drives sessions through activate / deactivate / renew / sweep."""

    def __init__(
        self,
        file_store: CredentialFileStore,
        provider: ProviderClient,
        token_cache: MFATokenCache,
        notifier: NotificationSink | None = None,
        clock: Callable[[], datetime.datetime] = utcnow,
        session_token_duration: int = DEFAULT_SESSION_TOKEN_DURATION,
        intermediate_suffix: str = INTERMEDIATE_PROFILE_SUFFIX,
        auto_renew_threshold: datetime.timedelta = AUTO_RENEW_THRESHOLD,
        expiry_warning_threshold: datetime.timedelta = EXPIRY_WARNING_THRESHOLD,
    ) -> None:
        self._store = file_store
        self._provider = provider
        self._cache = token_cache
        self._notifier = notifier or LoggingNotificationSink()
        self._clock = clock
        self._token_duration = session_token_duration
        self._intermediate_suffix = intermediate_suffix
        self._auto_renew_threshold = auto_renew_threshold
        self._warning_threshold = expiry_warning_threshold

        self._session_locks: dict[str, threading.RLock] = {}
        self._flags: set[tuple[str, str]] = set()
        self._state_lock = threading.Lock()
        self._sweep_lock = threading.Lock()

    # -- transitions -----------------------------------------------------------

    def activate(self, session: Session, mfa_code: str | None = None) -> Session:
        """Obtain credentials for *session* and mark it Active.

        Raises ``LifecycleError`` when a provider call or file write fails;
        ``err.session`` then holds the unchanged session plus a log line.
        """
        with self._lock_for(session):
            return self._activate(session, mfa_code, "activate")

    def deactivate(self, session: Session) -> Session:
        """Remove *session*'s credentials from the file and mark it Inactive."""
        with self._lock_for(session):
            return self._deactivate(session)

    def renew(self, session: Session, mfa_code: str | None = None) -> Session:
        """Deactivate then activate *session*; configuration flags carry over.

        A session that held the reserved active section holds it again with
        the renewed credentials.
        """
        with self._lock_for(session):
            was_active_identity = self.is_active_identity(session)
            stopped = self._deactivate(session)
            renewed = self._activate(stopped, mfa_code, "renew")
            if not was_active_identity:
                return renewed
            section = self._section_for(renewed) or ""
            try:
                self._store.set_as_active_identity(section)
            except CredentialFileError as exc:
                logger.warning("Could not restore [%s] for %s: %s",
                               self._store.active_identity_section, session.alias, exc)
                return renewed.with_log(self._line(f"Warning: {exc}"))
            return renewed.with_log(
                self._line(f"Set as [{self._store.active_identity_section}] profile")
            )

    def expiration_sweep(self, sessions: Iterable[Session]) -> list[Session]:
        """Expire, auto-renew or warn about every active session.

        Returns the sessions in input order, updated where a transition
        happened.  A failure on one session never stops the sweep.
        """
        with self._sweep_lock:
            self._cache.prune_expired()
            return [self._sweep_one(session) for session in sessions]

    # -- queries and small actions ---------------------------------------------

    def requires_mfa_code(self, session: Session) -> bool:
        """Whether activating *session* right now needs a fresh MFA code."""
        if session.kind is not SessionKind.ASSUMED_ROLE or not session.mfa_device_id:
            return False
        if session.bypass_token_cache:
            return True
        return not self._cache.has_valid(session.source_identity or "", session.mfa_device_id)

    def set_active_identity(self, session: Session) -> Session:
        """Copy *session*'s credentials into the reserved active section."""
        section = self._section_for(session)
        expires_at = session.expires_at
        if not session.active or section is None or (
            expires_at is not None and expires_at <= self._clock()
        ):
            error = CredentialFileError(
                f"Only active sessions with file credentials can become the "
                f"[{self._store.active_identity_section}] identity"
            )
            raise LifecycleError(
                "set-active-identity", error, session.with_log(self._line(f"Error: {error}"))
            )
        try:
            self._store.set_as_active_identity(section)
        except CredentialFileError as exc:
            raise LifecycleError(
                "set-active-identity", exc, session.with_log(self._line(f"Error: {exc}"))
            ) from exc
        return session.with_log(
            self._line(f"Set as [{self._store.active_identity_section}] profile")
        )

    def is_active_identity(self, session: Session) -> bool:
        section = self._section_for(session)
        return session.active and section is not None and self._store.is_active_identity(section)

    def clear_activity_log(self, session: Session) -> Session:
        return dataclasses.replace(session, activity_log=())

    # -- activation internals --------------------------------------------------

    def _activate(self, session: Session, mfa_code: str | None, transition: str) -> Session:
        try:
            if session.kind is SessionKind.DIRECT_CREDENTIALS:
                activated = self._activate_direct(session)
            elif session.kind is SessionKind.FEDERATED_SSO:
                activated = self._activate_sso(session)
            else:
                activated = self._activate_assumed_role(session, mfa_code)
        except (ProviderError, CredentialFileError) as exc:
            logger.warning("%s of session %s failed: %s", transition, session.alias, exc)
            raise LifecycleError(
                transition, exc, session.with_log(self._line(f"Error: {exc}"))
            ) from exc

        self._clear_flags(session.id)
        logger.info("Session %s is active (expires %s)", session.alias, activated.expires_at)
        return activated

    def _activate_direct(self, session: Session) -> Session:
        values = self._store.read_section(session.effective_profile) or {}
        return dataclasses.replace(
            session,
            active=True,
            expires_at=None,
            active_access_key_id=values.get("aws_access_key_id") or None,
        ).with_log(self._line("Long-lived credentials activated"))

    def _activate_sso(self, session: Session) -> Session:
        self._provider.sso_login(session.effective_profile)
        return dataclasses.replace(
            session, active=True, expires_at=None, active_access_key_id=None
        ).with_log(self._line(f"SSO login successful for profile {session.effective_profile}"))

    def _activate_assumed_role(self, session: Session, mfa_code: str | None) -> Session:
        role_arn = session.role_arn or ""
        source = session.source_identity or ""
        mfa_device = session.mfa_device_id
        name = role_session_name(session.alias)
        notes: list[str] = []

        if mfa_device and session.bypass_token_cache:
            code = self._require_code(mfa_code)
            notes.append("Using direct MFA (no cache, federation-compatible)")
            credentials = self._provider.assume_role(role_arn, name, source, mfa_device, code)
        elif mfa_device:
            intermediate = f"{source}{self._intermediate_suffix}"
            if intermediate == source:
                raise CredentialFileError(
                    f"Intermediate profile for [{source}] would overwrite its long-lived keys; "
                    "set a non-empty intermediate profile suffix"
                )
            token = self._cache.get(source, mfa_device)
            if token is not None:
                notes.append("Using cached MFA session token")
            else:
                code = self._require_code(mfa_code)
                token = self._provider.get_session_token(
                    source, mfa_device, code, self._token_duration
                )
                self._cache.put(source, mfa_device, token)
                notes.append(f"MFA session token obtained (expires {self._format(token.expiration)})")
            self._write(intermediate, token)
            credentials = self._provider.assume_role(role_arn, name, intermediate)
        else:
            credentials = self._provider.assume_role(role_arn, name, source)

        self._write(session.alias, credentials)
        notes.append(f"Assumed role {role_arn}")
        notes.append(f"Session expires {self._format(credentials.expiration)}")
        return dataclasses.replace(
            session,
            active=True,
            expires_at=credentials.expiration,
            active_access_key_id=credentials.access_key_id,
        ).with_log(*(self._line(note) for note in notes))

    def _write(self, section: str, credentials: TemporaryCredentials) -> None:
        self._store.upsert_section(
            section,
            credentials.access_key_id,
            credentials.secret_access_key,
            credentials.session_token,
        )

    @staticmethod
    def _require_code(mfa_code: str | None) -> str:
        if not mfa_code:
            raise ProviderError(ProviderErrorKind.MFA_REQUIRED)
        code = mfa_code.strip()
        if not _MFA_CODE.match(code):
            raise ProviderError(ProviderErrorKind.MFA_INVALID, "MFA code must be 6 digits")
        return code

    # -- deactivation internals ------------------------------------------------

    def _deactivate(self, session: Session) -> Session:
        lines: list[str] = []
        if session.kind is SessionKind.ASSUMED_ROLE:
            try:
                self._store.remove_section(session.alias, clear_active_identity=True)
                lines.append(self._line(f"Removed credentials from {self._store.path}"))
            except CredentialFileError as exc:
                logger.warning("Could not remove [%s]: %s", session.alias, exc)
                lines.append(self._line(f"Warning: {exc}"))
        lines.append(self._line("Session stopped"))

        self._clear_flags(session.id)
        logger.info("Session %s is inactive", session.alias)
        return dataclasses.replace(
            session, active=False, expires_at=None, active_access_key_id=None
        ).with_log(*lines)

    # -- sweep internals -------------------------------------------------------

    def _sweep_one(self, session: Session) -> Session:
        try:
            return self._sweep_check(session)
        except Exception:
            logger.exception("Expiration sweep failed for session %s", session.alias)
            return session

    def _sweep_check(self, session: Session) -> Session:
        if not session.active or session.expires_at is None:
            return session

        remaining = session.expires_at - self._clock()
        if remaining <= datetime.timedelta(0):
            logger.info("Session %s expired", session.alias)
            self._clear_flags(session.id)
            return dataclasses.replace(
                session, active=False, expires_at=None, active_access_key_id=None
            ).with_log(self._line("Session expired"))

        if session.auto_renew:
            if remaining > self._auto_renew_threshold or not self._flag(session.id, _AUTO_RENEW_FLAG):
                return session
            if not self._can_renew_silently(session):
                self._notifier.notify_auto_renew_needs_mfa(session)
                return session.with_log(self._line("Auto-renew needs an MFA code"))
            try:
                renewed = self.renew(session)
            except LifecycleError as exc:
                self._notifier.notify_auto_renew_failed(session, exc)
                return exc.session
            self._notifier.notify_auto_renew_succeeded(renewed)
            return renewed.with_log(self._line("Renewed automatically"))

        if remaining <= self._warning_threshold and self._flag(session.id, _WARNING_FLAG):
            minutes = int(remaining.total_seconds() // 60)
            self._notifier.notify_expiring_soon(session, minutes)
            return session.with_log(self._line(f"Session expires in {minutes} minute(s)"))
        return session

    def _can_renew_silently(self, session: Session) -> bool:
        if not session.mfa_device_id:
            return True
        if session.bypass_token_cache:
            return False
        return self._cache.has_valid(session.source_identity or "", session.mfa_device_id)

    # -- private helpers -------------------------------------------------------

    def _section_for(self, session: Session) -> str | None:
        if session.kind is SessionKind.ASSUMED_ROLE:
            return session.alias
        if session.kind is SessionKind.DIRECT_CREDENTIALS:
            return session.effective_profile
        return None

    def _lock_for(self, session: Session) -> threading.RLock:
        with self._state_lock:
            lock = self._session_locks.get(session.id)
            if lock is None:
                lock = self._session_locks[session.id] = threading.RLock()
            return lock

    def _flag(self, session_id: str, kind: str) -> bool:
        """Record that *kind* fired for *session_id*; False if already recorded."""
        with self._state_lock:
            if (session_id, kind) in self._flags:
                return False
            self._flags.add((session_id, kind))
            return True

    def _clear_flags(self, session_id: str) -> None:
        with self._state_lock:
            self._flags.discard((session_id, _AUTO_RENEW_FLAG))
            self._flags.discard((session_id, _WARNING_FLAG))

    def _line(self, message: str) -> str:
        return f"[{self._clock().astimezone().strftime('%H:%M:%S')}] {message}"

    @staticmethod
    def _format(value: datetime.datetime) -> str:
        return value.astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")
