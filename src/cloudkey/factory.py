"""Service factory: builds the wired component graph from ``Settings``.

Pattern: Factory
-----------------
The lifecycle manager depends on four collaborators that all read the same
settings.  The factory constructs them once, in dependency order:

  1. ``CredentialFileStore`` on the configured credential file.
  2. ``ProviderClient`` pointed at the same file.
  3. ``MFATokenCache`` persisted in the data directory.
  4. ``SessionLifecycleManager`` over the three above.
  5. ``ProfileValidator`` and ``SessionStore`` beside it.
"""

from __future__ import annotations

import dataclasses
import datetime
import logging

from cloudkey.cache.mfa_cache import JsonFileCacheBackend, MFATokenCache
from cloudkey.config.settings import Settings
from cloudkey.credentials.file_store import CredentialFileStore
from cloudkey.lifecycle.manager import SessionLifecycleManager
from cloudkey.lifecycle.notifications import NotificationSink
from cloudkey.provider.client import ProviderClient
from cloudkey.store.session_store import SessionStore
from cloudkey.validation.validator import ProfileValidator

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Services:
    settings: Settings
    file_store: CredentialFileStore
    provider: ProviderClient
    token_cache: MFATokenCache
    manager: SessionLifecycleManager
    validator: ProfileValidator
    sessions: SessionStore


def build_services(settings: Settings, notifier: NotificationSink | None = None) -> Services:
    file_store = CredentialFileStore(
        settings.credentials_file,
        active_identity_section=settings.active_identity_section,
    )
    provider = ProviderClient(cli_path=settings.cli_path, credentials_file=settings.credentials_file)
    token_cache = MFATokenCache(
        JsonFileCacheBackend(settings.mfa_cache_file),
        safety_margin=datetime.timedelta(seconds=settings.cache_safety_margin),
    )
    manager = SessionLifecycleManager(
        file_store=file_store,
        provider=provider,
        token_cache=token_cache,
        notifier=notifier,
        session_token_duration=settings.session_token_duration,
        intermediate_suffix=settings.intermediate_profile_suffix,
        auto_renew_threshold=datetime.timedelta(seconds=settings.auto_renew_threshold),
        expiry_warning_threshold=datetime.timedelta(seconds=settings.expiry_warning_threshold),
    )
    logger.debug(
        "Services built: credentials=%s, data_dir=%s", settings.credentials_file, settings.data_dir
    )
    return Services(
        settings=settings,
        file_store=file_store,
        provider=provider,
        token_cache=token_cache,
        manager=manager,
        validator=ProfileValidator(file_store, provider),
        sessions=SessionStore(settings.sessions_file, settings.recent_file),
    )
