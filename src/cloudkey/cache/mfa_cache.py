"""Cache of MFA-gated session tokens keyed by (source identity, MFA device).

Pattern: Margin-Gated Token Cache
----------------------------------
A ``get-session-token`` call made with a second factor yields credentials
valid for hours.  Caching them lets later role assumptions for the same
source identity skip the MFA prompt.  A cached token is only handed out
while it has more than ``safety_margin`` (5 minutes) of validity left, so a
caller never starts an operation with a token about to expire.

The cache persists through an injected backend after every ``put`` so it
survives restarts, and reads time from an injected clock.
"""

from __future__ import annotations

import dataclasses
import datetime
import json
import logging
import os
import pathlib
import tempfile
import threading
from collections.abc import Callable
from typing import Any, Protocol

from cloudkey.auth.session import (
    TemporaryCredentials,
    format_timestamp,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_MARGIN = datetime.timedelta(minutes=5)


def cache_key(source_identity: str, mfa_device_id: str) -> str:
    return f"{source_identity}-{mfa_device_id}"


class CacheBackend(Protocol):
    """Persistence for the serialized cache map."""

    def load(self) -> dict[str, Any]: ...

    def save(self, data: dict[str, Any]) -> None: ...

    def delete(self) -> None: ...


class MemoryCacheBackend:
    """Keeps the serialized map in memory; used in tests."""

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self.data: dict[str, Any] = dict(data or {})
        self.save_count = 0

    def load(self) -> dict[str, Any]:
        return json.loads(json.dumps(self.data))

    def save(self, data: dict[str, Any]) -> None:
        self.data = json.loads(json.dumps(data))
        self.save_count += 1

    def delete(self) -> None:
        self.data = {}


class JsonFileCacheBackend:
    """Stores the map as a JSON file, written atomically with mode 0600."""

    def __init__(self, path: str | pathlib.Path) -> None:
        self._path = pathlib.Path(path).expanduser()

    @property
    def path(self) -> pathlib.Path:
        return self._path

    def load(self) -> dict[str, Any]:
        if not self._path.exists():
            logger.debug("No MFA cache file at %s", self._path)
            return {}
        with open(self._path, encoding="utf-8") as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            raise ValueError(f"MFA cache file {self._path} does not hold a JSON object")
        return data

    def save(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".mfa-cache-", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, sort_keys=True)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self._path)
        except BaseException:
            pathlib.Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self) -> None:
        self._path.unlink(missing_ok=True)


@dataclasses.dataclass(frozen=True)
class CacheEntry:
    key: str
    credentials: TemporaryCredentials

    @property
    def expiration(self) -> datetime.datetime:
        return self.credentials.expiration


class MFATokenCache:
    """In-memory token cache mirrored to a persistence backend."""

    def __init__(
        self,
        backend: CacheBackend,
        clock: Callable[[], datetime.datetime] = utcnow,
        safety_margin: datetime.timedelta = DEFAULT_SAFETY_MARGIN,
    ) -> None:
        self._backend = backend
        self._clock = clock
        self._safety_margin = safety_margin
        self._lock = threading.RLock()
        self._entries: dict[str, TemporaryCredentials] = self._load()

    @property
    def safety_margin(self) -> datetime.timedelta:
        return self._safety_margin

    def has_valid(self, source_identity: str, mfa_device_id: str) -> bool:
        with self._lock:
            credentials = self._entries.get(cache_key(source_identity, mfa_device_id))
            return credentials is not None and self._usable(credentials)

    def get(self, source_identity: str, mfa_device_id: str) -> TemporaryCredentials | None:
        key = cache_key(source_identity, mfa_device_id)
        with self._lock:
            credentials = self._entries.get(key)
            if credentials is None:
                return None
            if credentials.expiration <= self._clock():
                logger.info("Pruning expired MFA token for %s", key)
                del self._entries[key]
                self._persist()
                return None
            if not self._usable(credentials):
                logger.debug("Cached MFA token for %s is inside the safety margin", key)
                return None
            return credentials

    def put(self, source_identity: str, mfa_device_id: str, credentials: TemporaryCredentials) -> None:
        key = cache_key(source_identity, mfa_device_id)
        with self._lock:
            self._entries[key] = credentials
            self._persist()
        logger.info("Cached MFA token for %s, expires %s", key, credentials.expiration.isoformat())

    def prune_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, creds in self._entries.items() if creds.expiration <= now]
            for key in expired:
                del self._entries[key]
            if expired:
                self._persist()
        if expired:
            logger.info("Pruned %d expired MFA token(s)", len(expired))
        return len(expired)

    def reload(self) -> None:
        """Re-read the backend, picking up tokens cached by other processes."""
        with self._lock:
            self._entries = self._load()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._backend.delete()
        logger.info("MFA token cache cleared (memory and disk)")

    def entries(self) -> list[CacheEntry]:
        with self._lock:
            return [CacheEntry(key, creds) for key, creds in sorted(self._entries.items())]

    def describe(self) -> str:
        entries = self.entries()
        if not entries:
            return "No cached MFA tokens"
        now = self._clock()
        lines = ["Cached MFA tokens:"]
        for entry in entries:
            remaining = max(int((entry.expiration - now).total_seconds()), 0)
            hours, minutes = remaining // 3600, (remaining % 3600) // 60
            lines.append(f"  - {entry.key}: expires in {hours}h {minutes}m")
        return "\n".join(lines)

    # -- private helpers -------------------------------------------------------

    def _usable(self, credentials: TemporaryCredentials) -> bool:
        return credentials.expiration > self._clock() + self._safety_margin

    def _load(self) -> dict[str, TemporaryCredentials]:
        try:
            raw = self._backend.load()
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load MFA cache, starting empty: %s", exc)
            return {}

        now = self._clock()
        entries: dict[str, TemporaryCredentials] = {}
        for key, value in raw.items():
            try:
                credentials = TemporaryCredentials.from_sts(value["credentials"])
                expiration = parse_timestamp(value["expiration"])
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed MFA cache entry %s: %r", key, exc)
                continue
            if expiration <= now:
                logger.debug("Skipped expired MFA token for %s", key)
                continue
            entries[key] = dataclasses.replace(credentials, expiration=expiration)
        logger.debug("Loaded %d cached MFA token(s)", len(entries))
        return entries

    def _persist(self) -> None:
        data = {
            key: {"credentials": creds.to_sts(), "expiration": format_timestamp(creds.expiration)}
            for key, creds in self._entries.items()
        }
        try:
            self._backend.save(data)
        except OSError as exc:
            # The in-memory cache stays authoritative for this process.
            logger.warning("Failed to save MFA cache: %s", exc)
