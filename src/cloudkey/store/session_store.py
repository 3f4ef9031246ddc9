"""JSON persistence of configured sessions.

Holds the session list (``sessions.json``) and the most recently activated
session ids (``recent.json``).  Sessions are immutable, so callers write a
transition's result back with ``update``.
"""

from __future__ import annotations

import contextlib
import dataclasses
import json
import logging
import os
import pathlib
import tempfile
import threading
from collections.abc import Iterator
from typing import Any

from filelock import FileLock, Timeout

from cloudkey.auth.session import Session, SessionKind

logger = logging.getLogger(__name__)

MAX_RECENT = 5
FILE_LOCK_TIMEOUT = 10


class SessionStoreError(Exception):
    """Raised on alias conflicts, unknown sessions or unparseable imports."""


def _write_json(path: pathlib.Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}-", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        pathlib.Path(tmp_name).unlink(missing_ok=True)
        raise


def _read_json(path: pathlib.Path) -> Any:
    if not path.exists():
        return None
    try:
        with open(path, encoding="utf-8") as fh:
            return json.load(fh)
    except (OSError, ValueError) as exc:
        logger.warning("Failed to load %s: %s", path, exc)
        return None


class SessionStore:
    """Sessions keyed by id, persisted after every change.

    Every mutation holds a ``filelock`` on ``<sessions file>.lock``, re-reads
    both files and applies only its own change before writing, so a CLI
    command and the watch loop running side by side never drop each other's
    updates.  Queries answer from the last load; call ``reload`` to refresh.
    """

    def __init__(self, sessions_file: str | pathlib.Path, recent_file: str | pathlib.Path) -> None:
        self._sessions_file = pathlib.Path(sessions_file).expanduser()
        self._recent_file = pathlib.Path(recent_file).expanduser()
        self._lock = threading.RLock()
        self._file_lock = FileLock(
            self._sessions_file.with_name(f"{self._sessions_file.name}.lock"),
            timeout=FILE_LOCK_TIMEOUT,
        )
        self._sessions: dict[str, Session] = self._load_sessions()
        self._recent: list[str] = self._load_recent()
        logger.debug("SessionStore loaded %d session(s)", len(self._sessions))

    def reload(self) -> None:
        with self._lock:
            self._sessions = self._load_sessions()
            self._recent = self._load_recent()

    # -- queries ---------------------------------------------------------------

    def all(self) -> list[Session]:
        with self._lock:
            return list(self._sessions.values())

    def get(self, session_id: str) -> Session:
        with self._lock:
            try:
                return self._sessions[session_id]
            except KeyError:
                raise SessionStoreError(f"Unknown session id: {session_id}") from None

    def find_by_alias(self, alias: str) -> Session:
        with self._lock:
            for session in self._sessions.values():
                if session.alias == alias:
                    return session
        raise SessionStoreError(f"No session named '{alias}'")

    def recent(self) -> list[Session]:
        with self._lock:
            return [self._sessions[i] for i in self._recent if i in self._sessions]

    # -- mutations -------------------------------------------------------------

    def add(self, session: Session) -> Session:
        with self._mutating():
            if any(s.alias == session.alias for s in self._sessions.values()):
                raise SessionStoreError(f"A session named '{session.alias}' already exists")
            self._sessions[session.id] = session
            self._save()
        return session

    def update(self, session: Session) -> Session:
        with self._mutating():
            if session.id not in self._sessions:
                raise SessionStoreError(f"Unknown session id: {session.id}")
            clash = next(
                (s for s in self._sessions.values() if s.alias == session.alias and s.id != session.id),
                None,
            )
            if clash is not None:
                raise SessionStoreError(f"A session named '{session.alias}' already exists")
            self._sessions[session.id] = session
            self._save()
        return session

    def update_many(self, sessions: list[Session]) -> None:
        """Write back *sessions* only; ids no longer on disk are ignored."""
        if not sessions:
            return
        with self._mutating():
            for session in sessions:
                if session.id in self._sessions:
                    self._sessions[session.id] = session
            self._save()

    def remove(self, session_id: str) -> None:
        with self._mutating():
            if self._sessions.pop(session_id, None) is None:
                raise SessionStoreError(f"Unknown session id: {session_id}")
            if session_id in self._recent:
                self._recent.remove(session_id)
                self._save_recent()
            self._save()

    def mark_recent(self, session_id: str) -> None:
        with self._mutating():
            if session_id in self._recent:
                self._recent.remove(session_id)
            self._recent.insert(0, session_id)
            del self._recent[MAX_RECENT:]
            self._save_recent()

    # -- export / import -------------------------------------------------------

    def export_profiles(self) -> str:
        with self._lock:
            exports = [s.configuration() for s in self._sessions.values()]
        return json.dumps(exports, indent=2, sort_keys=True)

    def import_profiles(self, raw: str, replace: bool = False) -> int:
        """Import exported profiles; returns how many sessions were added.

        With *replace* the current sessions are discarded first; otherwise
        profiles whose alias already exists are skipped.
        """
        try:
            exports = json.loads(raw)
            if not isinstance(exports, list):
                raise ValueError("expected a JSON list of profiles")
            imported = [self._from_export(item) for item in exports]
        except (ValueError, KeyError, TypeError) as exc:
            raise SessionStoreError(f"Cannot import profiles: {exc}") from exc

        with self._mutating():
            if replace:
                self._sessions = {}
                self._recent = []
                self._save_recent()
            aliases = {s.alias for s in self._sessions.values()}
            added = 0
            for session in imported:
                if session.alias in aliases:
                    logger.info("Skipping imported profile %s: alias exists", session.alias)
                    continue
                self._sessions[session.id] = session
                aliases.add(session.alias)
                added += 1
            self._save()
        logger.info("Imported %d profile(s)", added)
        return added

    @staticmethod
    def _from_export(item: dict[str, Any]) -> Session:
        kind = SessionKind(item["kind"])
        return Session(
            alias=item["alias"],
            kind=kind,
            region=item.get("region") or "",
            account_id=item.get("account_id") or "",
            group=item.get("group"),
            role_arn=item.get("role_arn"),
            mfa_device_id=item.get("mfa_device_id"),
            source_identity=item.get("source_identity"),
        )

    # -- private helpers -------------------------------------------------------

    @contextlib.contextmanager
    def _mutating(self) -> Iterator[None]:
        with self._lock:
            try:
                self._sessions_file.parent.mkdir(parents=True, exist_ok=True)
                self._file_lock.acquire()
            except Timeout as exc:
                raise SessionStoreError(f"Timed out waiting for {self._file_lock.lock_file}") from exc
            try:
                self.reload()
                yield
            finally:
                self._file_lock.release()

    def _load_sessions(self) -> dict[str, Session]:
        raw = _read_json(self._sessions_file)
        if raw is None:
            return {}
        sessions: dict[str, Session] = {}
        for item in raw if isinstance(raw, list) else []:
            try:
                session = Session.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable session entry: %r", exc)
                continue
            sessions[session.id] = session
        return sessions

    def _load_recent(self) -> list[str]:
        raw = _read_json(self._recent_file)
        if not isinstance(raw, list):
            return []
        return [str(i) for i in raw][:MAX_RECENT]

    def _save(self) -> None:
        _write_json(self._sessions_file, [s.to_dict() for s in self._sessions.values()])

    def _save_recent(self) -> None:
        _write_json(self._recent_file, self._recent)


def rename(session: Session, alias: str) -> Session:
    """Return *session* under a new alias; only allowed while inactive."""
    if session.active:
        raise SessionStoreError("Deactivate the session before renaming it")
    return dataclasses.replace(session, alias=alias)
