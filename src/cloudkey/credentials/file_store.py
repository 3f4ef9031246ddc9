"""Shared credential file (``~/.aws/credentials``) reader/writer.

Pattern: Textual Section Rewrite
---------------------------------
The credential file is consumed by the provider CLI and by every SDK on the
machine, and users keep their own sections and comments in it.  The store
therefore never round-trips the file through ``configparser`` (which would
drop comments and reformat untouched sections).  Instead each mutation reads
the whole file as lines, cuts out the target section (header up to the next
header), appends the replacement block and writes the result back.

All mutations of one file are serialized twice: by a thread lock keyed on
the file's resolved path and shared by every ``CredentialFileStore`` in the
process, and by a ``filelock`` on a ``<file>.lock`` sibling that excludes
other processes (a second CLI invocation, the watch loop).  Reads for
``is_active_identity`` take no lock and may be stale by one write.

A mutation never writes back a file it could not read: only a missing file
counts as empty.
"""

from __future__ import annotations

import contextlib
import logging
import os
import pathlib
import tempfile
import threading
from collections.abc import Iterator

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)

ACCESS_KEY_ID = "aws_access_key_id"
SECRET_ACCESS_KEY = "aws_secret_access_key"
SESSION_TOKEN = "aws_session_token"

FILE_LOCK_TIMEOUT = 10

_locks: dict[pathlib.Path, threading.Lock] = {}
_locks_guard = threading.Lock()


def _lock_for(path: pathlib.Path) -> threading.Lock:
    key = path.expanduser().resolve()
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = _locks[key] = threading.Lock()
        return lock


class CredentialFileError(Exception):
    """Raised when the credential file cannot be read, locked or written."""


class SectionNotFoundError(CredentialFileError):
    """Raised when a section (or its key material) is missing."""


def _header(name: str) -> str:
    return f"[{name}]"


def _find_section(lines: list[str], name: str) -> tuple[int, int] | None:
    """Return the ``[start, end)`` line range of section *name*, if present."""
    header = _header(name)
    for start, line in enumerate(lines):
        if line.strip() == header:
            end = start + 1
            while end < len(lines) and not lines[end].strip().startswith("["):
                end += 1
            return start, end
    return None


def _parse_section(lines: list[str], name: str) -> dict[str, str] | None:
    span = _find_section(lines, name)
    if span is None:
        return None
    values: dict[str, str] = {}
    for line in lines[span[0] + 1:span[1]]:
        stripped = line.strip()
        if not stripped or stripped.startswith(("#", ";")) or "=" not in stripped:
            continue
        key, _, value = stripped.partition("=")
        values[key.strip()] = value.strip()
    return values


def _without_section(lines: list[str], name: str) -> list[str]:
    span = _find_section(lines, name)
    if span is None:
        return lines
    return lines[:span[0]] + lines[span[1]:]


def _with_section(lines: list[str], name: str, values: dict[str, str]) -> list[str]:
    result = list(_without_section(lines, name))
    if result and result[-1].strip():
        result.append("")
    result.append(_header(name))
    result.extend(f"{key} = {value}" for key, value in values.items())
    result.append("")
    return result


def _material(access_key_id: str, secret_access_key: str, session_token: str | None) -> dict[str, str]:
    values = {ACCESS_KEY_ID: access_key_id, SECRET_ACCESS_KEY: secret_access_key}
    if session_token:
        values[SESSION_TOKEN] = session_token
    return values


class CredentialFileStore:
    """Single source of truth for the on-disk shared credential file."""

    def __init__(
        self,
        path: str | pathlib.Path,
        active_identity_section: str = "default",
    ) -> None:
        self._path = pathlib.Path(path).expanduser()
        self._active_section = active_identity_section
        self._lock = _lock_for(self._path)
        self._lock_path = self._path.with_name(f"{self._path.name}.lock")
        self._file_lock = FileLock(self._lock_path, timeout=FILE_LOCK_TIMEOUT)

    @property
    def path(self) -> pathlib.Path:
        return self._path

    @property
    def active_identity_section(self) -> str:
        return self._active_section

    # -- mutations -------------------------------------------------------------

    def upsert_section(
        self,
        name: str,
        access_key_id: str,
        secret_access_key: str,
        session_token: str | None = None,
    ) -> None:
        """Replace section *name* wholesale with the given key material."""
        with self._exclusive():
            lines = self._read_lines(strict=True)
            self._write_lines(
                _with_section(lines, name, _material(access_key_id, secret_access_key, session_token))
            )
        logger.info("Wrote section [%s] (access key %s) to %s", name, access_key_id, self._path)

    def remove_section(self, name: str, clear_active_identity: bool = False) -> None:
        """Remove section *name*; no-op when absent.

        With *clear_active_identity* the reserved active section is removed as
        well, but only when it currently carries *name*'s access key.
        """
        with self._exclusive():
            lines = self._read_lines(strict=True)
            updated = lines
            if clear_active_identity and self._matches_active(lines, name):
                updated = _without_section(updated, self._active_section)
                logger.info("Cleared [%s], it held the credentials of [%s]", self._active_section, name)
            updated = _without_section(updated, name)
            if updated is lines:
                return
            self._write_lines(updated)
        logger.info("Removed section [%s] from %s", name, self._path)

    def set_as_active_identity(self, name: str) -> None:
        """Copy *name*'s key material into the reserved active section.

        Raises ``SectionNotFoundError`` when *name* has no section or no
        access key pair.  Callers check that the material is not expired.
        """
        with self._exclusive():
            lines = self._read_lines(strict=True)
            values = _parse_section(lines, name)
            if not values or not values.get(ACCESS_KEY_ID) or not values.get(SECRET_ACCESS_KEY):
                raise SectionNotFoundError(f"No credentials for [{name}] in {self._path}")
            material = _material(
                values[ACCESS_KEY_ID], values[SECRET_ACCESS_KEY], values.get(SESSION_TOKEN)
            )
            self._write_lines(_with_section(lines, self._active_section, material))
        logger.info("Set [%s] as the active identity [%s]", name, self._active_section)

    # -- reads -----------------------------------------------------------------

    def is_active_identity(self, name: str) -> bool:
        return self._matches_active(self._read_lines(), name)

    def has_section(self, name: str) -> bool:
        return _find_section(self._read_lines(), name) is not None

    def read_section(self, name: str) -> dict[str, str] | None:
        return _parse_section(self._read_lines(), name)

    def section_names(self) -> list[str]:
        names = []
        for line in self._read_lines():
            stripped = line.strip()
            if stripped.startswith("[") and stripped.endswith("]"):
                names.append(stripped[1:-1].strip())
        return names

    # -- private helpers -------------------------------------------------------

    def _matches_active(self, lines: list[str], name: str) -> bool:
        if name == self._active_section:
            return False
        active = _parse_section(lines, self._active_section) or {}
        target = _parse_section(lines, name) or {}
        active_key = active.get(ACCESS_KEY_ID, "")
        return bool(active_key) and active_key == target.get(ACCESS_KEY_ID, "")

    @contextlib.contextmanager
    def _exclusive(self) -> Iterator[None]:
        """Hold the in-process lock and the cross-process lock file."""
        with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                self._file_lock.acquire()
            except Timeout as exc:
                raise CredentialFileError(f"Timed out waiting for {self._lock_path}") from exc
            except OSError as exc:
                raise CredentialFileError(f"Cannot lock {self._path}: {exc}") from exc
            try:
                yield
            finally:
                self._file_lock.release()

    def _read_lines(self, strict: bool = False) -> list[str]:
        """Return the file's lines; a missing file has none.

        Any other read failure is an empty file for queries, but raises
        ``CredentialFileError`` with *strict* so a mutation cannot replace
        content it never saw.
        """
        try:
            content = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError) as exc:
            if strict:
                raise CredentialFileError(f"Cannot read {self._path}: {exc}") from exc
            logger.warning("Cannot read %s, treating it as empty: %s", self._path, exc)
            return []
        if not content:
            return []
        return content.split("\n")

    def _write_lines(self, lines: list[str]) -> None:
        content = "\n".join(lines)
        directory = self._path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".credentials-", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(content)
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, self._path)
            except BaseException:
                pathlib.Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise CredentialFileError(f"Cannot write {self._path}: {exc}") from exc
