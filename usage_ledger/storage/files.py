"""
File persistence for usage records.

Stores one JSON document per user under a storage directory.
"""

import json
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Dict, Optional, Set

from .models import UserUsageRecord

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base class for usage file errors.

    Load errors carry an empty ``record`` the caller can keep serving from.
    """
    def __init__(self, message: str, user_id: str, record: Optional[UserUsageRecord] = None):
        super().__init__(message)
        self.user_id = user_id
        self.record = record


class LedgerCorruptionError(LedgerError):
    """Raised when a usage file exists but cannot be parsed."""


class LedgerReadError(LedgerError):
    """Raised when a usage file exists but cannot be read."""


class LedgerWriteError(LedgerError):
    """Raised when a usage file cannot be written."""


class LedgerFileStorage:
    """Durable storage of usage records as ``<storage_dir>/<user_id>.json``.

    Writes go to a temporary file in the same directory and are moved into
    place with ``os.replace``, so readers never observe a half-written file.
    Writes for the same user are serialized by a per-user file lock.
    """

    def __init__(self, storage_dir: str = "logs"):
        self.storage_dir = Path(storage_dir)
        self._registry_lock = threading.Lock()
        self._file_locks: Dict[str, threading.Lock] = {}
        self._written_revisions: Dict[str, int] = {}
        self._corrupt: Set[str] = set()
        self._unreadable: Set[str] = set()

    def path_for(self, user_id: str) -> Path:
        """Return the file path for a user.

        Raises:
            ValueError: If the id is empty or would escape the storage directory
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")
        if "/" in user_id or "\\" in user_id or user_id in (".", ".."):
            raise ValueError(f"Invalid user_id for file storage: {user_id!r}")
        return self.storage_dir / f"{user_id}.json"

    def _file_lock(self, user_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._file_locks.get(user_id)
            if lock is None:
                lock = self._file_locks[user_id] = threading.Lock()
            return lock

    def load(self, user_id: str, user_name: str = "") -> UserUsageRecord:
        """Load a user's record, creating an empty one if none exists.

        A missing file is not an error: an empty record is written right
        away so a restarted process sees the same state.

        Args:
            user_id: Opaque user identifier
            user_name: Display name used for a newly created record

        Returns:
            The stored record, or a new empty record

        Raises:
            LedgerCorruptionError: If the file exists but cannot be parsed.
                The file is left untouched until the next successful save.
            LedgerReadError: If the file exists but cannot be read. Saves for
                the user are refused until a later load succeeds.
            LedgerWriteError: If a new record cannot be written
        """
        path = self.path_for(user_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("No usage file for user %s, creating one", user_id)
            self._mark_unreadable(user_id, False)
            record = UserUsageRecord(user_id=user_id, user_name=user_name)
            self.save(record)
            return record
        except OSError as e:
            self._mark_unreadable(user_id, True)
            raise LedgerReadError(
                f"Error reading usage file {path}: {e}",
                user_id,
                UserUsageRecord(user_id=user_id, user_name=user_name),
            ) from e

        self._mark_unreadable(user_id, False)
        try:
            record = UserUsageRecord.from_dict(user_id, json.loads(raw))
        except ValueError as e:
            # json.JSONDecodeError is a ValueError subclass
            with self._registry_lock:
                self._corrupt.add(user_id)
            raise LedgerCorruptionError(
                f"Corrupt usage file {path}: {e}",
                user_id,
                UserUsageRecord(user_id=user_id, user_name=user_name),
            ) from e

        if not record.user_name and user_name:
            record.user_name = user_name
        return record

    def save(self, record: UserUsageRecord, revision: Optional[int] = None) -> bool:
        """Write the full record, replacing the user's file atomically.

        Args:
            record: Snapshot to persist. It is serialized as-is.
            revision: Optional monotonically increasing snapshot number.
                A snapshot not newer than the last written one is skipped.

        Returns:
            True if the file was written, False if the snapshot was stale

        Raises:
            LedgerWriteError: If the file cannot be written, or if the
                existing file could not be read on the last load
        """
        path = self.path_for(record.user_id)
        payload = json.dumps(record.to_dict(), indent=2, sort_keys=True)

        with self._file_lock(record.user_id):
            if revision is not None:
                if revision <= self._written_revisions.get(record.user_id, -1):
                    return False

            with self._registry_lock:
                unreadable = record.user_id in self._unreadable
            if unreadable:
                raise LedgerWriteError(
                    f"Refusing to overwrite unreadable usage file {path}", record.user_id
                )

            tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
            try:
                self.storage_dir.mkdir(parents=True, exist_ok=True)
                tmp_path.write_text(payload, encoding="utf-8")
                self._preserve_corrupt_file(record.user_id, path)
                os.replace(tmp_path, path)
            except OSError as e:
                try:
                    tmp_path.unlink()
                except OSError:
                    pass
                raise LedgerWriteError(
                    f"Error writing usage file {path}: {e}", record.user_id
                ) from e

            if revision is not None:
                self._written_revisions[record.user_id] = revision
        return True

    def is_corrupt(self, user_id: str) -> bool:
        """Whether the user's file failed to parse and has not been rewritten."""
        with self._registry_lock:
            return user_id in self._corrupt

    def is_intact(self, user_id: str) -> bool:
        """Whether the user's file was read and parsed on the last attempt."""
        with self._registry_lock:
            return user_id not in self._corrupt and user_id not in self._unreadable

    def _mark_unreadable(self, user_id: str, unreadable: bool) -> None:
        with self._registry_lock:
            if unreadable:
                self._unreadable.add(user_id)
            else:
                self._unreadable.discard(user_id)

    def _preserve_corrupt_file(self, user_id: str, path: Path) -> None:
        """Move a corrupt file aside before it is overwritten. Holds the file lock."""
        with self._registry_lock:
            if user_id not in self._corrupt:
                return
        if path.exists():
            backup = path.with_name(f"{path.name}.{uuid.uuid4().hex[:8]}.corrupt")
            os.replace(path, backup)
            logger.warning("Preserved corrupt usage file for user %s as %s", user_id, backup)
        with self._registry_lock:
            self._corrupt.discard(user_id)
