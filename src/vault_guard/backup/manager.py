"""Backup management for Vault Guard.

Before an approved destructive operation runs, the prior content of the
resource is written to a flat backup directory as
``{normalized_key}.{YYYYMMDD-HHMMSS}.backup`` (UTC). File names sort
lexicographically in chronological order, and each resource keeps at most
``keep_last_n`` copies (0 keeps everything).
"""

import os
import re
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import structlog

from ..safety.models import BackupWriteFailure
from .models import BackupRecord

logger = structlog.get_logger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
BACKUP_SUFFIX = ".backup"

_BACKUP_NAME = re.compile(r"^(?P<key>.+)\.(?P<timestamp>\d{8}-\d{6})\.backup$")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BackupManager:
    """Writes and rotates per-resource safety copies."""

    def __init__(
        self,
        backup_dir: Union[str, Path],
        keep_last_n: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the backup manager.

        Args:
            backup_dir: Flat directory holding every backup file
            keep_last_n: Copies kept per resource, 0 for unbounded
            clock: Time source, defaults to the current UTC time
        """
        self.backup_dir = Path(backup_dir).expanduser()
        self.keep_last_n = max(0, keep_last_n)
        self.clock = clock or _utc_now
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @staticmethod
    def normalize_key(resource: str) -> str:
        """Turn a vault path into a single-segment-safe key.

        ``Daily/2024-01-01.md`` becomes ``Daily__2024-01-01.md``.
        """
        key = resource.strip().replace("\\", "/").strip("/")
        key = "__".join(part for part in key.split("/") if part)
        key = _UNSAFE_CHARS.sub("_", key)
        return key or "_root"

    def snapshot(self, resource: str, content: str) -> BackupRecord:
        """Persist prior content for a resource, then rotate old copies.

        Args:
            resource: Vault path or resource key
            content: Verbatim prior payload

        Returns:
            BackupRecord for the written file

        Raises:
            BackupWriteFailure: If the copy could not be written
        """
        key = self.normalize_key(resource)

        with self._lock_for(key):
            record = self._write(key, content)
            self.logger.info(
                "Backup written",
                resource_key=key,
                backup_file=record.filename,
                size=len(content),
            )
            self._rotate_locked(key)

        return record

    def rotate(self, resource: str) -> List[BackupRecord]:
        """Delete the oldest copies beyond ``keep_last_n``.

        Returns:
            Records that were deleted, oldest first
        """
        key = self.normalize_key(resource)
        with self._lock_for(key):
            return self._rotate_locked(key)

    def list_backups(self, resource: str) -> List[BackupRecord]:
        """List the copies of one resource, oldest first."""
        key = self.normalize_key(resource)
        if not self.backup_dir.is_dir():
            return []

        records = []
        for entry in self.backup_dir.iterdir():
            match = _BACKUP_NAME.match(entry.name)
            if not match or match.group("key") != key or not entry.is_file():
                continue
            records.append(
                BackupRecord(
                    resource_key=key,
                    timestamp=datetime.strptime(match.group("timestamp"), TIMESTAMP_FORMAT),
                    path=entry,
                )
            )

        return sorted(records, key=lambda record: record.filename)

    def _write(self, key: str, content: str) -> BackupRecord:
        tmp_name: Optional[str] = None

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)

            timestamp = self._next_timestamp(key)
            target = self._backup_path(key, timestamp)
            while target.exists():
                timestamp += timedelta(seconds=1)
                target = self._backup_path(key, timestamp)

            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                newline="",
                dir=self.backup_dir,
                prefix=f".{key}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                tmp_name = handle.name
                handle.write(content)

            os.replace(tmp_name, target)
            tmp_name = None

        except OSError as e:
            self.logger.error(
                "Failed to write backup",
                resource_key=key,
                backup_dir=str(self.backup_dir),
                error=str(e),
            )
            raise BackupWriteFailure(
                f"Could not back up {key}: {e}", key, str(self.backup_dir)
            ) from e

        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

        return BackupRecord(resource_key=key, timestamp=timestamp, path=target)

    def _next_timestamp(self, key: str) -> datetime:
        """Return a UTC timestamp later than every existing copy of ``key``.

        File names must sort in write order, so a clock that repeats a
        second or steps backwards is pushed past the newest copy.
        """
        now = self.clock()
        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc)
        now = now.replace(microsecond=0, tzinfo=None)

        records = self.list_backups(key)
        if records:
            now = max(now, records[-1].timestamp + timedelta(seconds=1))
        return now

    def _rotate_locked(self, key: str) -> List[BackupRecord]:
        if self.keep_last_n == 0:
            return []

        records = self.list_backups(key)
        excess = len(records) - self.keep_last_n
        if excess <= 0:
            return []

        deleted = []
        for record in records[:excess]:
            try:
                record.path.unlink()
                deleted.append(record)
            except OSError as e:
                self.logger.warning(
                    "Failed to delete old backup",
                    resource_key=key,
                    backup_file=record.filename,
                    error=str(e),
                )

        self.logger.info(
            "Backups rotated",
            resource_key=key,
            deleted=len(deleted),
            kept=len(records) - len(deleted),
        )
        return deleted

    def _backup_path(self, key: str, timestamp: datetime) -> Path:
        return self.backup_dir / f"{key}.{timestamp.strftime(TIMESTAMP_FORMAT)}{BACKUP_SUFFIX}"

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]
