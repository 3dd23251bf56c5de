"""
Retention policy enforcement for backup archives.

Deletes archives in the backup directory whose last-modified time is more
than the retention threshold in the past. Only direct entries matching the
archive naming convention are considered.
"""

import time
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, List, Optional

from .compression import is_archive_name

logger = logging.getLogger(__name__)


class PruneError(Exception):
    """Raised when one or more old archives could not be listed or deleted."""

    def __init__(self, message: str, errors: List[str] = None, deleted: int = 0):
        super().__init__(message)
        self.errors = errors or []
        self.deleted = deleted


class RetentionPruner:
    """
    Manages retention policy enforcement for the archive directory.
    """

    def __init__(self, archive_dir, max_age: timedelta):
        """
        Initialize retention pruner.

        Args:
            archive_dir: Directory holding the archives
            max_age: Archives strictly older than this are deleted
        """
        self.archive_dir = Path(archive_dir)
        self.max_age = max_age
        self.logs = []

    def find_expired(self, now: Optional[float] = None, exclude: Iterable = ()) -> List[Path]:
        """
        List archives older than max_age.

        Args:
            now: Reference time as a POSIX timestamp (default: current time)
            exclude: Archive paths never to report, such as the one a run just created

        Raises:
            PruneError: If the directory cannot be listed
        """
        if now is None:
            now = time.time()

        cutoff = now - self.max_age.total_seconds()
        excluded = {Path(p).name for p in exclude}

        try:
            entries = sorted(self.archive_dir.iterdir())
        except OSError as e:
            raise PruneError(f"Failed to list archive directory {self.archive_dir}: {e}")

        expired = []
        for entry in entries:
            if entry.name in excluded or not is_archive_name(entry.name):
                continue
            try:
                if not entry.is_file():
                    continue
                mtime = entry.stat().st_mtime
            except FileNotFoundError:
                # Removed by someone else since listing
                continue

            if mtime < cutoff:
                expired.append(entry)

        return expired

    def prune(self, now: Optional[float] = None, exclude: Iterable = ()) -> int:
        """
        Delete every expired archive.

        Individual deletion failures do not stop the pass; they are collected
        and raised together once all candidates have been tried.

        Args:
            now: Reference time as a POSIX timestamp (default: current time)
            exclude: Archive paths to keep regardless of age

        Returns:
            Number of archives deleted

        Raises:
            PruneError: If listing fails or any deletion failed
        """
        self._log(f"Pruning archives older than {self.max_age.days} days in {self.archive_dir}")

        expired = self.find_expired(now, exclude)

        deleted_count = 0
        errors = []
        for path in expired:
            try:
                path.unlink()
                deleted_count += 1
                self._log(f"Deleted old archive: {path.name}")
            except FileNotFoundError:
                self._log(f"Archive already gone: {path.name}")
            except OSError as e:
                error_msg = f"Failed to delete {path.name}: {e}"
                self._log(error_msg)
                errors.append(error_msg)

        self._log(f"Retention enforcement complete. Deleted: {deleted_count}, Errors: {len(errors)}")

        if errors:
            raise PruneError(
                f"{len(errors)} old archive(s) could not be deleted: " + '; '.join(errors),
                errors=errors,
                deleted=deleted_count,
            )

        return deleted_count

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def enforce_retention(archive_dir, retention_days: int) -> int:
    """
    Prune archives older than retention_days.

    Returns:
        Number of archives deleted
    """
    pruner = RetentionPruner(archive_dir, timedelta(days=retention_days))
    return pruner.prune()
