"""
Run history recording.

Writes one BackupRun row per pipeline run. Recording is never allowed to
change a run's outcome: database errors are logged and ignored.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from dbkeeper.models import BackupRun, init_history_db

logger = logging.getLogger(__name__)


class RunHistory:
    """Records pipeline runs in the history database."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._session = None
        self._record: Optional[BackupRun] = None

    @classmethod
    def from_url(cls, database_url: str) -> 'RunHistory':
        return cls(init_history_db(database_url))

    def start(self, run_id: str, started_at: datetime):
        """Create the record for a run (status: running)."""
        try:
            self._session = self.session_factory()
            self._record = BackupRun(run_id=run_id, status='running', started_at=started_at)
            self._session.add(self._record)
            self._session.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Failed to record run start in history: {e}")
            self._discard()

    def finish(self, status: str, logs=None, **fields):
        """
        Complete the record for the current run.

        Args:
            status: Terminal status (success, noop, partial, failed)
            logs: Run log lines
            **fields: Other BackupRun columns to set
        """
        if self._record is None:
            return

        try:
            self._record.status = status
            self._record.completed_at = datetime.utcnow()
            if logs is not None:
                self._record.logs = '\n'.join(logs)
            for name, value in fields.items():
                setattr(self._record, name, value)
            self._session.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Failed to record run result in history: {e}")
        finally:
            self._discard()

    def recent(self, limit: int = 10):
        """Return the latest runs, newest first."""
        session = self.session_factory()
        try:
            return (
                session.query(BackupRun)
                .order_by(BackupRun.started_at.desc(), BackupRun.id.desc())
                .limit(limit)
                .all()
            )
        finally:
            session.close()

    def _discard(self):
        if self._session is not None:
            self._session.close()
        self._session = None
        self._record = None
