"""
Exporter handlers for backup operations.

Supports:
- MySQLDumpExporter: Dump a MySQL/MariaDB database with mysqldump

An exporter writes one target's dump to a destination file or raises
ExportError. A failed export never leaves a partial file behind.
"""

import os
import time
import logging
import subprocess
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence

from .targets import Target

logger = logging.getLogger(__name__)


class ExportCause(str, Enum):
    TIMEOUT = 'timeout'
    TOOL_FAILURE = 'tool_failure'
    IO_ERROR = 'io_error'
    CANCELLED = 'cancelled'


class ExportError(Exception):
    """Raised when a target's dump cannot be produced."""

    def __init__(self, alias: str, cause: ExportCause, detail: str):
        super().__init__(f"Export of '{alias}' failed ({cause.value}): {detail}")
        self.alias = alias
        self.cause = cause
        self.detail = detail


class ExportStatus(str, Enum):
    SUCCESS = 'success'
    FAILED = 'failed'


@dataclass
class ExportOutcome:
    """Result of exporting one target."""
    target_alias: str
    status: ExportStatus
    dump_file_path: Optional[Path] = None
    error: Optional[ExportError] = None

    @property
    def error_detail(self) -> Optional[str]:
        return str(self.error) if self.error else None


class MySQLDumpExporter:
    """
    Handler for MySQL/MariaDB databases.

    Runs mysqldump with a transactionally consistent snapshot
    (--single-transaction) and includes routines, triggers and events.
    """

    # Dump file extension used for the workspace file names
    extension = 'sql'

    BASE_OPTIONS = (
        '--single-transaction',
        '--quick',
        '--routines',
        '--triggers',
        '--events',
    )

    def __init__(self, binary: str = 'mysqldump', timeout: float = 3600,
                 extra_args: Sequence[str] = (), poll_interval: float = 0.5):
        """
        Initialize exporter.

        Args:
            binary: mysqldump executable name or path
            timeout: Seconds one export may run before it is killed
            extra_args: Arguments appended to every invocation
            poll_interval: Seconds between timeout/cancellation checks
        """
        self.binary = binary
        self.timeout = timeout
        self.extra_args = tuple(extra_args)
        self.poll_interval = poll_interval

    def build_command(self, target: Target) -> list:
        """Build the mysqldump argument list. The password is not part of it."""
        return [
            self.binary,
            f'--host={target.host}',
            f'--port={target.port}',
            f'--user={target.user}',
            *self.BASE_OPTIONS,
            *self.extra_args,
            *target.extra_args,
            target.database_name,
        ]

    def export(self, target: Target, destination_file: Path,
               cancellation_check: Optional[Callable[[], bool]] = None) -> Path:
        """
        Dump a target into destination_file.

        Args:
            target: Database to dump
            destination_file: File to create with the dump
            cancellation_check: Optional function polled while the dump runs;
                returning True kills the dump

        Returns:
            Path of the written dump

        Raises:
            ExportError: If the dump times out, the tool fails, writing fails
                or the export is cancelled
        """
        destination_file = Path(destination_file)
        env = dict(os.environ)
        env['MYSQL_PWD'] = target.credential

        logger.debug(f"Dumping {target.alias} ({target.database_name}@{target.host}:{target.port})")

        try:
            with open(destination_file, 'wb') as output, tempfile.TemporaryFile() as errors:
                try:
                    process = subprocess.Popen(
                        self.build_command(target),
                        stdout=output,
                        stderr=errors,
                        env=env,
                    )
                except FileNotFoundError:
                    raise ExportError(target.alias, ExportCause.TOOL_FAILURE,
                                      f"dump tool not found: {self.binary}")

                self._wait(process, target, cancellation_check)

                if process.returncode != 0:
                    errors.seek(0)
                    stderr = errors.read().decode('utf-8', errors='replace').strip()
                    raise ExportError(
                        target.alias,
                        ExportCause.TOOL_FAILURE,
                        f"{self.binary} exited with code {process.returncode}: {stderr[-1000:] or 'no output'}"
                    )
        except ExportError:
            _remove_partial(destination_file)
            raise
        except OSError as e:
            _remove_partial(destination_file)
            raise ExportError(target.alias, ExportCause.IO_ERROR, str(e))
        except BaseException:
            # Interrupted: the caller still must not archive this file
            _remove_partial(destination_file)
            raise

        return destination_file

    def _wait(self, process: subprocess.Popen, target: Target,
              cancellation_check: Optional[Callable[[], bool]]):
        """Wait for the dump, killing it on timeout or cancellation."""
        deadline = time.monotonic() + self.timeout

        try:
            while True:
                try:
                    process.wait(timeout=self.poll_interval)
                    return
                except subprocess.TimeoutExpired:
                    pass

                if cancellation_check and cancellation_check():
                    _kill(process)
                    raise ExportError(target.alias, ExportCause.CANCELLED,
                                      "export cancelled after another target failed")

                if time.monotonic() >= deadline:
                    _kill(process)
                    raise ExportError(target.alias, ExportCause.TIMEOUT,
                                      f"no result after {self.timeout:g} seconds")
        except BaseException:
            if process.poll() is None:
                _kill(process)
            raise


def _kill(process: subprocess.Popen):
    process.kill()
    process.wait()


def _remove_partial(path: Path):
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove partial dump {path}: {e}")


def create_exporter(settings: dict) -> MySQLDumpExporter:
    """Factory function to create the exporter from settings."""
    return MySQLDumpExporter(
        binary=settings.get('MYSQLDUMP_BIN', 'mysqldump'),
        timeout=settings.get('EXPORT_TIMEOUT', 3600),
    )
