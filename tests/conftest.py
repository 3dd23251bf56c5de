"""
Shared pytest fixtures for dbkeeper tests.

This module provides fixtures for:
- Validated test settings pointing at a temporary backup directory
- Targets and target files
- A recording notifier and a fake exporter (no mysqldump needed)
- A pipeline wired from those fakes
- Temporary file fixtures
"""

import json
import time
from pathlib import Path

import pytest

from dbkeeper.config import load_settings
from dbkeeper.notifications import Notifier
from dbkeeper.backup.executor import BackupPipeline
from dbkeeper.backup.exporter import ExportCause, ExportError
from dbkeeper.backup.targets import Target, TargetRegistry


class RecordingNotifier(Notifier):
    """Notifier that keeps messages in memory instead of sending them."""

    def __init__(self, hostname='test-host'):
        super().__init__(hostname, max_attempts=1, backoff=0)
        self.messages = []
        self.sent = []

    def notify(self, severity, message):
        self.messages.append((severity, message))
        return super().notify(severity, message)

    def send(self, text):
        self.sent.append(text)

    def of_severity(self, severity):
        return [message for sev, message in self.messages if sev == severity]


class FakeExporter:
    """
    Exporter double.

    Writes "-- dump of <alias>" for every target, unless the alias is listed
    in ``failures`` (raise ExportError, after writing a partial file and
    removing it as a real exporter must) or in ``slow`` (block until the
    cancellation check fires).
    """

    extension = 'sql'

    def __init__(self, failures=None, slow=(), delay=0.0):
        self.failures = failures or {}
        self.slow = set(slow)
        self.delay = delay
        self.calls = []

    def export(self, target, destination_file, cancellation_check=None):
        self.calls.append(target.alias)
        destination_file = Path(destination_file)

        if self.delay:
            time.sleep(self.delay)

        if target.alias in self.slow:
            destination_file.write_text('-- partial')
            deadline = time.monotonic() + 10
            while time.monotonic() < deadline:
                if cancellation_check and cancellation_check():
                    destination_file.unlink()
                    raise ExportError(target.alias, ExportCause.CANCELLED, "cancelled")
                time.sleep(0.01)
            destination_file.unlink()
            raise ExportError(target.alias, ExportCause.TIMEOUT, "never cancelled")

        if target.alias in self.failures:
            destination_file.write_text('-- partial')
            destination_file.unlink()
            raise ExportError(target.alias, ExportCause.TOOL_FAILURE, self.failures[target.alias])

        destination_file.write_text(f'-- dump of {target.alias}\n')
        return destination_file


def make_target(alias, **kwargs):
    """Build a Target with test defaults."""
    values = {
        'host': '127.0.0.1',
        'port': 3306,
        'user': 'backup',
        'credential': 'secret',
        'database_name': f'{alias}_db',
    }
    values.update(kwargs)
    return Target(alias=alias, **values)


@pytest.fixture
def backup_dir(tmp_path):
    """Backup directory for archives and workspaces."""
    path = tmp_path / 'db_backups'
    path.mkdir()
    return path


@pytest.fixture
def settings(tmp_path, backup_dir):
    """
    Validated settings from the testing configuration.

    Targets file: <tmp_path>/targets.json (not created).
    """
    return load_settings(
        'testing',
        BACKUP_DIR=str(backup_dir),
        LOG_DIR=None,
        TARGETS_FILE=str(tmp_path / 'targets.json'),
        SECRET_PASSPHRASE=None,
        SECRET_SALT=None,
    )


@pytest.fixture
def targets_file(tmp_path):
    """
    Write a targets file with two targets ('one' and 'two').
    """
    path = tmp_path / 'targets.json'
    path.write_text(json.dumps({
        'default_host': '10.0.0.5',
        'targets': [
            {'alias': 'one', 'port': 3306, 'user': 'backup', 'password': 'pw1', 'database': 'shop'},
            {'alias': 'two', 'host': 'db2', 'port': '3307', 'user': 'backup', 'password': 'pw2',
             'database': 'stats', 'hours': [0, 1, 2, 3]},
        ]
    }))
    return path


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def exporter():
    return FakeExporter()


@pytest.fixture
def make_pipeline(backup_dir, notifier, exporter):
    """
    Factory for pipelines over the given targets.

    Usage: make_pipeline([make_target('a')], export_policy='best_effort')
    """
    def _make(targets, **kwargs):
        kwargs.setdefault('exporter', exporter)
        kwargs.setdefault('notifier', notifier)
        kwargs.setdefault('backup_dir', backup_dir)
        return BackupPipeline(registry=TargetRegistry(targets), **kwargs)

    return _make


@pytest.fixture
def temp_files(tmp_path):
    """
    Create a workspace-like directory with dumps.

    Creates:
    - workspace/a.sql
    - workspace/b.sql
    - workspace/nested/c.sql
    """
    workspace = tmp_path / 'workspace'
    workspace.mkdir()
    (workspace / 'a.sql').write_text('-- dump of a\n')
    (workspace / 'b.sql').write_text('-- dump of b\n')

    nested_dir = workspace / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'c.sql').write_text('-- dump of c\n')

    return workspace
