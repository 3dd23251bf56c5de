"""
Unit tests for the backup pipeline (dbkeeper/backup/executor.py).

Runs BackupPipeline against the FakeExporter and RecordingNotifier doubles.
"""

import os
import re
import signal
import shutil
import sys
import tarfile
import time
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from dbkeeper.backup.compression import ArchiveError
from dbkeeper.backup.executor import (
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_SUCCESS,
    InterruptGuard,
    PipelineState,
    RunInterrupted,
    generate_run_id,
)
from dbkeeper.backup.exporter import ExportStatus
from dbkeeper.backup.retention import PruneError
from dbkeeper.backup.workspace import WORKSPACE_PREFIX
from dbkeeper.cli import interrupt_handlers
from dbkeeper.history import RunHistory
from dbkeeper.notifications import Severity
from tests.conftest import FakeExporter, RecordingNotifier, make_target

RUN_TIME = datetime(2024, 1, 15, 2, 0, 0)


def fixed_clock(moment=RUN_TIME):
    return lambda: moment


def workspaces(backup_dir):
    return [p for p in backup_dir.iterdir() if p.name.startswith(WORKSPACE_PREFIX)]


def archives(backup_dir):
    return sorted(p for p in backup_dir.iterdir() if p.is_file())


class TestSuccessfulRun:
    """Test runs where every export succeeds."""

    def test_all_targets_archived(self, make_pipeline, backup_dir, notifier):
        pipeline = make_pipeline([make_target('a'), make_target('b')], clock=fixed_clock())

        result = pipeline.execute()

        assert result.exit_code == EXIT_SUCCESS
        assert result.succeeded
        assert result.status == 'success'
        assert result.state == PipelineState.DONE
        assert result.archive.path == backup_dir / '2024-01-15_02-00-00-backup.tar.gz'

        with tarfile.open(result.archive.path, 'r:gz') as tar:
            assert sorted(tar.getnames()) == ['a.sql', 'b.sql']

        assert workspaces(backup_dir) == []
        assert notifier.messages == []

    def test_outcomes_in_target_order(self, make_pipeline):
        result = make_pipeline([make_target('b'), make_target('a')], clock=fixed_clock()).execute()

        assert [o.target_alias for o in result.outcomes] == ['b', 'a']
        assert all(o.status == ExportStatus.SUCCESS for o in result.outcomes)

    def test_archive_uses_configured_format(self, make_pipeline, backup_dir):
        result = make_pipeline([make_target('a')], archive_format='zip', clock=fixed_clock()).execute()

        assert result.archive.path.name == '2024-01-15_02-00-00-backup.zip'

    def test_notify_on_success(self, make_pipeline, notifier):
        make_pipeline([make_target('a')], notify_on_success=True, clock=fixed_clock()).execute()

        info = notifier.of_severity(Severity.INFO)
        assert len(info) == 1
        assert '2024-01-15_02-00-00-backup.tar.gz' in info[0]

    def test_run_prunes_expired_archives(self, make_pipeline, backup_dir):
        old = backup_dir / '2024-01-01_02-00-00-backup.tar.gz'
        old.write_bytes(b'old')
        ten_days_ago = time.time() - 10 * 24 * 60 * 60
        os.utime(old, (ten_days_ago, ten_days_ago))

        result = make_pipeline([make_target('a')], retention_days=7, clock=fixed_clock()).execute()

        assert result.pruned == 1
        assert not old.exists()
        assert result.archive.path.exists()

    def test_zero_retention_keeps_the_new_archive(self, make_pipeline, backup_dir):
        old = backup_dir / '2024-01-14_02-00-00-backup.tar.gz'
        old.write_bytes(b'old')
        one_day_ago = time.time() - 24 * 60 * 60
        os.utime(old, (one_day_ago, one_day_ago))

        result = make_pipeline([make_target('a')], retention_days=0, clock=fixed_clock()).execute()

        assert result.succeeded
        assert result.pruned == 1
        assert not old.exists()
        assert archives(backup_dir) == [result.archive.path]

    def test_run_id_is_unique(self):
        first = generate_run_id(RUN_TIME)
        second = generate_run_id(RUN_TIME)

        assert first != second
        assert re.match(r'^2024-01-15_02-00-00-[0-9a-f]{6}$', first)

    def test_pipeline_can_run_twice(self, make_pipeline, backup_dir):
        moments = iter([RUN_TIME, datetime(2024, 1, 16, 2, 0, 0)])
        pipeline = make_pipeline([make_target('a')], clock=lambda: next(moments))

        first = pipeline.execute()
        second = pipeline.execute()

        assert first.context.run_id != second.context.run_id
        assert len(archives(backup_dir)) == 2


class TestNoTargets:
    """Test runs with nothing to back up."""

    def test_empty_registry_is_noop(self, make_pipeline, backup_dir, notifier):
        result = make_pipeline([], clock=fixed_clock()).execute()

        assert result.exit_code == EXIT_SUCCESS
        assert result.status == 'noop'
        assert result.archive is None
        assert archives(backup_dir) == []
        assert workspaces(backup_dir) == []
        assert len(notifier.of_severity(Severity.INFO)) == 1
        assert notifier.of_severity(Severity.ERROR) == []

    def test_targets_outside_their_hours_are_skipped(self, make_pipeline, exporter):
        targets = [make_target('nightly', hours=(0, 1, 2, 3)), make_target('early', hours=(5,))]

        result = make_pipeline(targets, clock=fixed_clock()).execute()

        assert exporter.calls == ['nightly']
        assert [o.target_alias for o in result.outcomes] == ['nightly']

    def test_no_target_due_is_noop(self, make_pipeline, exporter, notifier):
        result = make_pipeline([make_target('day', hours=(12,))], clock=fixed_clock()).execute()

        assert result.status == 'noop'
        assert exporter.calls == []
        assert len(notifier.of_severity(Severity.INFO)) == 1


class TestFailFast:
    """Test the default policy: any failed export aborts the run."""

    def test_failed_export_produces_no_archive(self, make_pipeline, backup_dir, notifier):
        exporter = FakeExporter(failures={'b': 'Access denied'})
        pipeline = make_pipeline([make_target('a'), make_target('b'), make_target('c')],
                                 exporter=exporter, clock=fixed_clock())

        result = pipeline.execute()

        assert result.exit_code == EXIT_FAILURE
        assert result.status == 'failed'
        assert result.state == PipelineState.FAILED
        assert result.failed_stage == 'export'
        assert result.archive is None
        assert archives(backup_dir) == []
        assert workspaces(backup_dir) == []
        assert exporter.calls == ['a', 'b']

        errors = notifier.of_severity(Severity.ERROR)
        assert len(errors) == 1
        assert "'b'" in errors[0]
        assert 'Access denied' in errors[0]
        assert 'No archive was created' in errors[0]

    def test_notification_format(self, make_pipeline, notifier):
        exporter = FakeExporter(failures={'a': 'boom'})
        make_pipeline([make_target('a')], exporter=exporter, clock=fixed_clock()).execute()

        assert notifier.sent[0].startswith('test-host - ERROR: ')

    def test_failed_export_does_not_prune(self, make_pipeline, backup_dir):
        old = backup_dir / '2024-01-01_02-00-00-backup.tar.gz'
        old.write_bytes(b'old')
        ten_days_ago = time.time() - 10 * 24 * 60 * 60
        os.utime(old, (ten_days_ago, ten_days_ago))

        exporter = FakeExporter(failures={'a': 'boom'})
        make_pipeline([make_target('a')], exporter=exporter, clock=fixed_clock()).execute()

        assert old.exists()

    def test_concurrent_failure_cancels_in_flight_exports(self, make_pipeline, backup_dir, notifier):
        exporter = FakeExporter(failures={'b': 'Lost connection'}, slow={'a'})
        pipeline = make_pipeline([make_target('a'), make_target('b')], exporter=exporter,
                                 export_workers=2, cancel_grace_seconds=5, clock=fixed_clock())

        result = pipeline.execute()

        assert result.exit_code == EXIT_FAILURE
        assert result.error.alias == 'b'
        assert archives(backup_dir) == []
        assert workspaces(backup_dir) == []

        errors = notifier.of_severity(Severity.ERROR)
        assert len(errors) == 1
        assert "'b'" in errors[0]

    def test_concurrent_success(self, make_pipeline):
        exporter = FakeExporter(delay=0.01)
        targets = [make_target(alias) for alias in ('a', 'b', 'c', 'd')]

        result = make_pipeline(targets, exporter=exporter, export_workers=3, clock=fixed_clock()).execute()

        assert result.succeeded
        assert [o.target_alias for o in result.outcomes] == ['a', 'b', 'c', 'd']
        assert sorted(result.archive.members) == ['a.sql', 'b.sql', 'c.sql', 'd.sql']


class TestBestEffort:
    """Test the best_effort policy."""

    def test_partial_failure_archives_the_rest(self, make_pipeline, notifier):
        exporter = FakeExporter(failures={'b': 'Access denied'})
        pipeline = make_pipeline([make_target('a'), make_target('b'), make_target('c')],
                                 exporter=exporter, export_policy='best_effort', clock=fixed_clock())

        result = pipeline.execute()

        assert result.exit_code == EXIT_SUCCESS
        assert result.status == 'partial'
        assert result.archive.members == ['a.sql', 'c.sql']

        warnings = notifier.of_severity(Severity.WARNING)
        assert len(warnings) == 1
        assert "'b'" in warnings[0]
        assert notifier.of_severity(Severity.ERROR) == []

    def test_all_failed_is_fatal(self, make_pipeline, backup_dir, notifier):
        exporter = FakeExporter(failures={'a': 'down', 'b': 'down'})
        pipeline = make_pipeline([make_target('a'), make_target('b')], exporter=exporter,
                                 export_policy='best_effort', clock=fixed_clock())

        result = pipeline.execute()

        assert result.exit_code == EXIT_FAILURE
        assert archives(backup_dir) == []
        assert len(notifier.of_severity(Severity.ERROR)) == 1

    def test_partial_concurrent(self, make_pipeline):
        exporter = FakeExporter(failures={'a': 'down'})
        pipeline = make_pipeline([make_target('a'), make_target('b'), make_target('c')],
                                 exporter=exporter, export_policy='best_effort',
                                 export_workers=3, clock=fixed_clock())

        result = pipeline.execute()

        assert result.status == 'partial'
        assert [o.status for o in result.outcomes] == [
            ExportStatus.FAILED, ExportStatus.SUCCESS, ExportStatus.SUCCESS
        ]


class TestStageFailures:
    """Test failures outside the export stage."""

    def test_workspace_failure(self, tmp_path, make_pipeline, notifier, exporter):
        not_a_dir = tmp_path / 'file'
        not_a_dir.write_text('x')

        result = make_pipeline([make_target('a')], backup_dir=not_a_dir, clock=fixed_clock()).execute()

        assert result.exit_code == EXIT_FAILURE
        assert result.failed_stage == 'workspace'
        assert exporter.calls == []
        assert len(notifier.of_severity(Severity.ERROR)) == 1

    def test_archive_failure(self, make_pipeline, backup_dir, notifier):
        pipeline = make_pipeline([make_target('a')], clock=fixed_clock())

        with patch('dbkeeper.backup.executor.archive', side_effect=ArchiveError("disk full")):
            result = pipeline.execute()

        assert result.exit_code == EXIT_FAILURE
        assert result.failed_stage == 'archive'
        assert workspaces(backup_dir) == []

        errors = notifier.of_severity(Severity.ERROR)
        assert len(errors) == 1
        assert 'disk full' in errors[0]

    def test_prune_failure_only_warns(self, make_pipeline, notifier):
        pipeline = make_pipeline([make_target('a')], clock=fixed_clock())

        with patch.object(pipeline.pruner, 'prune',
                          side_effect=PruneError("1 archive(s) could not be deleted", ['x: denied'], deleted=2)):
            result = pipeline.execute()

        assert result.exit_code == EXIT_SUCCESS
        assert result.status == 'success'
        assert result.pruned == 2
        assert result.archive.path.exists()
        assert notifier.of_severity(Severity.ERROR) == []
        assert len(notifier.of_severity(Severity.WARNING)) == 1

    def test_unrestricted_permissions_warn(self, make_pipeline, notifier):
        pipeline = make_pipeline([make_target('a')], clock=fixed_clock())

        with patch('dbkeeper.backup.compression.os.chmod', side_effect=PermissionError("denied")):
            result = pipeline.execute()

        assert result.succeeded
        assert result.archive.permissions_restricted is False
        assert len(notifier.of_severity(Severity.WARNING)) == 1

    def test_unexpected_error_is_reported(self, make_pipeline, backup_dir, notifier):
        exporter = MagicMock(extension='sql')
        exporter.export.side_effect = RuntimeError("unexpected")

        result = make_pipeline([make_target('a')], exporter=exporter, clock=fixed_clock()).execute()

        assert result.exit_code == EXIT_FAILURE
        assert result.failed_stage == 'exporting'
        assert workspaces(backup_dir) == []
        assert len(notifier.of_severity(Severity.ERROR)) == 1

    def test_notification_failure_does_not_change_outcome(self, make_pipeline, notifier):
        notifier.send = MagicMock(side_effect=RuntimeError("telegram down"))
        exporter = FakeExporter(failures={'a': 'boom'})

        result = make_pipeline([make_target('a')], exporter=exporter, clock=fixed_clock()).execute()

        assert result.exit_code == EXIT_FAILURE
        assert result.failed_stage == 'export'


class TestInterruption:
    """Test interruption by signal or keyboard."""

    @pytest.mark.parametrize("interruption", [KeyboardInterrupt(), RunInterrupted(15)])
    def test_interrupted_run_cleans_up(self, make_pipeline, backup_dir, notifier, interruption):
        exporter = MagicMock(extension='sql')
        exporter.export.side_effect = interruption

        result = make_pipeline([make_target('a')], exporter=exporter, clock=fixed_clock()).execute()

        assert result.exit_code == EXIT_INTERRUPTED
        assert result.failed_stage == 'interrupted'
        assert archives(backup_dir) == []
        assert workspaces(backup_dir) == []

        errors = notifier.of_severity(Severity.ERROR)
        assert len(errors) == 1
        assert 'interrupted' in errors[0]


class TestHistory:
    """Test run history recording."""

    def test_successful_run_recorded(self, make_pipeline, tmp_path):
        history = RunHistory.from_url(f"sqlite:///{tmp_path / 'history.db'}")

        result = make_pipeline([make_target('a'), make_target('b')], history=history,
                               clock=fixed_clock()).execute()

        runs = history.recent()
        assert len(runs) == 1
        assert runs[0].run_id == result.context.run_id
        assert runs[0].status == 'success'
        assert runs[0].targets_total == 2
        assert runs[0].targets_failed == 0
        assert runs[0].archive_path == str(result.archive.path)
        assert runs[0].file_size_bytes == result.archive.size
        assert 'Backup completed successfully' in runs[0].logs

    def test_failed_run_recorded(self, make_pipeline, tmp_path):
        history = RunHistory.from_url(f"sqlite:///{tmp_path / 'history.db'}")
        exporter = FakeExporter(failures={'a': 'Access denied'})

        make_pipeline([make_target('a')], exporter=exporter, history=history, clock=fixed_clock()).execute()

        run = history.recent()[0]
        assert run.status == 'failed'
        assert run.targets_failed == 1
        assert run.archive_path is None
        assert 'Access denied' in run.error_message


class TestInterruptGuard:
    """Test InterruptGuard shielding."""

    def test_handle_raises_when_not_shielded(self):
        with pytest.raises(RunInterrupted) as exc_info:
            InterruptGuard().handle(signal.SIGTERM, None)

        assert exc_info.value.signum == signal.SIGTERM

    def test_shielded_signal_is_deferred(self):
        guard = InterruptGuard()
        guard.shield()

        guard.handle(signal.SIGTERM, None)

        assert guard.lift() == signal.SIGTERM
        assert guard.shielded is False
        assert guard.lift() is None


class SignallingExporter(FakeExporter):
    """Sends SIGTERM to the current process in the middle of an export."""

    def export(self, target, destination_file, cancellation_check=None):
        self.calls.append(target.alias)
        destination_file.write_text('-- partial')
        os.kill(os.getpid(), signal.SIGTERM)
        return destination_file


class SignallingNotifier(RecordingNotifier):
    """Sends SIGTERM to the current process while delivering a notification."""

    def send(self, text):
        os.kill(os.getpid(), signal.SIGTERM)
        super().send(text)


@pytest.mark.skipif(sys.platform == 'win32', reason="POSIX signals")
class TestSignals:
    """Test runs receiving real signals through the CLI handlers."""

    def test_sigterm_during_export(self, make_pipeline, backup_dir, notifier):
        original = signal.getsignal(signal.SIGTERM)
        pipeline = make_pipeline([make_target('a'), make_target('b')], exporter=SignallingExporter(),
                                 clock=fixed_clock())

        with interrupt_handlers():
            result = pipeline.execute()

        assert result.exit_code == EXIT_INTERRUPTED
        assert result.failed_stage == 'interrupted'
        assert result.error.signum == signal.SIGTERM
        assert pipeline.exporter.calls == ['a']
        assert archives(backup_dir) == []
        assert workspaces(backup_dir) == []
        assert len(notifier.of_severity(Severity.ERROR)) == 1
        assert signal.getsignal(signal.SIGTERM) is original

    def test_sigterm_during_workspace_removal(self, make_pipeline, backup_dir):
        real_rmtree = shutil.rmtree

        def rmtree(path, *args, **kwargs):
            os.kill(os.getpid(), signal.SIGTERM)
            real_rmtree(path, *args, **kwargs)

        pipeline = make_pipeline([make_target('a')], clock=fixed_clock())

        with patch('dbkeeper.backup.workspace.shutil.rmtree', side_effect=rmtree):
            with interrupt_handlers():
                result = pipeline.execute()

        assert result.exit_code == EXIT_SUCCESS
        assert result.archive.path.exists()
        assert workspaces(backup_dir) == []
        assert any(f'signal {signal.SIGTERM:d} received' in line for line in pipeline.logs)
        assert pipeline.interrupts.shielded is False

    def test_sigterm_during_failure_notification(self, make_pipeline, backup_dir, tmp_path):
        history = RunHistory.from_url(f"sqlite:///{tmp_path / 'history.db'}")
        notifier = SignallingNotifier()
        pipeline = make_pipeline([make_target('a')], exporter=FakeExporter(failures={'a': 'Access denied'}),
                                 notifier=notifier, history=history, clock=fixed_clock())

        with interrupt_handlers():
            result = pipeline.execute()

        assert result.exit_code == EXIT_FAILURE
        assert result.failed_stage == 'export'
        assert len(notifier.sent) == 1
        assert workspaces(backup_dir) == []
        assert history.recent()[0].status == 'failed'
