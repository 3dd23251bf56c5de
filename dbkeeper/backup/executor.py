"""
Backup pipeline - orchestrates one complete backup run.

Workflow:
1. Create a staging workspace
2. Resolve the targets due for this run (none: finish with an info notification)
3. Export every target into the workspace (first failure aborts the run)
4. Archive the workspace into <backup_dir>/YYYY-MM-DD_HH-MM-SS-backup.<ext>
5. Prune archives older than the retention threshold (failure only warns)
6. Remove the workspace, on every exit path

Fatal failures send exactly one error notification and give a non-zero
exit code. No archive is produced by a run whose export failed.
"""

import logging
import secrets
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from dbkeeper.notifications import Notifier, Severity
from .targets import Target, TargetRegistry
from .exporter import ExportCause, ExportError, ExportOutcome, ExportStatus
from .workspace import Workspace, WorkspaceError
from .compression import Archive, ArchiveError, TIMESTAMP_FORMAT, archive, generate_archive_filename
from .retention import RetentionPruner, PruneError

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_INTERRUPTED = 130


class RunInterrupted(BaseException):
    """
    Raised from a signal handler to abort a run.

    Derives from BaseException, like KeyboardInterrupt, so that handlers
    catching Exception do not swallow it.
    """

    def __init__(self, signum: Optional[int] = None):
        super().__init__(f"Interrupted by signal {signum}" if signum else "Interrupted")
        self.signum = signum


class InterruptGuard:
    """
    Signal handler that raises RunInterrupted, unless shielded.

    Once a run has started cleaning up, its outcome is decided: a signal
    arriving while shielded is only remembered, so that workspace removal,
    the final notification and the history record always complete.

    Usage:
        signal.signal(signal.SIGTERM, interrupt_guard.handle)
    """

    def __init__(self):
        self.shielded = False
        self.deferred: Optional[int] = None

    def handle(self, signum, frame):
        if self.shielded:
            self.deferred = signum
            return
        raise RunInterrupted(signum)

    def shield(self):
        """Defer signals until lift() is called."""
        self.shielded = True

    def lift(self) -> Optional[int]:
        """Stop deferring signals; return the one received meanwhile, if any."""
        signum, self.deferred = self.deferred, None
        self.shielded = False
        return signum


# Shared by the CLI signal handlers and pipelines created without their own guard
interrupt_guard = InterruptGuard()


class PipelineState(str, Enum):
    INIT = 'init'
    WORKSPACE_READY = 'workspace_ready'
    EXPORTING = 'exporting'
    ALL_EXPORTED = 'all_exported'
    ARCHIVED = 'archived'
    PRUNED = 'pruned'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class RunContext:
    """Identity and paths of one run."""
    run_id: str
    started_at: datetime
    staging_path: Optional[Path] = None
    archive_path: Optional[Path] = None


@dataclass
class RunResult:
    """Outcome of BackupPipeline.execute()."""
    context: RunContext
    state: PipelineState
    status: str
    exit_code: int
    outcomes: List[ExportOutcome] = field(default_factory=list)
    archive: Optional[Archive] = None
    pruned: Optional[int] = None
    failed_stage: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == EXIT_SUCCESS


def generate_run_id(started_at: datetime) -> str:
    return f"{started_at.strftime(TIMESTAMP_FORMAT)}-{secrets.token_hex(3)}"


class BackupPipeline:
    """
    Runs the export → archive → prune sequence for all configured targets.
    """

    def __init__(self, registry: TargetRegistry, exporter, notifier: Notifier, backup_dir,
                 retention_days: int = 7, archive_format: str = 'tar.gz',
                 export_policy: str = 'fail_fast', export_workers: int = 1,
                 cancel_grace_seconds: float = 30, notify_on_success: bool = False,
                 history=None, clock: Callable[[], datetime] = datetime.now,
                 interrupts: Optional[InterruptGuard] = None):
        """
        Initialize backup pipeline.

        Args:
            registry: Source of the targets to back up
            exporter: Object with export(target, destination_file, cancellation_check=None)
            notifier: Operator notification channel
            backup_dir: Directory holding archives and run workspaces
            retention_days: Archives older than this many days are pruned
            archive_format: Compression format of the archive
            export_policy: 'fail_fast' (any failed export aborts the run) or
                'best_effort' (archive whatever succeeded)
            export_workers: Number of exports run in parallel
            cancel_grace_seconds: How long to wait for in-flight exports after a failure
            notify_on_success: Send an info notification after a successful run
            history: Optional RunHistory recorder
            clock: Returns the run start time
            interrupts: Signal guard shielded from workspace release onwards
                (default: the module-wide interrupt_guard)
        """
        self.registry = registry
        self.exporter = exporter
        self.notifier = notifier
        self.backup_dir = Path(backup_dir)
        self.archive_format = archive_format
        self.export_policy = export_policy
        self.export_workers = max(1, export_workers)
        self.cancel_grace_seconds = cancel_grace_seconds
        self.notify_on_success = notify_on_success
        self.history = history
        self.clock = clock
        self.interrupts = interrupts or interrupt_guard
        self.pruner = RetentionPruner(self.backup_dir, timedelta(days=retention_days))

        self.state = PipelineState.INIT
        self.context: Optional[RunContext] = None
        self.outcomes: List[ExportOutcome] = []
        self.archive: Optional[Archive] = None
        self.pruned: Optional[int] = None
        self.status = 'running'
        self.logs = []

    @property
    def fail_fast(self) -> bool:
        return self.export_policy != 'best_effort'

    def execute(self) -> RunResult:
        """
        Execute one backup run.

        Returns:
            RunResult with the terminal state and exit code. Fatal errors are
            reported through the result and the notifier, not raised.
        """
        started_at = self.clock()
        self.context = RunContext(run_id=generate_run_id(started_at), started_at=started_at)
        self.state = PipelineState.INIT
        self.outcomes = []
        self.archive = None
        self.pruned = None
        self.status = 'running'
        self.logs = []

        try:
            return self._execute()
        finally:
            signum = self.interrupts.lift()
            if signum:
                self._log(f"Warning: signal {signum} received while finishing the run, ignored",
                          level=logging.WARNING)

    def _execute(self) -> RunResult:
        try:
            if self.history:
                self.history.start(self.context.run_id, self.context.started_at)

            self._log(f"Starting backup run {self.context.run_id}")

            with Workspace(self.backup_dir, before_release=self.interrupts.shield) as staging_path:
                self.context.staging_path = staging_path
                self._transition(PipelineState.WORKSPACE_READY)
                self._run_stages(staging_path)
        except WorkspaceError as e:
            return self._fail('workspace', e, f"Backup failed: could not create workspace: {e}")
        except ExportError as e:
            return self._fail(
                'export', e,
                f"Backup failed: export of database '{e.alias}' failed ({e.cause.value}): {e.detail}. "
                f"No archive was created."
            )
        except ArchiveError as e:
            return self._fail('archive', e, f"Backup failed: could not create the archive: {e}")
        except (KeyboardInterrupt, RunInterrupted) as e:
            return self._fail(
                'interrupted', e,
                f"Backup interrupted during {self.state.value}: {str(e) or 'keyboard interrupt'}",
                exit_code=EXIT_INTERRUPTED
            )
        except Exception as e:
            logger.exception("Unexpected error during backup run")
            return self._fail(self.state.value, e, f"Backup failed during {self.state.value}: {e}")

        return self._finish()

    def _run_stages(self, staging_path: Path):
        """Run exports, archiving and pruning inside the workspace."""
        targets = self.registry.list_targets(at=self.context.started_at)

        if not targets:
            self._log("No databases configured for this run, nothing to do")
            self.status = 'noop'
            self.notifier.notify(Severity.INFO, "Backup skipped: no databases configured for this run")
            return

        self._transition(PipelineState.EXPORTING)
        self._log(f"Exporting {len(targets)} database(s): {', '.join(t.alias for t in targets)}")

        if self.export_workers > 1 and len(targets) > 1:
            self._export_concurrently(targets, staging_path)
        else:
            self._export_sequentially(targets, staging_path)

        failed = [o for o in self.outcomes if o.status == ExportStatus.FAILED]
        if failed:
            # Only reachable with the best_effort policy
            if len(failed) == len(targets):
                raise failed[0].error
            self.status = 'partial'
            self.notifier.notify(
                Severity.WARNING,
                f"Partial backup: {len(failed)} of {len(targets)} database(s) failed and are missing "
                f"from the archive: " + '; '.join(o.error_detail for o in failed)
            )

        self._transition(PipelineState.ALL_EXPORTED)

        self.context.archive_path = self.backup_dir / generate_archive_filename(
            self.context.started_at, self.archive_format
        )
        self._log(f"Creating archive {self.context.archive_path.name} (format: {self.archive_format})")
        self.archive = archive(staging_path, self.context.archive_path, self.archive_format)
        self._log(f"Archive created: {self.archive.path.name} ({self.archive.size / 1024 / 1024:.2f} MB)")

        if not self.archive.permissions_restricted:
            self.notifier.notify(
                Severity.WARNING,
                f"Archive {self.archive.path.name} was created but its permissions could not be "
                f"restricted to the owner"
            )

        self._transition(PipelineState.ARCHIVED)

        self._prune()
        self._transition(PipelineState.PRUNED)

    def _export_sequentially(self, targets: List[Target], staging_path: Path):
        for target in targets:
            destination = self._dump_path(staging_path, target)
            self._log(f"Exporting {target.alias} -> {destination.name}")

            try:
                self.exporter.export(target, destination)
            except ExportError as e:
                self._record_failure(target, e)
                if self.fail_fast:
                    raise
                continue

            self._record_success(target, destination)

    def _export_concurrently(self, targets: List[Target], staging_path: Path):
        """
        Export targets in a thread pool.

        The first failure (in completion order) cancels the remaining exports
        and is the one reported. In-flight exports get cancel_grace_seconds to
        stop before the pipeline moves on to cleanup.
        """
        cancel_event = threading.Event()
        first_error = None
        workers = min(self.export_workers, len(targets))
        self._log(f"Running exports with {workers} workers")

        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='export')
        futures = {}
        for target in targets:
            destination = self._dump_path(staging_path, target)
            future = pool.submit(self.exporter.export, target, destination, cancel_event.is_set)
            futures[future] = (target, destination)

        try:
            for future in as_completed(futures):
                target, destination = futures[future]
                try:
                    future.result()
                except ExportError as e:
                    if e.cause == ExportCause.CANCELLED and cancel_event.is_set():
                        continue
                    self._record_failure(target, e)
                    if self.fail_fast:
                        first_error = e
                        break
                    continue

                self._record_success(target, destination)
        finally:
            cancel_event.set()
            pending = [f for f in futures if not f.done()]
            for f in pending:
                f.cancel()

            running = [f for f in pending if not f.cancelled()]
            if running:
                self._log(f"Waiting up to {self.cancel_grace_seconds:g}s for {len(running)} running export(s) to stop")
                _, not_done = wait(running, timeout=self.cancel_grace_seconds)
                if not_done:
                    self._log(f"Warning: {len(not_done)} export(s) did not stop in time, abandoning them",
                              level=logging.WARNING)

            pool.shutdown(wait=False, cancel_futures=True)

        order = {t.alias: i for i, t in enumerate(targets)}
        self.outcomes.sort(key=lambda o: order[o.target_alias])

        if first_error is not None:
            raise first_error

    def _prune(self):
        """Apply retention; failures only produce a warning."""
        try:
            self.pruned = self.pruner.prune(exclude=[self.archive.path])
            self._log(f"Pruned {self.pruned} old archive(s)")
        except PruneError as e:
            self.pruned = e.deleted
            self._log(f"Warning: retention pruning failed: {e}", level=logging.WARNING)
            self.notifier.notify(Severity.WARNING, f"Backup created, but deleting old archives failed: {e}")
        except Exception as e:
            logger.exception("Unexpected error while pruning")
            self._log(f"Warning: retention pruning failed: {e}", level=logging.WARNING)
            self.notifier.notify(Severity.WARNING, f"Backup created, but deleting old archives failed: {e}")

    def _dump_path(self, staging_path: Path, target: Target) -> Path:
        extension = getattr(self.exporter, 'extension', 'sql')
        return staging_path / f"{target.alias}.{extension}"

    def _record_success(self, target: Target, destination: Path):
        self.outcomes.append(ExportOutcome(target.alias, ExportStatus.SUCCESS, dump_file_path=destination))
        self._log(f"Exported {target.alias}")

    def _record_failure(self, target: Target, error: ExportError):
        self.outcomes.append(ExportOutcome(target.alias, ExportStatus.FAILED, error=error))
        self._log(f"Export failed: {error}", level=logging.ERROR)

    def _finish(self) -> RunResult:
        """Transition to Done (workspace already released)."""
        self.interrupts.shield()
        self._transition(PipelineState.DONE)
        if self.status == 'running':
            self.status = 'success'

        if self.status == 'success':
            self._log("Backup completed successfully")
            if self.notify_on_success:
                self.notifier.notify(
                    Severity.INFO,
                    f"Backup completed: {self.archive.path.name} "
                    f"({self.archive.size / 1024 / 1024:.2f} MB, {len(self.outcomes)} database(s))"
                )
        elif self.status == 'partial':
            self._log("Backup completed with missing databases", level=logging.WARNING)

        self._record_history()
        return self._result(EXIT_SUCCESS)

    def _fail(self, stage: str, error: BaseException, message: str,
              exit_code: int = EXIT_FAILURE) -> RunResult:
        """Transition to Failed (workspace already released) and notify once."""
        self.interrupts.shield()
        self._transition(PipelineState.FAILED)
        self.status = 'failed'
        self._log(f"Backup failed at stage {stage}: {error}", level=logging.ERROR)

        self.notifier.notify(Severity.ERROR, message)

        self._record_history(error_message=str(error))
        result = self._result(exit_code)
        result.failed_stage = stage
        result.error = error
        return result

    def _record_history(self, error_message: Optional[str] = None):
        if not self.history:
            return

        failed = sum(1 for o in self.outcomes if o.status == ExportStatus.FAILED)
        self.history.finish(
            self.status,
            logs=self.logs,
            targets_total=len(self.outcomes),
            targets_failed=failed,
            archive_path=str(self.archive.path) if self.archive else None,
            file_size_bytes=self.archive.size if self.archive else None,
            pruned_count=self.pruned,
            error_message=error_message,
        )

    def _result(self, exit_code: int) -> RunResult:
        return RunResult(
            context=self.context,
            state=self.state,
            status=self.status,
            exit_code=exit_code,
            outcomes=list(self.outcomes),
            archive=self.archive,
            pruned=self.pruned,
        )

    def _transition(self, state: PipelineState):
        logger.debug(f"Pipeline state: {self.state.value} -> {state.value}")
        self.state = state

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Level for the module logger
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
