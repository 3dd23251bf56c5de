"""
Backup module for dbkeeper.

This module handles the core backup functionality including:
- Target resolution
- Database export (mysqldump)
- Staging workspaces
- Compression
- Retention policy enforcement
- Pipeline orchestration
"""

from .executor import BackupPipeline, RunResult, RunInterrupted, PipelineState
from .targets import Target, TargetRegistry
from .exporter import MySQLDumpExporter, ExportError, ExportCause, ExportOutcome, ExportStatus
from .workspace import Workspace, WorkspaceError, create_workspace, release
from .compression import Archive, ArchiveError, archive, generate_archive_filename
from .retention import RetentionPruner, PruneError

__all__ = [
    'BackupPipeline',
    'RunResult',
    'RunInterrupted',
    'PipelineState',
    'Target',
    'TargetRegistry',
    'MySQLDumpExporter',
    'ExportError',
    'ExportCause',
    'ExportOutcome',
    'ExportStatus',
    'Workspace',
    'WorkspaceError',
    'create_workspace',
    'release',
    'Archive',
    'ArchiveError',
    'archive',
    'generate_archive_filename',
    'RetentionPruner',
    'PruneError'
]
