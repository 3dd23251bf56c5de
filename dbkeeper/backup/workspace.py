"""
Per-run staging directories.

Dumps are written into a ``backup_temp_<random>`` directory inside the
backup directory and archived from there. The directory is removed exactly
once when the run ends, however it ends.
"""

import shutil
import logging
import tempfile
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = 'backup_temp_'


class WorkspaceError(Exception):
    """Raised when the staging directory cannot be created."""
    pass


def create_workspace(base_dir) -> Path:
    """
    Create a uniquely named staging directory.

    Args:
        base_dir: Directory to create the workspace in (created if missing)

    Returns:
        Path of the new directory (mode 0700)

    Raises:
        WorkspaceError: If the directory cannot be created
    """
    try:
        Path(base_dir).mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=str(base_dir)))
    except OSError as e:
        raise WorkspaceError(f"Failed to create workspace in {base_dir}: {e}")


def release(workspace) -> bool:
    """
    Recursively remove a staging directory.

    Returns:
        True if the directory is gone afterwards
    """
    path = Path(workspace)
    if not path.exists():
        return True

    try:
        shutil.rmtree(path)
        logger.debug(f"Removed workspace {path}")
        return True
    except OSError as e:
        logger.error(f"Failed to remove workspace {path}: {e}")
        return False


class Workspace:
    """
    Context manager pairing create_workspace() with release().

    Usage:
        with Workspace(base_dir) as staging_path:
            ...
    """

    def __init__(self, base_dir, before_release: Optional[Callable[[], None]] = None):
        """
        Args:
            base_dir: Directory to create the workspace in
            before_release: Called on exit before the workspace is removed,
                e.g. to stop signals from interrupting the removal
        """
        self.base_dir = Path(base_dir)
        self.before_release = before_release
        self.path: Optional[Path] = None
        self.released = False

    def __enter__(self) -> Path:
        self.path = create_workspace(self.base_dir)
        logger.info(f"Workspace created: {self.path}")
        return self.path

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.before_release:
            self.before_release()
        self.release()
        return False

    def release(self):
        """Remove the workspace; once it is gone, further calls do nothing."""
        if self.path is None or self.released:
            return

        self.released = release(self.path)
