"""
Archive creation for backup runs.

Packs the contents of a run's workspace into one archive named
``YYYY-MM-DD_HH-MM-SS-backup.<ext>`` and restricts it to owner read/write.

Supports multiple formats:
- tar.gz: Gzip compressed tar
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- zip: Standard zip compression
- none: No compression (tar only)
"""

import os
import re
import stat
import logging
import tarfile
import zipfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)

ARCHIVE_MODE = 0o600

# Format -> file extension
EXTENSIONS = {
    'tar.gz': 'tar.gz',
    'tar.bz2': 'tar.bz2',
    'tar.xz': 'tar.xz',
    'zip': 'zip',
    'none': 'tar',
}

TIMESTAMP_FORMAT = '%Y-%m-%d_%H-%M-%S'
ARCHIVE_SUFFIX = 'backup'

ARCHIVE_NAME_PATTERN = re.compile(
    r'^\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}-' + ARCHIVE_SUFFIX +
    r'\.(?:' + '|'.join(re.escape(ext) for ext in sorted(set(EXTENSIONS.values()), key=len, reverse=True)) + r')$'
)


class ArchiveError(Exception):
    """Raised when archive creation fails."""
    pass


@dataclass
class Archive:
    """A created backup archive."""
    path: Path
    created_at: datetime
    size: int
    members: List[str]
    permissions_restricted: bool = True


def archive(workspace, destination, compression_format: str = 'tar.gz') -> Archive:
    """
    Pack the contents of a workspace into a single archive.

    Entries are stored relative to the workspace, so the workspace
    directory itself is not part of the archive.

    Args:
        workspace: Directory whose contents are archived
        destination: Full path of the archive file to create
        compression_format: Format to use ('tar.gz', 'tar.bz2', 'tar.xz', 'zip', 'none')

    Returns:
        Archive describing the created file

    Raises:
        ArchiveError: If the archive cannot be created
    """
    workspace = Path(workspace)
    destination = Path(destination)

    try:
        source_paths = sorted(workspace.iterdir())
    except OSError as e:
        raise ArchiveError(f"Failed to read workspace {workspace}: {e}")

    archive_path = create_archive(source_paths, destination, compression_format)

    permissions_restricted = restrict_permissions(archive_path)

    try:
        size = get_archive_size(archive_path)
    except ArchiveError:
        # A failed run leaves no archive behind
        _remove_archive(archive_path)
        raise

    return Archive(
        path=archive_path,
        created_at=datetime.now(),
        size=size,
        members=[p.name for p in source_paths],
        permissions_restricted=permissions_restricted,
    )


def create_archive(source_paths: List[Path], archive_path: Path,
                   compression_format: str = 'tar.gz') -> Path:
    """
    Create a compressed archive from source paths.

    The file is created exclusively with owner-only permissions, so it is
    never readable by others, not even while being written.

    Args:
        source_paths: Files/directories to include, stored under their basename
        archive_path: Path of the archive file (including extension)
        compression_format: Format to use

    Returns:
        Path to the created archive file

    Raises:
        ArchiveError: If archive creation fails
        ValueError: If compression_format is invalid
    """
    if not source_paths:
        raise ArchiveError("No source paths provided")

    # Map format to handler
    format_map = {
        'zip': _create_zip,
        'tar.gz': _create_tar,
        'tar.bz2': _create_tar,
        'tar.xz': _create_tar,
        'none': _create_tar
    }

    if compression_format not in format_map:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(format_map.keys())}"
        )

    handler = format_map[compression_format]
    archive_path = Path(archive_path)

    try:
        fd = os.open(archive_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, ARCHIVE_MODE)
    except FileExistsError:
        raise ArchiveError(f"Archive already exists: {archive_path}")
    except OSError as e:
        raise ArchiveError(f"Failed to create archive file {archive_path}: {e}")

    try:
        with os.fdopen(fd, 'wb') as fileobj:
            handler(source_paths, fileobj, compression_format)
        return archive_path
    except BaseException as e:
        # Clean up partial archive on failure or interruption
        _remove_archive(archive_path)
        if not isinstance(e, Exception):
            raise
        raise ArchiveError(f"Failed to create archive: {e}")


def _remove_archive(archive_path: Path):
    try:
        Path(archive_path).unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove partial archive {archive_path}: {e}")


def _create_zip(source_paths: List[Path], fileobj, compression_format: str):
    """
    Create a ZIP archive.

    Args:
        source_paths: List of paths to include
        fileobj: Open binary file to write the archive to
        compression_format: Not used for zip, kept for interface consistency
    """
    with zipfile.ZipFile(fileobj, 'w', zipfile.ZIP_DEFLATED) as zipf:
        for source in source_paths:
            if source.is_file():
                zipf.write(source, source.name)
            elif source.is_dir():
                for item in sorted(source.rglob('*')):
                    if item.is_file():
                        zipf.write(item, item.relative_to(source.parent))
            else:
                raise ArchiveError(f"Invalid path type: {source}")


def _create_tar(source_paths: List[Path], fileobj, compression_format: str):
    """
    Create a TAR archive with optional compression.

    Args:
        source_paths: List of paths to include
        fileobj: Open binary file to write the archive to
        compression_format: Compression format ('tar.gz', 'tar.bz2', 'tar.xz', 'none')
    """
    # Map format to tarfile mode
    mode_map = {
        'tar.gz': 'w:gz',
        'tar.bz2': 'w:bz2',
        'tar.xz': 'w:xz',
        'none': 'w'
    }

    mode = mode_map.get(compression_format, 'w:gz')

    with tarfile.open(fileobj=fileobj, mode=mode) as tar:
        for source in source_paths:
            if not source.exists():
                raise ArchiveError(f"Path does not exist: {source}")

            # Store under the basename, no workspace prefix
            tar.add(source, arcname=source.name, recursive=True)


def restrict_permissions(archive_path: Path) -> bool:
    """
    Set owner read/write only on the archive.

    Returns:
        True if the permissions are 0600 afterwards, False otherwise
    """
    try:
        os.chmod(archive_path, ARCHIVE_MODE)
        mode = stat.S_IMODE(os.stat(archive_path).st_mode)
    except OSError as e:
        logger.warning(f"Failed to restrict permissions on {archive_path}: {e}")
        return False

    if mode != ARCHIVE_MODE:
        logger.warning(f"Archive {archive_path} has mode {oct(mode)} instead of {oct(ARCHIVE_MODE)}")
        return False

    return True


def generate_archive_filename(timestamp: datetime, compression_format: str = 'tar.gz') -> str:
    """
    Generate a standardized archive filename.

    Format: {YYYY-MM-DD_HH-MM-SS}-backup.{ext}

    Args:
        timestamp: Run start time
        compression_format: Compression format

    Returns:
        Filename (without path)
    """
    extension = EXTENSIONS.get(compression_format, 'tar.gz')
    return f"{timestamp.strftime(TIMESTAMP_FORMAT)}-{ARCHIVE_SUFFIX}.{extension}"


def is_archive_name(filename: str) -> bool:
    """Check whether a filename follows the archive naming convention."""
    return ARCHIVE_NAME_PATTERN.match(filename) is not None


def get_archive_size(archive_path) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        ArchiveError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise ArchiveError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise ArchiveError(f"Failed to get archive size: {e}")
