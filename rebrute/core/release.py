"""
Release preparation: which files go into each candidate archive, and
restoring the timestamps the original archive recorded for them.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Dict, Iterable, List

from .errors import ConfigurationError
from .options import TimestampEntry

logger = logging.getLogger(__name__)


def collect_input_files(release_dir: Path, archived_files: Iterable[str] = ()) -> List[str]:
    """
    Relative paths of the release's input files, sorted, using forward
    slashes. When the archived file list is known only those files are
    used; listed files missing on disk are a configuration error.
    """
    release_dir = Path(release_dir)
    if not release_dir.is_dir():
        raise ConfigurationError(f"Release directory not found: {release_dir}")

    wanted = [name.replace('\\', '/') for name in archived_files]
    if wanted:
        missing = [name for name in wanted if not (release_dir / name).is_file()]
        if missing:
            raise ConfigurationError(
                f"{len(missing)} archived file(s) missing from release: {', '.join(missing[:5])}"
            )
        return sorted(wanted)

    files = [
        path.relative_to(release_dir).as_posix()
        for path in release_dir.rglob('*')
        if path.is_file()
    ]
    if not files:
        raise ConfigurationError(f"Release directory is empty: {release_dir}")
    return sorted(files)


def total_input_size(release_dir: Path, inputs: Iterable[str]) -> int:
    return sum((Path(release_dir) / name).stat().st_size for name in inputs)


def apply_timestamps(release_dir: Path, timestamps: Dict[str, TimestampEntry]) -> int:
    """
    Set recovered mtime/atime on release files and directories.

    Creation time cannot be set portably; it is skipped with a debug note.

    Returns:
        Number of entries updated
    """
    release_dir = Path(release_dir)
    updated = 0

    # Children before parents
    for name in sorted(timestamps, key=lambda n: n.count('/') + n.count('\\'), reverse=True):
        entry = timestamps[name]
        path = release_dir / name.replace('\\', '/')
        if not path.exists():
            logger.warning(f"Timestamp entry for missing path: {name}")
            continue

        if entry.mtime is None and entry.atime is None:
            continue

        stat = path.stat()
        mtime_ns = int(entry.mtime.timestamp() * 1_000_000_000) if entry.mtime else stat.st_mtime_ns
        atime_ns = int(entry.atime.timestamp() * 1_000_000_000) if entry.atime else stat.st_atime_ns
        os.utime(path, ns=(atime_ns, mtime_ns))
        updated += 1

        if entry.ctime is not None:
            logger.debug(f"Creation time of {name} not applied on {sys.platform}")

    return updated
