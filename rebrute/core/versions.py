"""
Compressor Version Matrix
=========================

Discovers the compressor installations available for a search and decides
which of them run, and in which order.

Layout expected under the installations directory (one build per folder):

    installations/
        winrar-x64-380/Rar.exe
        winrar-x64-561/Rar.exe
        rarlinux-611/rar

The build number is read from the executable's banner ("RAR 5.61 ...") and
falls back to the digits in the folder name.
"""

from __future__ import annotations

import logging
import re
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# Windows: hide console windows for subprocess calls
if sys.platform == 'win32':
    SUBPROCESS_FLAGS = subprocess.CREATE_NO_WINDOW
else:
    SUBPROCESS_FLAGS = 0

EXECUTABLE_NAMES = ("Rar.exe", "rar.exe", "rar")

SUPPORTED_MAJORS = (2, 3, 4, 5, 6, 7)
DEFAULT_MAJORS = (3, 4, 5, 6)

_BANNER_RE = re.compile(r'RAR\s+(\d+)\.(\d{1,2})', re.IGNORECASE)
_DIR_DOTTED_RE = re.compile(r'(?<!\d)(\d)\.(\d{1,2})(?!\d)')
_DIR_BUILD_RE = re.compile(r'(?<!\d)(\d{3})(?!\d)')


@dataclass(frozen=True)
class VersionRange:
    """Half-open build range, e.g. 4.x -> [400, 500)."""
    start: int
    end: int

    @classmethod
    def for_major(cls, major: int) -> VersionRange:
        return cls(major * 100, major * 100 + 100)

    def __contains__(self, version: object) -> bool:
        return isinstance(version, int) and self.start <= version < self.end


@dataclass(frozen=True)
class CompressorInstallation:
    """One installed compressor build."""
    path: Path
    executable: Path
    version: int

    @property
    def label(self) -> str:
        return self.path.name

    @property
    def version_string(self) -> str:
        return f"{self.version // 100}.{self.version % 100:02d}"

    def __str__(self) -> str:
        return f"{self.label} ({self.version_string})"


def find_executable(directory: Path) -> Optional[Path]:
    """Compressor executable inside an installation folder."""
    for name in EXECUTABLE_NAMES:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def parse_banner_version(output: str) -> Optional[int]:
    """Build number from "RAR 5.61   Copyright (c) ..." style output."""
    match = _BANNER_RE.search(output)
    if not match:
        return None
    minor = match.group(2)
    if len(minor) == 1:
        minor += "0"
    return int(match.group(1)) * 100 + int(minor)


def parse_directory_version(name: str) -> Optional[int]:
    """Build number from a folder name such as "rar 3.80" or "winrar-x64-561"."""
    match = _DIR_DOTTED_RE.search(name)
    if match:
        minor = match.group(2)
        if len(minor) == 1:
            minor += "0"
        return int(match.group(1)) * 100 + int(minor)

    match = _DIR_BUILD_RE.search(name)
    if match:
        return int(match.group(1))
    return None


def probe_version(executable: Path, timeout: float = 10.0) -> Optional[int]:
    """Run the executable without arguments and parse its banner."""
    try:
        result = subprocess.run(
            [str(executable)],
            capture_output=True,
            text=True,
            errors='replace',
            timeout=timeout,
            creationflags=SUBPROCESS_FLAGS
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"Version probe failed for {executable}: {e}")
        return None

    return parse_banner_version((result.stdout or "") + (result.stderr or ""))


def discover_installations(
    root: Path,
    probe: bool = True,
    probe_timeout: float = 10.0
) -> List[CompressorInstallation]:
    """
    Scan an installations directory.

    Raises:
        ConfigurationError: If root is missing or not a directory
    """
    root = Path(root)
    if not root.is_dir():
        raise ConfigurationError(f"Compressor installations directory not found: {root}")

    installations: List[CompressorInstallation] = []
    for entry in sorted(root.iterdir()):
        if not entry.is_dir():
            continue

        executable = find_executable(entry)
        if executable is None:
            logger.debug(f"No compressor executable in {entry.name}, skipped")
            continue

        version = probe_version(executable, probe_timeout) if probe else None
        if version is None:
            version = parse_directory_version(entry.name)
        if version is None:
            logger.warning(f"Cannot determine compressor version of {entry.name}, skipped")
            continue

        installations.append(CompressorInstallation(entry, executable, version))
        logger.debug(f"Found compressor {entry.name}: build {version}")

    return installations


class VersionMatrix:
    """
    Orders installations and gates them by the enabled major versions.

    Ascending order only changes how fast a first match is found, never
    whether it is found; older builds are the more common release tools.
    """

    def __init__(
        self,
        installations: Iterable[CompressorInstallation],
        enabled_majors: Iterable[int] = DEFAULT_MAJORS
    ) -> None:
        self.installations = list(installations)
        self.enabled_majors = tuple(sorted(set(enabled_majors)))
        for major in self.enabled_majors:
            if major not in SUPPORTED_MAJORS:
                raise ConfigurationError(f"Unsupported compressor major version: {major}")
        self.ranges = [VersionRange.for_major(m) for m in self.enabled_majors]

    @classmethod
    def from_directory(
        cls,
        root: Path,
        enabled_majors: Iterable[int] = DEFAULT_MAJORS,
        probe: bool = True
    ) -> VersionMatrix:
        return cls(discover_installations(root, probe=probe), enabled_majors)

    def is_enabled(self, version: int) -> bool:
        return any(version in r for r in self.ranges)

    def select(self) -> List[CompressorInstallation]:
        """
        Participating installations in ascending build order.

        Raises:
            ConfigurationError: If no installation falls in an enabled range
        """
        selected = [i for i in self.installations if self.is_enabled(i.version)]
        selected.sort(key=lambda i: (i.version, i.label))

        if not selected:
            majors = ", ".join(f"{m}.x" for m in self.enabled_majors) or "none"
            raise ConfigurationError(
                f"No compressor installation matches the enabled versions ({majors})"
            )
        return selected

    def summary(self) -> Dict[str, List[str]]:
        selected = {i.label for i in self.installations if self.is_enabled(i.version)}
        return {
            "selected": sorted(selected),
            "skipped": sorted(i.label for i in self.installations if i.label not in selected),
        }
