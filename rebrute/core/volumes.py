"""
Volume naming conventions for split archives.

New style:  name.part1.rar, name.part2.rar, ...  (zero padded to the set size)
Old style:  name.rar, name.r00 .. name.r99, name.s00 .. name.s99, ...
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

_PART_RE = re.compile(r'^(?P<base>.+)\.part(?P<num>\d+)\.rar$', re.IGNORECASE)
_OLD_RE = re.compile(r'^(?P<base>.+)\.(?P<letter>[r-z])(?P<num>\d{2})$', re.IGNORECASE)


def archive_base_name(archive_name: str) -> str:
    """Strip .rar / .partN.rar from an archive file name."""
    match = _PART_RE.match(archive_name)
    if match:
        return match.group('base')
    if archive_name.lower().endswith('.rar'):
        return archive_name[:-4]
    return archive_name


def volume_index(filename: str, base: str) -> Optional[int]:
    """
    Position of a file inside the volume set of `base`, or None when the
    file does not belong to the set.
    """
    lower = filename.lower()
    base_lower = base.lower()

    if lower == f"{base_lower}.rar":
        return 0

    match = _PART_RE.match(filename)
    if match and match.group('base').lower() == base_lower:
        return int(match.group('num')) - 1

    match = _OLD_RE.match(filename)
    if match and match.group('base').lower() == base_lower:
        # .r00 follows .rar, then .s00 after .r99 and so on
        letter_offset = ord(match.group('letter').lower()) - ord('r')
        return 1 + letter_offset * 100 + int(match.group('num'))

    return None


def locate_volumes(archive_path: Path) -> List[Path]:
    """All volumes produced for archive_path, in volume order."""
    archive_path = Path(archive_path)
    directory = archive_path.parent
    base = archive_base_name(archive_path.name)

    if not directory.is_dir():
        return []

    found: List[Tuple[int, Path]] = []
    for entry in directory.iterdir():
        if not entry.is_file():
            continue
        index = volume_index(entry.name, base)
        if index is not None:
            found.append((index, entry))

    found.sort(key=lambda item: item[0])
    return [path for _, path in found]
