"""
Compressor Switch Catalogue
===========================

Every tunable dimension of the search is a ParameterAxis holding the
SwitchValues the caller enabled. Each value knows which compressor builds
(inclusive min/max, e.g. 500..699) and which archive formats accept it, so
an axis can be filtered per installation before the cartesian product is
taken.

Build numbers follow the compressor's own banner: "RAR 5.61" -> 561.

Usage:
    selection = SwitchSelection(compression_levels=[3, 5], archive_formats=[4])
    axes = selection.build_axes()
    for axis in axes:
        print(axis.name, [v.text for v in axis.filtered(561, ArchiveFormat.RAR4)])
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, asdict
from typing import Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

MIN_VERSION = 200
MAX_VERSION = 9999


class ArchiveFormat(enum.IntFlag):
    """Archive formats a switch can apply to."""
    RAR4 = 1
    RAR5 = 2
    RAR7 = 4
    ALL = RAR4 | RAR5 | RAR7


class TimestampPrecision(enum.IntEnum):
    """Timestamp precision classes, numbered like the -ts<x><N> switches."""
    NOT_SAVED = 0
    ONE_SECOND = 1
    HIGH_PRECISION_1 = 2
    HIGH_PRECISION_2 = 3
    NTFS = 4


class VolumeUnit(enum.Enum):
    """Units accepted for the volume split size."""
    BYTES = "b"
    KB = "kb"
    MB = "mb"
    GB = "gb"
    KIB = "kib"
    MIB = "mib"
    GIB = "gib"


@dataclass(frozen=True, eq=False)
class SwitchValue:
    """
    One literal compressor switch.

    Immutable and compared by its literal text only, so the same switch
    enabled twice never produces two candidates.
    """
    text: str
    min_version: int = MIN_VERSION
    max_version: int = MAX_VERSION
    formats: ArchiveFormat = ArchiveFormat.ALL

    def applies_to_version(self, version: int) -> bool:
        return self.min_version <= version <= self.max_version

    def applies_to_format(self, formats: ArchiveFormat) -> bool:
        return bool(self.formats & formats)

    def applies(self, version: int, formats: ArchiveFormat) -> bool:
        return self.applies_to_version(version) and self.applies_to_format(formats)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SwitchValue):
            return self.text == other.text
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.text)

    def __repr__(self) -> str:
        return f"SwitchValue({self.text!r})"


@dataclass
class ParameterAxis:
    """
    One independent dimension of the search space.

    A disabled axis, or one whose values are all filtered away for the
    version under test, contributes a single absent placeholder (None) so
    the cartesian product never collapses to zero candidates. An optional
    axis always offers "absent" in addition to its values.
    """
    name: str
    values: List[SwitchValue] = field(default_factory=list)
    enabled: bool = True
    optional: bool = False

    def filtered(self, version: int, formats: ArchiveFormat) -> List[Optional[SwitchValue]]:
        """Values usable with this compressor build and format selection."""
        if not self.enabled or not self.values:
            return [None]

        result: List[Optional[SwitchValue]] = []
        seen = set()
        for value in self.values:
            if value.text in seen:
                continue
            if value.applies(version, formats):
                result.append(value)
                seen.add(value.text)

        if self.optional:
            result.append(None)

        return result or [None]


# Names of the axes, in the order their switches appear on the command line
AXIS_ATTRIBUTES = "attributes"
AXIS_RECURSE = "recurse"
AXIS_NO_SORT = "no_sort"
AXIS_NON_SOLID = "non_solid"
AXIS_COMPRESSION = "compression"
AXIS_FORMAT = "format"
AXIS_DICTIONARY = "dictionary"
AXIS_MTIME = "mtime"
AXIS_CTIME = "ctime"
AXIS_ATIME = "atime"
AXIS_VOLUME = "volume"
AXIS_VOLUME_NAMING = "volume_naming"
AXIS_THREADS = "threads"

# Axes that influence how the archive comment is compressed
COMMENT_AXES: Tuple[str, ...] = (AXIS_COMPRESSION, AXIS_FORMAT, AXIS_DICTIONARY)

_RAR_ALL = ArchiveFormat.ALL
_RAR5_UP = ArchiveFormat.RAR5 | ArchiveFormat.RAR7

DICTIONARY_SIZES: Dict[str, Tuple[int, ArchiveFormat]] = {
    "64k": (200, ArchiveFormat.RAR4),
    "128k": (200, _RAR_ALL),
    "256k": (200, _RAR_ALL),
    "512k": (200, _RAR_ALL),
    "1024k": (200, _RAR_ALL),
    "2048k": (200, _RAR_ALL),
    "4096k": (200, _RAR_ALL),
    "8m": (500, _RAR5_UP),
    "16m": (500, _RAR5_UP),
    "32m": (500, _RAR5_UP),
    "64m": (500, _RAR5_UP),
    "128m": (500, _RAR5_UP),
    "256m": (500, _RAR5_UP),
    "512m": (500, _RAR5_UP),
    "1g": (500, _RAR5_UP),
}

ARCHIVE_FORMAT_SWITCHES: Dict[int, SwitchValue] = {
    4: SwitchValue("-ma4", 500, 699, ArchiveFormat.RAR4),
    5: SwitchValue("-ma5", 500, 699, ArchiveFormat.RAR5),
}


def archive_format_switch(fmt: int) -> SwitchValue:
    if fmt not in ARCHIVE_FORMAT_SWITCHES:
        known = ", ".join(str(f) for f in sorted(ARCHIVE_FORMAT_SWITCHES))
        raise ValueError(f"Archive format must be one of {known}, got {fmt}")
    return ARCHIVE_FORMAT_SWITCHES[fmt]


def compression_switch(level: int) -> SwitchValue:
    if not 0 <= level <= 5:
        raise ValueError(f"Compression level must be between 0 and 5, got {level}")
    return SwitchValue(f"-m{level}", 200)


def dictionary_switch(size: str) -> SwitchValue:
    key = size.lower()
    if key not in DICTIONARY_SIZES:
        raise ValueError(f"Unknown dictionary size: {size}")
    min_version, formats = DICTIONARY_SIZES[key]
    return SwitchValue(f"-md{key}", min_version, MAX_VERSION, formats)


def timestamp_switch(kind: str, precision: int) -> SwitchValue:
    """-tsm/-tsc/-tsa switch. Precisions above 1 only exist in RAR4 headers."""
    if kind not in ("m", "c", "a"):
        raise ValueError(f"Unknown timestamp kind: {kind}")
    precision = TimestampPrecision(precision)
    formats = _RAR_ALL if precision <= TimestampPrecision.ONE_SECOND else ArchiveFormat.RAR4
    return SwitchValue(f"-ts{kind}{int(precision)}", 320, MAX_VERSION, formats)


def volume_argument(size: int, unit: VolumeUnit) -> str:
    """
    Build the -v switch for a split size.

    Decimal units are expressed in units of 1000 bytes (no suffix), binary
    units in units of 1024 bytes ("k" suffix), plain bytes with "b".
    """
    if unit == VolumeUnit.BYTES:
        return f"-v{size}b"
    if unit == VolumeUnit.KB:
        return f"-v{size}"
    if unit == VolumeUnit.MB:
        return f"-v{size * 1000}"
    if unit == VolumeUnit.GB:
        return f"-v{size * 1000 * 1000}"
    if unit == VolumeUnit.KIB:
        return f"-v{size}k"
    if unit == VolumeUnit.MIB:
        return f"-v{size * 1024}k"
    if unit == VolumeUnit.GIB:
        return f"-v{size * 1024 * 1024}k"
    return f"-v{size}"


def volume_size_from_bytes(size_bytes: int) -> Tuple[int, VolumeUnit]:
    """Pick the largest unit that divides a recovered volume size exactly."""
    for divisor, unit in (
        (1_000_000_000, VolumeUnit.GB),
        (1_000_000, VolumeUnit.MB),
        (1_000, VolumeUnit.KB),
        (1024 ** 3, VolumeUnit.GIB),
        (1024 ** 2, VolumeUnit.MIB),
        (1024, VolumeUnit.KIB),
    ):
        if size_bytes % divisor == 0:
            return size_bytes // divisor, unit
    return size_bytes, VolumeUnit.BYTES


def default_format(version: int) -> ArchiveFormat:
    """Format a build writes when no -ma switch is given."""
    if version < 500:
        return ArchiveFormat.RAR4
    if version >= 700:
        return ArchiveFormat.RAR7
    return ArchiveFormat.RAR5


def selectable_formats(version: int, format_axis: Optional[ParameterAxis]) -> ArchiveFormat:
    """All formats a build can produce under the selected -ma values."""
    if version < 500 or version >= 700:
        return default_format(version)

    selected = ArchiveFormat(0)
    if format_axis is not None and format_axis.enabled:
        for value in format_axis.values:
            if value.applies_to_version(version):
                selected |= value.formats

    return selected or default_format(version)


@dataclass
class SwitchSelection:
    """
    Which switch values the caller enabled.

    Defaults mirror a typical scene release: -m3, 4 MB dictionary, recursion.
    """
    compression_levels: List[int] = field(default_factory=lambda: [3])
    archive_formats: List[int] = field(default_factory=list)
    dictionary_sizes: List[str] = field(default_factory=lambda: ["4096k"])
    mtime_precisions: List[int] = field(default_factory=list)
    ctime_precisions: List[int] = field(default_factory=list)
    atime_precisions: List[int] = field(default_factory=list)
    toggle_ignore_attributes: bool = False
    recurse: bool = True
    no_sort: bool = False
    disable_solid: bool = False
    threads: Optional[Tuple[int, int]] = None
    volume_size: Optional[int] = None
    volume_unit: VolumeUnit = VolumeUnit.KB
    old_volume_naming: bool = False

    @property
    def is_volume_archive(self) -> bool:
        return self.volume_size is not None and self.volume_size > 0

    def with_precisions(
        self,
        mtime: Optional[int] = None,
        ctime: Optional[int] = None,
        atime: Optional[int] = None
    ) -> SwitchSelection:
        """Fill empty timestamp axes from recovered precision classes."""
        data = self.to_dict()
        for key, precision in (
            ("mtime_precisions", mtime),
            ("ctime_precisions", ctime),
            ("atime_precisions", atime),
        ):
            if precision is not None and not data[key]:
                data[key] = [int(precision)]
                logger.debug(f"Timestamp axis {key} narrowed to {int(precision)}")
        return SwitchSelection.from_dict(data)

    def build_axes(self) -> List[ParameterAxis]:
        """Axes in command-line order."""
        axes = [
            ParameterAxis(
                AXIS_ATTRIBUTES,
                [SwitchValue("-ai", 390)],
                enabled=self.toggle_ignore_attributes,
                optional=True,
            ),
            ParameterAxis(AXIS_RECURSE, [SwitchValue("-r", 200)], enabled=self.recurse),
            ParameterAxis(AXIS_NO_SORT, [SwitchValue("-ds", 200)], enabled=self.no_sort),
            ParameterAxis(AXIS_NON_SOLID, [SwitchValue("-s-", 201)], enabled=self.disable_solid),
            ParameterAxis(AXIS_COMPRESSION, [compression_switch(m) for m in self.compression_levels]),
            ParameterAxis(AXIS_FORMAT, [archive_format_switch(f) for f in self.archive_formats]),
            ParameterAxis(AXIS_DICTIONARY, [dictionary_switch(d) for d in self.dictionary_sizes]),
            ParameterAxis(AXIS_MTIME, [timestamp_switch("m", p) for p in self.mtime_precisions]),
            ParameterAxis(AXIS_CTIME, [timestamp_switch("c", p) for p in self.ctime_precisions]),
            ParameterAxis(AXIS_ATIME, [timestamp_switch("a", p) for p in self.atime_precisions]),
        ]

        volume_values: List[SwitchValue] = []
        naming_values: List[SwitchValue] = []
        if self.is_volume_archive:
            volume_values.append(SwitchValue(volume_argument(self.volume_size, self.volume_unit), 200))
            if self.old_volume_naming:
                naming_values.append(SwitchValue("-vn", 300, 699))
        axes.append(ParameterAxis(AXIS_VOLUME, volume_values))
        axes.append(ParameterAxis(AXIS_VOLUME_NAMING, naming_values))

        thread_values: List[SwitchValue] = []
        if self.threads is not None:
            start, end = self.threads
            if start > end:
                end = start
            thread_values = [SwitchValue(f"-mt{n}", 360) for n in range(start, end + 1)]
        axes.append(ParameterAxis(AXIS_THREADS, thread_values))

        return axes

    def to_dict(self) -> dict:
        data = asdict(self)
        data["volume_unit"] = self.volume_unit.value
        data["threads"] = list(self.threads) if self.threads is not None else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> SwitchSelection:
        data = dict(data)
        if "volume_unit" in data:
            data["volume_unit"] = VolumeUnit(data["volume_unit"])
        if data.get("threads") is not None:
            start, end = data["threads"]
            data["threads"] = (int(start), int(end))
        return cls(**data)


def axis_by_name(axes: Iterable[ParameterAxis], name: str) -> Optional[ParameterAxis]:
    for axis in axes:
        if axis.name == name:
            return axis
    return None
