"""
Search Input
============

Immutable records describing one search: where the compressors, release
and output live, what to reproduce, which switches to try, how to treat
results, and whatever metadata was recovered from the original release.

A job file is plain JSON mirroring these dataclasses, e.g.:

    {
        "installations_dir": "C:/rar",
        "release_dir": "D:/release",
        "output_dir": "D:/out",
        "verification": {"hash_type": "crc32",
                         "entries": [["release.rar", "deadbeef"]]},
        "switches": {"compression_levels": [3, 5], "archive_formats": [4]},
        "policy": {"stop_on_first_match": true},
        "metadata": {"comment_text": "...", "comment_compressed_hex": "..."}
    }
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple

from .rar_headers import HeaderPatch
from .switches import SwitchSelection, TimestampPrecision
from .verification import HashType, VerificationTarget
from .versions import DEFAULT_MAJORS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchPolicy:
    """
    What to do with candidates and matches.

    Attributes:
        stop_on_first_match: Halt the current phase on the first verified match
        delete_duplicate_crc_files: Delete non-matching output whose checksum was seen before
        delete_rar_files: Delete every non-matching output
        complete_all_volumes: Re-run a first-volume match to produce all volumes
        rename_to_original: Rename a single retained match to the original names
        header_patching: Run the header patch pass before verification
    """
    stop_on_first_match: bool = True
    delete_duplicate_crc_files: bool = True
    delete_rar_files: bool = False
    complete_all_volumes: bool = False
    rename_to_original: bool = False
    header_patching: bool = False


@dataclass(frozen=True)
class TimestampEntry:
    """Recovered timestamps of one archived entry and their precision classes."""
    mtime: Optional[datetime] = None
    ctime: Optional[datetime] = None
    atime: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: dict) -> TimestampEntry:
        return cls(**{
            key: datetime.fromisoformat(value)
            for key, value in data.items()
            if key in ("mtime", "ctime", "atime") and value
        })


@dataclass(frozen=True)
class RecoveredMetadata:
    """
    Metadata recovered from the original release (all optional).

    Attributes:
        original_volume_names: Volume file names of the published archive, in order
        archived_files: Relative paths stored in the archive (restricts the inputs)
        timestamps: Per-entry timestamps keyed by relative path
        mtime_precision / ctime_precision / atime_precision: Precision classes
        set_archive_attribute: Tri-state "archive" bit of stored files
        set_not_content_indexed: Tri-state "not content indexed" bit
        file_attributes: Exact attribute value of stored files
        comment_text: Uncompressed archive comment bytes
        comment_compressed: Compressed comment payload as stored in the archive
        comment_method: Method byte of the comment block (0x30 + level)
        host_os / comment_host_os: Host OS identifiers of file / comment headers
        comment_file_time / comment_attributes: Comment block header fields
        large: Whether file headers carry the LARGE flag
        high_pack_size / high_unp_size: High 32 bits stored with the LARGE flag
    """
    original_volume_names: Tuple[str, ...] = ()
    archived_files: Tuple[str, ...] = ()
    timestamps: Dict[str, TimestampEntry] = field(default_factory=dict)
    mtime_precision: Optional[TimestampPrecision] = None
    ctime_precision: Optional[TimestampPrecision] = None
    atime_precision: Optional[TimestampPrecision] = None
    set_archive_attribute: Optional[bool] = None
    set_not_content_indexed: Optional[bool] = None
    file_attributes: Optional[int] = None
    comment_text: Optional[bytes] = None
    comment_compressed: Optional[bytes] = None
    comment_method: Optional[int] = None
    host_os: Optional[int] = None
    comment_host_os: Optional[int] = None
    comment_file_time: Optional[int] = None
    comment_attributes: Optional[int] = None
    large: Optional[bool] = None
    high_pack_size: int = 0
    high_unp_size: int = 0

    @property
    def has_comment_payload(self) -> bool:
        return bool(self.comment_compressed) and bool(self.comment_text)

    def header_patch(self) -> HeaderPatch:
        return HeaderPatch(
            host_os=self.host_os,
            file_attributes=self.file_attributes,
            set_archive_attribute=self.set_archive_attribute,
            set_not_content_indexed=self.set_not_content_indexed,
            comment_host_os=self.comment_host_os,
            comment_file_time=self.comment_file_time,
            comment_attributes=self.comment_attributes,
            large=self.large,
            high_pack_size=self.high_pack_size,
            high_unp_size=self.high_unp_size,
        )

    @classmethod
    def from_dict(cls, data: dict) -> RecoveredMetadata:
        data = dict(data)
        result: dict = {}

        for key in ("original_volume_names", "archived_files"):
            if key in data:
                result[key] = tuple(data.pop(key))

        if "timestamps" in data:
            result["timestamps"] = {
                path: TimestampEntry.from_dict(entry)
                for path, entry in data.pop("timestamps").items()
            }

        for key in ("mtime_precision", "ctime_precision", "atime_precision"):
            if data.get(key) is not None:
                result[key] = TimestampPrecision(int(data.pop(key)))

        if data.get("comment_text") is not None:
            result["comment_text"] = data.pop("comment_text").encode('utf-8')
        if data.get("comment_compressed_hex") is not None:
            result["comment_compressed"] = bytes.fromhex(data.pop("comment_compressed_hex"))

        for key in ("file_attributes", "comment_method", "host_os", "comment_host_os",
                    "comment_file_time", "comment_attributes"):
            value = data.pop(key, None)
            if value is not None:
                result[key] = int(value, 0) if isinstance(value, str) else int(value)

        for key in ("set_archive_attribute", "set_not_content_indexed", "large",
                    "high_pack_size", "high_unp_size"):
            if key in data:
                result[key] = data.pop(key)

        if data:
            logger.warning(f"Ignoring unknown metadata keys: {', '.join(sorted(data))}")

        return cls(**result)


@dataclass(frozen=True)
class SearchOptions:
    """Everything one search needs, fixed at start."""
    installations_dir: Path
    release_dir: Path
    output_dir: Path
    target: VerificationTarget
    switches: SwitchSelection = field(default_factory=SwitchSelection)
    policy: SearchPolicy = field(default_factory=SearchPolicy)
    metadata: RecoveredMetadata = field(default_factory=RecoveredMetadata)
    enabled_majors: Tuple[int, ...] = DEFAULT_MAJORS
    archive_name: str = ""

    @property
    def effective_archive_name(self) -> str:
        """Name given to produced archives (first original volume name by default)."""
        if self.archive_name:
            return self.archive_name
        if self.metadata.original_volume_names:
            return self.metadata.original_volume_names[0]
        if self.target.filenames and self.target.filenames[0]:
            return self.target.filenames[0]
        return "archive.rar"

    def effective_switches(self) -> SwitchSelection:
        """Switch selection with recovered timestamp precisions filled in."""
        return self.switches.with_precisions(
            self.metadata.mtime_precision,
            self.metadata.ctime_precision,
            self.metadata.atime_precision,
        )

    @classmethod
    def from_dict(cls, data: dict) -> SearchOptions:
        verification = data.get("verification", {})
        target = VerificationTarget.from_pairs(
            [tuple(entry) for entry in verification.get("entries", [])],
            HashType(verification.get("hash_type", "crc32")),
        )
        return cls(
            installations_dir=Path(data["installations_dir"]),
            release_dir=Path(data["release_dir"]),
            output_dir=Path(data["output_dir"]),
            target=target,
            switches=SwitchSelection.from_dict(data.get("switches", {})),
            policy=SearchPolicy(**data.get("policy", {})),
            metadata=RecoveredMetadata.from_dict(data.get("metadata", {})),
            enabled_majors=tuple(data.get("enabled_majors", DEFAULT_MAJORS)),
            archive_name=data.get("archive_name", ""),
        )

    def to_dict(self) -> dict:
        """JSON-friendly summary, used for logging the job."""
        return {
            "installations_dir": str(self.installations_dir),
            "release_dir": str(self.release_dir),
            "output_dir": str(self.output_dir),
            "hash_type": self.target.hash_type.value,
            "hash_count": len(self.target),
            "switches": self.switches.to_dict(),
            "policy": asdict(self.policy),
            "enabled_majors": list(self.enabled_majors),
            "archive_name": self.effective_archive_name,
        }
