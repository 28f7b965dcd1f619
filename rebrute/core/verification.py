"""
Candidate Verification
======================

Computes CRC32 or SHA1 of produced volumes and compares them against the
checksums published with the original release. Files are read in 1MB
chunks so multi-gigabyte volumes never sit in memory.

Usage:
    target = VerificationTarget.from_pairs(
        [("release.part1.rar", "deadbeef")], HashType.CRC32
    )
    result = Verifier(target).verify([Path("out/release.part1.rar")])
    if result.matched:
        print(result.checksums)
"""

from __future__ import annotations

import hashlib
import logging
import re
import zlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from .errors import StorageFatalError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024  # 1MB chunks for efficient large file processing

_HEX_RE = re.compile(r'^[0-9a-fA-F]+$')


class HashType(Enum):
    """Checksum algorithm of the verification set."""
    CRC32 = "crc32"
    SHA1 = "sha1"

    @property
    def hex_length(self) -> int:
        return 8 if self is HashType.CRC32 else 40


@dataclass(frozen=True)
class VerificationTarget:
    """
    Expected checksums for the archive's volumes.

    Values are stored lower case. Duplicates are allowed; membership tests
    ignore order.

    Attributes:
        hash_type: Algorithm every value was computed with
        hashes: Expected hex digests, in the order they were supplied
        filenames: Original volume names paired with the digests, if known
    """
    hash_type: HashType
    hashes: Tuple[str, ...]
    filenames: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        normalized = []
        for value in self.hashes:
            value = value.strip().lower()
            if len(value) != self.hash_type.hex_length or not _HEX_RE.match(value):
                raise ValueError(
                    f"Invalid {self.hash_type.name} checksum {value!r}: "
                    f"expected {self.hash_type.hex_length} hex digits"
                )
            normalized.append(value)
        object.__setattr__(self, 'hashes', tuple(normalized))

    @classmethod
    def from_pairs(
        cls,
        pairs: Iterable[Tuple[str, str]],
        hash_type: HashType
    ) -> VerificationTarget:
        """Build from already-parsed (filename, checksum) entries."""
        pairs = list(pairs)
        return cls(
            hash_type=hash_type,
            hashes=tuple(checksum for _, checksum in pairs),
            filenames=tuple(name for name, _ in pairs),
        )

    @property
    def is_empty(self) -> bool:
        return not self.hashes

    def __contains__(self, checksum: object) -> bool:
        if not isinstance(checksum, str):
            return False
        return checksum.lower() in self.hashes

    def __len__(self) -> int:
        return len(self.hashes)


@dataclass
class VerificationResult:
    """Checksums of one candidate's volumes and whether they all match."""
    volumes: List[Path]
    checksums: List[str]
    matched: bool
    matched_checksums: List[str] = field(default_factory=list)

    @property
    def first_checksum(self) -> Optional[str]:
        return self.checksums[0] if self.checksums else None


class Verifier:
    """
    Checksums produced volumes against a VerificationTarget.

    Pure apart from reading the files. Subclasses may override compute()
    to change how a single file is digested.
    """

    def __init__(self, target: VerificationTarget) -> None:
        self.target = target

    @property
    def hash_type(self) -> HashType:
        return self.target.hash_type

    def compute(self, path: Path) -> str:
        """Hex digest of one file using the target's algorithm."""
        try:
            with open(path, 'rb') as f:
                if self.hash_type is HashType.CRC32:
                    crc = 0
                    while True:
                        chunk = f.read(CHUNK_SIZE)
                        if not chunk:
                            break
                        crc = zlib.crc32(chunk, crc)
                    return f"{crc & 0xFFFFFFFF:08x}"

                sha1 = hashlib.sha1()
                while True:
                    chunk = f.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    sha1.update(chunk)
                return sha1.hexdigest()
        except OSError as e:
            raise StorageFatalError(f"Cannot read produced volume {path}: {e}") from e

    def verify(self, volumes: Sequence[Path]) -> VerificationResult:
        """
        Match when at least one volume was produced and every volume's
        checksum is part of the target set.
        """
        volumes = [Path(v) for v in volumes]
        checksums = [self.compute(v) for v in volumes]
        matched_checksums = [c for c in checksums if c in self.target]
        matched = bool(checksums) and len(matched_checksums) == len(checksums)

        if matched:
            logger.debug(f"Verified {len(volumes)} volume(s): {', '.join(checksums)}")

        return VerificationResult(
            volumes=volumes,
            checksums=checksums,
            matched=matched,
            matched_checksums=matched_checksums,
        )


def comment_matches(produced: Optional[bytes], expected: bytes) -> bool:
    """Phase-1 check: compressed comment bytes must be identical."""
    return produced is not None and produced == expected
