"""
Result Collection
=================

Decides what happens to each verified candidate:

  - matches become MatchRecords; with stop_on_first_match the current
    phase ends right there
  - non-matching output is kept, or deleted when every non-match should go
    (delete_rar_files) or when its checksum was already produced by an
    earlier candidate (delete_duplicate_crc_files). The first candidate to
    produce a checksum is the canonical one and is never deleted for being
    a duplicate.
  - after the search a single retained match can be renamed to the
    original volume names
  - the header patch pass rewrites fields the compressor cannot set
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .candidates import CandidateArgumentSet
from .errors import StorageFatalError
from .options import SearchPolicy
from .phases import Phase
from .rar_headers import HeaderPatch, patch_volume
from .verification import VerificationResult
from .versions import CompressorInstallation

logger = logging.getLogger(__name__)


@dataclass
class MatchRecord:
    """
    A candidate whose output reproduced the target.

    Attributes:
        candidate: The argument set that matched
        volumes: Produced volume paths (empty for phase-1 comment probes)
        checksums: Checksums of those volumes
        installation_label: Compressor installation folder name
        version: Compressor build number
        phase: Phase the match was found in
        patched: Volumes went through the header patch pass
        partial: Only the first volume was produced and verified
    """
    candidate: CandidateArgumentSet
    volumes: List[Path]
    checksums: List[str]
    installation_label: str
    version: int
    phase: Phase
    patched: bool = False
    partial: bool = False

    @property
    def arguments(self) -> str:
        return str(self.candidate)

    def __repr__(self) -> str:
        return (
            f"MatchRecord(phase={self.phase.name}, "
            f"version={self.installation_label}, "
            f"arguments={self.arguments!r})"
        )


@dataclass
class CollectDecision:
    """What the collector did with one candidate's output."""
    match: Optional[MatchRecord] = None
    stop: bool = False
    duplicate: bool = False
    deleted: bool = False


class ResultCollector:
    """
    Applies the search policy to verified candidates.

    Owned by one orchestrator; not thread-safe.
    """

    def __init__(
        self,
        policy: SearchPolicy,
        original_names: Sequence[str] = (),
        patch: Optional[HeaderPatch] = None
    ) -> None:
        self.policy = policy
        self.original_names = list(original_names)
        self.patch = patch
        self.matches: List[MatchRecord] = []
        self.comment_matches: List[MatchRecord] = []
        self._seen: Dict[str, Path] = {}
        self.deleted_count = 0

    @property
    def patching_enabled(self) -> bool:
        return self.policy.header_patching and self.patch is not None and not self.patch.is_noop

    def apply_header_patch(self, volumes: Sequence[Path]) -> bool:
        """
        Run the header patch pass over produced volumes.

        Returns:
            True if any volume was modified

        Raises:
            HeaderPatchError: If a volume's headers are malformed
            StorageFatalError: If a volume cannot be rewritten
        """
        if not self.patching_enabled:
            return False

        changed = False
        for volume in volumes:
            try:
                changed = patch_volume(volume, self.patch) or changed
            except OSError as e:
                raise StorageFatalError(f"Cannot patch {volume}: {e}") from e
        return changed

    def collect(
        self,
        candidate: CandidateArgumentSet,
        verification: VerificationResult,
        installation: CompressorInstallation,
        patched: bool = False,
        partial: bool = False
    ) -> CollectDecision:
        """Record a phase-2 candidate's verified output."""
        key = verification.first_checksum
        first_volume = verification.volumes[0] if verification.volumes else None

        if verification.matched:
            record = MatchRecord(
                candidate=candidate,
                volumes=list(verification.volumes),
                checksums=list(verification.checksums),
                installation_label=installation.label,
                version=installation.version,
                phase=Phase.PHASE2,
                patched=patched,
                partial=partial,
            )
            self.matches.append(record)
            if key is not None and first_volume is not None:
                self._seen.setdefault(key, first_volume)
            logger.info(f"[Phase2] Match: {installation.label} {candidate}")
            return CollectDecision(match=record, stop=self.policy.stop_on_first_match)

        duplicate = key is not None and key in self._seen
        if key is not None and not duplicate and first_volume is not None:
            self._seen[key] = first_volume

        deleted = False
        if self.policy.delete_rar_files or (duplicate and self.policy.delete_duplicate_crc_files):
            self.discard(verification.volumes)
            deleted = True

        return CollectDecision(duplicate=duplicate, deleted=deleted)

    def collect_comment(
        self,
        candidate: CandidateArgumentSet,
        matched: bool,
        installation: CompressorInstallation
    ) -> CollectDecision:
        """Record a phase-1 comment probe."""
        if not matched:
            return CollectDecision()

        record = MatchRecord(
            candidate=candidate,
            volumes=[],
            checksums=[],
            installation_label=installation.label,
            version=installation.version,
            phase=Phase.PHASE1,
        )
        self.comment_matches.append(record)
        return CollectDecision(match=record, stop=self.policy.stop_on_first_match)

    def seen_checksum(self, checksum: str) -> Optional[Path]:
        """First volume that produced this checksum, if any."""
        return self._seen.get(checksum)

    def discard(self, volumes: Sequence[Path]) -> None:
        """Delete produced volumes and their candidate folder when it empties."""
        parents = set()
        for volume in volumes:
            volume = Path(volume)
            parents.add(volume.parent)
            try:
                volume.unlink()
                self.deleted_count += 1
            except FileNotFoundError:
                pass
            except OSError as e:
                raise StorageFatalError(f"Cannot delete {volume}: {e}") from e

        for parent in parents:
            try:
                parent.rmdir()
            except OSError:
                # Not empty (or already gone): leave it
                pass

    def rename_to_original(self) -> List[Path]:
        """
        Rename the volumes of the single retained match to the original
        names. A no-op when disabled, without names, or with zero or
        several matches.
        """
        if not self.policy.rename_to_original or not self.original_names:
            return []

        if len(self.matches) != 1:
            logger.info(f"Rename to original names skipped: {len(self.matches)} matches retained")
            return []

        match = self.matches[0]
        if len(match.volumes) != len(self.original_names):
            logger.warning(
                f"Renaming {len(match.volumes)} produced volume(s) "
                f"with {len(self.original_names)} original name(s)"
            )

        renamed: List[Path] = []
        for volume, name in zip(match.volumes, self.original_names):
            target = volume.with_name(name)
            if target != volume:
                try:
                    volume.replace(target)
                except OSError as e:
                    raise StorageFatalError(f"Cannot rename {volume.name} to {name}: {e}") from e
                logger.info(f"Renamed {volume.name} -> {name}")
            renamed.append(target)

        match.volumes = renamed + match.volumes[len(renamed):]
        return renamed
