"""
Search Orchestrator
===================

Top-level driver of a reconstruction search.

For every participating compressor build (ascending) it runs the phase
sequence, executes each candidate, verifies the produced volumes and hands
them to the result collector. Progress, status and log lines go out through
plain callbacks so any front end (CLI, GUI, tests) can listen.

Features:
- Sequential version x phase x candidate loop driven by lazy generators
- Cancellation via threading.Event, honoured between candidates and inside
  running compressor processes
- Progress from counters only (bytes planned vs. bytes processed)
- First-volume-only testing of split archives
- Terminal states SUCCESS / EXHAUSTED / CANCELLED / ERROR

Usage:
    orchestrator = SearchOrchestrator(options, on_progress=print)
    result = orchestrator.run()
    if result.success:
        for match in result.matches:
            print(match.arguments)
"""

from __future__ import annotations

import logging
import shutil
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Callable, List, Optional

from .candidates import CandidateArgumentSet, CandidateGenerator
from .errors import (
    ConfigurationError,
    ExecutionError,
    HeaderPatchError,
    RebruteError,
    StorageFatalError,
)
from .executor import CandidateExecutor, ExecutionOutcome
from .options import SearchOptions
from .phases import Phase, PhaseOutcome, PhaseRunner, PhaseState, comment_axes
from .rar_headers import read_comment_payload
from .release import apply_timestamps, collect_input_files, total_input_size
from .results import CollectDecision, MatchRecord, ResultCollector
from .switches import COMMENT_AXES
from .verification import Verifier, comment_matches
from .versions import CompressorInstallation, VersionMatrix
from .volumes import locate_volumes

logger = logging.getLogger(__name__)

COMMENT_WORK_DIR = "_comment"
COMMENT_FILE = "comment.txt"
COMMENT_PROBE = "probe.rar"


class LogChannel(Enum):
    SYSTEM = "System"
    PHASE1 = "Phase1"
    PHASE2 = "Phase2"


class SearchStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"


class CompletionReason(Enum):
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


class TerminalState(Enum):
    SUCCESS = "success"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def completion_reason(self) -> CompletionReason:
        if self is TerminalState.SUCCESS:
            return CompletionReason.SUCCESS
        if self is TerminalState.CANCELLED:
            return CompletionReason.CANCELLED
        return CompletionReason.ERROR


@dataclass
class SearchProgress:
    """Snapshot sent after every candidate."""
    phase: Phase
    version_label: str
    arguments: str
    bytes_processed: int
    bytes_total: int
    candidates_tried: int = 0
    candidates_total: int = 0

    @property
    def percent(self) -> float:
        if self.bytes_total <= 0:
            return 0.0
        return min(100.0, self.bytes_processed * 100.0 / self.bytes_total)


@dataclass
class SearchState:
    """Mutable search state; owned by exactly one orchestrator."""
    version_index: int = 0
    phase: Optional[Phase] = None
    candidate_index: int = 0
    candidates_tried: int = 0
    candidates_total: int = 0
    bytes_processed: int = 0
    bytes_total: int = 0
    matches: List[MatchRecord] = field(default_factory=list)
    cancelled: bool = False
    terminal: Optional[TerminalState] = None
    error: Optional[str] = None


@dataclass
class SearchResult:
    """Outcome of SearchOrchestrator.run()."""
    terminal: TerminalState
    matches: List[MatchRecord]
    candidates_tried: int
    duration: float
    error: Optional[str] = None

    @property
    def reason(self) -> CompletionReason:
        return self.terminal.completion_reason

    @property
    def success(self) -> bool:
        return self.terminal is TerminalState.SUCCESS


@dataclass
class _VersionPlan:
    installation: CompressorInstallation
    generator: CandidateGenerator
    comment_generator: Optional[CandidateGenerator]
    planned_bytes: int


ProgressCallback = Callable[[SearchProgress], None]
StatusCallback = Callable[[SearchStatus, Optional[CompletionReason]], None]
LogCallback = Callable[[LogChannel, str], None]


class SearchOrchestrator:
    """
    Runs one search to completion. Instances are single use.

    Example:
        orchestrator = SearchOrchestrator(
            options,
            on_progress=lambda p: print(f"{p.percent:.1f}%"),
            on_log=lambda channel, msg: print(channel.value, msg),
        )
        threading.Timer(600, orchestrator.stop).start()
        result = orchestrator.run()
    """

    def __init__(
        self,
        options: SearchOptions,
        on_progress: Optional[ProgressCallback] = None,
        on_status_changed: Optional[StatusCallback] = None,
        on_log: Optional[LogCallback] = None,
        executor: Optional[CandidateExecutor] = None,
        verifier: Optional[Verifier] = None,
        version_matrix: Optional[VersionMatrix] = None,
        cancel_event: Optional[threading.Event] = None,
        probe_versions: bool = True
    ) -> None:
        """
        Args:
            options: Search input
            on_progress: Called after every candidate
            on_status_changed: Called with RUNNING at start, COMPLETED + reason at the end
            on_log: Receives channel log lines (also mirrored to logging)
            executor: Compressor runner (default: CandidateExecutor())
            verifier: Checksum verifier (default: Verifier(options.target))
            version_matrix: Installations to use (default: discovered from
                            options.installations_dir)
            cancel_event: External cancellation event
            probe_versions: Run executables to read their build number
        """
        self.options = options
        self.on_progress = on_progress
        self.on_status_changed = on_status_changed
        self.on_log = on_log
        self.executor = executor or CandidateExecutor()
        self.verifier = verifier or Verifier(options.target)
        self.version_matrix = version_matrix
        self.cancel_event = cancel_event or threading.Event()
        self.probe_versions = probe_versions

        self.state = SearchState()
        self.collector = ResultCollector(
            options.policy,
            original_names=options.metadata.original_volume_names,
            patch=options.metadata.header_patch(),
        )
        self.switches = options.effective_switches()
        self.inputs: List[str] = []
        self.input_size = 0
        self._plans: List[_VersionPlan] = []
        self._started = False

    # -- Events ---------------------------------------------------------------

    def stop(self) -> None:
        """Request cancellation; the running compressor is killed."""
        if not self.cancel_event.is_set():
            self.log(LogChannel.SYSTEM, "Cancellation requested")
        self.cancel_event.set()

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def log(self, channel: LogChannel, message: str) -> None:
        logger.info(f"[{channel.value}] {message}")
        if self.on_log:
            self.on_log(channel, message)

    def _emit_status(self, status: SearchStatus, reason: Optional[CompletionReason] = None) -> None:
        if self.on_status_changed:
            self.on_status_changed(status, reason)

    def _report_progress(self, phase: Phase, installation: CompressorInstallation,
                         candidate: CandidateArgumentSet) -> None:
        if self.on_progress:
            self.on_progress(SearchProgress(
                phase=phase,
                version_label=installation.label,
                arguments=str(candidate),
                bytes_processed=self.state.bytes_processed,
                bytes_total=self.state.bytes_total,
                candidates_tried=self.state.candidates_tried,
                candidates_total=self.state.candidates_total,
            ))

    # -- Preparation ----------------------------------------------------------

    @property
    def output_dir(self) -> Path:
        # Absolute: the compressor runs with the release dir as cwd
        return Path(self.options.output_dir).resolve()

    @property
    def comment_dir(self) -> Path:
        return self.output_dir / COMMENT_WORK_DIR

    def _prepare(self) -> None:
        options = self.options
        if options.target.is_empty:
            raise ConfigurationError("Verification set is empty")

        matrix = self.version_matrix
        if matrix is None:
            matrix = VersionMatrix.from_directory(
                options.installations_dir, options.enabled_majors, probe=self.probe_versions
            )
        installations = matrix.select()
        skipped = matrix.summary()["skipped"]
        if skipped:
            self.log(LogChannel.SYSTEM, f"Versions not enabled, skipped: {', '.join(skipped)}")

        self.inputs = collect_input_files(options.release_dir, options.metadata.archived_files)
        self.input_size = total_input_size(options.release_dir, self.inputs)

        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageFatalError(f"Cannot create output directory {self.output_dir}: {e}") from e

        if options.metadata.timestamps:
            try:
                count = apply_timestamps(options.release_dir, options.metadata.timestamps)
            except OSError as e:
                raise StorageFatalError(f"Cannot apply timestamps: {e}") from e
            self.log(LogChannel.SYSTEM, f"Applied recovered timestamps to {count} entries")

        metadata = options.metadata
        comment = metadata.comment_text if metadata.has_comment_payload else None
        if comment is not None:
            try:
                self.comment_dir.mkdir(parents=True, exist_ok=True)
                (self.comment_dir / COMMENT_FILE).write_bytes(comment)
            except OSError as e:
                raise StorageFatalError(f"Cannot prepare comment work directory: {e}") from e

        try:
            axes = self.switches.build_axes()
        except ValueError as e:
            raise ConfigurationError(f"Invalid switch selection: {e}") from e
        probe_axes = comment_axes(axes, metadata.comment_method) if comment is not None else []

        for installation in installations:
            generator = CandidateGenerator(axes, installation.version)
            sizes = ", ".join(f"{name}={count}" for name, count in generator.cardinalities())
            logger.debug(f"{installation.label} axis sizes: {sizes}")
            comment_generator = None
            planned = generator.total * self.input_size
            candidates = generator.total
            if comment is not None:
                comment_generator = CandidateGenerator(probe_axes, installation.version)
                planned += comment_generator.total * len(comment)
                candidates += comment_generator.total

            self._plans.append(_VersionPlan(installation, generator, comment_generator, planned))
            self.state.bytes_total += planned
            self.state.candidates_total += candidates

        self.log(
            LogChannel.SYSTEM,
            f"{len(installations)} compressor version(s), {len(self.inputs)} input file(s), "
            f"{self.state.candidates_total} candidate(s) planned"
        )

    # -- Candidates -----------------------------------------------------------

    def _candidate_dir(self, installation: CompressorInstallation, index: int,
                       candidate: CandidateArgumentSet) -> Path:
        slug = "_".join(s.lstrip('-') for s in candidate.switches) or "baseline"
        return self.output_dir / installation.label / f"{index:05d}_{slug}"

    def _remove_tree(self, path: Path) -> None:
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Cannot remove {path}: {e}")

    def _execute(self, installation: CompressorInstallation, arguments: List[str],
                 archive: Path, inputs: List[str], cwd: Path,
                 first_volume_only: bool = False) -> ExecutionOutcome:
        return self.executor.run(
            installation,
            arguments,
            archive,
            inputs,
            cwd=cwd,
            cancel_event=self.cancel_event,
            first_volume_only=first_volume_only,
        )

    def _clear_probe(self, archive: Path) -> None:
        for volume in locate_volumes(archive):
            try:
                volume.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise StorageFatalError(f"Cannot remove comment probe {volume}: {e}") from e

    def _try_comment(self, installation: CompressorInstallation,
                     candidate: CandidateArgumentSet) -> Optional[CollectDecision]:
        archive = self.comment_dir / COMMENT_PROBE
        arguments = candidate.arguments + [f"-z{COMMENT_FILE}"]
        self._clear_probe(archive)

        try:
            outcome = self._execute(installation, arguments, archive, [COMMENT_FILE], self.comment_dir)
            if outcome.cancelled:
                return None
            try:
                produced = read_comment_payload(outcome.volumes[0])
            except OSError as e:
                raise StorageFatalError(f"Cannot read comment probe: {e}") from e
        finally:
            self._clear_probe(archive)

        matched = comment_matches(produced, self.options.metadata.comment_compressed)
        return self.collector.collect_comment(candidate, matched, installation)

    def _try_archive(self, installation: CompressorInstallation, index: int,
                     candidate: CandidateArgumentSet) -> Optional[CollectDecision]:
        candidate_dir = self._candidate_dir(installation, index, candidate)
        try:
            candidate_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageFatalError(f"Cannot create {candidate_dir}: {e}") from e

        archive = candidate_dir / self.options.effective_archive_name
        try:
            return self._produce_and_verify(installation, candidate, candidate_dir, archive)
        except (ExecutionError, HeaderPatchError):
            self._remove_tree(candidate_dir)
            raise

    def _produce_and_verify(self, installation: CompressorInstallation,
                            candidate: CandidateArgumentSet, candidate_dir: Path,
                            archive: Path) -> Optional[CollectDecision]:
        release_dir = Path(self.options.release_dir)
        first_only = self.switches.is_volume_archive

        outcome = self._execute(installation, candidate.arguments, archive,
                                self.inputs, release_dir, first_only)
        if outcome.cancelled:
            self._remove_tree(candidate_dir)
            return None

        patched = self.collector.apply_header_patch(outcome.volumes)
        verification = self.verifier.verify(outcome.volumes)

        if verification.matched and outcome.partial and self.options.policy.complete_all_volumes:
            self.log(LogChannel.PHASE2, f"First volume matches, producing all volumes: {candidate}")
            try:
                for volume in outcome.volumes:
                    volume.unlink()
            except OSError as e:
                raise StorageFatalError(f"Cannot remove first volume {volume}: {e}") from e
            outcome = self._execute(installation, candidate.arguments, archive,
                                    self.inputs, release_dir)
            if outcome.cancelled:
                self._remove_tree(candidate_dir)
                return None
            patched = self.collector.apply_header_patch(outcome.volumes)
            verification = self.verifier.verify(outcome.volumes)

        return self.collector.collect(
            candidate, verification, installation, patched=patched, partial=outcome.partial
        )

    def _advance(self, phase: Phase, installation: CompressorInstallation,
                 candidate: CandidateArgumentSet) -> None:
        if phase is Phase.PHASE1:
            step = len(self.options.metadata.comment_text or b"")
        else:
            step = self.input_size
        self.state.candidates_tried += 1
        self.state.bytes_processed = min(self.state.bytes_total, self.state.bytes_processed + step)
        self._report_progress(phase, installation, candidate)

    def _run_phase(self, installation: CompressorInstallation, phase: Phase,
                   generator: CandidateGenerator) -> PhaseOutcome:
        channel = LogChannel.PHASE1 if phase is Phase.PHASE1 else LogChannel.PHASE2
        outcome = PhaseOutcome()
        self.state.phase = phase
        self.log(channel, f"{installation}: {generator.total} candidate(s)")

        for index, candidate in enumerate(generator.generate()):
            if self.is_cancelled:
                outcome.cancelled = True
                break

            self.state.candidate_index = index
            if candidate.is_empty:
                logger.debug(f"Skipping incompatible switch combination for {installation.label}")
                self._advance(phase, installation, candidate)
                continue

            decision: Optional[CollectDecision] = None
            try:
                if phase is Phase.PHASE1:
                    decision = self._try_comment(installation, candidate)
                else:
                    decision = self._try_archive(installation, index, candidate)
            except (ExecutionError, HeaderPatchError) as e:
                self.log(channel, f"{candidate}: {e}")

            if self.is_cancelled:
                outcome.cancelled = True
                break

            self._advance(phase, installation, candidate)

            if decision is None or decision.match is None:
                continue

            outcome.matched = True
            outcome.projections.append(candidate.projection(COMMENT_AXES))
            if phase is Phase.PHASE1:
                self.log(channel, f"Comment match: {installation.label} {candidate}")
            else:
                self.state.matches.append(decision.match)
                suffix = " (first volume)" if decision.match.partial else ""
                self.log(channel, f"MATCH{suffix}: {installation.label} {candidate}")

            if decision.stop:
                outcome.stopped = True
                break

        return outcome

    # -- Main loop ------------------------------------------------------------

    def _search(self) -> None:
        processed = 0
        for index, plan in enumerate(self._plans):
            if self.is_cancelled:
                self.state.cancelled = True
                break

            self.state.version_index = index
            self.log(LogChannel.SYSTEM, f"Testing {plan.installation}")

            runner = PhaseRunner(
                plan.generator,
                run_phase=partial(self._run_phase, plan.installation),
                comment_generator=plan.comment_generator,
            )
            final = runner.run()

            if runner.phase2_skipped:
                self.log(LogChannel.PHASE1, f"No comment match for {plan.installation.label}, skipping")

            if final is PhaseState.CANCELLED:
                self.state.cancelled = True
                break

            # Narrowed or stopped passes leave planned bytes unspent
            processed += plan.planned_bytes
            self.state.bytes_processed = max(self.state.bytes_processed, processed)

            if runner.matched and self.options.policy.stop_on_first_match:
                break

        if self.is_cancelled:
            self.state.cancelled = True

    def _terminal_state(self) -> TerminalState:
        if self.state.cancelled:
            return TerminalState.CANCELLED
        if self.state.matches:
            return TerminalState.SUCCESS
        return TerminalState.EXHAUSTED

    def run(self) -> SearchResult:
        """
        Run the search to a terminal state.

        Configuration and storage problems end the search with ERROR; the
        status callback is always called with COMPLETED before returning.
        """
        if self._started:
            raise RuntimeError("SearchOrchestrator instances are single use")
        self._started = True

        start_time = time.time()
        self._emit_status(SearchStatus.RUNNING)
        self.log(LogChannel.SYSTEM, "Search started")
        logger.debug(f"Search options: {self.options.to_dict()}")

        try:
            self._prepare()
            self._search()
            self.state.terminal = self._terminal_state()
            if self.state.terminal is TerminalState.SUCCESS:
                self.collector.rename_to_original()
        except RebruteError as e:
            self.state.error = str(e)
            self.state.terminal = TerminalState.CANCELLED if self.is_cancelled else TerminalState.ERROR
            self.log(LogChannel.SYSTEM, f"Error: {e}")
        except Exception as e:
            self.state.error = str(e)
            self.state.terminal = TerminalState.ERROR
            logger.exception("Search failed unexpectedly")
            self._finish(start_time)
            raise
        else:
            self.state.error = None

        return self._finish(start_time)

    def _finish(self, start_time: float) -> SearchResult:
        if self.comment_dir.exists():
            self._remove_tree(self.comment_dir)

        terminal = self.state.terminal or TerminalState.ERROR
        duration = time.time() - start_time
        result = SearchResult(
            terminal=terminal,
            matches=list(self.state.matches),
            candidates_tried=self.state.candidates_tried,
            duration=duration,
            error=self.state.error,
        )

        if self.collector.deleted_count:
            self.log(LogChannel.SYSTEM, f"Deleted {self.collector.deleted_count} non-matching output(s)")

        if terminal is TerminalState.SUCCESS:
            self.log(LogChannel.SYSTEM, f"Search finished: {len(result.matches)} match(es) in {duration:.1f}s")
        elif terminal is TerminalState.EXHAUSTED:
            self.log(LogChannel.SYSTEM, f"Search exhausted after {result.candidates_tried} candidate(s), no match")
        elif terminal is TerminalState.CANCELLED:
            self.log(LogChannel.SYSTEM, f"Search cancelled after {result.candidates_tried} candidate(s)")

        self._emit_status(SearchStatus.COMPLETED, terminal.completion_reason)
        return result
