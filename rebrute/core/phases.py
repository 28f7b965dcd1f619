"""
Phase Sequencing
================

Per compressor build the search runs in up to two phases:

  Phase 1 (comment probe): only when the original archive's compressed
  comment is known. A small generator over the axes that shape comment
  compression is tried; each candidate's comment block is compared with
  the recovered bytes.

  Phase 2 (full archive): the full generator, narrowed to the
  compression / format / dictionary combinations phase 1 confirmed.
  A build for which phase 1 found nothing is not searched further.

The runner only sequences; running a phase is delegated to a callable
supplied by the orchestrator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, FrozenSet, List, Optional, Sequence

from .candidates import CandidateGenerator, Projection
from .switches import (
    AXIS_COMPRESSION,
    COMMENT_AXES,
    ParameterAxis,
    compression_switch,
)

logger = logging.getLogger(__name__)

# Comment method byte is 0x30 + compression level
COMMENT_METHOD_BASE = 0x30


class Phase(Enum):
    PHASE1 = 1
    PHASE2 = 2


class PhaseState(Enum):
    IDLE = "idle"
    PHASE1_RUNNING = "phase1_running"
    PHASE2_RUNNING = "phase2_running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PhaseState.COMPLETED, PhaseState.CANCELLED, PhaseState.FAILED)


_TRANSITIONS = {
    PhaseState.IDLE: {
        PhaseState.PHASE1_RUNNING,
        PhaseState.PHASE2_RUNNING,
        PhaseState.CANCELLED,
        PhaseState.FAILED,
    },
    PhaseState.PHASE1_RUNNING: {
        PhaseState.PHASE2_RUNNING,
        PhaseState.COMPLETED,
        PhaseState.CANCELLED,
        PhaseState.FAILED,
    },
    PhaseState.PHASE2_RUNNING: {
        PhaseState.COMPLETED,
        PhaseState.CANCELLED,
        PhaseState.FAILED,
    },
}


@dataclass
class PhaseOutcome:
    """
    What running one phase produced.

    Attributes:
        projections: COMMENT_AXES projections of the matching candidates
        matched: At least one candidate matched
        cancelled: Cancellation was observed during the phase
        stopped: The stop policy ended the phase early
    """
    projections: List[Projection] = field(default_factory=list)
    matched: bool = False
    cancelled: bool = False
    stopped: bool = False


RunPhase = Callable[[Phase, CandidateGenerator], PhaseOutcome]


def comment_level(method: Optional[int]) -> Optional[int]:
    """Compression level encoded in a comment method byte (0x30..0x35)."""
    if method is None:
        return None
    level = method - COMMENT_METHOD_BASE
    if 0 <= level <= 5:
        return level
    logger.warning(f"Unexpected comment method byte 0x{method:02x}, not narrowing")
    return None


def comment_axes(axes: Sequence[ParameterAxis], method: Optional[int] = None) -> List[ParameterAxis]:
    """
    Reduced axes for the comment probe.

    The compression axis is pinned to the level the comment method byte
    records, when it is known.
    """
    result: List[ParameterAxis] = []
    level = comment_level(method)
    for axis in axes:
        if axis.name not in COMMENT_AXES:
            continue
        if axis.name == AXIS_COMPRESSION and level is not None:
            axis = ParameterAxis(AXIS_COMPRESSION, [compression_switch(level)])
        result.append(axis)
    return result


class PhaseRunner:
    """
    Sequences phase 1 and phase 2 for one compressor build.

    Example:
        runner = PhaseRunner(full, comment_generator=probe, run_phase=run)
        state = runner.run()
    """

    def __init__(
        self,
        generator: CandidateGenerator,
        run_phase: RunPhase,
        comment_generator: Optional[CandidateGenerator] = None
    ) -> None:
        """
        Args:
            generator: Full phase-2 generator for this build
            run_phase: Runs every candidate of a generator for a phase
            comment_generator: Phase-1 generator, None when no comment is known
        """
        self.generator = generator
        self.run_phase = run_phase
        self.comment_generator = comment_generator
        self.state = PhaseState.IDLE
        self.phase1: Optional[PhaseOutcome] = None
        self.phase2: Optional[PhaseOutcome] = None
        self.phase2_skipped = False

    def transition(self, new_state: PhaseState) -> None:
        """
        Raises:
            RuntimeError: If the transition is not allowed
        """
        if new_state not in _TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Invalid phase transition {self.state.name} -> {new_state.name}")
        logger.debug(f"Phase state {self.state.name} -> {new_state.name}")
        self.state = new_state

    def phase2_generator(self) -> CandidateGenerator:
        """Full generator, narrowed by phase-1 findings when there are any."""
        if self.phase1 is None or not self.phase1.projections:
            return self.generator
        allowed: FrozenSet[Projection] = frozenset(self.phase1.projections)
        return self.generator.narrowed(allowed, COMMENT_AXES)

    def run(self) -> PhaseState:
        try:
            if self.comment_generator is not None:
                self.transition(PhaseState.PHASE1_RUNNING)
                self.phase1 = self.run_phase(Phase.PHASE1, self.comment_generator)

                if self.phase1.cancelled:
                    self.transition(PhaseState.CANCELLED)
                    return self.state

                if not self.phase1.matched:
                    self.phase2_skipped = True
                    self.transition(PhaseState.COMPLETED)
                    return self.state

            self.transition(PhaseState.PHASE2_RUNNING)
            self.phase2 = self.run_phase(Phase.PHASE2, self.phase2_generator())

            if self.phase2.cancelled:
                self.transition(PhaseState.CANCELLED)
            else:
                self.transition(PhaseState.COMPLETED)
            return self.state

        except Exception:
            if not self.state.is_terminal:
                self.state = PhaseState.FAILED
            raise

    @property
    def matched(self) -> bool:
        return self.phase2 is not None and self.phase2.matched
