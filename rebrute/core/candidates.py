"""
Candidate Generation
====================

Turns the enabled axes into concrete argument lists for one compressor
build. The product is computed lazily with itertools.product over the
filtered axis values, so adding an axis never changes the loop structure.

The candidate count is known up front (product of filtered cardinalities),
which lets the orchestrator report progress from counters alone.
"""

from __future__ import annotations

import itertools
import logging
import math
from dataclasses import dataclass
from typing import Collection, FrozenSet, Iterator, List, Optional, Sequence, Tuple

from .switches import (
    AXIS_FORMAT,
    ArchiveFormat,
    ParameterAxis,
    SwitchValue,
    axis_by_name,
    default_format,
    selectable_formats,
)

logger = logging.getLogger(__name__)

BASE_COMMAND = "a"

Selection = Tuple[Tuple[str, Optional[SwitchValue]], ...]
Projection = Tuple[Tuple[str, Optional[str]], ...]


@dataclass(frozen=True)
class CandidateArgumentSet:
    """
    One switch (or none) per axis, built for a specific compressor build.

    When the chosen switches do not fit the archive format this candidate
    would produce, the set is empty: it has no arguments and is skipped.
    """
    command: str
    selection: Selection
    compatible: bool = True

    @property
    def is_empty(self) -> bool:
        return not self.compatible

    @property
    def switches(self) -> List[str]:
        if not self.compatible:
            return []
        return [value.text for _, value in self.selection if value is not None]

    @property
    def arguments(self) -> List[str]:
        """Literal argument list passed to the compressor, before paths."""
        if not self.compatible:
            return []
        return [self.command] + self.switches

    def value_for(self, axis_name: str) -> Optional[SwitchValue]:
        for name, value in self.selection:
            if name == axis_name:
                return value
        return None

    def projection(self, axis_names: Collection[str]) -> Projection:
        """Switch texts of the named axes, used to carry phase-1 findings."""
        return tuple(
            (name, value.text if value is not None else None)
            for name, value in self.selection
            if name in axis_names
        )

    def __str__(self) -> str:
        return " ".join(self.arguments)


def build_candidate(
    selection: Selection,
    version: int,
    command: str = BASE_COMMAND
) -> CandidateArgumentSet:
    """
    Build a candidate for one compressor build.

    The effective archive format is the one requested by the chosen -ma
    switch, or the build's default. Any chosen switch that does not apply
    to that build and format yields an empty (skipped) set.
    """
    chosen_format = None
    for name, value in selection:
        if name == AXIS_FORMAT and value is not None:
            chosen_format = value.formats
    effective = chosen_format if chosen_format is not None else default_format(version)

    compatible = all(
        value is None or value.applies(version, effective)
        for _, value in selection
    )
    return CandidateArgumentSet(command, selection, compatible)


class CandidateGenerator:
    """
    Lazy cartesian product of filtered axis values.

    Example:
        generator = CandidateGenerator(selection.build_axes(), version=561)
        print(f"{generator.total} candidates")
        for candidate in generator.generate():
            run(candidate.arguments)
    """

    def __init__(
        self,
        axes: Sequence[ParameterAxis],
        version: int,
        command: str = BASE_COMMAND,
        allowed: Optional[FrozenSet[Projection]] = None,
        allowed_axes: Collection[str] = ()
    ) -> None:
        """
        Args:
            axes: Axes in command-line order
            version: Compressor build the candidates are for
            command: Base archive-creation command
            allowed: When given, only candidates whose projection onto
                     allowed_axes is in this set are produced
            allowed_axes: Axis names used for the projection
        """
        self.axes = list(axes)
        self.version = version
        self.command = command
        self.allowed = allowed
        self.allowed_axes = tuple(allowed_axes)

        formats = selectable_formats(version, axis_by_name(self.axes, AXIS_FORMAT))
        self._formats: ArchiveFormat = formats
        self._filtered: List[List[Optional[SwitchValue]]] = [
            axis.filtered(version, formats) for axis in self.axes
        ]

        if self.allowed is not None:
            self._total = sum(1 for _ in self._iter_selections())
        else:
            self._total = math.prod(len(values) for values in self._filtered)

    @property
    def total(self) -> int:
        """Number of candidates one pass produces."""
        return self._total

    def __len__(self) -> int:
        return self._total

    def cardinalities(self) -> List[Tuple[str, int]]:
        return [(axis.name, len(values)) for axis, values in zip(self.axes, self._filtered)]

    def narrowed(self, allowed: FrozenSet[Projection], axis_names: Collection[str]) -> CandidateGenerator:
        """A generator restricted to the given projections."""
        return CandidateGenerator(self.axes, self.version, self.command, allowed, axis_names)

    def _iter_selections(self) -> Iterator[Selection]:
        names = [axis.name for axis in self.axes]
        for combination in itertools.product(*self._filtered):
            selection: Selection = tuple(zip(names, combination))
            if self.allowed is not None:
                projection = tuple(
                    (name, value.text if value is not None else None)
                    for name, value in selection
                    if name in self.allowed_axes
                )
                if projection not in self.allowed:
                    continue
            yield selection

    def generate(self) -> Iterator[CandidateArgumentSet]:
        """A fresh single-use iterator over this pass's candidates."""
        for selection in self._iter_selections():
            yield build_candidate(selection, self.version, self.command)
