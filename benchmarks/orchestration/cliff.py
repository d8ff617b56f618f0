#!/usr/bin/env python3
"""Cliff search: propose load targets and narrow toward the saturation point.

Two strategies share the same two operations:
  next()        -> the next target to probe, or None once the search is over
  overloaded()  -> the most recently yielded target could not be sustained

A target that is followed by another next() without an overloaded() call in
between is taken as sustained.

  ExponentialCliffSearcher: double from `floor` until something overloads (or
  `ceiling` holds), then bisect between the last good and first bad target.
  LoadIterator: replay a fixed list of targets, e.g. points found earlier.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Union


class SearchPhase(str, Enum):
    GROWING = "growing"
    NARROWING = "narrowing"
    DONE = "done"


class ExponentialCliffSearcher:
    def __init__(
        self,
        floor: int,
        ceiling: int,
        tolerance: float = 0.01,
        min_step: int = 1,
    ) -> None:
        if floor < 1:
            raise ValueError("floor must be >= 1")
        if ceiling < floor:
            raise ValueError(f"ceiling {ceiling} is below floor {floor}")
        self.floor = int(floor)
        self.ceiling = int(ceiling)
        self.tolerance = max(0.0, float(tolerance))
        self.min_step = max(1, int(min_step))

        self.lower = self.floor
        self.upper: Optional[int] = None
        self.candidate = self.floor
        self.phase = SearchPhase.GROWING
        # lower only counts as an answer once a probe at it held
        self._validated = False
        self._pending = False
        self.overloaded_targets: List[int] = []

    @property
    def answer(self) -> Optional[int]:
        """Highest target known to hold, or None if none held yet."""
        return self.lower if self._validated else None

    def next(self) -> Optional[int]:
        if self._pending:
            self._pending = False
            self._sustained()
        if self.phase is SearchPhase.DONE:
            return None
        self._pending = True
        return self.candidate

    def overloaded(self) -> None:
        if not self._pending:
            # repeated feedback for the same probe
            return
        self._pending = False
        self.overloaded_targets.append(self.candidate)
        self.upper = self.candidate
        if not self._validated:
            # even the floor did not hold
            self.phase = SearchPhase.DONE
            return
        self.phase = SearchPhase.NARROWING
        self._bisect()

    def _sustained(self) -> None:
        self.lower = self.candidate
        self._validated = True
        if self.phase is SearchPhase.GROWING:
            if self.candidate >= self.ceiling:
                self.phase = SearchPhase.DONE
                return
            self.candidate = min(self.candidate * 2, self.ceiling)
            return
        self._bisect()

    def _bisect(self) -> None:
        assert self.upper is not None
        if self.upper - self.lower <= max(self.min_step, math.floor(self.tolerance * self.lower)):
            self.phase = SearchPhase.DONE
            return
        self.candidate = (self.lower + self.upper) // 2

    def __repr__(self) -> str:
        return (
            f"ExponentialCliffSearcher(phase={self.phase.value}, lower={self.lower}, "
            f"upper={self.upper}, candidate={self.candidate})"
        )


class LoadIterator:
    """Replay a fixed sequence of targets; feedback is recorded, not acted on."""

    def __init__(self, loads: Iterable[int]) -> None:
        self.loads: List[int] = [int(v) for v in loads]
        self._index = 0
        self._current: Optional[int] = None
        self.overloaded_targets: List[int] = []

    @property
    def phase(self) -> SearchPhase:
        return SearchPhase.DONE if self._index >= len(self.loads) else SearchPhase.GROWING

    @property
    def answer(self) -> Optional[int]:
        held = [v for v in self.loads[: self._index] if v not in self.overloaded_targets]
        return max(held) if held else None

    def next(self) -> Optional[int]:
        if self._index >= len(self.loads):
            self._current = None
            return None
        self._current = self.loads[self._index]
        self._index += 1
        return self._current

    def overloaded(self) -> None:
        if self._current is not None and self._current not in self.overloaded_targets:
            self.overloaded_targets.append(self._current)

    def __repr__(self) -> str:
        return f"LoadIterator(loads={self.loads}, position={self._index})"


CliffSearcher = Union[ExponentialCliffSearcher, LoadIterator]


def make_searcher(
    loads: Optional[Sequence[int]],
    floor: int,
    ceiling: int,
    tolerance: float = 0.01,
    min_step: int = 1,
) -> CliffSearcher:
    if loads:
        return LoadIterator(loads)
    return ExponentialCliffSearcher(floor, ceiling, tolerance=tolerance, min_step=min_step)
