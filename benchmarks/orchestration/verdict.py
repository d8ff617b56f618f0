#!/usr/bin/env python3
"""Probe outcomes: overload signals and the per-probe verdict."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


class OverloadReason(str, Enum):
    HIGH_LATENCY = "high_latency"
    LOW_THROUGHPUT = "low_throughput"
    MISSING_OUTPUT = "missing_output"
    PROCESS_FAILURE = "process_failure"
    PRIME_FAILURE = "prime_failure"


class ProbeOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    OVERLOADED = "overloaded"
    # cancellation stopped the probe; not a capacity signal
    ABORTED = "aborted"


@dataclass(frozen=True)
class OverloadSignal:
    reason: OverloadReason
    message: str
    client: Optional[int] = None
    context: Tuple[Tuple[str, str], ...] = ()

    def as_dict(self) -> Dict[str, object]:
        return {
            "reason": self.reason.value,
            "message": self.message,
            "client": self.client,
            "context": dict(self.context),
        }


@dataclass(frozen=True)
class RunVerdict:
    target: int
    outcome: ProbeOutcome
    signals: Tuple[OverloadSignal, ...] = ()
    artifacts: frozenset = field(default_factory=frozenset)
    cleanup_errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.outcome is ProbeOutcome.SUCCEEDED

    @property
    def overloaded(self) -> bool:
        return self.outcome is ProbeOutcome.OVERLOADED

    @property
    def aborted(self) -> bool:
        return self.outcome is ProbeOutcome.ABORTED

    @property
    def overload_reason(self) -> Optional[OverloadSignal]:
        """First signal raised during the probe, the one that steers the search."""
        return self.signals[0] if self.signals else None

    def as_dict(self) -> Dict[str, object]:
        return {
            "target": self.target,
            "outcome": self.outcome.value,
            "signals": [s.as_dict() for s in self.signals],
            "artifacts": sorted(self.artifacts),
            "cleanup_errors": list(self.cleanup_errors),
            "warnings": list(self.warnings),
        }


def decide_outcome(signals: List[OverloadSignal], cancelled: bool) -> ProbeOutcome:
    if signals:
        return ProbeOutcome.OVERLOADED
    if cancelled:
        return ProbeOutcome.ABORTED
    return ProbeOutcome.SUCCEEDED
