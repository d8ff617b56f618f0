#!/usr/bin/env python3
"""Classify benchmark client output lines and derive overload signals.

A client prints two kinds of lines:
  - comments, starting with '#'. Two of them carry the achieved rate:
        # generated ops/s 9812.3
        # actual ops/s 9799.0
  - data records: '<endpoint> <percentile> <sojourn_us>'

The classifier is pure; streaming and fan-in live in driver.py.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Union

from benchmarks.orchestration.verdict import OverloadReason, OverloadSignal

THROUGHPUT_PREFIXES = ("# generated ops/s", "# actual ops/s")


@dataclass(frozen=True)
class DataLine:
    endpoint: str
    percentile: int
    sojourn_us: int


@dataclass(frozen=True)
class ThroughputLine:
    label: str
    rate: float


@dataclass(frozen=True)
class CommentLine:
    text: str


@dataclass(frozen=True)
class Unparseable:
    text: str
    problem: str


LineEvent = Union[DataLine, ThroughputLine, CommentLine, Unparseable]


@dataclass(frozen=True)
class OverloadThresholds:
    """Empirical limits for deciding that a client could not keep up."""

    max_median_sojourn_us: int = 200_000
    throughput_shortfall: float = 0.05
    median_percentile: int = 50


def classify_line(line: str) -> LineEvent:
    text = line.rstrip("\r\n")
    if text.startswith("#"):
        if text.startswith(THROUGHPUT_PREFIXES):
            label = "generated" if text.startswith(THROUGHPUT_PREFIXES[0]) else "actual"
            tokens = text.split()
            try:
                return ThroughputLine(label=label, rate=float(tokens[-1]))
            except (ValueError, IndexError):
                return Unparseable(text=text, problem="throughput rate is not a number")
        return CommentLine(text=text)

    fields = text.split()
    if len(fields) < 3:
        return Unparseable(text=text, problem="expected '<endpoint> <percentile> <sojourn>'")
    try:
        pct = int(fields[1])
        sjrn = int(fields[2])
    except ValueError:
        return Unparseable(text=text, problem="percentile and sojourn must be integers")
    if pct < 0 or sjrn < 0:
        return Unparseable(text=text, problem="negative percentile or sojourn")
    return DataLine(endpoint=fields[0], percentile=pct, sojourn_us=sjrn)


def check_event(
    event: LineEvent,
    per_client_target: int,
    thresholds: OverloadThresholds,
    client: Optional[int] = None,
) -> Optional[OverloadSignal]:
    """Return the overload signal carried by a single classified line, if any."""
    if isinstance(event, DataLine):
        if event.percentile != thresholds.median_percentile:
            return None
        # a zero median means the client never got a response in that bucket
        if event.sojourn_us > thresholds.max_median_sojourn_us or event.sojourn_us == 0:
            return OverloadSignal(
                reason=OverloadReason.HIGH_LATENCY,
                message=f"high sojourn latency on {event.endpoint}: {event.sojourn_us}us",
                client=client,
                context=(("endpoint", event.endpoint), ("sojourn_us", str(event.sojourn_us))),
            )
        return None
    if isinstance(event, ThroughputLine):
        bar = float(per_client_target)
        if bar - event.rate > thresholds.throughput_shortfall * bar:
            return OverloadSignal(
                reason=OverloadReason.LOW_THROUGHPUT,
                message=f"low throughput ({event.label}): {event.rate} < {bar}",
                client=client,
                context=(("rate", repr(event.rate)), ("bar", str(per_client_target))),
            )
    return None


@dataclass
class ClientTally:
    """Classification state owned by exactly one client's drain task."""

    client: int
    per_client_target: int
    thresholds: OverloadThresholds
    data_lines: int = 0
    signals: List[OverloadSignal] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    returncode: Optional[int] = None
    stderr: str = ""

    def observe(self, line: str) -> Optional[OverloadSignal]:
        event = classify_line(line)
        if isinstance(event, Unparseable):
            self.warnings.append(f"client{self.client}: bad line ({event.problem}): {event.text!r}")
            return None
        if isinstance(event, DataLine):
            self.data_lines += 1
        signal = check_event(event, self.per_client_target, self.thresholds, client=self.client)
        if signal is not None:
            self.signals.append(signal)
        return signal

    def finish(self, returncode: int, stderr: str = "") -> List[OverloadSignal]:
        """Apply the end-of-stream checks and return every signal this client raised."""
        self.returncode = returncode
        self.stderr = stderr
        if self.data_lines == 0:
            self.signals.append(
                OverloadSignal(
                    reason=OverloadReason.MISSING_OUTPUT,
                    message=f"client{self.client} produced no data lines, probably overloaded",
                    client=self.client,
                )
            )
        if returncode != 0:
            tail = stderr.strip().splitlines()[-5:]
            self.signals.append(
                OverloadSignal(
                    reason=OverloadReason.PROCESS_FAILURE,
                    message=f"client{self.client} exited with code {returncode}",
                    client=self.client,
                    context=(("stderr_tail", "\n".join(tail)),),
                )
            )
        return list(self.signals)
