#!/usr/bin/env python3
"""Helpers for recording exploration results as they are produced."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from benchmarks.orchestration.params import ExperimentParameters
from benchmarks.orchestration.verdict import RunVerdict


@dataclass
class TupleResult:
    parameters: ExperimentParameters
    searcher: str = ""
    last_good_target: Optional[int] = None
    probes: List[RunVerdict] = field(default_factory=list)
    error: Optional[str] = None
    cleanup_errors: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def record(self, verdict: RunVerdict) -> None:
        self.probes.append(verdict)
        if verdict.succeeded:
            if self.last_good_target is None or verdict.target > self.last_good_target:
                self.last_good_target = verdict.target

    def as_dict(self) -> Dict:
        return {
            "parameters": self.parameters.as_dict(),
            "label": self.parameters.label(),
            "searcher": self.searcher,
            "last_good_target": self.last_good_target,
            "error": self.error,
            "cancelled": self.cancelled,
            "cleanup_errors": list(self.cleanup_errors),
            "probes": [v.as_dict() for v in self.probes],
        }


@dataclass
class ExplorationRecorder:
    output_dir: Path
    plan: Dict = field(default_factory=dict)
    results: List[TupleResult] = field(default_factory=list)

    @property
    def summary_path(self) -> Path:
        return Path(self.output_dir) / "exploration.json"

    def begin(self, params: ExperimentParameters) -> TupleResult:
        result = TupleResult(parameters=params)
        self.results.append(result)
        return result

    def record_probe(self, result: TupleResult, verdict: RunVerdict) -> None:
        result.record(verdict)
        self.flush()

    def flush(self) -> None:
        """Rewrite the summary so whatever finished so far survives a crash."""
        payload = {
            "plan": self.plan,
            "results": [r.as_dict() for r in self.results],
            "generated_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        }
        path = self.summary_path
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp.replace(path)
