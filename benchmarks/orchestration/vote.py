#!/usr/bin/env python3
"""Find the highest sustainable vote request rate for every configured experiment.

For each (write_every, distribution, clients, partial, memory_limit, join) tuple
the target rate is doubled until the server falls over, then bisected between
the last good and first bad target. Raw client output and statistics land in
--output-dir, named after the experiment and target.

Usage examples:
  python3 -m benchmarks.orchestration.vote --config benchmarks/configs/vote.yaml
  python3 -m benchmarks.orchestration.vote --only distribution=skewed --only partial=true
  python3 -m benchmarks.orchestration.vote --loads 200000,400000 --output-dir results/rerun
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from benchmarks.orchestration.cancel import CancellationToken
from benchmarks.orchestration.cliff import make_searcher
from benchmarks.orchestration.commands import VoteCommands
from benchmarks.orchestration.config import ExplorationConfig, load_config
from benchmarks.orchestration.driver import RunDriver
from benchmarks.orchestration.explore import ExplorationRunner, StaticProvisioner
from benchmarks.orchestration.params import ExperimentParameters, filter_matrix
from benchmarks.orchestration.process_utils import log_progress
from benchmarks.orchestration.results import ExplorationRecorder, TupleResult


def _parse_loads(text: Optional[str]) -> Optional[List[int]]:
    if not text:
        return None
    loads = [int(part) for part in text.split(",") if part.strip()]
    if any(v <= 0 for v in loads):
        raise ValueError("--loads values must be positive")
    return loads


def _parse_only(items: Optional[List[str]]) -> Dict[str, str]:
    only: Dict[str, str] = {}
    for item in items or []:
        if "=" not in item:
            raise ValueError(f"--only expects key=value, got {item!r}")
        key, value = item.split("=", 1)
        only[key.strip()] = value.strip()
    return only


def build_runner(
    cfg: ExplorationConfig,
    output_dir: Path,
    cancel: CancellationToken,
    loads: Optional[List[int]] = None,
    fail_fast: bool = False,
) -> ExplorationRunner:
    commands = VoteCommands(cfg.server, cfg.client, runtime_s=cfg.runtime_s)
    driver = RunDriver(
        commands,
        output_dir,
        thresholds=cfg.thresholds,
        server_type=cfg.server_type,
        client_type=cfg.client_type,
        server_ready_wait=cfg.server.ready_wait_s,
        server_stop_timeout=cfg.server.stop_timeout_s,
        process_pattern=cfg.server.process_pattern,
    )

    def searcher_factory(_params: ExperimentParameters):
        return make_searcher(
            loads,
            floor=cfg.search.floor,
            ceiling=cfg.search.ceiling,
            tolerance=cfg.search.tolerance,
            min_step=cfg.search.min_step,
        )

    recorder = ExplorationRecorder(
        output_dir=output_dir,
        plan={
            "experiment": cfg.experiment,
            "server_type": cfg.server_type,
            "client_type": cfg.client_type,
            "search": {
                "floor": cfg.search.floor,
                "ceiling": cfg.search.ceiling,
                "tolerance": cfg.search.tolerance,
                "min_step": cfg.search.min_step,
                "loads": loads,
            },
        },
    )
    return ExplorationRunner(
        driver=driver,
        provisioner=StaticProvisioner(cfg.hosts, log_dir=output_dir),
        searcher_factory=searcher_factory,
        cancel=cancel,
        recorder=recorder,
        fail_fast=fail_fast,
    )


async def _explore(runner: ExplorationRunner, matrix: List[ExperimentParameters], cancel: CancellationToken):
    cancel.install_signal_handlers(asyncio.get_running_loop())
    return await runner.explore(matrix)


def _print_plan(cfg: ExplorationConfig, matrix: List[ExperimentParameters], loads: Optional[List[int]]) -> None:
    for params in matrix:
        first = loads[0] if loads else cfg.search.floor
        print(f"  - {params.label()}: first artifact {params.artifact_prefix(first)}.log")
    if loads:
        print(f"  loads: {loads}")
    else:
        print(f"  search: floor={cfg.search.floor} ceiling={cfg.search.ceiling} tolerance={cfg.search.tolerance}")


def _print_summary(results: List[TupleResult]) -> None:
    for result in results:
        if result.error:
            status = f"error: {result.error}"
        else:
            status = f"last good target={result.last_good_target}"
            if result.cancelled:
                status += " (cancelled)"
        print(f"[vote] {result.parameters.label()}: {status}")
        for err in result.cleanup_errors:
            print(f"[vote]   cleanup: {err}")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Capacity search for the vote benchmark")
    ap.add_argument("--config", help="Exploration config path (YAML); defaults to the bundled configs/vote.yaml")
    ap.add_argument("--output-dir", help="Write artifacts under this directory")
    ap.add_argument("--loads", help="Comma-separated targets to re-run instead of searching")
    ap.add_argument("--only", action="append", help="Restrict to experiments with key=value (repeatable)")
    ap.add_argument("--dry-run", action="store_true", help="Print the planned experiments and exit")
    ap.add_argument("--fail-fast", action="store_true", help="Stop at the first experiment that errors")
    return ap.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        cfg = load_config(args.config)
        loads = _parse_loads(args.loads)
        matrix = filter_matrix(cfg.experiments, _parse_only(args.only))
    except (OSError, ValueError) as exc:
        print(f"[vote] error: {exc}", file=sys.stderr)
        return 2

    if not matrix:
        print("[vote] no experiments selected", file=sys.stderr)
        return 2

    if args.dry_run:
        print(f"[vote] {len(matrix)} experiments")
        _print_plan(cfg, matrix, loads)
        return 0

    ts = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    output_dir = Path(args.output_dir or Path("results") / f"{cfg.experiment}_{ts}")
    output_dir.mkdir(parents=True, exist_ok=True)
    log_progress(output_dir, "vote", f"{len(matrix)} experiments, artifacts in {output_dir}")

    cancel = CancellationToken()
    runner = build_runner(cfg, output_dir, cancel, loads=loads, fail_fast=args.fail_fast)
    results = asyncio.run(_explore(runner, matrix, cancel))

    _print_summary(results)
    print(f"[vote] wrote {runner.recorder.summary_path}")
    return 0 if all(r.ok for r in results) else 1


if __name__ == "__main__":
    raise SystemExit(main())
