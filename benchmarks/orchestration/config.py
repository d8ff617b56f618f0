#!/usr/bin/env python3
"""Load the vote exploration YAML into typed settings."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from benchmarks.orchestration.classify import OverloadThresholds
from benchmarks.orchestration.params import (
    DEFAULT_ARTICLES,
    ExperimentParameters,
    expand_matrix,
    parameters_from_mapping,
)

# bundled with the package
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[1] / "configs" / "vote.yaml"
ALLOWED_KEYS = {
    "experiment",
    "server_type",
    "client_type",
    "articles",
    "runtime_s",
    "hosts",
    "server",
    "client",
    "search",
    "overload",
    "matrix",
    "experiments",
    "notes",
    "description",
}


def _coerce_int(value, fallback: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return fallback


def _coerce_float(value, fallback: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return fallback


@dataclass
class ServerSettings:
    bin: str = "noria-server"
    args: List[str] = field(default_factory=lambda: ["--durability=memory", "--no-reuse", "--shards=0"])
    no_partial_arg: str = "--no-partial"
    no_join_arg: Optional[str] = None
    memory_limit_arg: str = "--memory"
    stop_command: Optional[List[str]] = None
    stats_command: List[str] = field(
        default_factory=lambda: ["curl", "-sf", "http://localhost:6033/get_statistics"]
    )
    process_pattern: str = "noria-server"
    ready_wait_s: float = 5.0
    stop_timeout_s: float = 30.0


@dataclass
class ClientSettings:
    bin: str = "vote"
    args: List[str] = field(default_factory=list)
    histogram: str = "benchmark.hist"
    zookeeper_port: int = 2181


@dataclass
class SearchSettings:
    floor: int = 100_000
    ceiling: int = 5_000_000
    tolerance: float = 0.01
    min_step: int = 50_000


@dataclass
class ExplorationConfig:
    experiment: str = "vote"
    server_type: str = "unknown"
    client_type: str = "unknown"
    articles: int = DEFAULT_ARTICLES
    runtime_s: int = 540
    hosts: Dict = field(default_factory=dict)
    server: ServerSettings = field(default_factory=ServerSettings)
    client: ClientSettings = field(default_factory=ClientSettings)
    search: SearchSettings = field(default_factory=SearchSettings)
    thresholds: OverloadThresholds = field(default_factory=OverloadThresholds)
    experiments: List[ExperimentParameters] = field(default_factory=list)


def _split_argv(value) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return str(value).split()


def _server_settings(raw: Dict) -> ServerSettings:
    base = ServerSettings()
    return ServerSettings(
        bin=str(raw.get("bin", base.bin)),
        args=_split_argv(raw.get("args")) if raw.get("args") is not None else base.args,
        no_partial_arg=str(raw.get("no_partial_arg", base.no_partial_arg)),
        no_join_arg=raw.get("no_join_arg", base.no_join_arg),
        memory_limit_arg=str(raw.get("memory_limit_arg", base.memory_limit_arg)),
        stop_command=_split_argv(raw.get("stop_command")),
        stats_command=_split_argv(raw.get("stats_command")) or base.stats_command,
        process_pattern=str(raw.get("process_pattern", base.process_pattern)),
        ready_wait_s=_coerce_float(raw.get("ready_wait_s"), base.ready_wait_s),
        stop_timeout_s=_coerce_float(raw.get("stop_timeout_s"), base.stop_timeout_s),
    )


def _client_settings(raw: Dict) -> ClientSettings:
    base = ClientSettings()
    return ClientSettings(
        bin=str(raw.get("bin", base.bin)),
        args=_split_argv(raw.get("args")) or [],
        histogram=str(raw.get("histogram", base.histogram)),
        zookeeper_port=_coerce_int(raw.get("zookeeper_port"), base.zookeeper_port),
    )


def _search_settings(raw: Dict) -> SearchSettings:
    base = SearchSettings()
    return SearchSettings(
        floor=_coerce_int(raw.get("floor"), base.floor),
        ceiling=_coerce_int(raw.get("ceiling"), base.ceiling),
        tolerance=_coerce_float(raw.get("tolerance"), base.tolerance),
        min_step=_coerce_int(raw.get("min_step"), base.min_step),
    )


def _thresholds(raw: Dict) -> OverloadThresholds:
    base = OverloadThresholds()
    return OverloadThresholds(
        max_median_sojourn_us=_coerce_int(raw.get("max_median_sojourn_us"), base.max_median_sojourn_us),
        throughput_shortfall=_coerce_float(raw.get("throughput_shortfall"), base.throughput_shortfall),
        median_percentile=_coerce_int(raw.get("median_percentile"), base.median_percentile),
    )


def parse_config(raw: Dict, label: str = "<config>") -> ExplorationConfig:
    if not isinstance(raw, dict):
        raise ValueError(f"{label}: top level must be a mapping")
    unknown = sorted(set(raw) - ALLOWED_KEYS)
    if unknown:
        print(f"[config] warning: unrecognized top-level keys {unknown} in {label}; they will be ignored", file=sys.stderr)

    articles = _coerce_int(raw.get("articles"), DEFAULT_ARTICLES)
    if raw.get("experiments"):
        experiments = [parameters_from_mapping(entry, articles=articles) for entry in raw["experiments"]]
    elif raw.get("matrix"):
        experiments = expand_matrix(raw["matrix"], articles=articles)
    else:
        raise ValueError(f"{label}: either 'matrix' or 'experiments' is required")

    search = _search_settings(raw.get("search") or {})
    if search.ceiling < search.floor:
        raise ValueError(f"{label}: search.ceiling {search.ceiling} is below search.floor {search.floor}")

    return ExplorationConfig(
        experiment=str(raw.get("experiment", "vote")),
        server_type=str(raw.get("server_type", "unknown")),
        client_type=str(raw.get("client_type", "unknown")),
        articles=articles,
        runtime_s=_coerce_int(raw.get("runtime_s"), 540),
        hosts=raw.get("hosts") or {},
        server=_server_settings(raw.get("server") or {}),
        client=_client_settings(raw.get("client") or {}),
        search=search,
        thresholds=_thresholds(raw.get("overload") or {}),
        experiments=experiments,
    )


def load_config(path: Optional[str]) -> ExplorationConfig:
    cfg_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if not cfg_path.exists():
        raise FileNotFoundError(f"vote config not found: {cfg_path}")
    raw = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
    return parse_config(raw, label=str(cfg_path))
