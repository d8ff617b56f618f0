#!/usr/bin/env python3
"""Experiment parameter tuples and the artifact names derived from them."""

from __future__ import annotations

import itertools
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Sequence

DEFAULT_ARTICLES = 5_000_000

MATRIX_AXES = ("write_every", "distribution", "clients", "partial", "memory_limit", "join")


@dataclass(frozen=True)
class ExperimentParameters:
    write_every: int
    distribution: str
    clients: int
    partial: bool = True
    memory_limit: int = 0
    join: bool = True
    articles: int = DEFAULT_ARTICLES

    def __post_init__(self) -> None:
        if self.clients < 1:
            raise ValueError("an experiment needs at least one client")
        if self.write_every < 1:
            raise ValueError("write_every must be >= 1")

    @property
    def backend(self) -> str:
        backend = "partial" if self.partial else "full"
        if not self.join:
            backend += "_nj"
        return backend

    def artifact_prefix(self, target: int) -> str:
        return (
            f"{self.backend}.{self.articles}a.{target}t.{self.write_every}r."
            f"{self.clients}c.{self.memory_limit}m.{self.distribution}"
        )

    def per_client_target(self, target: int) -> int:
        return -(-int(target) // self.clients)

    def label(self) -> str:
        return (
            f"{self.backend}.{self.write_every}r.{self.clients}c."
            f"{self.memory_limit}m.{self.distribution}"
        )

    def as_dict(self) -> Dict[str, object]:
        return asdict(self)


def _as_list(value) -> List:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def parameters_from_mapping(entry: Dict, articles: int = DEFAULT_ARTICLES) -> ExperimentParameters:
    return ExperimentParameters(
        write_every=int(entry["write_every"]),
        distribution=str(entry["distribution"]),
        clients=int(entry["clients"]),
        partial=_as_bool(entry.get("partial", True)),
        memory_limit=int(entry.get("memory_limit", 0) or 0),
        join=_as_bool(entry.get("join", True)),
        articles=int(entry.get("articles", articles)),
    )


def expand_matrix(axes: Dict, articles: int = DEFAULT_ARTICLES) -> List[ExperimentParameters]:
    """Cartesian product of the configured axes, in listed order (first axis slowest)."""
    missing = [name for name in ("write_every", "distribution", "clients") if name not in axes]
    if missing:
        raise ValueError(f"matrix is missing axes: {missing}")
    unknown = sorted(set(axes) - set(MATRIX_AXES))
    if unknown:
        raise ValueError(f"matrix has unknown axes: {unknown}")
    values: List[Sequence] = []
    for name in MATRIX_AXES:
        default = {"partial": True, "memory_limit": 0, "join": True}.get(name)
        values.append(_as_list(axes.get(name, default)))
    matrix: List[ExperimentParameters] = []
    for combo in itertools.product(*values):
        matrix.append(parameters_from_mapping(dict(zip(MATRIX_AXES, combo)), articles=articles))
    return matrix


def filter_matrix(matrix: Iterable[ExperimentParameters], only: Dict[str, str]) -> List[ExperimentParameters]:
    """Keep tuples whose fields match every `key=value` filter (compared as text)."""
    if not only:
        return list(matrix)
    for key in only:
        if key not in MATRIX_AXES:
            raise ValueError(f"cannot filter on unknown field {key!r}")
    kept = []
    for params in matrix:
        fields = params.as_dict()
        if all(str(fields[k]).lower() == str(v).lower() for k, v in only.items()):
            kept.append(params)
    return kept
