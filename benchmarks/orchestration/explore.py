#!/usr/bin/env python3
"""Walk the experiment matrix and search each tuple for its capacity cliff."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional

from benchmarks.orchestration.cancel import CancellationToken
from benchmarks.orchestration.cliff import CliffSearcher
from benchmarks.orchestration.params import ExperimentParameters
from benchmarks.orchestration.process_utils import log_progress
from benchmarks.orchestration.remote import Host, build_remote_spec
from benchmarks.orchestration.results import ExplorationRecorder, TupleResult


@dataclass
class Cluster:
    server: Host
    clients: List[Host]


class StaticProvisioner:
    """Hands out the hosts listed in the config; nothing is created or destroyed."""

    def __init__(self, hosts_cfg: Dict, log_dir: Optional[Path] = None) -> None:
        self.hosts_cfg = hosts_cfg or {}
        self.log_dir = log_dir

    def _build(self, params: ExperimentParameters) -> Cluster:
        server_cfg = self.hosts_cfg.get("server")
        if not server_cfg:
            raise ValueError("hosts.server is not configured")
        clients_cfg = list(self.hosts_cfg.get("clients") or [])
        if len(clients_cfg) < params.clients:
            raise ValueError(f"{params.clients} clients requested but only {len(clients_cfg)} configured")
        server = Host("server", build_remote_spec(server_cfg), private_ip=server_cfg.get("private_ip"))
        clients = [
            Host(f"client{i}", build_remote_spec(cfg), private_ip=cfg.get("private_ip"))
            for i, cfg in enumerate(clients_cfg[: params.clients])
        ]
        return Cluster(server=server, clients=clients)

    @asynccontextmanager
    async def acquire(self, params: ExperimentParameters, cleanup_errors: List[str]) -> AsyncIterator[Cluster]:
        cluster = self._build(params)
        connected: List[Host] = []
        try:
            log_progress(self.log_dir, "explore", "connecting")
            for host in [cluster.server, *cluster.clients]:
                await host.connect()
                connected.append(host)
            log_progress(self.log_dir, "explore", "connected")
            yield cluster
        finally:
            for host in connected:
                try:
                    await host.close()
                except Exception as exc:
                    cleanup_errors.append(f"{host.name}: {exc}")
                    log_progress(self.log_dir, "explore", f"warning: ssh connection close failed: {exc}")


class ExplorationRunner:
    def __init__(
        self,
        driver,
        provisioner,
        searcher_factory: Callable[[ExperimentParameters], CliffSearcher],
        cancel: CancellationToken,
        recorder: ExplorationRecorder,
        fail_fast: bool = False,
    ) -> None:
        self.driver = driver
        self.provisioner = provisioner
        self.searcher_factory = searcher_factory
        self.cancel = cancel
        self.recorder = recorder
        self.fail_fast = fail_fast

    def _log(self, message: str) -> None:
        log_progress(self.recorder.output_dir, "explore", message)

    async def explore(self, matrix: Iterable[ExperimentParameters]) -> List[TupleResult]:
        results: List[TupleResult] = []
        for params in matrix:
            if self.cancel.cancelled:
                self._log("exiting as instructed; remaining experiments skipped")
                break
            result = self.recorder.begin(params)
            results.append(result)
            try:
                await self.explore_one(params, result)
            except Exception as exc:
                result.error = f"{type(exc).__name__}: {exc}"
                self._log(f"experiment {params.label()} failed: {result.error}")
                if self.fail_fast:
                    break
            finally:
                self.recorder.flush()
            if result.ok:
                self._log(f"experiment {params.label()}: last good target {result.last_good_target}")
        return results

    async def explore_one(self, params: ExperimentParameters, result: Optional[TupleResult] = None) -> TupleResult:
        if result is None:
            result = self.recorder.begin(params)
        searcher = self.searcher_factory(params)
        result.searcher = type(searcher).__name__
        self._log(f"experiment {params.label()} with {searcher!r}")

        async with self.provisioner.acquire(params, result.cleanup_errors) as cluster:
            while True:
                if self.cancel.cancelled:
                    self._log("exiting as instructed")
                    result.cancelled = True
                    break
                target = searcher.next()
                if target is None:
                    break
                verdict = await self.driver.run(params, target, cluster.server, cluster.clients, self.cancel)
                self.recorder.record_probe(result, verdict)
                if verdict.overloaded:
                    searcher.overloaded()
                elif verdict.aborted:
                    result.cancelled = True
                    break
        return result
