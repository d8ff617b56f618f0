from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, List, Optional

import pytest

from benchmarks.orchestration.cancel import CancellationToken
from benchmarks.orchestration.cliff import ExponentialCliffSearcher, LoadIterator
from benchmarks.orchestration.explore import ExplorationRunner, StaticProvisioner
from benchmarks.orchestration.params import ExperimentParameters
from benchmarks.orchestration.process_utils import ProcessLaunchError
from benchmarks.orchestration.results import ExplorationRecorder
from benchmarks.orchestration.verdict import (
    OverloadReason,
    OverloadSignal,
    ProbeOutcome,
    RunVerdict,
)


SKEWED = ExperimentParameters(write_every=20, distribution="skewed", clients=1)
UNIFORM = ExperimentParameters(write_every=20, distribution="uniform", clients=1)
FULL = ExperimentParameters(write_every=20, distribution="uniform", clients=1, partial=False)


def _overload(target: int) -> RunVerdict:
    signal = OverloadSignal(OverloadReason.HIGH_LATENCY, "slow", client=0)
    return RunVerdict(target=target, outcome=ProbeOutcome.OVERLOADED, signals=(signal,))


class FakeDriver:
    def __init__(self, cliff: int, on_run: Optional[Callable[[int, CancellationToken], None]] = None) -> None:
        self.cliff = cliff
        self.on_run = on_run
        self.targets: List[int] = []
        self.fail: dict = {}

    async def run(self, params, target, server, clients, cancel):
        self.targets.append(target)
        if self.on_run is not None:
            self.on_run(target, cancel)
        if params in self.fail and len(self.targets) >= self.fail[params]:
            raise ProcessLaunchError("failed to start noria-server")
        if target >= self.cliff:
            return _overload(target)
        return RunVerdict(target=target, outcome=ProbeOutcome.SUCCEEDED)


class FakeProvisioner:
    def __init__(self, close_error: Optional[str] = None) -> None:
        self.acquired: List[ExperimentParameters] = []
        self.released: List[ExperimentParameters] = []
        self.close_error = close_error

    @asynccontextmanager
    async def acquire(self, params, cleanup_errors):
        self.acquired.append(params)
        try:
            yield SimpleNamespace(server=object(), clients=[object()])
        finally:
            self.released.append(params)
            if self.close_error:
                cleanup_errors.append(self.close_error)


def _runner(tmp_path: Path, driver, provisioner=None, cancel=None, searcher=None, fail_fast=False):
    return ExplorationRunner(
        driver=driver,
        provisioner=provisioner or FakeProvisioner(),
        searcher_factory=searcher or (lambda _p: ExponentialCliffSearcher(floor=1, ceiling=1_000_000)),
        cancel=cancel if cancel is not None else CancellationToken(),
        recorder=ExplorationRecorder(output_dir=tmp_path),
        fail_fast=fail_fast,
    )


def test_last_good_target_is_highest_non_overloaded(tmp_path: Path) -> None:
    driver = FakeDriver(cliff=1000)
    runner = _runner(tmp_path, driver)
    [result] = asyncio.run(runner.explore([SKEWED]))

    good = [v.target for v in result.probes if v.succeeded]
    bad = [v.target for v in result.probes if v.overloaded]
    assert result.ok
    assert result.last_good_target == max(good)
    assert 512 <= result.last_good_target < 1000
    assert all(t >= 1000 for t in bad)
    assert result.searcher == "ExponentialCliffSearcher"


def test_load_iterator_replays_and_keeps_best_good(tmp_path: Path) -> None:
    driver = FakeDriver(cliff=25)
    runner = _runner(tmp_path, driver, searcher=lambda _p: LoadIterator([10, 30, 20]))
    [result] = asyncio.run(runner.explore([SKEWED]))

    assert driver.targets == [10, 30, 20]
    assert result.last_good_target == 20


def test_cancellation_stops_new_probes_and_keeps_results(tmp_path: Path) -> None:
    def cancel_on_third(target: int, cancel: CancellationToken) -> None:
        if target == 4:
            cancel.cancel()

    cancel = CancellationToken()
    driver = FakeDriver(cliff=1000, on_run=cancel_on_third)
    provisioner = FakeProvisioner()
    runner = _runner(tmp_path, driver, provisioner=provisioner, cancel=cancel)
    results = asyncio.run(runner.explore([SKEWED, UNIFORM]))

    assert driver.targets == [1, 2, 4]
    assert len(results) == 1
    assert results[0].cancelled
    assert results[0].last_good_target == 4
    assert provisioner.released == [SKEWED]
    summary = json.loads((tmp_path / "exploration.json").read_text(encoding="utf-8"))
    assert [p["target"] for p in summary["results"][0]["probes"]] == [1, 2, 4]


def test_cancelled_before_start_runs_nothing(tmp_path: Path) -> None:
    cancel = CancellationToken()
    cancel.cancel()
    driver = FakeDriver(cliff=1000)
    provisioner = FakeProvisioner()
    results = asyncio.run(_runner(tmp_path, driver, provisioner=provisioner, cancel=cancel).explore([SKEWED]))

    assert results == []
    assert driver.targets == []
    assert provisioner.acquired == []


def test_aborted_probe_does_not_count_as_capacity(tmp_path: Path) -> None:
    class AbortingDriver(FakeDriver):
        async def run(self, params, target, server, clients, cancel):
            self.targets.append(target)
            if target == 8:
                return RunVerdict(target=target, outcome=ProbeOutcome.ABORTED)
            return RunVerdict(target=target, outcome=ProbeOutcome.SUCCEEDED)

    driver = AbortingDriver(cliff=0)
    [result] = asyncio.run(_runner(tmp_path, driver).explore([SKEWED]))
    assert driver.targets == [1, 2, 4, 8]
    assert result.cancelled
    assert result.last_good_target == 4


def test_infrastructure_error_aborts_only_that_tuple(tmp_path: Path) -> None:
    driver = FakeDriver(cliff=1000)
    driver.fail[UNIFORM] = 1
    provisioner = FakeProvisioner(close_error="client0: ssh connection close failed")
    runner = _runner(tmp_path, driver, provisioner=provisioner, searcher=lambda _p: LoadIterator([10, 20]))
    results = asyncio.run(runner.explore([SKEWED, UNIFORM, FULL]))

    assert [r.ok for r in results] == [True, False, True]
    assert "ProcessLaunchError" in results[1].error
    assert results[0].last_good_target == 20
    # resources were released for the failed tuple too
    assert provisioner.released == [SKEWED, UNIFORM, FULL]
    assert results[1].cleanup_errors == ["client0: ssh connection close failed"]
    summary = json.loads((tmp_path / "exploration.json").read_text(encoding="utf-8"))
    assert summary["results"][0]["last_good_target"] == 20
    assert summary["results"][1]["error"].startswith("ProcessLaunchError")


def test_fail_fast_stops_exploration(tmp_path: Path) -> None:
    driver = FakeDriver(cliff=1000)
    driver.fail[SKEWED] = 1
    runner = _runner(tmp_path, driver, searcher=lambda _p: LoadIterator([10]), fail_fast=True)
    results = asyncio.run(runner.explore([SKEWED, UNIFORM]))
    assert len(results) == 1
    assert not results[0].ok


def test_explore_one_propagates_infrastructure_errors(tmp_path: Path) -> None:
    driver = FakeDriver(cliff=1000)
    driver.fail[SKEWED] = 1
    provisioner = FakeProvisioner()
    runner = _runner(tmp_path, driver, provisioner=provisioner)
    with pytest.raises(ProcessLaunchError):
        asyncio.run(runner.explore_one(SKEWED))
    assert provisioner.released == [SKEWED]


def test_static_provisioner_needs_enough_clients(tmp_path: Path) -> None:
    provisioner = StaticProvisioner({"server": {"host": "10.0.0.10"}, "clients": [{"host": "10.0.0.11"}]})
    params = ExperimentParameters(write_every=20, distribution="skewed", clients=2)

    async def acquire():
        async with provisioner.acquire(params, []):
            pass

    with pytest.raises(ValueError):
        asyncio.run(acquire())


def test_static_provisioner_builds_hosts_without_multiplexing() -> None:
    provisioner = StaticProvisioner(
        {
            "server": {"host": "10.0.0.10", "user": "ubuntu", "private_ip": "172.16.0.10"},
            "clients": [{"host": "10.0.0.11"}, {"host": "10.0.0.12"}],
        }
    )
    params = ExperimentParameters(write_every=20, distribution="skewed", clients=1)
    errors: List[str] = []

    async def acquire():
        async with provisioner.acquire(params, errors) as cluster:
            return cluster

    cluster = asyncio.run(acquire())
    assert cluster.server.spec.host == "ubuntu@10.0.0.10"
    assert cluster.server.private_ip == "172.16.0.10"
    assert [c.name for c in cluster.clients] == ["client0"]
    assert errors == []


def test_cancellation_token_is_one_way() -> None:
    cancel = CancellationToken()
    assert not cancel
    cancel.cancel("received SIGINT")
    cancel.cancel("received SIGTERM")
    assert cancel.cancelled
    assert cancel.reason == "received SIGINT"


def test_summary_timestamp_is_utc(tmp_path: Path) -> None:
    recorder = ExplorationRecorder(output_dir=tmp_path)
    recorder.begin(SKEWED)
    recorder.flush()
    summary = json.loads(recorder.summary_path.read_text(encoding="utf-8"))
    assert summary["generated_at"].endswith("+00:00")
    assert summary["results"][0]["last_good_target"] is None
