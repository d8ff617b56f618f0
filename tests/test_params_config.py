from __future__ import annotations

from pathlib import Path

import pytest

from benchmarks.orchestration.commands import VoteCommands
from benchmarks.orchestration.config import load_config, parse_config
from benchmarks.orchestration.params import ExperimentParameters, expand_matrix, filter_matrix
from benchmarks.orchestration.remote import RemoteSpec, build_remote_spec


def test_artifact_prefix_matches_naming_scheme() -> None:
    params = ExperimentParameters(write_every=20, distribution="skewed", clients=6, partial=True)
    assert params.artifact_prefix(400_000) == "partial.5000000a.400000t.20r.6c.0m.skewed"
    full_nj = ExperimentParameters(
        write_every=2, distribution="uniform", clients=1, partial=False, memory_limit=1024, join=False
    )
    assert full_nj.artifact_prefix(7) == "full_nj.5000000a.7t.2r.1c.1024m.uniform"


def test_per_client_target_rounds_up() -> None:
    params = ExperimentParameters(write_every=20, distribution="skewed", clients=6)
    assert params.per_client_target(100_000) == 16_667
    assert params.per_client_target(600) == 100


def test_matrix_expansion_keeps_listed_order() -> None:
    matrix = expand_matrix(
        {"write_every": [20], "distribution": ["skewed", "uniform"], "clients": 6, "partial": [True, False]}
    )
    assert [(p.distribution, p.partial) for p in matrix] == [
        ("skewed", True),
        ("skewed", False),
        ("uniform", True),
        ("uniform", False),
    ]
    assert all(p.clients == 6 and p.join and p.memory_limit == 0 for p in matrix)
    only = filter_matrix(matrix, {"distribution": "uniform", "partial": "false"})
    assert [(p.distribution, p.partial) for p in only] == [("uniform", False)]


def test_matrix_rejects_unknown_or_missing_axes() -> None:
    with pytest.raises(ValueError):
        expand_matrix({"write_every": [20], "distribution": ["skewed"]})
    with pytest.raises(ValueError):
        expand_matrix({"write_every": [20], "distribution": ["skewed"], "clients": [1], "shards": [2]})
    with pytest.raises(ValueError):
        filter_matrix([], {"shards": "2"})


def test_parse_config_with_explicit_experiments(capsys) -> None:
    cfg = parse_config(
        {
            "experiments": [
                {"write_every": 20, "distribution": "skewed", "clients": 6, "partial": True},
                {"write_every": 2, "distribution": "skewed", "clients": 6, "partial": "no"},
            ],
            "search": {"floor": "1000", "ceiling": 64000, "tolerance": "bogus"},
            "overload": {"max_median_sojourn_us": 100000},
            "surprise": 1,
        }
    )
    assert [p.partial for p in cfg.experiments] == [True, False]
    assert cfg.search.floor == 1000
    assert cfg.search.tolerance == 0.01
    assert cfg.thresholds.max_median_sojourn_us == 100000
    assert cfg.thresholds.throughput_shortfall == 0.05
    assert "surprise" in capsys.readouterr().err


def test_parse_config_requires_experiments() -> None:
    with pytest.raises(ValueError):
        parse_config({"search": {"floor": 1}})
    with pytest.raises(ValueError):
        parse_config({"matrix": {"write_every": 1, "distribution": "x", "clients": 1}, "search": {"floor": 10, "ceiling": 5}})


def test_bundled_config_loads() -> None:
    path = Path(__file__).resolve().parents[1] / "benchmarks" / "configs" / "vote.yaml"
    cfg = load_config(str(path))
    assert len(cfg.experiments) == 4
    assert len(cfg.hosts["clients"]) >= max(p.clients for p in cfg.experiments)


def test_missing_config_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "nope.yaml"))


def test_server_and_client_argv() -> None:
    cfg = parse_config({"matrix": {"write_every": 20, "distribution": "skewed", "clients": 2}, "runtime_s": 60})
    commands = VoteCommands(cfg.server, cfg.client, runtime_s=cfg.runtime_s)
    full = ExperimentParameters(write_every=20, distribution="skewed", clients=2, partial=False, memory_limit=512)

    server = commands.server_argv(full)
    assert server[0] == "noria-server"
    assert "--no-partial" in server
    assert server[server.index("--memory") + 1] == "512"
    assert "--durability=memory" in server

    bench = commands.bench_argv(full, 5000, "172.16.0.10")
    assert bench[:6] == ["vote", "--no-prime", "--runtime=60", "--histogram=benchmark.hist", "--target", "5000"]
    assert bench[-5:] == ["netsoup", "--deployment", "benchmark", "--zookeeper", "172.16.0.10:2181"]
    assert "--runtime=0" in commands.prime_argv(full, "172.16.0.10")
    assert commands.stop_argv() == ["pkill", "-INT", "-f", "[n]oria-server"]


def test_remote_spec_wraps_commands() -> None:
    spec = build_remote_spec({"host": "10.0.0.11", "user": "ubuntu", "workdir": "~/noria"})
    cmd = spec.wrap_command(["vote", "--target", "100", "-d", "skewed"])
    assert cmd[:3] == ["ssh", "-o", "BatchMode=yes"]
    assert cmd[3] == "ubuntu@10.0.0.11"
    assert cmd[4] == "cd ~/noria && vote --target 100 -d skewed"
    assert spec.remote_path("benchmark.hist") == "~/noria/benchmark.hist"

    muxed = RemoteSpec(host="h", multiplex=True, control_dir="/run/ctl")
    assert "ControlPath=/run/ctl/vote-ssh-h" in muxed.wrap_command(["true"])
    with pytest.raises(ValueError):
        build_remote_spec({"user": "ubuntu"})


def test_default_config_found_outside_repo_root(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    cfg = load_config(None)
    assert len(cfg.experiments) == 4
