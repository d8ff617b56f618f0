#!/usr/bin/env python3
"""Command lines for the server under test and the vote benchmark clients."""

from __future__ import annotations

from typing import List

from benchmarks.orchestration.config import ClientSettings, ServerSettings
from benchmarks.orchestration.params import ExperimentParameters
from benchmarks.orchestration.remote import self_excluding_pattern


class VoteCommands:
    def __init__(self, server: ServerSettings, client: ClientSettings, runtime_s: int = 540) -> None:
        self.server = server
        self.client = client
        self.runtime_s = runtime_s

    def server_argv(self, params: ExperimentParameters) -> List[str]:
        argv = [self.server.bin]
        if not params.partial:
            argv.append(self.server.no_partial_arg)
        if not params.join and self.server.no_join_arg:
            argv.append(self.server.no_join_arg)
        if params.memory_limit:
            argv += [self.server.memory_limit_arg, str(params.memory_limit)]
        argv += list(self.server.args)
        return argv

    def stop_argv(self) -> List[str]:
        if self.server.stop_command:
            return list(self.server.stop_command)
        return ["pkill", "-INT", "-f", self_excluding_pattern(self.server.process_pattern)]

    def stats_argv(self) -> List[str]:
        return list(self.server.stats_command)

    def _workload_args(self, params: ExperimentParameters) -> List[str]:
        return [
            "-d",
            params.distribution,
            f"--articles={params.articles}",
            "--write-every",
            str(params.write_every),
        ]

    def _deployment_args(self, server_ip: str) -> List[str]:
        # vote args need to go before the netsoup arguments
        return [
            "netsoup",
            "--deployment",
            "benchmark",
            "--zookeeper",
            f"{server_ip}:{self.client.zookeeper_port}",
        ]

    def prime_argv(self, params: ExperimentParameters, server_ip: str) -> List[str]:
        return (
            [self.client.bin, "--runtime=0"]
            + self._workload_args(params)
            + list(self.client.args)
            + self._deployment_args(server_ip)
        )

    def bench_argv(self, params: ExperimentParameters, per_client_target: int, server_ip: str) -> List[str]:
        return (
            [
                self.client.bin,
                "--no-prime",
                f"--runtime={self.runtime_s}",
                f"--histogram={self.client.histogram}",
                "--target",
                str(per_client_target),
            ]
            + self._workload_args(params)
            + list(self.client.args)
            + self._deployment_args(server_ip)
        )

    def histogram_path(self) -> str:
        return self.client.histogram
