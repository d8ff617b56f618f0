#!/usr/bin/env python3
"""Start, stop and snapshot the server under test."""

from __future__ import annotations

import asyncio
from pathlib import Path

from benchmarks.orchestration.commands import VoteCommands
from benchmarks.orchestration.params import ExperimentParameters
from benchmarks.orchestration.process_utils import ProcessLaunchError, TransferError


class ServerStopError(RuntimeError):
    pass


async def start_server(host, commands: VoteCommands, params: ExperimentParameters, ready_wait: float = 0.0):
    """Launch the server and give it `ready_wait` seconds to fail fast."""
    argv = commands.server_argv(params)
    proc = await host.spawn(
        "server",
        argv,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
    )
    if ready_wait > 0:
        try:
            await asyncio.sleep(ready_wait)
        except BaseException:
            proc.kill()
            raise
    if proc.returncode is not None:
        raise ProcessLaunchError(f"server on {host.name} exited early with code {proc.returncode}")
    return proc


async def stop_server(host, proc, commands: VoteCommands, timeout: float = 30.0) -> None:
    problems = []
    if proc.returncode is None:
        res = await host.run(commands.stop_argv(), timeout=timeout)
        if not res.ok:
            problems.append(f"stop command exited with {res.returncode}: {res.stderr.strip()}")
    try:
        await asyncio.wait_for(proc.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        problems.append(f"server did not exit within {timeout}s and was killed")
    if problems:
        raise ServerStopError(f"stopping server on {host.name}: " + "; ".join(problems))


async def write_stats(host, commands: VoteCommands, path: Path) -> None:
    res = await host.run(commands.stats_argv(), timeout=120)
    if not res.ok:
        raise TransferError(f"failed to fetch server statistics: {res.stderr.strip()}")
    path.write_text(res.stdout, encoding="utf-8")
