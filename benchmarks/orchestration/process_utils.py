#!/usr/bin/env python3
"""Helpers for launching remote processes and making sure they are cleaned up."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, List, Optional


class InfrastructureError(RuntimeError):
    """Failure of the machinery around a probe; never a capacity signal."""


class ProcessLaunchError(InfrastructureError):
    pass


class TransferError(InfrastructureError):
    pass


class StreamReadError(InfrastructureError):
    pass


def log_progress(log_dir: Optional[Path], tag: str, message: str) -> None:
    """Print a tagged progress line and append it to <log_dir>/progress.log."""
    ts = datetime.now().isoformat(timespec="seconds")
    line = f"[{ts}] [{tag}] {message}"
    print(line, flush=True)
    if log_dir is None:
        return
    try:
        log_path = Path(log_dir) / "progress.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")
    except Exception:
        # Best-effort only: don't break experiments if logging fails.
        pass


@asynccontextmanager
async def managed_process(
    host,
    name: str,
    argv: List[str],
    stdout: Optional[int] = asyncio.subprocess.PIPE,
    stderr: Optional[int] = asyncio.subprocess.PIPE,
    ready_wait: float = 0.0,
) -> AsyncIterator:
    """Spawn `argv` on `host` and kill it on exit if it is still running."""
    proc = await host.spawn(name, argv, stdout=stdout, stderr=stderr)
    try:
        if ready_wait > 0:
            await asyncio.sleep(ready_wait)
            if proc.returncode is not None:
                raise ProcessLaunchError(f"{name} exited early with code {proc.returncode}")
        yield proc
    finally:
        await terminate_process(proc)


async def terminate_process(proc, timeout: float = 5.0) -> None:
    if proc.returncode is not None:
        return
    proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
