#!/usr/bin/env python3
"""Run commands on benchmark hosts over ssh and copy files back with scp."""

from __future__ import annotations

import asyncio
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from benchmarks.orchestration.process_utils import ProcessLaunchError, TransferError


@dataclass
class RemoteSpec:
    host: str
    workdir: str = ""
    ssh_options: List[str] = field(default_factory=lambda: ["-o", "BatchMode=yes"])
    multiplex: bool = False
    control_dir: str = "/tmp"

    @property
    def control_path(self) -> str:
        return os.path.join(self.control_dir, f"vote-ssh-{self.host.replace('@', '_')}")

    def base_options(self) -> List[str]:
        options = list(self.ssh_options)
        if self.multiplex:
            options += ["-o", f"ControlPath={self.control_path}"]
        return options

    def wrap_command(self, argv: List[str]) -> List[str]:
        remote_cmd = " ".join(shlex.quote(arg) for arg in argv)
        if self.workdir:
            if self.workdir.startswith("~/") and " " not in self.workdir:
                remote_cmd = f"cd {self.workdir} && {remote_cmd}"
            else:
                remote_cmd = f"cd {shlex.quote(self.workdir)} && {remote_cmd}"
        return ["ssh", *self.base_options(), self.host, remote_cmd]

    def remote_path(self, path: str) -> str:
        if path.startswith("/") or path.startswith("~") or not self.workdir:
            return path
        return f"{self.workdir.rstrip('/')}/{path}"


def self_excluding_pattern(pattern: str) -> str:
    """Rewrite a `pgrep -f` regex so it no longer matches the shell that runs it.

    The remote command line contains the pattern verbatim. Bracketing its first
    plain character (`noria-server` -> `[n]oria-server`) matches the same
    processes while the literal text in the shell's argv stops matching.
    """
    for i, ch in enumerate(pattern):
        if ch.isalnum() and (i == 0 or pattern[i - 1] != "\\"):
            return f"{pattern[:i]}[{ch}]{pattern[i + 1:]}"
    return pattern


def build_remote_spec(cfg: Dict) -> RemoteSpec:
    if not cfg or "host" not in cfg:
        raise ValueError("host config requires 'host'")
    host = str(cfg["host"])
    user = cfg.get("user")
    if user and "@" not in host:
        host = f"{user}@{host}"
    ssh_options = cfg.get("ssh_options")
    options = list(ssh_options) if ssh_options is not None else ["-o", "BatchMode=yes"]
    return RemoteSpec(
        host=host,
        workdir=str(cfg.get("workdir", "") or ""),
        ssh_options=options,
        multiplex=bool(cfg.get("multiplex", False)),
        control_dir=str(cfg.get("control_dir", "/tmp")),
    )


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class RemoteProcess:
    """A command running on a remote host, seen through its local ssh process."""

    def __init__(self, name: str, proc: asyncio.subprocess.Process) -> None:
        self.name = name
        self._proc = proc

    @property
    def stdout(self) -> Optional[asyncio.StreamReader]:
        return self._proc.stdout

    @property
    def stderr(self) -> Optional[asyncio.StreamReader]:
        return self._proc.stderr

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    async def wait(self) -> int:
        return await self._proc.wait()

    async def communicate(self) -> Tuple[bytes, bytes]:
        out, err = await self._proc.communicate()
        return out or b"", err or b""

    def terminate(self) -> None:
        try:
            self._proc.terminate()
        except ProcessLookupError:
            pass

    def kill(self) -> None:
        try:
            self._proc.kill()
        except ProcessLookupError:
            pass


class Host:
    """One benchmark machine reachable over ssh."""

    def __init__(self, name: str, spec: RemoteSpec, private_ip: Optional[str] = None) -> None:
        self.name = name
        self.spec = spec
        self.private_ip = private_ip or spec.host.split("@")[-1]

    async def spawn(
        self,
        name: str,
        argv: List[str],
        stdout: Optional[int] = asyncio.subprocess.PIPE,
        stderr: Optional[int] = asyncio.subprocess.PIPE,
    ) -> RemoteProcess:
        cmd = self.spec.wrap_command(argv)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
            )
        except OSError as exc:
            raise ProcessLaunchError(f"failed to start {name} on {self.name}: {exc}") from exc
        return RemoteProcess(name, proc)

    async def run(self, argv: List[str], timeout: Optional[float] = None) -> CommandResult:
        proc = await self.spawn(argv[0], argv)
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ProcessLaunchError(f"{' '.join(argv)} on {self.name} timed out after {timeout}s")
        return CommandResult(
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=out.decode("utf-8", errors="replace") if out else "",
            stderr=err.decode("utf-8", errors="replace") if err else "",
        )

    async def fetch(self, remote_path: str, local_path: Path) -> None:
        local_path.parent.mkdir(parents=True, exist_ok=True)
        remote_src = f"{self.spec.host}:{self.spec.remote_path(remote_path)}"
        scp_cmd = ["scp", *self.spec.base_options(), remote_src, str(local_path)]
        try:
            proc = await asyncio.create_subprocess_exec(
                *scp_cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, err = await proc.communicate()
        except OSError as exc:
            raise TransferError(f"failed to copy {remote_src}: {exc}") from exc
        if proc.returncode != 0:
            stderr = err.decode("utf-8", errors="replace").strip() if err else ""
            raise TransferError(f"failed to copy {remote_src} -> {local_path}: {stderr}")

    async def load_average(self) -> Tuple[str, str]:
        res = await self.run(["cat", "/proc/loadavg"], timeout=30)
        fields = res.stdout.split()
        if not res.ok or len(fields) < 2:
            raise TransferError(f"failed to read load average on {self.name}: {res.stderr.strip()}")
        return fields[0], fields[1]

    async def vmrss_kb(self, process_pattern: str) -> int:
        """Resident set size (kB) of the newest process whose command line matches `process_pattern`."""
        pattern = self_excluding_pattern(process_pattern)
        script = (
            f"pid=$(pgrep -n -f {shlex.quote(pattern)}) && "
            "awk '/^VmRSS:/ {print $2}' /proc/$pid/status"
        )
        res = await self.run(["sh", "-c", script], timeout=30)
        text = res.stdout.strip()
        if not res.ok or not text.isdigit():
            raise TransferError(f"failed to read memory use on {self.name}: {res.stderr.strip()}")
        return int(text)

    async def connect(self) -> None:
        if not self.spec.multiplex:
            return
        cmd = [
            "ssh",
            *self.spec.ssh_options,
            "-o",
            "ControlMaster=yes",
            "-o",
            f"ControlPath={self.spec.control_path}",
            "-o",
            "ControlPersist=yes",
            "-N",
            "-f",
            self.spec.host,
        ]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, err = await proc.communicate()
        except OSError as exc:
            raise ProcessLaunchError(f"failed to connect to {self.name}: {exc}") from exc
        if proc.returncode != 0:
            stderr = err.decode("utf-8", errors="replace").strip() if err else ""
            raise ProcessLaunchError(f"failed to connect to {self.name}: {stderr}")

    async def close(self) -> None:
        if not self.spec.multiplex:
            return
        cmd = ["ssh", "-o", f"ControlPath={self.spec.control_path}", "-O", "exit", self.spec.host]
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, err = await proc.communicate()
        if proc.returncode != 0:
            stderr = err.decode("utf-8", errors="replace").strip() if err else ""
            raise ConnectionError(f"closing ssh connection to {self.name} failed: {stderr}")

    def __repr__(self) -> str:
        return f"Host({self.name!r}, {self.spec.host!r})"
