#!/usr/bin/env python3
"""Execute one capacity probe against a freshly started server.

Phases of a probe:
  1. prime     - one client loads the data set (runtime 0); failure = overloaded
  2. checkpoint- stop here if cancellation was requested
  3. run       - every client drives ceil(target / clients) ops/s; their stdout
                 is merged into <prefix>.log and classified line by line
  4. collect   - meta comments, then histograms and server statistics when
                 every client exited cleanly and nothing overloaded
  5. cleanup   - the server is stopped on every path, exactly once

Overload is reported through the returned RunVerdict. Infrastructure failures
(spawn, scp, stream read) propagate after the server has been stopped.
"""

from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from benchmarks.orchestration.cancel import CancellationToken
from benchmarks.orchestration.classify import ClientTally, OverloadThresholds
from benchmarks.orchestration.commands import VoteCommands
from benchmarks.orchestration.params import ExperimentParameters
from benchmarks.orchestration.process_utils import StreamReadError, log_progress, managed_process
from benchmarks.orchestration.server import start_server, stop_server, write_stats
from benchmarks.orchestration.verdict import (
    OverloadReason,
    OverloadSignal,
    RunVerdict,
    decide_outcome,
)


@dataclass
class _Probe:
    target: int
    signals: List[OverloadSignal] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    artifacts: List[Path] = field(default_factory=list)
    cleanup_errors: List[str] = field(default_factory=list)
    cancelled: bool = False


class RunDriver:
    def __init__(
        self,
        commands: VoteCommands,
        output_dir: Path,
        thresholds: Optional[OverloadThresholds] = None,
        server_type: str = "unknown",
        client_type: str = "unknown",
        server_ready_wait: float = 0.0,
        server_stop_timeout: float = 30.0,
        process_pattern: str = "noria-server",
    ) -> None:
        self.commands = commands
        self.output_dir = Path(output_dir)
        self.thresholds = thresholds or OverloadThresholds()
        self.server_type = server_type
        self.client_type = client_type
        self.server_ready_wait = server_ready_wait
        self.server_stop_timeout = server_stop_timeout
        self.process_pattern = process_pattern

    def _log(self, message: str) -> None:
        log_progress(self.output_dir, "driver", message)

    async def run(
        self,
        params: ExperimentParameters,
        target: int,
        server,
        clients: Sequence,
        cancel: CancellationToken,
    ) -> RunVerdict:
        if len(clients) < params.clients:
            raise ValueError(f"{params.clients} clients requested but only {len(clients)} hosts given")
        clients = list(clients)[: params.clients]
        probe = _Probe(target=target)
        if cancel.cancelled:
            probe.cancelled = True
            self._log(f"target={target}: cancelled before start")
            return self._verdict(probe)

        self.output_dir.mkdir(parents=True, exist_ok=True)
        prefix = params.artifact_prefix(target)
        self._log(f"start benchmark target={target} prefix={prefix}")

        server_proc = await start_server(server, self.commands, params, ready_wait=self.server_ready_wait)
        try:
            await self._phases(params, target, prefix, server, clients, cancel, probe)
        finally:
            await self._cleanup(server, server_proc, probe)

        verdict = self._verdict(probe)
        self._log(f"target={target}: {verdict.outcome.value}")
        return verdict

    def _verdict(self, probe: _Probe) -> RunVerdict:
        return RunVerdict(
            target=probe.target,
            outcome=decide_outcome(probe.signals, probe.cancelled),
            signals=tuple(probe.signals),
            artifacts=frozenset(str(p) for p in probe.artifacts),
            cleanup_errors=tuple(probe.cleanup_errors),
            warnings=tuple(probe.warnings),
        )

    async def _cleanup(self, server, server_proc, probe: _Probe) -> None:
        self._log("stopping server")
        try:
            await stop_server(server, server_proc, self.commands, timeout=self.server_stop_timeout)
        except Exception as exc:
            # surfaced next to the verdict, never in place of it
            probe.cleanup_errors.append(f"{type(exc).__name__}: {exc}")
            self._log(f"warning: server stop failed: {exc}")
        except BaseException:
            server_proc.kill()
            raise
        else:
            self._log("server stopped")

    async def _phases(
        self,
        params: ExperimentParameters,
        target: int,
        prefix: str,
        server,
        clients: List,
        cancel: CancellationToken,
        probe: _Probe,
    ) -> None:
        self._log("prime")
        prime = await clients[0].run(self.commands.prime_argv(params, server.private_ip))
        if not prime.ok:
            self._log(f"warning: priming failed:\n{prime.stderr}")
            probe.signals.append(
                OverloadSignal(
                    reason=OverloadReason.PRIME_FAILURE,
                    message=f"priming exited with code {prime.returncode}",
                    client=0,
                    context=(("stderr_tail", "\n".join(prime.stderr.strip().splitlines()[-5:])),),
                )
            )
            return

        if cancel.cancelled:
            self._log("exiting as instructed")
            probe.cancelled = True
            return

        self._log("benchmark")
        per_client_target = params.per_client_target(target)
        log_path = self.output_dir / f"{prefix}.log"
        probe.artifacts.append(log_path)
        with log_path.open("w", encoding="utf-8") as results:

            def sink(line: str) -> None:
                results.write(line + "\n")

            tallies = await self._run_clients(params, per_client_target, server, clients, sink)
            for tally in tallies:
                probe.signals.extend(tally.signals)
                probe.warnings.extend(tally.warnings)
            self._log("benchmark completed")

            if cancel.cancelled:
                self._log("exiting as instructed; skipping result collection")
                probe.cancelled = True
                return

            self._log("saving meta-info")
            await self._write_meta(results, server, clients)

        all_ok = all(t.returncode == 0 for t in tallies) and not probe.signals
        if not all_ok:
            self._log("partial results saved")
            return

        for clienti, host in enumerate(clients):
            hist_path = self.output_dir / f"{prefix}-client{clienti}.hist"
            await host.fetch(self.commands.histogram_path(), hist_path)
            probe.artifacts.append(hist_path)
        stats_path = self.output_dir / f"{prefix}-statistics.json"
        await write_stats(server, self.commands, stats_path)
        probe.artifacts.append(stats_path)
        self._log("all results saved")

    async def _write_meta(self, results, server, clients: List) -> None:
        results.write(f"# server type: {self.server_type}\n")
        results.write(f"# client type: {self.client_type}\n")
        sload1, sload5 = await server.load_average()
        results.write(f"# server load: {sload1} {sload5}\n")
        vmrss = await server.vmrss_kb(self.process_pattern)
        results.write(f"# server memory (kB): {vmrss}\n")
        cload1, cload5 = await clients[0].load_average()
        results.write(f"# client[0] load: {cload1} {cload5}\n")
        results.flush()

    async def _run_clients(
        self,
        params: ExperimentParameters,
        per_client_target: int,
        server,
        clients: List,
        sink: Callable[[str], None],
    ) -> List[ClientTally]:
        argv = self.commands.bench_argv(params, per_client_target, server.private_ip)
        async with AsyncExitStack() as stack:
            procs = []
            for clienti, host in enumerate(clients):
                proc = await stack.enter_async_context(managed_process(host, f"client{clienti}", argv))
                procs.append(proc)
            tasks = [
                asyncio.create_task(self._drain_client(clienti, proc, per_client_target, sink))
                for clienti, proc in enumerate(procs)
            ]
            try:
                return list(await asyncio.gather(*tasks))
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

    async def _drain_client(
        self,
        clienti: int,
        proc,
        per_client_target: int,
        sink: Callable[[str], None],
    ) -> ClientTally:
        tally = ClientTally(client=clienti, per_client_target=per_client_target, thresholds=self.thresholds)

        async def read_stdout() -> None:
            while True:
                try:
                    raw = await proc.stdout.readline()
                except (OSError, ValueError) as exc:
                    raise StreamReadError(f"failed to read client{clienti} output: {exc}") from exc
                if not raw:
                    return
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                sink(line)
                seen = len(tally.warnings)
                signal = tally.observe(line)
                if signal is not None:
                    self._log(f"warning: {signal.message}")
                elif len(tally.warnings) > seen:
                    self._log(f"warning: {tally.warnings[-1]}")

        async def read_stderr() -> str:
            try:
                data = await proc.stderr.read()
            except OSError as exc:
                raise StreamReadError(f"failed to read client{clienti} stderr: {exc}") from exc
            return data.decode("utf-8", errors="replace")

        _, stderr = await asyncio.gather(read_stdout(), read_stderr())
        returncode = await proc.wait()
        tally.finish(returncode, stderr)
        if tally.data_lines == 0:
            self._log(f"warning: client{clienti} missing data lines, probably overloaded")
        if returncode != 0:
            self._log(f"warning: client{clienti} benchmark failed:\n{stderr}")
        return tally
