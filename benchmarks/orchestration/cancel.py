#!/usr/bin/env python3
"""Cooperative cancellation shared by every probe of one exploration."""

from __future__ import annotations

import signal
from typing import Iterable, Optional


class CancellationToken:
    """A one-way flag; callers poll it at phase boundaries."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    def __bool__(self) -> bool:
        return self._cancelled

    def install_signal_handlers(self, loop, signals: Iterable[int] = (signal.SIGINT, signal.SIGTERM)) -> None:
        """First signal requests a graceful stop; a second one restores the default handler."""
        for signum in signals:
            loop.add_signal_handler(signum, self._on_signal, loop, signum)

    def _on_signal(self, loop, signum: int) -> None:
        name = signal.Signals(signum).name
        if self._cancelled:
            loop.remove_signal_handler(signum)
            signal.raise_signal(signum)
            return
        print(f"[vote] received {name}; finishing the current probe, send again to abort", flush=True)
        self.cancel(f"received {name}")
