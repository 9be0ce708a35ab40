"""
Process lifecycle: one startup banner line and signal-driven shutdown.

SIGTERM/SIGINT never kill the loop mid-settlement; they ask the engine to
stop, and the engine finishes the event it is handling first.
"""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import signal
import socket
from typing import Any, Callable, Optional

from veiled_agent.common.logging import log_event

logger = logging.getLogger(__name__)


def startup_banner(*, service: str, intent: str, **extra: Any) -> None:
    log_event(
        logger,
        "startup.banner",
        service_name=service,
        intent=intent,
        pid=os.getpid(),
        hostname=socket.gethostname(),
        python_version=platform.python_version(),
        **extra,
    )


class AsyncShutdown:
    """
    Turns the first SIGINT/SIGTERM into a single stop request.
    """

    def __init__(self, *, service: str) -> None:
        self.service = service
        self.stop_event = asyncio.Event()
        self.reason: Optional[str] = None
        self._callbacks: list[Callable[[], Any]] = []
        self._installed = False

    def add_callback(self, cb: Callable[[], Any]) -> None:
        """
        `cb` runs once when shutdown starts; coroutine results are scheduled.
        """
        self._callbacks.append(cb)

    def request_stop(self, *, reason: str, signum: int | None = None) -> None:
        if self.stop_event.is_set():
            return
        self.reason = reason
        log_event(logger, "shutdown.initiated", severity="WARNING", service_name=self.service, reason=reason, signum=signum)
        self.stop_event.set()
        for cb in self._callbacks:
            res = cb()
            if asyncio.iscoroutine(res):
                asyncio.ensure_future(res)

    def install(self) -> None:
        if self._installed:
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            signum = int(sig)
            try:
                loop.add_signal_handler(sig, lambda n=signum: self.request_stop(reason="signal", signum=n))
            except NotImplementedError:
                # Windows event loops have no add_signal_handler.
                signal.signal(sig, lambda n, _frame: loop.call_soon_threadsafe(self.request_stop, reason="signal", signum=n))
        self._installed = True
