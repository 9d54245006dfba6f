"""
Signal-driven shutdown for the compliance worker.

The worker runs until SIGTERM/SIGINT. On a signal the handler sets an
event that ``main.py`` awaits; the worker then stops the scheduler, drains
background jobs (export/erasure processing) and flushes the audit queue
before the process exits.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class GracefulShutdownHandler:
    """Turns SIGTERM/SIGINT into an awaitable shutdown event.

    Usage:
        handler = GracefulShutdownHandler()
        handler.install()          # inside the running loop
        await handler.wait_for_shutdown()
        handler.uninstall()
    """

    def __init__(self) -> None:
        self._should_shutdown = False
        self._shutdown_event: asyncio.Event | None = None
        self._original_handlers: dict[int, Any] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._installed = False
        self._received: str | None = None

    @property
    def should_shutdown(self) -> bool:
        return self._should_shutdown

    @property
    def received_signal(self) -> str | None:
        """Name of the signal that triggered shutdown, if any."""
        return self._received

    def install(self) -> None:
        """Install handlers for SIGTERM and SIGINT.

        Inside a running loop ``loop.add_signal_handler`` is used; otherwise
        (or where the loop does not support it) the plain ``signal`` API.
        """
        if self._installed:
            return

        self._shutdown_event = asyncio.Event()
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

        if self._loop is not None:
            try:
                for sig in HANDLED_SIGNALS:
                    self._loop.add_signal_handler(sig, self._handle_signal, sig)
            except NotImplementedError:
                self._loop = None

        if self._loop is None:
            for sig in HANDLED_SIGNALS:
                self._original_handlers[sig] = signal.getsignal(sig)
                signal.signal(sig, self._handle_signal_sync)

        self._installed = True
        logger.info("Shutdown handler installed")

    def uninstall(self) -> None:
        """Remove the handlers and restore whatever was there before."""
        if not self._installed:
            return

        if self._loop is not None:
            for sig in HANDLED_SIGNALS:
                try:
                    self._loop.remove_signal_handler(sig)
                except (NotImplementedError, ValueError, RuntimeError):
                    pass
            self._loop = None

        for sig, original in self._original_handlers.items():
            signal.signal(sig, original)
        self._original_handlers.clear()

        self._installed = False
        logger.info("Shutdown handler uninstalled")

    def _handle_signal(self, signum: int) -> None:
        self._received = signal.Signals(signum).name
        logger.info("Received %s, shutting down compliance worker", self._received)
        self._should_shutdown = True
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    def _handle_signal_sync(self, signum: int, _frame: Any) -> None:
        self._handle_signal(signum)

    def request_shutdown(self) -> None:
        """Trigger shutdown programmatically (same path as SIGTERM)."""
        self._handle_signal(signal.SIGTERM)

    async def wait_for_shutdown(self, timeout: float | None = None) -> bool:
        """Wait for a shutdown signal.

        Returns:
            True if shutdown was requested, False if ``timeout`` elapsed first
        """
        if self._shutdown_event is None:
            return self._should_shutdown
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
            return True
        except TimeoutError:
            return False

    def reset(self) -> None:
        self._should_shutdown = False
        self._received = None
        if self._shutdown_event is not None:
            self._shutdown_event.clear()


__all__ = ["GracefulShutdownHandler", "HANDLED_SIGNALS"]
