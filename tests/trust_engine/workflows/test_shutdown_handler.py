"""
Tests for the signal-driven shutdown handler (trust_engine/workflows/shutdown.py).

Tests:
- Initialization defaults
- install() without a running loop (plain signal API) and its idempotency
- install() inside a running loop (loop signal handlers)
- uninstall() restores previous handlers
- Signal handling, request_shutdown() and reset()
- wait_for_shutdown() with and without timeout
"""

from __future__ import annotations

import asyncio
import signal

import pytest

from trust_engine.workflows.shutdown import HANDLED_SIGNALS, GracefulShutdownHandler


class TestInit:
    def test_initial_state(self) -> None:
        handler = GracefulShutdownHandler()
        assert handler.should_shutdown is False
        assert handler.received_signal is None
        assert handler._installed is False
        assert handler._shutdown_event is None

    def test_handled_signals(self) -> None:
        assert set(HANDLED_SIGNALS) == {signal.SIGTERM, signal.SIGINT}


class TestInstallSync:
    """install() with no running loop falls back to signal.signal."""

    def test_install_and_uninstall(self) -> None:
        original_sigterm = signal.getsignal(signal.SIGTERM)
        original_sigint = signal.getsignal(signal.SIGINT)
        handler = GracefulShutdownHandler()

        handler.install()
        try:
            assert handler._installed is True
            assert isinstance(handler._shutdown_event, asyncio.Event)
            assert signal.getsignal(signal.SIGTERM) == handler._handle_signal_sync
        finally:
            handler.uninstall()

        assert handler._installed is False
        assert signal.getsignal(signal.SIGTERM) == original_sigterm
        assert signal.getsignal(signal.SIGINT) == original_sigint

    def test_install_idempotent(self) -> None:
        handler = GracefulShutdownHandler()
        handler.install()
        try:
            first_event = handler._shutdown_event
            handler.install()
            assert handler._shutdown_event is first_event
        finally:
            handler.uninstall()

    def test_uninstall_idempotent(self) -> None:
        handler = GracefulShutdownHandler()
        handler.uninstall()
        handler.install()
        handler.uninstall()
        handler.uninstall()
        assert handler._installed is False

    def test_sync_handler_sets_flag(self) -> None:
        handler = GracefulShutdownHandler()
        handler.install()
        try:
            handler._handle_signal_sync(signal.SIGINT, None)
            assert handler.should_shutdown is True
            assert handler.received_signal == "SIGINT"
            assert handler._shutdown_event.is_set()
        finally:
            handler.uninstall()


class TestInstallInLoop:
    @pytest.mark.asyncio
    async def test_real_signal_triggers_shutdown(self) -> None:
        handler = GracefulShutdownHandler()
        handler.install()
        try:
            assert handler._loop is asyncio.get_running_loop()
            signal.raise_signal(signal.SIGTERM)
            assert await handler.wait_for_shutdown(timeout=2) is True
            assert handler.received_signal == "SIGTERM"
        finally:
            handler.uninstall()
        assert handler._loop is None


class TestWaitForShutdown:
    @pytest.mark.asyncio
    async def test_not_installed(self) -> None:
        handler = GracefulShutdownHandler()
        assert await handler.wait_for_shutdown() is False
        handler.request_shutdown()
        assert await handler.wait_for_shutdown() is True

    @pytest.mark.asyncio
    async def test_request_shutdown_wakes_waiter(self) -> None:
        handler = GracefulShutdownHandler()
        handler.install()
        try:
            waiter = asyncio.create_task(handler.wait_for_shutdown(timeout=2))
            await asyncio.sleep(0)
            handler.request_shutdown()
            assert await waiter is True
            assert handler.received_signal == "SIGTERM"
        finally:
            handler.uninstall()

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        handler = GracefulShutdownHandler()
        handler.install()
        try:
            assert await handler.wait_for_shutdown(timeout=0.01) is False
            assert handler.should_shutdown is False
        finally:
            handler.uninstall()


class TestReset:
    def test_reset_clears_state(self) -> None:
        handler = GracefulShutdownHandler()
        handler.install()
        try:
            handler.request_shutdown()
            handler.reset()
            assert handler.should_shutdown is False
            assert handler.received_signal is None
            assert not handler._shutdown_event.is_set()
        finally:
            handler.uninstall()
