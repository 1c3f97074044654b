"""Process-wide signal handling and child-process shutdown.

SignalCoordinator is the only place that installs handlers for SIGINT,
SIGTERM and SIGQUIT and the event loop's exception handler. It keeps a set of
live ProcessHandles (registered by ProcessSupervisor) so that an interrupt
never leaves orphaned children behind.

Shutdown sequence (runs at most once per coordinator):
1. set the interrupt event so retry loops stop starting new attempts;
2. SIGTERM every tracked process group;
3. wait the grace window, returning early once every handle has exited;
4. SIGKILL whatever is still alive;
5. run the cleanup hook;
6. cancel the attached main task.

The exit status is 128 + N for signal N, and 1 for an unhandled error.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable

    from src.core.models import ProcessHandle
    from src.core.protocols import CleanupPort

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS: tuple[signal.Signals, ...] = tuple(
    getattr(signal, name)
    for name in ("SIGINT", "SIGTERM", "SIGQUIT")
    if hasattr(signal, name)
)

# How often survivors are re-checked during the grace window
POLL_INTERVAL_SECONDS = 0.05

_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)

# Exit status for a shutdown triggered by an unhandled error
ERROR_EXIT_CODE = 1


def signal_exit_code(sig: int) -> int:
    return 128 + int(sig)


class SignalCoordinator:
    """Tracks child processes and shuts them down on interrupt.

    Usage:
        coordinator = SignalCoordinator(cleanup=CleanupHook())
        coordinator.install(asyncio.get_running_loop())
        coordinator.attach(asyncio.current_task())
        try:
            ...  # ProcessSupervisor(tracker=coordinator)
        finally:
            coordinator.uninstall()
    """

    def __init__(
        self,
        *,
        kill_grace_seconds: float = 5.0,
        cleanup: CleanupPort | None = None,
        signals: Iterable[signal.Signals] = DEFAULT_SIGNALS,
    ) -> None:
        self.kill_grace_seconds = kill_grace_seconds
        self.cleanup = cleanup
        self.signals = tuple(signals)
        self.interrupt_event = asyncio.Event()

        self._tracked: set[ProcessHandle] = set()
        self._main_task: asyncio.Task[Any] | None = None
        self._shutdown_task: asyncio.Task[None] | None = None
        self._shutdown_started = False
        self._exit_code: int | None = None
        self._reason: str | None = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._installed_signals: list[signal.Signals] = []
        self._previous_exception_handler: Any = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_started

    @property
    def exit_code(self) -> int | None:
        """Exit status recorded by the first trigger, None if none fired."""
        return self._exit_code

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def tracked(self) -> frozenset[ProcessHandle]:
        return frozenset(self._tracked)

    # -------------------------------------------------------------------------
    # Tracking
    # -------------------------------------------------------------------------

    def track(self, handle: ProcessHandle) -> None:
        self._tracked.add(handle)
        if self._shutdown_started:
            # Spawned while shutting down: terminate right away
            handle.send_signal(signal.SIGTERM)

    def untrack(self, handle: ProcessHandle) -> None:
        self._tracked.discard(handle)

    def attach(self, task: asyncio.Task[Any] | None) -> None:
        """Register the task to cancel once shutdown completes."""
        self._main_task = task

    # -------------------------------------------------------------------------
    # Installation
    # -------------------------------------------------------------------------

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Register the signal handlers and the loop exception handler.

        Signals that cannot be handled on this platform (or outside the main
        thread) are skipped with a debug log.
        """
        loop = loop or asyncio.get_running_loop()
        if self._loop is not None:
            return
        self._loop = loop
        for sig in self.signals:
            try:
                loop.add_signal_handler(sig, self.handle_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                logger.debug("Cannot handle %s here: %s", sig.name, e)
                continue
            self._installed_signals.append(sig)
        self._previous_exception_handler = loop.get_exception_handler()
        loop.set_exception_handler(self._handle_loop_exception)

    def uninstall(self) -> None:
        """Remove the handlers installed by install()."""
        loop = self._loop
        if loop is None:
            return
        for sig in self._installed_signals:
            loop.remove_signal_handler(sig)
        self._installed_signals.clear()
        loop.set_exception_handler(self._previous_exception_handler)
        self._previous_exception_handler = None
        self._loop = None

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def handle_signal(self, sig: int) -> None:
        """Signal handler entry point. Repeated signals are ignored."""
        name = signal.Signals(sig).name
        if self._shutdown_started:
            logger.debug("%s received while shutting down, ignored", name)
            return
        logger.warning("Received %s, shutting down", name)
        self._begin(f"received {name}", signal_exit_code(sig))
        self._shutdown_task = self._get_loop().create_task(self._shutdown_sequence())

    async def shutdown(self, reason: str, exit_code: int = ERROR_EXIT_CODE) -> None:
        """Run the shutdown sequence, or wait for the one already running.

        When awaited from the attached main task, that task is not cancelled.
        """
        if self._main_task is asyncio.current_task():
            self._main_task = None
        if not self._shutdown_started:
            self._begin(reason, exit_code)
            self._shutdown_task = self._get_loop().create_task(
                self._shutdown_sequence()
            )
        task = self._shutdown_task
        if task is not None and task is not asyncio.current_task():
            await asyncio.shield(task)

    def _handle_loop_exception(
        self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]
    ) -> None:
        exc = context.get("exception")
        message = context.get("message", "unhandled error")
        logger.error("Unhandled error in event loop: %s", message, exc_info=exc)
        if not self._shutdown_started:
            self._begin(f"unhandled error: {exc or message}", ERROR_EXIT_CODE)
            self._shutdown_task = loop.create_task(self._shutdown_sequence())
        if self._previous_exception_handler is not None:
            self._previous_exception_handler(loop, context)

    # -------------------------------------------------------------------------
    # Shutdown sequence
    # -------------------------------------------------------------------------

    def _begin(self, reason: str, exit_code: int) -> None:
        self._shutdown_started = True
        self._reason = reason
        self._exit_code = exit_code
        self.interrupt_event.set()

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    async def _shutdown_sequence(self) -> None:
        handles = list(self._tracked)
        try:
            if handles:
                logger.info("Sending SIGTERM to %d tracked process(es)", len(handles))
                for handle in handles:
                    handle.send_signal(signal.SIGTERM)
                await self._wait_for_exit(handles)
                survivors = [h for h in handles if self._still_running(h)]
                for handle in survivors:
                    logger.warning("pid %d survived SIGTERM, sending SIGKILL", handle.pid)
                    handle.send_signal(_SIGKILL)
            await self._run_cleanup()
        finally:
            main = self._main_task
            if main is not None and not main.done() and main is not asyncio.current_task():
                main.cancel()

    def _still_running(self, handle: ProcessHandle) -> bool:
        return handle.is_alive and handle in self._tracked

    async def _wait_for_exit(self, handles: list[ProcessHandle]) -> None:
        deadline = time.monotonic() + self.kill_grace_seconds
        while any(self._still_running(h) for h in handles):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            await asyncio.sleep(min(POLL_INTERVAL_SECONDS, remaining))

    async def _run_cleanup(self) -> None:
        if self.cleanup is None:
            return
        try:
            outcome = await self.cleanup.run()
        except Exception as e:
            logger.warning("Cleanup after shutdown raised: %s", e)
            return
        if not outcome.ok:
            logger.warning("Cleanup after shutdown: %s", "; ".join(outcome.errors))
