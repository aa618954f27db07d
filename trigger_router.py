"""
Trigger router: funnels every process-level termination trigger into the
exit manager.

Covers termination signals, unhandled exceptions in loop callbacks and
threads, unhandled task failures, explicit exit requests and interpreter
exit. Everything installed here is restored by ``uninstall()``.
"""

import asyncio
import atexit
import logging
import signal
import threading
from collections.abc import Callable
from typing import Any, NoReturn

from constants import ABORT_SIGNALS, GRACEFUL_SIGNALS
from exit_codes import ShutdownExitCode
from shutdown_core import ProcessExitError

logger = logging.getLogger(__name__)


def _owned_by_default(handler: Any) -> bool:
    """True if a signal disposition is Python's default, i.e. nobody else listens."""
    if handler is signal.SIG_DFL or handler is signal.default_int_handler:
        return True
    # asyncio.run() wraps the default SIGINT behaviour for its main task
    func = getattr(handler, "func", None)
    return (
        getattr(func, "__module__", None) == "asyncio.runners"
        and getattr(func, "__qualname__", None) == "Runner._on_sigint"
    )


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class ExitInterceptor:
    """Stands in for immediate termination while a manager is active.

    Calling it starts the exit path and then raises ProcessExitError so the
    caller's remaining code never runs, as it would not after a real exit.
    """

    def __init__(self, on_exit: Callable[[int], None]):
        self._on_exit = on_exit

    def __call__(self, code: int = 0) -> NoReturn:
        self._on_exit(code)
        raise ProcessExitError()


class TriggerRouter:
    """Subscribes once, process-wide, to all termination triggers."""

    def __init__(
        self,
        registry: Any,
        on_exit: Callable[[int | None, str], Any],
        on_error: Callable[[str, BaseException], Any],
        on_process_exit: Callable[[], None],
    ):
        """Initialize the router.

        Args:
            registry: Registry whose ``exit_interceptor`` slot is filled while installed
            on_exit: Exit entry point, called with (code, reason)
            on_error: Called with ("exception" | "rejection", error)
            on_process_exit: Called from ``atexit``
        """
        self.registry = registry
        self._on_exit = on_exit
        self._on_error = on_error
        self._on_process_exit = on_process_exit

        self._loop: asyncio.AbstractEventLoop | None = None
        self._installed = False
        self._signal_handler = self._handle_signal
        self._signal_codes: dict[int, int] = {}
        self._previous_signals: dict[int, Any] = {}
        self._previous_loop_handler = None
        self._previous_thread_hook = None
        self._interceptor: ExitInterceptor | None = None

    @property
    def installed(self) -> bool:
        return self._installed

    @property
    def routed_signals(self) -> list[int]:
        return list(self._previous_signals)

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._installed:
            return

        self._loop = loop
        self._install_signal_handlers()

        self._previous_loop_handler = loop.get_exception_handler()
        loop.set_exception_handler(self._handle_loop_exception)

        self._previous_thread_hook = threading.excepthook
        threading.excepthook = self._handle_thread_exception

        atexit.register(self._handle_process_exit)

        self._interceptor = ExitInterceptor(self._handle_exit_request)
        self.registry.exit_interceptor = self._interceptor

        self._installed = True
        logger.debug("Termination triggers installed")

    def uninstall(self) -> None:
        if not self._installed:
            return

        if self.registry.exit_interceptor is self._interceptor:
            self.registry.exit_interceptor = None
        self._interceptor = None

        atexit.unregister(self._handle_process_exit)

        if threading.excepthook == self._handle_thread_exception:
            threading.excepthook = self._previous_thread_hook
        self._previous_thread_hook = None

        if self._loop is not None and self._loop.get_exception_handler() == self._handle_loop_exception:
            self._loop.set_exception_handler(self._previous_loop_handler)
        self._previous_loop_handler = None

        self._restore_signal_handlers()

        self._loop = None
        self._installed = False
        logger.debug("Termination triggers removed")

    # === SIGNALS ===

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            logger.warning("Not running in the main thread, signal handlers not installed")
            return

        classified = [(name, ShutdownExitCode.SUCCESS_CLEAN_SHUTDOWN) for name in GRACEFUL_SIGNALS]
        classified += [(name, ShutdownExitCode.ABORTED) for name in ABORT_SIGNALS]

        for name, code in classified:
            signum = getattr(signal, name, None)
            if signum is None:
                continue

            current = signal.getsignal(signum)
            if not _owned_by_default(current):
                logger.info(f"{name} is handled by the application, not routing it")
                continue

            self._previous_signals[signum] = current
            self._signal_codes[signum] = int(code)
            signal.signal(signum, self._signal_handler)

        names = [signal.Signals(s).name for s in self._previous_signals]
        logger.debug(f"Signal handlers registered for {', '.join(names) or 'no signals'}")

    def _restore_signal_handlers(self) -> None:
        if not self._previous_signals:
            return
        if threading.current_thread() is not threading.main_thread():
            logger.warning("Not running in the main thread, signal handlers left in place")
            return

        for signum, previous in self._previous_signals.items():
            if signal.getsignal(signum) == self._signal_handler:
                signal.signal(signum, previous)
        self._previous_signals.clear()
        self._signal_codes.clear()

    def _handle_signal(self, signum, frame) -> None:
        # Runs between bytecodes in the main thread; hop onto the loop
        loop = self._loop
        if loop is None:
            return
        if loop.is_closed():
            self._deliver_signal(signum)
            return
        loop.call_soon_threadsafe(self._deliver_signal, signum)

    def _deliver_signal(self, signum: int) -> None:
        code = self._signal_codes.get(signum)
        if code is None:
            return
        signal_name = signal.Signals(signum).name
        logger.info(f"Received signal {signum} ({signal_name})")
        self._on_exit(code, f"signal_{signal_name}")

    # === UNHANDLED ERRORS ===

    def _handle_loop_exception(self, loop, context: dict) -> None:
        error = context.get("exception")
        if error is None:
            if self._previous_loop_handler is not None:
                self._previous_loop_handler(loop, context)
            else:
                loop.default_exception_handler(context)
            return

        if isinstance(error, ProcessExitError):
            return

        kind = "rejection" if context.get("future") is not None or context.get("task") is not None else "exception"
        self._on_error(kind, error)

    def _handle_thread_exception(self, args) -> None:
        error = args.exc_value
        if isinstance(error, ProcessExitError):
            return

        loop = self._loop
        if loop is None:
            if self._previous_thread_hook is not None:
                self._previous_thread_hook(args)
            return
        if loop.is_closed():
            self._on_error("exception", error)
            return
        loop.call_soon_threadsafe(self._on_error, "exception", error)

    # === EXIT REQUESTS ===

    def _handle_exit_request(self, code: int) -> None:
        loop = self._loop
        if loop is not None and _running_loop() is not loop and not loop.is_closed():
            loop.call_soon_threadsafe(self._on_exit, code, "request_exit")
            return
        self._on_exit(code, "request_exit")

    def _handle_process_exit(self) -> None:
        self._on_process_exit()
