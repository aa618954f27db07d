"""
Exit Manager for managed servers

This module holds the exit-coordination state machine. Every termination
trigger (signals, unhandled errors, explicit exit requests, unexpected
listener closes, the exit timeout) is reduced to a call into
``Manager._exit``, which decides between a graceful and an aborted
shutdown, drives the servers through stop, and finally invokes the real
termination primitive with the most severe exit code seen.

Key Features:
- Single manager per registry (process-wide by default)
- Atomic start with rollback, concurrent stop
- Monotonic exit code (worst severity wins)
- Bounded shutdown through a one-shot exit timer
"""

import asyncio
import logging
import os
import sys
import traceback
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from dotenv import load_dotenv

from constants import (
    DEFAULT_EXIT_TIMEOUT_MS,
    ENV_EXIT_TIMEOUT,
    EXIT_TIMEOUT_CODE,
    STOP_GRACE_MARGIN_MS,
)
from exit_codes import ExitCodeTracker, ShutdownExitCode, get_exit_code_description
from exit_gate import ExitGate
from server_contract import PRE_STOP_HOOK, describe_server, ensure_managed_server
from shutdown_core import (
    ProcessAbortedError,
    ProcessExitError,
    ShutdownCoordinator,
    hard_exit,
    log,
)
from startup_orchestrator import StartupCoordinator
from system_utils import log_system_state
from trigger_router import TriggerRouter

logger = logging.getLogger(__name__)


class ManagerState(str, Enum):
    """Exit state machine states."""

    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"
    PRESTOPPED = "prestopped"
    STOPPED = "stopped"
    START_ABORTED = "startAborted"
    ERRORED = "errored"
    TIMEOUT = "timeout"


TERMINAL_STATES = (ManagerState.STOPPED, ManagerState.ERRORED, ManagerState.TIMEOUT)


class ManagerStateError(RuntimeError):
    """Raised when the manager is used in a way its state does not allow."""


# === CONFIGURATION ===

@dataclass
class ManagerOptions:
    """Manager configuration.

    ``exit_timeout`` is in milliseconds; ``0`` or ``None`` select the default.
    """

    exit_timeout: float | None = DEFAULT_EXIT_TIMEOUT_MS

    def __post_init__(self):
        if not self.exit_timeout:
            self.exit_timeout = DEFAULT_EXIT_TIMEOUT_MS
        if isinstance(self.exit_timeout, bool) or not isinstance(self.exit_timeout, (int, float)):
            raise ValueError(f"exit_timeout must be a number of milliseconds, got {self.exit_timeout!r}")
        if self.exit_timeout < 0:
            raise ValueError(f"exit_timeout cannot be negative, got {self.exit_timeout}")

    @classmethod
    def from_env(cls, dotenv_path: str | None = None) -> "ManagerOptions":
        """Build options from the environment, loading a .env file first."""
        load_dotenv(dotenv_path)
        raw = os.getenv(ENV_EXIT_TIMEOUT)
        if raw is None or not raw.strip():
            return cls()
        try:
            value = float(raw)
        except ValueError:
            raise ValueError(f"{ENV_EXIT_TIMEOUT} must be a number, got {raw!r}") from None
        return cls(exit_timeout=int(value) if value.is_integer() else value)

    @classmethod
    def coerce(cls, options: "ManagerOptions | Mapping[str, Any] | None") -> "ManagerOptions":
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        return cls(**dict(options))


# === REGISTRY ===

class ManagerRegistry:
    """Process-wide context: the single manager slot and the process primitives.

    Holds the real termination primitive and the diagnostic log sink so both
    can be replaced explicitly (e.g. in tests) instead of patching globals.
    """

    def __init__(
        self,
        terminate: Callable[[int], Any] | None = None,
        log_sink: Callable[..., Any] | None = None,
    ):
        self.manager: "Manager | None" = None
        self.terminate = terminate or hard_exit
        self.log_sink = log_sink or log
        self.exit_interceptor: Callable[[int], Any] | None = None

    def register(self, manager: "Manager") -> None:
        if self.manager is not None:
            raise ManagerStateError("Only one manager can be created")
        self.manager = manager

    def unregister(self, manager: "Manager") -> None:
        if self.manager is manager:
            self.manager = None

    def reset(self) -> None:
        """Deactivate the registered manager, if any."""
        if self.manager is not None:
            self.manager.deactivate()


default_registry = ManagerRegistry()


# === MANAGER ===

class Manager:
    """Exit-coordination state machine for one or more managed servers."""

    def __init__(
        self,
        servers: Any,
        options: ManagerOptions | Mapping[str, Any] | None = None,
        registry: ManagerRegistry | None = None,
    ):
        """Create a manager and register it.

        Args:
            servers: A single managed server or an iterable of them
            options: ManagerOptions or a mapping with ``exit_timeout`` (ms)
            registry: Registry to claim; defaults to the process-wide one

        Raises:
            ManagerStateError: Another manager is already registered
            ServerContractError: A server does not satisfy the contract
        """
        self._registry = registry or default_registry
        self._options = ManagerOptions.coerce(options)

        if callable(getattr(servers, "start", None)) or not isinstance(servers, Iterable):
            servers = [servers]
        self._servers = tuple(ensure_managed_server(server) for server in servers)

        self._state: ManagerState | None = None
        self._active = True
        self._loop: asyncio.AbstractEventLoop | None = None
        self._exit_codes = ExitCodeTracker(logger)
        self._exit_gate = ExitGate(self._options.exit_timeout)
        self._startup = StartupCoordinator(logger)
        self._shutdown = ShutdownCoordinator(logger)
        self._router = TriggerRouter(
            self._registry,
            on_exit=self._exit,
            on_error=self._unhandled_error,
            on_process_exit=self._bad_exit_check,
        )
        self._tasks: set[asyncio.Task] = set()
        self._watchers: set[asyncio.Task] = set()
        self._terminated = asyncio.Event()

        self._registry.register(self)
        logger.info(
            f"Initialized exit manager for {len(self._servers)} server(s) "
            f"(exit timeout: {self._options.exit_timeout}ms)"
        )

    # === READ-ONLY OBSERVATION ===

    @property
    def servers(self) -> tuple:
        return self._servers

    @property
    def state(self) -> ManagerState | None:
        return self._state

    @property
    def active(self) -> bool:
        return self._active

    @property
    def exit_code(self) -> int:
        return self._exit_codes.code

    @property
    def exit_timeout(self) -> float:
        return self._options.exit_timeout

    def get_exit_summary(self) -> dict:
        return self._exit_codes.get_exit_summary()

    # === PUBLIC API ===

    async def start(self) -> "Manager | None":
        """Start all servers.

        Returns:
            The manager on success, or None if an exit was requested while
            starting (the shutdown then proceeds instead of an error).

        Raises:
            Exception: The first server start error, after rollback
        """
        if self._state is None:
            self._loop = asyncio.get_running_loop()
            self._router.install(self._loop)

        self._state = ManagerState.STARTING

        start_error: Exception | None = None
        pending: asyncio.Task | None = None
        try:
            await self._startup.start_all(self._servers)
        except Exception as e:
            start_error = e
        finally:
            aborted = self._state is ManagerState.START_ABORTED
            self._state = ManagerState.ERRORED if start_error is not None else ManagerState.STARTED
            if aborted:
                logger.info("Exit requested while starting, shutting down")
                pending = self._exit()

        if aborted:
            if pending is not None:
                await pending
            return None

        if start_error is not None:
            raise start_error

        # Catch listeners that close without a stop
        for index, server in enumerate(self._servers):
            self._watch_listener(index, server)

        logger.info("All servers started")
        return self

    async def stop(self, timeout: float | None = None) -> None:
        """Stop all servers.

        Args:
            timeout: Grace period in milliseconds forwarded to each server

        Raises:
            ManagerStateError: The manager is not started
            Exception: The first server stop error
        """
        if self._state is not ManagerState.STARTED:
            raise ManagerStateError("Stop requires that server is started")

        self._state = ManagerState.STOPPING
        await self._stop(timeout)

    def deactivate(self) -> None:
        """Remove every routed trigger, cancel the exit timer and free the registry slot."""
        if not self._active:
            return

        self._router.uninstall()
        self._exit_gate.cancel()
        if self._loop is not None and not self._loop.is_closed():
            for watcher in list(self._watchers):
                watcher.cancel()
        self._registry.unregister(self)
        self._active = False
        logger.debug(f"Exit manager deactivated (state: {self._state_name})")

    async def wait_terminated(self) -> None:
        """Wait until the termination primitive has been invoked."""
        await self._terminated.wait()

    # === EXIT STATE MACHINE ===

    def _exit(self, code: int | None = None, reason: str = "exit") -> asyncio.Task | None:
        """Exit entry point. Idempotent and re-entrant.

        Returns the stop task when this call started the stop sequence.
        """
        if not self._active:
            return None

        self._exit_codes.escalate(code, reason)

        loop = self._usable_loop()
        if loop is None:
            # No loop left to run a stop sequence on
            logger.warning(f"Exit requested after the event loop closed (state: {self._state_name})")
            self._terminate()
            return None

        self._exit_gate.arm(loop, self._on_exit_timeout)

        if self._state is ManagerState.STARTING:
            self._state = ManagerState.START_ABORTED
            return None

        if self._state is ManagerState.START_ABORTED:
            return None  # Wait until started

        if self._state is ManagerState.STARTED:
            # The pre-stop hook marks the moment stopping has truly begun
            for server in self._servers:
                server.ext(PRE_STOP_HOOK, self._listener_stop_handler)

            self._state = ManagerState.STOPPING
            timeout = max(self._options.exit_timeout - STOP_GRACE_MARGIN_MS, 0)
            return self._spawn(self._stop_then_exit(timeout))

        if self._state is ManagerState.STOPPING:
            return None  # Wait until stopped

        if self._state is ManagerState.PRESTOPPED:
            if self.exit_code == 0:
                return None  # Defer to the normal stop completion
            self._state = ManagerState.ERRORED

        self._terminate()
        return None

    async def _stop_then_exit(self, timeout: float) -> None:
        try:
            await self._stop(timeout)
        except Exception:
            self._log("Server stop failed:", traceback.format_exc())

        self._exit()

    async def _stop(self, timeout: float | None) -> None:
        try:
            await self._shutdown.stop_all(self._servers, timeout=timeout)
        except Exception:
            if self._state is not ManagerState.TIMEOUT:
                self._state = ManagerState.ERRORED
            raise

        if self._state in (ManagerState.STOPPING, ManagerState.PRESTOPPED):
            self._state = ManagerState.STOPPED

    def _terminate(self) -> None:
        code = self.exit_code
        logger.info(
            f"Exiting with code {code} ({get_exit_code_description(code)}), "
            f"state: {self._state_name}"
        )
        logger.debug(f"Exit summary: {self._exit_codes.get_exit_summary()}")
        self._terminated.set()
        self._registry.terminate(code)

    def _on_exit_timeout(self) -> None:
        if self._terminated.is_set():
            return  # Termination primitive already ran and returned

        log_system_state(logger, "EXIT_TIMEOUT", self._loop)
        self._state = ManagerState.TIMEOUT
        self._exit(EXIT_TIMEOUT_CODE, "exit_timeout")

    # === TRIGGER HANDLERS ===

    def _unhandled_error(self, kind: str, error: BaseException) -> None:
        if isinstance(error, ProcessExitError):
            return  # Already handling the exit

        if not self._active:
            return

        details = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        self._log(f"Fatal {kind}:", details)

        if self._state is ManagerState.STOPPING:
            self._state = ManagerState.ERRORED  # Errors while stopping abort at once

        self._exit(int(ShutdownExitCode.ABORTED), f"unhandled_{kind}")

    def _listener_stop_handler(self, server: Any) -> None:
        if self._state is ManagerState.STOPPING:
            self._state = ManagerState.PRESTOPPED

        if self.exit_code != 0:
            raise ProcessAbortedError()

    def _listener_closed_handler(self, label: str) -> None:
        # A listener that closes without a stop is a severe failure
        if self._state is ManagerState.STARTED:
            logger.error(f"Listener of {label} closed unexpectedly")
            self._exit(int(ShutdownExitCode.FORCED_TERMINATION), f"listener_closed_{label}")

    def _bad_exit_check(self) -> None:
        if self._state not in TERMINAL_STATES:
            self._log(f"Process exiting without stopping server (state == {self._state_name})")

    # === HELPERS ===

    def _watch_listener(self, index: int, server: Any) -> None:
        label = describe_server(server, index)
        wait_closed = getattr(server.listener, "wait_closed", None)
        if not callable(wait_closed):
            logger.warning(f"Listener of {label} cannot report closes, not watching it")
            return

        async def watch() -> None:
            try:
                await wait_closed()
            except Exception as e:
                logger.warning(f"Watching listener of {label} failed: {e}")
                return
            self._listener_closed_handler(label)

        task = self._ensure_loop().create_task(watch())
        self._watchers.add(task)
        task.add_done_callback(self._watchers.discard)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = self._ensure_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _usable_loop(self) -> asyncio.AbstractEventLoop | None:
        if self._loop is None:
            try:
                self._loop = asyncio.get_running_loop()
            except RuntimeError:
                return None
        return None if self._loop.is_closed() else self._loop

    def _log(self, *args: Any) -> None:
        try:
            self._registry.log_sink(*args)
        except Exception:
            logger.debug("Log sink failed", exc_info=True)

    @property
    def _state_name(self) -> str:
        return self._state.value if self._state is not None else "None"


# === MODULE-LEVEL API ===

def create_manager(
    servers: Any,
    options: ManagerOptions | Mapping[str, Any] | None = None,
    registry: ManagerRegistry | None = None,
) -> Manager:
    """Create a new manager for the given servers."""
    return Manager(servers, options, registry)


def reset(registry: ManagerRegistry | None = None) -> None:
    """Deactivate the registered manager, if any."""
    (registry or default_registry).reset()


def request_exit(code: int = 0, registry: ManagerRegistry | None = None) -> None:
    """Request process termination.

    With an active manager this starts the shutdown and raises
    ProcessExitError, which callers must let propagate. Without one it
    falls back to ``sys.exit``.
    """
    interceptor = (registry or default_registry).exit_interceptor
    if interceptor is None:
        sys.exit(code)
    interceptor(code)


def run(main: Awaitable[Any], registry: ManagerRegistry | None = None) -> Any:
    """Run ``main`` and keep the loop alive until the active manager exits.

    When ``main`` returns while the registered manager is not serving, the
    exit path is entered as a catch-all so the process still ends through
    the manager.
    """
    return asyncio.run(_run_until_exit(main, registry or default_registry))


async def _run_until_exit(main: Awaitable[Any], registry: ManagerRegistry) -> Any:
    result = None
    error: Exception | None = None
    try:
        result = await main
    except ProcessExitError:
        pass  # Exit already scheduled
    except Exception as e:
        error = e

    manager = registry.manager
    if manager is None or not manager.active:
        if error is not None:
            raise error
        return result

    if error is not None:
        manager._unhandled_error("exception", error)
    elif manager.state is not ManagerState.STARTED:
        manager._exit(reason="before_exit")

    await manager.wait_terminated()
    return result
