"""
Server Clean Shutdown Core Components

This module provides the core components shared by the exit manager:
the escape marker raised after an intercepted exit request, the concurrent
shutdown coordinator, and the diagnostic log sink.
"""

import asyncio
import logging
import os
import sys
import time
from collections.abc import Sequence
from typing import Any

from constants import EXIT_LOGGER_NAME, LOG_PREFIX
from server_contract import describe_server


class ProcessExitError(BaseException):
    """Raised after an intercepted exit request to abandon the current call stack.

    This is control flow, not a failure: the exit has already been
    scheduled. It derives from BaseException so that ``except Exception``
    blocks let it through; code catching BaseException around an exit
    request must re-raise it.
    """

    def __init__(self):
        super().__init__("request_exit() was called")


class ProcessAbortedError(Exception):
    """Raised from the pre-stop hook to make a server's own stop fail."""

    def __init__(self):
        super().__init__("Process aborted")


def setup_exit_logger(name=EXIT_LOGGER_NAME, level=logging.INFO):
    """Setup the diagnostic sink logger writing prefixed lines to stderr"""

    sink_logger = logging.getLogger(name)
    sink_logger.setLevel(level)

    # Prevent duplicate handlers
    if sink_logger.handlers:
        sink_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(f"{LOG_PREFIX} %(message)s"))
    sink_logger.addHandler(handler)
    sink_logger.propagate = False

    return sink_logger


_sink_logger = None


def log(*args: Any) -> None:
    """Default diagnostic sink: one prefixed line on stderr."""
    global _sink_logger
    if _sink_logger is None:
        _sink_logger = setup_exit_logger()
    _sink_logger.error(" ".join(str(arg) for arg in args))


def hard_exit(code: int) -> None:
    """Real termination primitive: flush logging and end the process immediately."""
    logging.shutdown()
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.flush()
        except (OSError, ValueError):
            pass  # Stream already closed
    os._exit(code)


class ShutdownCoordinator:
    """Stops all managed servers concurrently and surfaces the first failure"""

    def __init__(self, logger):
        self.logger = logger
        self._stop_count = 0

    @property
    def stop_count(self) -> int:
        """Number of stop sequences issued so far"""
        return self._stop_count

    async def stop_all(self, servers: Sequence[Any], timeout: float | None = None) -> None:
        """Stop every server in parallel.

        A slow server does not delay the others. The first failure is
        re-raised once it occurs; remaining stops keep running.

        Args:
            servers: Managed servers
            timeout: Grace period in milliseconds forwarded to each server
        """
        self._stop_count += 1
        start_time = time.time()
        self.logger.info(f"Stopping {len(servers)} server(s) (timeout: {timeout}ms)")

        async def stop_one(index: int, server: Any) -> None:
            label = describe_server(server, index)
            try:
                if timeout is None:
                    await server.stop()
                else:
                    await server.stop(timeout=timeout)
            except Exception as e:
                self.logger.error(f"Failed to stop {label}: {e}")
                raise
            self.logger.debug(f"Stopped {label}")

        await asyncio.gather(*(stop_one(i, s) for i, s in enumerate(servers)))

        duration = (time.time() - start_time) * 1000
        self.logger.info(f"All servers stopped in {duration:.2f}ms")
