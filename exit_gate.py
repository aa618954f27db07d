"""
Exit gate: the single timer that guarantees forced termination.
"""

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class ExitGate:
    """One-shot timer armed on the first termination trigger.

    Once armed it is never re-armed, even after firing; only ``cancel()``
    (used on deactivation) drops it.
    """

    def __init__(self, timeout_ms: float):
        self.timeout_ms = timeout_ms
        self._handle: asyncio.TimerHandle | None = None
        self._fired = False
        self._cancelled = False

    @property
    def armed(self) -> bool:
        return self._handle is not None and not self._fired and not self._cancelled

    @property
    def fired(self) -> bool:
        return self._fired

    def arm(self, loop: asyncio.AbstractEventLoop, callback: Callable[[], None]) -> bool:
        """Arm the gate; returns False if it was already armed, fired or cancelled."""
        if self._handle is not None or self._cancelled:
            return False

        logger.debug(f"Exit gate armed for {self.timeout_ms}ms")
        self._handle = loop.call_later(self.timeout_ms / 1000, self._fire, callback)
        return True

    def cancel(self) -> None:
        if self._handle is not None and not self._fired:
            self._handle.cancel()
            logger.debug("Exit gate cancelled")
        self._cancelled = True

    def _fire(self, callback: Callable[[], None]) -> None:
        self._fired = True
        logger.warning(f"Exit timeout of {self.timeout_ms}ms expired")
        callback()
