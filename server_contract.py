"""
Server collaborator contract.

Defines the narrow lifecycle interface every managed server must satisfy:
start, stop, hook registration and an underlying listener that can report
that it was closed.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

PRE_STOP_HOOK = "onPreStop"
POST_STOP_HOOK = "onPostStop"


class ServerContractError(TypeError):
    """Raised when a managed server does not satisfy the collaborator contract."""


class ManagedServer(ABC):
    """Abstract base class for servers driven by the exit manager.

    ``listener`` must expose an awaitable ``wait_closed()`` that completes
    once the listener has been closed, whether or not ``stop()`` was called.
    ``asyncio.Server`` satisfies this. It may be ``None`` until ``start()``
    has completed.
    """

    listener: Any = None

    @abstractmethod
    async def start(self) -> Any:
        """Bring the server up."""
        pass

    @abstractmethod
    async def stop(self, timeout: float | None = None) -> Any:
        """Bring the server down.

        Args:
            timeout: Grace period in milliseconds for the server's own
                connection draining.
        """
        pass

    @abstractmethod
    def ext(self, event: str, handler: Callable[[Any], Any]) -> None:
        """Register a lifecycle hook.

        ``onPreStop`` handlers are called with the server, may be coroutine
        functions, and abort the stop sequence by raising.
        """
        pass


def ensure_managed_server(server: Any) -> Any:
    """Check a server against the contract, returning it unchanged."""
    for method in ("start", "stop", "ext"):
        if not callable(getattr(server, method, None)):
            raise ServerContractError(
                f"{type(server).__name__} is not a managed server: missing {method}()"
            )
    if not hasattr(server, "listener"):
        raise ServerContractError(
            f"{type(server).__name__} is not a managed server: missing listener"
        )
    return server


def describe_server(server: Any, index: int) -> str:
    """Stable label for a server in log messages."""
    name = getattr(server, "name", None)
    if isinstance(name, str) and name:
        return name
    return f"{type(server).__name__}#{index}"
