#!/usr/bin/env python3

"""
Example managed server

Wraps an ``asyncio`` TCP server in the managed server contract and runs it
under the exit manager. Stop it with Ctrl-C (graceful) or SIGHUP (abort).
"""

import asyncio
import inspect
import logging
import sys
from collections.abc import Callable
from typing import Any

from server_contract import POST_STOP_HOOK, PRE_STOP_HOOK, ManagedServer
from shutdown_manager import ManagerOptions, create_manager, run
from system_utils import MicrosecondFormatter

logger = logging.getLogger(__name__)


class AsyncioServerAdapter(ManagedServer):
    """Managed server backed by ``asyncio.start_server``."""

    def __init__(
        self,
        client_connected_cb: Callable[[asyncio.StreamReader, asyncio.StreamWriter], Any],
        host: str = "127.0.0.1",
        port: int = 0,
        name: str | None = None,
    ):
        self.client_connected_cb = client_connected_cb
        self.host = host
        self.port = port
        self.name = name or f"tcp:{host}:{port}"
        self.listener: asyncio.Server | None = None
        self._hooks: dict[str, list[Callable[[Any], Any]]] = {
            PRE_STOP_HOOK: [],
            POST_STOP_HOOK: [],
        }

    @property
    def bound_port(self) -> int | None:
        if self.listener is None or not self.listener.sockets:
            return None
        return self.listener.sockets[0].getsockname()[1]

    def ext(self, event: str, handler: Callable[[Any], Any]) -> None:
        if event not in self._hooks:
            raise ValueError(f"Unknown server extension point: {event}")
        self._hooks[event].append(handler)

    async def start(self) -> None:
        self.listener = await asyncio.start_server(self.client_connected_cb, self.host, self.port)
        logger.info(f"{self.name} listening on {self.host}:{self.bound_port}")

    async def stop(self, timeout: float | None = None) -> None:
        await self._invoke(PRE_STOP_HOOK)

        if self.listener is not None:
            self.listener.close()
            try:
                await asyncio.wait_for(
                    self.listener.wait_closed(),
                    None if timeout is None else timeout / 1000,
                )
            except asyncio.TimeoutError:
                logger.warning(f"{self.name} connections did not drain within {timeout}ms")
                close_clients = getattr(self.listener, "close_clients", None)
                if close_clients is not None:
                    close_clients()

        await self._invoke(POST_STOP_HOOK)
        logger.info(f"{self.name} stopped")

    async def _invoke(self, event: str) -> None:
        for handler in list(self._hooks[event]):
            result = handler(self)
            if inspect.isawaitable(result):
                await result


async def echo(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    """Echo one line back to the client."""
    line = await reader.readline()
    writer.write(line)
    await writer.drain()
    writer.close()
    await writer.wait_closed()


async def serve(port: int) -> None:
    server = AsyncioServerAdapter(echo, port=port, name="echo")
    server.ext(POST_STOP_HOOK, lambda srv: logger.info("Server stopped."))

    manager = create_manager(server, ManagerOptions.from_env())
    await manager.start()
    logger.info(f"Server started at: tcp://{server.host}:{server.bound_port}")


def main() -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(MicrosecondFormatter("%(asctime)s [%(levelname)s] %(name)s - %(message)s"))
    logging.basicConfig(level=logging.INFO, handlers=[handler])

    port = int(sys.argv[1]) if len(sys.argv) > 1 else 8000
    run(serve(port))


if __name__ == "__main__":
    main()
