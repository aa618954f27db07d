#!/usr/bin/env python3

"""
Startup Orchestrator for managed servers

This module brings all managed servers up together. Startup is atomic:
the first failure rolls back every server that already started, and any
server that finishes starting afterwards is stopped again immediately.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from server_contract import describe_server


class StartAbortedError(Exception):
    """A server started after another server had already failed to start."""

    def __init__(self):
        super().__init__("Start aborted")


class StartStatusEnum(Enum):
    """Enumeration for server start status values."""

    PENDING = "pending"
    STARTING = "starting"
    STARTED = "started"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


@dataclass
class ServerStartStatus:
    """Status of a single server's start."""

    server_id: str
    status: StartStatusEnum
    start_time: float | None = None
    end_time: float | None = None
    error_message: str | None = None

    @property
    def duration(self) -> float | None:
        """Get start duration in seconds."""
        if self.start_time is None:
            return None
        end_time = self.end_time or time.time()
        return end_time - self.start_time


@dataclass
class StartupResult:
    """Result of a startup attempt."""

    total_servers: int
    startup_duration: float
    statuses: list[ServerStartStatus] = field(default_factory=list)
    error: Exception | None = None

    @property
    def started_servers(self) -> int:
        return sum(1 for s in self.statuses if s.status == StartStatusEnum.STARTED)

    @property
    def failed_servers(self) -> int:
        return sum(1 for s in self.statuses if s.status == StartStatusEnum.FAILED)

    @property
    def rolled_back_servers(self) -> int:
        return sum(1 for s in self.statuses if s.status == StartStatusEnum.ROLLED_BACK)

    @property
    def succeeded(self) -> bool:
        return self.error is None


class AbstractStartupCoordinator(ABC):
    """Abstract base class for startup coordinators."""

    @abstractmethod
    async def start_all(self, servers: Sequence[Any]) -> StartupResult:
        """Start all servers, raising the first start error after rollback."""
        pass


class StartupCoordinator(AbstractStartupCoordinator):
    """All-or-nothing concurrent startup with fail-fast rollback."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.last_result: StartupResult | None = None

    async def start_all(self, servers: Sequence[Any]) -> StartupResult:
        """Start every server concurrently.

        Args:
            servers: Managed servers, in registration order

        Returns:
            StartupResult with per-server statuses

        Raises:
            Exception: The first start error, once every started server
                has been stopped again
        """
        start_time = time.time()
        statuses = [
            ServerStartStatus(
                server_id=describe_server(server, index),
                status=StartStatusEnum.PENDING,
            )
            for index, server in enumerate(servers)
        ]

        self.logger.info(f"Starting {len(servers)} server(s)")

        start_error: Exception | None = None
        active: list[tuple[Any, ServerStartStatus]] = []

        async def safe_stop(server: Any, status: ServerStartStatus) -> None:
            try:
                await server.stop()
            except Exception as e:
                self.logger.warning(f"Failed to roll back {status.server_id}: {e}")
            if status.status != StartStatusEnum.FAILED:
                status.status = StartStatusEnum.ROLLED_BACK

        async def safe_start(server: Any, status: ServerStartStatus) -> None:
            nonlocal start_error, active

            status.status = StartStatusEnum.STARTING
            status.start_time = time.time()
            try:
                await server.start()
                status.end_time = time.time()
                if start_error is not None:
                    raise StartAbortedError()

                status.status = StartStatusEnum.STARTED
                active.append((server, status))
                self.logger.debug(f"Started {status.server_id} in {status.duration:.3f}s")

            except Exception as e:
                status.end_time = status.end_time or time.time()
                if start_error is None:
                    start_error = e
                    status.status = StartStatusEnum.FAILED
                    status.error_message = str(e)
                    self.logger.error(f"Failed to start {status.server_id}: {e}")

                stopping = active + [(server, status)]
                active = []
                await asyncio.gather(*(safe_stop(s, st) for s, st in stopping))

        await asyncio.gather(
            *(safe_start(server, status) for server, status in zip(servers, statuses))
        )

        result = StartupResult(
            total_servers=len(servers),
            startup_duration=time.time() - start_time,
            statuses=statuses,
            error=start_error,
        )
        self.last_result = result

        self.logger.info(
            f"Startup finished in {result.startup_duration:.3f}s - "
            f"Started: {result.started_servers}, Failed: {result.failed_servers}, "
            f"Rolled back: {result.rolled_back_servers}"
        )

        if start_error is not None:
            raise start_error

        return result
