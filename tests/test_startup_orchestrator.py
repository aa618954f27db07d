#!/usr/bin/env python3

"""
Unit tests for the startup orchestrator module.
"""

import time

import pytest

from startup_orchestrator import (
    ServerStartStatus,
    StartAbortedError,
    StartStatusEnum,
    StartupCoordinator,
    StartupResult,
)
from tests.test_fixtures import FakeServer


class TestServerStartStatus:
    """Test the ServerStartStatus dataclass."""

    def test_initialization(self):
        status = ServerStartStatus(server_id="api", status=StartStatusEnum.PENDING)

        assert status.server_id == "api"
        assert status.status == StartStatusEnum.PENDING
        assert status.start_time is None
        assert status.end_time is None
        assert status.error_message is None

    def test_duration_calculation(self):
        """Test duration calculation."""
        status = ServerStartStatus(server_id="api", status=StartStatusEnum.PENDING)

        # No start time
        assert status.duration is None

        # With start time only
        status.start_time = time.time() - 5.0
        duration = status.duration
        assert duration is not None
        assert 4.9 <= duration <= 5.1  # Allow small timing variations

        # With both start and end time
        status.end_time = status.start_time + 3.0
        assert status.duration == 3.0


class TestStartupResult:
    """Test the StartupResult dataclass."""

    def test_counts(self):
        statuses = [
            ServerStartStatus("a", StartStatusEnum.STARTED),
            ServerStartStatus("b", StartStatusEnum.FAILED),
            ServerStartStatus("c", StartStatusEnum.ROLLED_BACK),
            ServerStartStatus("d", StartStatusEnum.ROLLED_BACK),
        ]
        result = StartupResult(
            total_servers=4,
            startup_duration=0.5,
            statuses=statuses,
            error=RuntimeError("boom"),
        )

        assert result.started_servers == 1
        assert result.failed_servers == 1
        assert result.rolled_back_servers == 2
        assert not result.succeeded

    def test_succeeded_without_error(self):
        assert StartupResult(total_servers=0, startup_duration=0.0).succeeded


class TestStartupCoordinator:
    """Test the StartupCoordinator class."""

    @pytest.mark.asyncio
    async def test_starts_all_servers(self, test_logger):
        servers = [FakeServer("a"), FakeServer("b", start_delay=0.01)]
        coordinator = StartupCoordinator(test_logger)

        result = await coordinator.start_all(servers)

        assert result.succeeded
        assert result.total_servers == 2
        assert result.started_servers == 2
        assert coordinator.last_result is result
        assert all(s.running for s in servers)
        assert all(s.stop_calls == 0 for s in servers)

    @pytest.mark.asyncio
    async def test_no_servers(self, test_logger):
        result = await StartupCoordinator(test_logger).start_all([])
        assert result.succeeded
        assert result.total_servers == 0

    @pytest.mark.asyncio
    async def test_failure_rolls_back_started_servers(self, test_logger):
        failure = RuntimeError("port in use")
        started = FakeServer("started")
        broken = FakeServer("broken", start_error=failure)
        coordinator = StartupCoordinator(test_logger)

        with pytest.raises(RuntimeError) as exc_info:
            await coordinator.start_all([started, broken])

        assert exc_info.value is failure
        assert started.stop_calls == 1
        assert not started.running

        result = coordinator.last_result
        assert result.error is failure
        statuses = {s.server_id: s for s in result.statuses}
        assert statuses["started"].status == StartStatusEnum.ROLLED_BACK
        assert statuses["broken"].status == StartStatusEnum.FAILED
        assert statuses["broken"].error_message == "port in use"

    @pytest.mark.asyncio
    async def test_late_starter_is_stopped(self, test_logger):
        failure = RuntimeError("bad config")
        late = FakeServer("late", start_delay=0.02)
        coordinator = StartupCoordinator(test_logger)

        with pytest.raises(RuntimeError):
            await coordinator.start_all([late, FakeServer("broken", start_error=failure)])

        assert late.start_calls == 1
        assert late.stop_calls == 1
        assert not late.running
        statuses = {s.server_id: s.status for s in coordinator.last_result.statuses}
        assert statuses["late"] == StartStatusEnum.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_first_error_wins(self, test_logger):
        first = RuntimeError("first")
        second = RuntimeError("second")
        servers = [
            FakeServer("one", start_error=first),
            FakeServer("two", start_error=second, start_delay=0.01),
        ]

        with pytest.raises(RuntimeError, match="first"):
            await StartupCoordinator(test_logger).start_all(servers)

    @pytest.mark.asyncio
    async def test_rollback_failure_does_not_mask_start_error(self, test_logger):
        failure = RuntimeError("cannot start")
        fragile = FakeServer("fragile", stop_error=RuntimeError("cannot stop"))

        with pytest.raises(RuntimeError, match="cannot start"):
            await StartupCoordinator(test_logger).start_all(
                [fragile, FakeServer("broken", start_error=failure)]
            )

        assert fragile.stop_calls == 1


def test_start_aborted_error_message():
    assert str(StartAbortedError()) == "Start aborted"


@pytest.mark.asyncio
async def test_failures_go_to_injected_logger(mock_logger):
    failure = RuntimeError("cannot bind")

    with pytest.raises(RuntimeError):
        await StartupCoordinator(mock_logger).start_all([FakeServer("api", start_error=failure)])

    mock_logger.error.assert_called_once_with("Failed to start api: cannot bind")
