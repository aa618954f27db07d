"""
Pytest configuration and shared fixtures for exit manager tests.
"""

import logging
import signal
from unittest.mock import Mock

import pytest

from shutdown_manager import ManagerRegistry
from tests.test_fixtures import ExitRecorder, FakeServer


@pytest.fixture(autouse=True)
def default_signal_dispositions():
    """Start every test with Python's default handlers for the routed signals."""
    defaults = {signal.SIGINT: signal.default_int_handler, signal.SIGTERM: signal.SIG_DFL}
    if hasattr(signal, "SIGHUP"):
        defaults[signal.SIGHUP] = signal.SIG_DFL

    original = {signum: signal.getsignal(signum) for signum in defaults}
    for signum, handler in defaults.items():
        signal.signal(signum, handler)

    yield

    for signum, handler in original.items():
        signal.signal(signum, handler if handler is not None else signal.SIG_DFL)


@pytest.fixture
def log_messages():
    """Messages written to the diagnostic log sink."""
    return []


@pytest.fixture
def exit_recorder():
    """Stand-in for the real termination primitive."""
    return ExitRecorder()


@pytest.fixture
def registry(exit_recorder, log_messages):
    """Isolated registry that records exits instead of terminating."""

    def sink(*args):
        log_messages.append(" ".join(str(arg) for arg in args))

    registry = ManagerRegistry(terminate=exit_recorder, log_sink=sink)
    exit_recorder.bind(lambda: registry.manager)

    yield registry

    registry.reset()


@pytest.fixture
def server():
    return FakeServer("primary")


@pytest.fixture
def mock_logger():
    """Create a mock logger."""
    return Mock()


@pytest.fixture
def test_logger():
    """Create a real logger for testing."""
    logger = logging.getLogger(f"test_logger_{id(object())}")
    logger.setLevel(logging.DEBUG)

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        logger.addHandler(handler)

    return logger
