#!/usr/bin/env python3

"""
Shared constants for the server exit coordinator.

Timeouts are expressed in milliseconds, matching the manager options.
"""

# Exit timing
DEFAULT_EXIT_TIMEOUT_MS = 5000
STOP_GRACE_MARGIN_MS = 500  # Servers get the exit timeout minus this margin
EXIT_TIMEOUT_CODE = 255

# Signal classification (names, resolved against the signal module at install time)
GRACEFUL_SIGNALS = ("SIGINT", "SIGTERM")
ABORT_SIGNALS = ("SIGHUP",)

# Diagnostic sink
LOG_PREFIX = "[exiting]"
EXIT_LOGGER_NAME = "exiting"

# Environment configuration
ENV_EXIT_TIMEOUT = "EXIT_TIMEOUT_MS"
