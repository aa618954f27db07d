"""
Exit code definitions for server shutdown scenarios.

Provides the standard exit codes the coordinator produces and a tracker
that keeps the most severe code seen across competing termination triggers.
"""

import enum


class ShutdownExitCode(enum.IntEnum):
    """Exit codes produced by the coordinator itself.

    Explicit exit requests may use any other positive code; those are
    treated as application-defined abort severities.
    """

    SUCCESS_CLEAN_SHUTDOWN = 0  # Graceful trigger, servers stopped
    ABORTED = 1  # Abort signal or unhandled exception/rejection
    FORCED_TERMINATION = 255  # Exit timeout or unexpected listener close


class ExitCodeTracker:
    """Tracks the exit code across triggers: worst severity wins, never lowered."""

    def __init__(self, logger):
        self.logger = logger
        self._code = int(ShutdownExitCode.SUCCESS_CLEAN_SHUTDOWN)
        self._triggers: list[tuple[str, int | None]] = []

    @property
    def code(self) -> int:
        return self._code

    def escalate(self, code: int | None, reason: str = "exit") -> int:
        """Record a trigger and raise the exit code if it is more severe.

        A ``None`` code is recorded but leaves the current code untouched.
        """
        self._triggers.append((reason, code))
        if isinstance(code, int) and code > self._code:
            self.logger.debug(f"Exit code raised from {self._code} to {code} ({reason})")
            self._code = code
        return self._code

    def get_exit_summary(self) -> dict:
        """Get a summary of all recorded triggers for logging."""
        return {
            "exit_code": self._code,
            "description": get_exit_code_description(self._code),
            "triggers": [
                {"reason": reason, "code": code} for reason, code in self._triggers
            ],
            "total_triggers": len(self._triggers),
        }


def get_exit_code_description(code: int) -> str:
    """Get human-readable description of exit code."""
    descriptions = {
        ShutdownExitCode.SUCCESS_CLEAN_SHUTDOWN: "Servers stopped cleanly",
        ShutdownExitCode.ABORTED: "Shutdown aborted by signal or unhandled error",
        ShutdownExitCode.FORCED_TERMINATION: "Forced termination (exit timeout or listener closed)",
    }
    try:
        return descriptions[ShutdownExitCode(code)]
    except ValueError:
        return f"Application-defined exit code: {code}"
