"""Terminal outcomes that cross the supervisor boundary."""

from __future__ import annotations


class RunFailed(RuntimeError):
    """Fatal session-level failure; the run cannot finish."""


class ServerStartError(RunFailed):
    """The opencode server did not come up within its startup window."""


class SessionCreateError(RunFailed):
    """The runtime refused to create a session."""


class PromptSubmitError(RunFailed):
    """The runtime refused the task prompt."""


class ServerUnavailable(RunFailed):
    """Status queries failed too many times in a row."""

    def __init__(self, message: str, *, consecutive_errors: int) -> None:
        super().__init__(message)
        self.consecutive_errors = consecutive_errors


class SessionLost(RunFailed):
    """The runtime no longer reports any status for the active session."""


class RunStopped(Exception):
    """Operator requested cancellation; not a failure of the run itself."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
