"""Stop-request protocol on top of the shared run status record.

The reporting UI cancels a run by writing ``status=failed`` with the error
``"Stopped by user"``.  That overloads the terminal status with the cancel
cause; every read and write of the convention goes through this module.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from fly_agent.runtime.models import RunControlState, RunStatus

STOPPED_BY_USER = "Stopped by user"


class RunStatusStore(Protocol):
    def read_run_status(self, run_id: str) -> RunControlState | None: ...

    def write_run_status(self, run_id: str, state: RunControlState) -> None: ...

    def transition_run_status(
        self,
        run_id: str,
        state: RunControlState,
        *,
        from_statuses: Iterable[RunStatus],
    ) -> bool: ...


def is_stop_request(state: RunControlState | None) -> bool:
    return (
        state is not None
        and state.status == RunStatus.FAILED
        and state.error == STOPPED_BY_USER
    )


def stop_request_state() -> RunControlState:
    return RunControlState(status=RunStatus.FAILED, error=STOPPED_BY_USER)


class StopSignal:
    """Read-only view of one run's stop flag."""

    def __init__(self, store: RunStatusStore, run_id: str) -> None:
        self._store = store
        self._run_id = run_id

    def requested(self) -> bool:
        return is_stop_request(self._store.read_run_status(self._run_id))


def request_stop(store: RunStatusStore, run_id: str) -> bool:
    """Ask a running job to stop; returns ``False`` when the run already ended."""

    if store.transition_run_status(
        run_id,
        stop_request_state(),
        from_statuses=(RunStatus.QUEUED, RunStatus.RUNNING),
    ):
        return True
    if store.read_run_status(run_id) is None:
        raise ValueError(f"Agent run not found: {run_id}")
    return False
