"""Polling completion detector for one session."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from fly_agent.runtime.control import STOPPED_BY_USER
from fly_agent.runtime.errors import RunStopped, ServerUnavailable, SessionLost
from fly_agent.runtime.models import (
    PollOutcome,
    ProgressEntry,
    ProgressKind,
    RunHandle,
    SessionState,
)
from fly_agent.runtime.progress import ProgressSink, record_progress
from fly_agent.runtime.session_api import SessionApi

logger = logging.getLogger(__name__)


class CompletionPoller:
    """Block until the session is idle, a fatal condition occurs, or a stop is requested.

    Each iteration reads the stop state before querying session status, so a
    stop always wins over an idle status observed in the same iteration.  Sleeps
    between polls wake up to check for a stop at most once per
    ``stop_check_interval_seconds``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        api: SessionApi,
        handle: RunHandle,
        sink: ProgressSink,
        stop_requested: Callable[[], bool],
        poll_interval_seconds: float = 2.0,
        stop_check_interval_seconds: float = 1.0,
        max_consecutive_errors: int = 3,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api = api
        self.handle = handle
        self.sink = sink
        self.stop_requested = stop_requested
        self.poll_interval_seconds = poll_interval_seconds
        self.stop_check_interval_seconds = stop_check_interval_seconds
        self.max_consecutive_errors = max_consecutive_errors
        self.cancel_event = cancel_event or threading.Event()
        self.status_queries = 0
        self._clock = clock
        self._last_stop_check: float | None = None
        self._last_retry_message: str | None = None

    def wait(self) -> PollOutcome:
        consecutive_errors = 0
        while True:
            self._check_stop(force=True)

            self.status_queries += 1
            try:
                statuses = self.api.session_status(directory=self.handle.workspace_path)
            except Exception as error:  # noqa: BLE001
                consecutive_errors += 1
                logger.warning(
                    "Session status query failed (%d/%d): %s",
                    consecutive_errors,
                    self.max_consecutive_errors,
                    error,
                )
                if consecutive_errors >= self.max_consecutive_errors:
                    raise ServerUnavailable(
                        f"Session status unavailable after {consecutive_errors} "
                        f"consecutive errors: {error}",
                        consecutive_errors=consecutive_errors,
                    ) from error
                self._sleep_until_next_poll()
                continue
            consecutive_errors = 0

            status = statuses.get(self.handle.session_id)
            if status is None:
                raise SessionLost(
                    f"Session {self.handle.session_id} no longer reported by the server",
                )
            if status.state == SessionState.IDLE:
                logger.info("Session %s is idle", self.handle.session_id)
                return PollOutcome.COMPLETED
            if status.state == SessionState.RETRY:
                self._report_retry(status.message or "")
            self._sleep_until_next_poll()

    def _check_stop(self, *, force: bool = False) -> None:
        now = self._clock()
        due = (
            force
            or self._last_stop_check is None
            or now - self._last_stop_check >= self.stop_check_interval_seconds
        )
        if self.cancel_event.is_set():
            self._abort(reason="cancel signal")
            raise RunStopped(STOPPED_BY_USER)
        if not due:
            return
        self._last_stop_check = now
        try:
            stop = self.stop_requested()
        except Exception:  # noqa: BLE001
            logger.warning("Stop-state read failed; continuing", exc_info=True)
            return
        if stop:
            self._abort(reason="stop request")
            raise RunStopped(STOPPED_BY_USER)

    def _abort(self, *, reason: str) -> None:
        logger.info("Aborting session %s on %s", self.handle.session_id, reason)
        try:
            self.api.abort_session(
                session_id=self.handle.session_id,
                directory=self.handle.workspace_path,
            )
        except Exception:  # noqa: BLE001
            logger.warning("Session abort failed", exc_info=True)

    def _report_retry(self, message: str) -> None:
        if message == self._last_retry_message:
            return
        self._last_retry_message = message
        record_progress(
            self.sink,
            ProgressEntry(
                run_id=self.handle.run_id,
                correlation_id=self.handle.correlation_id,
                kind=ProgressKind.THINKING,
                message=f"Retrying: {message}" if message else "Retrying",
                metadata={"retry_message": message},
            ),
        )

    def _sleep_until_next_poll(self) -> None:
        deadline = self._clock() + self.poll_interval_seconds
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                return
            self.cancel_event.wait(min(remaining, self.stop_check_interval_seconds))
            if self._clock() < deadline:
                self._check_stop()
