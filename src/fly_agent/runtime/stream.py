"""Background consumer for the runtime's server-sent event feed."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from fly_agent.runtime.events import decode_event
from fly_agent.runtime.models import RunHandle
from fly_agent.runtime.normalizer import DedupKey, NormalizerOptions, normalize_event
from fly_agent.runtime.progress import ProgressSink, record_progress
from fly_agent.runtime.session_api import FeedStream, SessionApi

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, *, base_seconds: float, max_seconds: float) -> float:
    """Exponential delay for the n-th consecutive failure (1-based), capped."""

    return min(base_seconds * 2 ** (attempt - 1), max_seconds)


class EventStreamConsumer:
    """Drain the event feed of one run into progress entries.

    Disconnects (and a feed that simply ends) are retried with exponential
    backoff; the attempt counter resets after every successful open.  Giving
    up after ``max_retries`` only ends the consumer: run completion is decided
    by the poller.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        api: SessionApi,
        handle: RunHandle,
        sink: ProgressSink,
        max_retries: int = 5,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 10.0,
        options: NormalizerOptions | None = None,
        sleep: Callable[[float], object] | None = None,
    ) -> None:
        self.api = api
        self.handle = handle
        self.sink = sink
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.options = options or NormalizerOptions()
        self.reconnects = 0
        self.entries_recorded = 0
        self._cancel = threading.Event()
        self._sleep = sleep or self._cancel.wait
        self._seen_changes: set[DedupKey] = set()
        self._stream_lock = threading.Lock()
        self._stream: FeedStream | None = None
        self._thread: threading.Thread | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self.run,
            name=f"event-stream-{self.handle.run_id[:8]}",
            daemon=True,
        )
        self._thread.start()

    def cancel(self) -> None:
        """Stop reopening the feed and close the live connection; idempotent."""

        if self._cancel.is_set():
            return
        self._cancel.set()
        with self._stream_lock:
            stream = self._stream
        if stream is None:
            return
        try:
            stream.close()
        except Exception:  # noqa: BLE001
            logger.debug("Closing event feed raised during cancel", exc_info=True)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the background thread; ``True`` when it has finished."""

        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def run(self) -> None:
        attempt = 0
        while not self._cancel.is_set():
            try:
                with self.api.event_stream(directory=self.handle.workspace_path) as stream:
                    self._set_stream(stream)
                    attempt = 0
                    logger.info("Event feed connected for session %s", self.handle.session_id)
                    self._drain(stream)
                reason = "feed ended"
            except Exception as error:  # noqa: BLE001
                reason = str(error) or type(error).__name__
            finally:
                self._set_stream(None)

            if self._cancel.is_set():
                break
            attempt += 1
            if attempt > self.max_retries:
                logger.warning(
                    "Event feed retries exhausted after %d attempts (%s); progress streaming stops",
                    self.max_retries,
                    reason,
                )
                return
            delay = backoff_delay(
                attempt,
                base_seconds=self.retry_base_seconds,
                max_seconds=self.retry_max_seconds,
            )
            logger.warning(
                "Event feed lost (%s); reconnect %d/%d in %.1fs",
                reason,
                attempt,
                self.max_retries,
                delay,
            )
            self.reconnects += 1
            self._sleep(delay)
        logger.info("Event feed consumer stopped for session %s", self.handle.session_id)

    def _drain(self, stream: FeedStream) -> None:
        for raw in stream:
            if self._cancel.is_set():
                return
            entries = normalize_event(
                decode_event(raw),
                handle=self.handle,
                seen_changes=self._seen_changes,
                options=self.options,
            )
            for entry in entries:
                if self._cancel.is_set():
                    return
                record_progress(self.sink, entry)
                self.entries_recorded += 1

    def _set_stream(self, stream: FeedStream | None) -> None:
        with self._stream_lock:
            self._stream = stream
        if stream is not None and self._cancel.is_set():
            stream.close()
