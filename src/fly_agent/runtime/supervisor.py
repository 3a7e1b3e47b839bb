"""Drive one agent run from server start to guaranteed teardown."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Protocol

from fly_agent.config import Settings
from fly_agent.runtime.errors import PromptSubmitError, RunStopped, SessionCreateError
from fly_agent.runtime.models import (
    PollOutcome,
    ProgressEntry,
    ProgressKind,
    RunHandle,
    SupervisorState,
)
from fly_agent.runtime.normalizer import NormalizerOptions
from fly_agent.runtime.poller import CompletionPoller
from fly_agent.runtime.progress import ProgressSink, record_progress
from fly_agent.runtime.prompts import build_task_prompt
from fly_agent.runtime.session_api import SessionApi
from fly_agent.runtime.stream import EventStreamConsumer

logger = logging.getLogger(__name__)


class ServerLifecycle(Protocol):
    def start(self) -> str: ...

    def stop(self) -> None: ...


class ClosableSessionApi(SessionApi, Protocol):
    def close(self) -> None: ...


@dataclass(slots=True)
class RunRequest:
    """What to run and where."""

    run_id: str
    correlation_id: str
    workspace_path: str
    title: str
    description: str


@dataclass(slots=True)
class SupervisorOptions:
    """Loop tuning; defaults match production behaviour."""

    agent: str = "build"
    poll_interval_seconds: float = 2.0
    stop_check_interval_seconds: float = 1.0
    max_consecutive_errors: int = 3
    stream_max_retries: int = 5
    stream_retry_base_seconds: float = 1.0
    stream_retry_max_seconds: float = 10.0
    include_running_tools: bool = False
    consumer_join_timeout_seconds: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings) -> SupervisorOptions:
        return cls(
            agent=settings.server.agent,
            poll_interval_seconds=settings.poller.poll_interval_seconds,
            stop_check_interval_seconds=settings.poller.stop_check_interval_seconds,
            max_consecutive_errors=settings.poller.max_consecutive_errors,
            stream_max_retries=settings.stream.max_retries,
            stream_retry_base_seconds=settings.stream.retry_base_seconds,
            stream_retry_max_seconds=settings.stream.retry_max_seconds,
            include_running_tools=settings.stream.include_running_tools,
        )


class RunSupervisor:
    """Owns the server, the session and the two observation loops of one run.

    ``run`` returns on natural completion and raises ``RunStopped`` or a
    ``RunFailed`` subclass otherwise.  Teardown (consumer cancel, session
    delete, server stop) happens on every exit path.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        server: ServerLifecycle,
        client_factory: Callable[[str], ClosableSessionApi],
        sink: ProgressSink,
        stop_requested: Callable[[], bool],
        options: SupervisorOptions | None = None,
        install_signal_handlers: bool = False,
    ) -> None:
        self.server = server
        self.client_factory = client_factory
        self.sink = sink
        self.stop_requested = stop_requested
        self.options = options or SupervisorOptions()
        self.install_signal_handlers = install_signal_handlers
        self.state = SupervisorState.STARTING
        self.handle: RunHandle | None = None
        self.teardown_count = 0
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Local stop (signal or caller); observed by the poller within one stop-check interval."""

        self._cancel.set()

    def run(self, request: RunRequest) -> PollOutcome:
        with self._signal_handlers():
            return self._run(request)

    def _run(self, request: RunRequest) -> PollOutcome:
        self._transition(SupervisorState.STARTING)
        api: ClosableSessionApi | None = None
        consumer: EventStreamConsumer | None = None
        try:
            self._progress(request, ProgressKind.THINKING, "Starting agent runtime...")
            url = self.server.start()
            api = self.client_factory(url)

            self._transition(SupervisorState.SESSION_CREATING)
            try:
                session_id = api.create_session(
                    directory=request.workspace_path,
                    title=request.title,
                )
            except Exception as error:  # noqa: BLE001
                raise SessionCreateError(f"Failed to create session: {error}") from error
            self.handle = RunHandle(
                run_id=request.run_id,
                correlation_id=request.correlation_id,
                workspace_path=request.workspace_path,
                session_id=session_id,
            )
            logger.info("Session created: %s", session_id)

            self._transition(SupervisorState.RUNNING)
            consumer = self._build_consumer(api, self.handle)
            consumer.start()

            self._progress(
                request,
                ProgressKind.THINKING,
                "Analyzing codebase and implementing changes...",
            )
            try:
                api.prompt_async(
                    session_id=session_id,
                    directory=request.workspace_path,
                    text=build_task_prompt(request.title, request.description),
                    agent=self.options.agent,
                )
            except Exception as error:  # noqa: BLE001
                raise PromptSubmitError(f"Failed to send prompt: {error}") from error

            outcome = self._build_poller(api, self.handle).wait()
            self._progress(request, ProgressKind.ACTION, "Implementation complete")
            self._transition(SupervisorState.COMPLETED)
            return outcome
        except RunStopped:
            self._transition(SupervisorState.CANCELLED)
            raise
        except Exception:
            self._transition(SupervisorState.FAILED)
            raise
        finally:
            self._teardown(api, consumer)

    def _teardown(
        self,
        api: ClosableSessionApi | None,
        consumer: EventStreamConsumer | None,
    ) -> None:
        self.teardown_count += 1
        if consumer is not None:
            consumer.cancel()
        try:
            if api is not None and self.handle is not None:
                try:
                    api.delete_session(
                        session_id=self.handle.session_id,
                        directory=self.handle.workspace_path,
                    )
                except Exception:  # noqa: BLE001
                    logger.warning("Session delete failed", exc_info=True)
            if consumer is not None and not consumer.join(
                self.options.consumer_join_timeout_seconds,
            ):
                logger.warning("Event feed consumer did not stop in time")
            if api is not None:
                try:
                    api.close()
                except Exception:  # noqa: BLE001
                    logger.warning("Runtime client close failed", exc_info=True)
        finally:
            self.server.stop()

    def _build_consumer(self, api: SessionApi, handle: RunHandle) -> EventStreamConsumer:
        return EventStreamConsumer(
            api=api,
            handle=handle,
            sink=self.sink,
            max_retries=self.options.stream_max_retries,
            retry_base_seconds=self.options.stream_retry_base_seconds,
            retry_max_seconds=self.options.stream_retry_max_seconds,
            options=NormalizerOptions(include_running_tools=self.options.include_running_tools),
        )

    def _build_poller(self, api: SessionApi, handle: RunHandle) -> CompletionPoller:
        return CompletionPoller(
            api=api,
            handle=handle,
            sink=self.sink,
            stop_requested=self.stop_requested,
            poll_interval_seconds=self.options.poll_interval_seconds,
            stop_check_interval_seconds=self.options.stop_check_interval_seconds,
            max_consecutive_errors=self.options.max_consecutive_errors,
            cancel_event=self._cancel,
        )

    def _progress(self, request: RunRequest, kind: ProgressKind, message: str) -> None:
        record_progress(
            self.sink,
            ProgressEntry(
                run_id=request.run_id,
                correlation_id=request.correlation_id,
                kind=kind,
                message=message,
            ),
        )

    def _transition(self, state: SupervisorState) -> None:
        logger.debug("Supervisor state: %s -> %s", self.state.value, state.value)
        self.state = state

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not self.install_signal_handlers or not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.warning("Received %s; stopping run", name)
            self.cancel()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
