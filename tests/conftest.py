"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

import pytest

from fly_agent.runtime.models import ProgressEntry, RunHandle, SessionState, SessionStatus

SESSION_ID = "ses_1"


def idle(session_id: str = SESSION_ID) -> dict[str, SessionStatus]:
    return {session_id: SessionStatus(state=SessionState.IDLE)}


def busy(session_id: str = SESSION_ID) -> dict[str, SessionStatus]:
    return {session_id: SessionStatus(state=SessionState.RUNNING)}


def retrying(message: str, session_id: str = SESSION_ID) -> dict[str, SessionStatus]:
    return {session_id: SessionStatus(state=SessionState.RETRY, message=message)}


def reasoning_event(text: str, session_id: str = SESSION_ID) -> dict[str, Any]:
    return {
        "type": "message.part.updated",
        "properties": {
            "part": {
                "type": "reasoning",
                "sessionID": session_id,
                "text": text,
                "time": {"start": 1_700_000_000},
            },
        },
    }


def diff_event(*files: dict[str, Any], session_id: str = SESSION_ID) -> dict[str, Any]:
    return {"type": "session.diff", "properties": {"sessionID": session_id, "diff": list(files)}}


class FakeFeed:
    """Scripted event feed; ``hold_open`` keeps it alive until closed."""

    def __init__(
        self,
        events: list[dict[str, Any]],
        *,
        hold_open: bool = False,
        on_drained: Callable[[], None] | None = None,
    ) -> None:
        self.events = events
        self.hold_open = hold_open
        self.on_drained = on_drained
        self.closed = threading.Event()
        self.drained = threading.Event()

    def __iter__(self) -> Iterator[dict[str, Any]]:
        for event in self.events:
            if self.closed.is_set():
                return
            yield event
        self.drained.set()
        if self.on_drained is not None:
            self.on_drained()
        if self.hold_open:
            self.closed.wait(5)

    def close(self) -> None:
        self.closed.set()


class FakeSessionApi:
    """In-memory runtime client with scripted status answers and feeds."""

    def __init__(self) -> None:
        self.session_id = SESSION_ID
        self.statuses: list[dict[str, SessionStatus] | Exception] = [busy()]
        self.feeds: list[FakeFeed | Exception] = []
        self.opened_feeds: list[FakeFeed] = []
        self.before_status: Callable[[], None] | None = None
        self.create_error: Exception | None = None
        self.prompt_error: Exception | None = None
        self.created: list[dict[str, str]] = []
        self.prompts: list[dict[str, str]] = []
        self.aborted: list[str] = []
        self.deleted: list[str] = []
        self.status_calls = 0
        self.feed_opens = 0
        self.closed = False

    def create_session(self, *, directory: str, title: str) -> str:
        if self.create_error is not None:
            raise self.create_error
        self.created.append({"directory": directory, "title": title})
        return self.session_id

    def prompt_async(self, *, session_id: str, directory: str, text: str, agent: str) -> None:
        if self.prompt_error is not None:
            raise self.prompt_error
        self.prompts.append(
            {"session_id": session_id, "directory": directory, "text": text, "agent": agent},
        )

    def abort_session(self, *, session_id: str, directory: str) -> None:
        self.aborted.append(session_id)

    def delete_session(self, *, session_id: str, directory: str) -> None:
        self.deleted.append(session_id)

    def session_status(self, *, directory: str) -> dict[str, SessionStatus]:
        self.status_calls += 1
        if self.before_status is not None:
            self.before_status()
        result = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(result, Exception):
            raise result
        return result

    @contextmanager
    def event_stream(self, *, directory: str) -> Iterator[FakeFeed]:
        self.feed_opens += 1
        script = self.feeds.pop(0) if self.feeds else FakeFeed([], hold_open=True)
        if isinstance(script, Exception):
            raise script
        self.opened_feeds.append(script)
        yield script

    def close(self) -> None:
        self.closed = True


class RecordingSink:
    def __init__(self) -> None:
        self.entries: list[ProgressEntry] = []
        self._lock = threading.Lock()

    def append_log_entry(self, entry: ProgressEntry) -> None:
        with self._lock:
            self.entries.append(entry)

    def messages(self, kind: str | None = None) -> list[str]:
        with self._lock:
            return [
                entry.message
                for entry in self.entries
                if kind is None or entry.kind.value == kind
            ]


@pytest.fixture()
def handle() -> RunHandle:
    return RunHandle(
        run_id="run-0001-aaaa",
        correlation_id="ticket-1",
        workspace_path="/tmp/workspace-ticket-1",
        session_id=SESSION_ID,
    )


@pytest.fixture()
def fake_api() -> FakeSessionApi:
    return FakeSessionApi()


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()
