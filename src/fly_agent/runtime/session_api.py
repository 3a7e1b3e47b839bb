"""Protocol for the runtime calls the supervision loops depend on."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import AbstractContextManager
from typing import Any, Protocol

from fly_agent.runtime.models import SessionStatus


class FeedStream(Protocol):
    def __iter__(self) -> Iterator[dict[str, Any]]: ...

    def close(self) -> None: ...


class SessionApi(Protocol):
    """Implemented by ``OpencodeClient``; tests substitute in-memory fakes."""

    def create_session(self, *, directory: str, title: str) -> str: ...

    def prompt_async(self, *, session_id: str, directory: str, text: str, agent: str) -> None: ...

    def abort_session(self, *, session_id: str, directory: str) -> None: ...

    def delete_session(self, *, session_id: str, directory: str) -> None: ...

    def session_status(self, *, directory: str) -> dict[str, SessionStatus]: ...

    def event_stream(self, *, directory: str) -> AbstractContextManager[FeedStream]: ...
