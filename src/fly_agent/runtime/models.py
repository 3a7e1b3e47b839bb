"""Domain models for supervised agent runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from fly_agent.storage.common import utc_now


class ProgressKind(str, Enum):
    """Progress entry kinds; downstream UIs key on these values."""

    STARTED = "started"
    THINKING = "thinking"
    ACTION = "action"
    TOOL_CALL = "tool_call"
    CHANGES = "changes"
    TODO_UPDATE = "todo_update"
    ERROR = "error"
    COMPLETE = "complete"


class RunStatus(str, Enum):
    """Durable run lifecycle states shared with the reporting UI."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


class SessionState(str, Enum):
    """Session states reported by the runtime status endpoint."""

    IDLE = "idle"
    RUNNING = "running"
    RETRY = "retry"


class SupervisorState(str, Enum):
    """Supervisor-level state machine."""

    STARTING = "starting"
    SESSION_CREATING = "session_creating"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PollOutcome(str, Enum):
    """Normal result of waiting on a session; stops and failures raise instead."""

    COMPLETED = "completed"


MESSAGE_MAX_CHARS = 500


@dataclass(slots=True, frozen=True)
class RunHandle:
    """Identifies one supervised execution; immutable after session creation."""

    run_id: str
    correlation_id: str
    workspace_path: str
    session_id: str


@dataclass(slots=True)
class ProgressEntry:
    """Normalized, append-only progress record."""

    run_id: str
    correlation_id: str
    kind: ProgressKind
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if len(self.message) > MESSAGE_MAX_CHARS:
            self.message = self.message[: MESSAGE_MAX_CHARS - 3] + "..."


@dataclass(slots=True, frozen=True)
class SessionStatus:
    """One polled session status value."""

    state: SessionState
    message: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> SessionStatus:
        """Decode one entry of the runtime's ``/session/status`` mapping."""

        raw_type = str(payload.get("type") or "").strip().lower()
        if raw_type == "idle":
            return cls(state=SessionState.IDLE)
        if raw_type == "retry":
            message = payload.get("message")
            return cls(
                state=SessionState.RETRY,
                message=str(message) if message is not None else "",
            )
        return cls(state=SessionState.RUNNING)


@dataclass(slots=True, frozen=True)
class RunControlState:
    """Externally written run state; read-only for the supervisor."""

    status: RunStatus
    error: str | None = None
