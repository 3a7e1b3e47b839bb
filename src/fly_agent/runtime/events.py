"""Typed view over raw opencode event feed records.

Raw records are ``{"type": str, "properties": {...}}``.  They are decoded once
at the consumer boundary into one of the event classes below; anything the
supervisor does not act on becomes :class:`UnrecognizedEvent`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True, frozen=True)
class ReasoningUpdated:
    session_id: str | None
    text: str
    time: dict[str, Any]


@dataclass(slots=True, frozen=True)
class ToolUpdated:
    session_id: str | None
    tool: str
    call_id: str | None
    status: str
    title: str | None
    input: Any
    output: str | None
    time: dict[str, Any]


@dataclass(slots=True, frozen=True)
class TextUpdated:
    session_id: str | None
    text: str


@dataclass(slots=True, frozen=True)
class FileDiff:
    file: str
    before: str
    after: str
    additions: int
    deletions: int


@dataclass(slots=True, frozen=True)
class SessionDiff:
    session_id: str | None
    files: tuple[FileDiff, ...]


@dataclass(slots=True, frozen=True)
class SessionErrored:
    session_id: str | None
    error: Any


@dataclass(slots=True, frozen=True)
class TodoUpdated:
    session_id: str | None
    todos: tuple[dict[str, Any], ...]


@dataclass(slots=True, frozen=True)
class FileEdited:
    file: str


@dataclass(slots=True, frozen=True)
class UnrecognizedEvent:
    type: str
    properties: dict[str, Any] = field(default_factory=dict)


AgentEvent = (
    ReasoningUpdated
    | ToolUpdated
    | TextUpdated
    | SessionDiff
    | SessionErrored
    | TodoUpdated
    | FileEdited
    | UnrecognizedEvent
)


def decode_event(raw: dict[str, Any]) -> AgentEvent:
    """Decode one raw feed record; never raises on unexpected shapes."""

    event_type = str(raw.get("type") or "")
    properties = raw.get("properties")
    if not isinstance(properties, dict):
        properties = {}

    if event_type == "message.part.updated":
        return _decode_part(event_type, properties)
    if event_type == "session.diff":
        return SessionDiff(
            session_id=_optional_str(properties.get("sessionID")),
            files=tuple(
                _decode_file_diff(item)
                for item in _as_list(properties.get("diff"))
                if isinstance(item, dict) and item.get("file")
            ),
        )
    if event_type == "session.error":
        return SessionErrored(
            session_id=_optional_str(properties.get("sessionID")),
            error=properties.get("error"),
        )
    if event_type == "todo.updated":
        return TodoUpdated(
            session_id=_optional_str(properties.get("sessionID")),
            todos=tuple(item for item in _as_list(properties.get("todos")) if isinstance(item, dict)),
        )
    if event_type == "file.edited" and properties.get("file"):
        return FileEdited(file=str(properties["file"]))
    return UnrecognizedEvent(type=event_type, properties=properties)


def _decode_part(event_type: str, properties: dict[str, Any]) -> AgentEvent:
    part = properties.get("part")
    if not isinstance(part, dict):
        return UnrecognizedEvent(type=event_type, properties=properties)

    session_id = _optional_str(part.get("sessionID"))
    part_type = part.get("type")
    if part_type == "reasoning":
        return ReasoningUpdated(
            session_id=session_id,
            text=str(part.get("text") or ""),
            time=_as_dict(part.get("time")),
        )
    if part_type == "tool":
        state = _as_dict(part.get("state"))
        output = state.get("output")
        return ToolUpdated(
            session_id=session_id,
            tool=str(part.get("tool") or "unknown"),
            call_id=_optional_str(part.get("callID")),
            status=str(state.get("status") or ""),
            title=_optional_str(state.get("title")),
            input=state.get("input"),
            output=str(output) if output is not None else None,
            time=_as_dict(state.get("time")),
        )
    if part_type == "text":
        return TextUpdated(session_id=session_id, text=str(part.get("text") or ""))
    return UnrecognizedEvent(type=event_type, properties=properties)


def _decode_file_diff(item: dict[str, Any]) -> FileDiff:
    return FileDiff(
        file=str(item["file"]),
        before=str(item.get("before") or ""),
        after=str(item.get("after") or ""),
        additions=_as_int(item.get("additions")),
        deletions=_as_int(item.get("deletions")),
    )


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


def _as_list(value: object) -> list[Any]:
    return value if isinstance(value, list) else []


def _as_dict(value: object) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_int(value: object) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0
