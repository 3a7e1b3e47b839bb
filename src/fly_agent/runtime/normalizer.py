"""Map decoded feed events to progress entries.

Pure and synchronous: persistence is the caller's job.  The only state is the
per-run set of already reported diff keys, which the caller owns and passes in.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from fly_agent.runtime.events import (
    AgentEvent,
    FileDiff,
    ReasoningUpdated,
    SessionDiff,
    SessionErrored,
    TodoUpdated,
    ToolUpdated,
)
from fly_agent.runtime.models import ProgressEntry, ProgressKind, RunHandle

THINKING_PREVIEW_CHARS = 100
TOOL_OUTPUT_MAX_CHARS = 2_000
DIFF_CONTENT_MAX_CHARS = 5_000
DEDUP_PREFIX_CHARS = 200
TRUNCATION_SUFFIX = "\n... (truncated)"

DedupKey = tuple[str, str]


@dataclass(slots=True, frozen=True)
class NormalizerOptions:
    """Verbosity knobs.

    ``include_running_tools`` reports tools as soon as they start (``action``
    entries) instead of only on completion: faster feedback in the UI at the
    price of roughly twice as many rows per tool call.
    """

    include_running_tools: bool = False


def dedup_key(diff: FileDiff) -> DedupKey:
    return diff.file, diff.after[:DEDUP_PREFIX_CHARS]


def normalize_event(
    event: AgentEvent,
    *,
    handle: RunHandle,
    seen_changes: set[DedupKey],
    options: NormalizerOptions | None = None,
) -> list[ProgressEntry]:
    """Return the progress entries one event produces (usually zero or one).

    A diff batch yields one entry per not-yet-reported file; ``seen_changes``
    is updated in place.
    """

    opts = options or NormalizerOptions()
    session_id = getattr(event, "session_id", None)
    if session_id is not None and session_id != handle.session_id:
        return []

    if isinstance(event, ReasoningUpdated):
        return _reasoning_entries(event, handle)
    if isinstance(event, ToolUpdated):
        return _tool_entries(event, handle, opts)
    if isinstance(event, SessionDiff):
        return _diff_entries(event, handle, seen_changes)
    if isinstance(event, SessionErrored):
        if event.session_id != handle.session_id:
            return []
        message = _stringify(event.error) if event.error else "Unknown error"
        return [_entry(handle, ProgressKind.ERROR, message, {"error": event.error})]
    if isinstance(event, TodoUpdated):
        return _todo_entries(event, handle)
    # Text token parts, file.edited and unknown events are intentionally dropped.
    return []


def _reasoning_entries(event: ReasoningUpdated, handle: RunHandle) -> list[ProgressEntry]:
    text = event.text.strip()
    if not text:
        return []
    message = text[:THINKING_PREVIEW_CHARS]
    if len(text) > THINKING_PREVIEW_CHARS:
        message += "..."
    timing: dict[str, Any] = {"start": event.time.get("start")}
    if event.time.get("end") is not None:
        timing["end"] = event.time["end"]
    return [_entry(handle, ProgressKind.THINKING, message, {"text": text, "time": timing})]


def _tool_entries(
    event: ToolUpdated,
    handle: RunHandle,
    options: NormalizerOptions,
) -> list[ProgressEntry]:
    label = event.title or event.tool
    if event.status == "completed":
        return [
            _entry(
                handle,
                ProgressKind.TOOL_CALL,
                label,
                {
                    "tool": event.tool,
                    "input": event.input,
                    "output": truncate(event.output or "", TOOL_OUTPUT_MAX_CHARS),
                    "call_id": event.call_id,
                    "time": event.time,
                },
            ),
        ]
    if options.include_running_tools and event.status in {"running", "pending"}:
        return [
            _entry(
                handle,
                ProgressKind.ACTION,
                f"Running: {label}",
                {"tool": event.tool, "call_id": event.call_id, "status": event.status},
            ),
        ]
    return []


def _diff_entries(
    event: SessionDiff,
    handle: RunHandle,
    seen_changes: set[DedupKey],
) -> list[ProgressEntry]:
    entries: list[ProgressEntry] = []
    for diff in event.files:
        key = dedup_key(diff)
        if key in seen_changes:
            continue
        seen_changes.add(key)
        entries.append(
            _entry(
                handle,
                ProgressKind.CHANGES,
                f"{diff.file} (+{diff.additions}/-{diff.deletions})",
                {
                    "file": diff.file,
                    "before": truncate(diff.before, DIFF_CONTENT_MAX_CHARS),
                    "after": truncate(diff.after, DIFF_CONTENT_MAX_CHARS),
                    "additions": diff.additions,
                    "deletions": diff.deletions,
                },
            ),
        )
    return entries


def _todo_entries(event: TodoUpdated, handle: RunHandle) -> list[ProgressEntry]:
    if event.session_id != handle.session_id or not event.todos:
        return []
    total = len(event.todos)
    completed = sum(1 for todo in event.todos if todo.get("status") == "completed")
    in_progress = sum(1 for todo in event.todos if todo.get("status") == "in_progress")
    message = f"{completed}/{total} complete"
    if in_progress:
        message += f", {in_progress} in progress"
    return [_entry(handle, ProgressKind.TODO_UPDATE, message, {"todos": list(event.todos)})]


def truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[:limit] + TRUNCATION_SUFFIX


def _stringify(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def _entry(
    handle: RunHandle,
    kind: ProgressKind,
    message: str,
    metadata: dict[str, Any],
) -> ProgressEntry:
    return ProgressEntry(
        run_id=handle.run_id,
        correlation_id=handle.correlation_id,
        kind=kind,
        message=message,
        metadata=metadata,
    )
