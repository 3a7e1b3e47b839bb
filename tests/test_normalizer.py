from __future__ import annotations

import allure

from fly_agent.runtime.events import (
    FileDiff,
    ReasoningUpdated,
    SessionDiff,
    SessionErrored,
    TextUpdated,
    TodoUpdated,
    ToolUpdated,
    UnrecognizedEvent,
)
from fly_agent.runtime.models import MESSAGE_MAX_CHARS, ProgressEntry, ProgressKind, RunHandle
from fly_agent.runtime.normalizer import (
    DIFF_CONTENT_MAX_CHARS,
    TOOL_OUTPUT_MAX_CHARS,
    TRUNCATION_SUFFIX,
    NormalizerOptions,
    normalize_event,
    truncate,
)

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Progress Normalization"),
]


def _tool(status: str, *, title: str | None = "Edit file", output: str | None = None) -> ToolUpdated:
    return ToolUpdated(
        session_id="ses_1",
        tool="edit",
        call_id="call_1",
        status=status,
        title=title,
        input={"path": "main.go"},
        output=output,
        time={"start": 1},
    )


def test_reasoning_preview_is_capped_with_ellipsis(handle: RunHandle) -> None:
    text = "a" * 150
    entries = normalize_event(
        ReasoningUpdated(session_id="ses_1", text=text, time={"start": 1, "end": 2}),
        handle=handle,
        seen_changes=set(),
    )

    assert len(entries) == 1
    assert entries[0].kind == ProgressKind.THINKING
    assert entries[0].message == "a" * 100 + "..."
    assert entries[0].metadata == {"text": text, "time": {"start": 1, "end": 2}}
    assert entries[0].run_id == handle.run_id
    assert entries[0].correlation_id == handle.correlation_id


def test_short_reasoning_is_not_truncated(handle: RunHandle) -> None:
    entries = normalize_event(
        ReasoningUpdated(session_id="ses_1", text="Investigating failing test", time={"start": 1}),
        handle=handle,
        seen_changes=set(),
    )

    assert [entry.message for entry in entries] == ["Investigating failing test"]
    assert entries[0].metadata["time"] == {"start": 1}


def test_blank_reasoning_is_dropped(handle: RunHandle) -> None:
    event = ReasoningUpdated(session_id="ses_1", text="   \n", time={})

    assert normalize_event(event, handle=handle, seen_changes=set()) == []


def test_completed_tool_uses_title_and_truncates_output(handle: RunHandle) -> None:
    output = "x" * (TOOL_OUTPUT_MAX_CHARS + 10)
    entries = normalize_event(_tool("completed", output=output), handle=handle, seen_changes=set())

    assert len(entries) == 1
    entry = entries[0]
    assert entry.kind == ProgressKind.TOOL_CALL
    assert entry.message == "Edit file"
    assert entry.metadata["tool"] == "edit"
    assert entry.metadata["input"] == {"path": "main.go"}
    assert entry.metadata["output"] == "x" * TOOL_OUTPUT_MAX_CHARS + TRUNCATION_SUFFIX
    assert entry.metadata["call_id"] == "call_1"


def test_completed_tool_without_title_falls_back_to_tool_name(handle: RunHandle) -> None:
    entries = normalize_event(_tool("completed", title=None), handle=handle, seen_changes=set())

    assert entries[0].message == "edit"
    assert entries[0].metadata["output"] == ""


def test_running_tool_is_silent_by_default(handle: RunHandle) -> None:
    assert normalize_event(_tool("running"), handle=handle, seen_changes=set()) == []
    assert normalize_event(_tool("error"), handle=handle, seen_changes=set()) == []


def test_running_tool_reported_when_enabled(handle: RunHandle) -> None:
    entries = normalize_event(
        _tool("running"),
        handle=handle,
        seen_changes=set(),
        options=NormalizerOptions(include_running_tools=True),
    )

    assert [(entry.kind, entry.message) for entry in entries] == [
        (ProgressKind.ACTION, "Running: Edit file"),
    ]


def test_diff_batch_emits_one_entry_per_new_file(handle: RunHandle) -> None:
    seen: set[tuple[str, str]] = set()
    event = SessionDiff(
        session_id="ses_1",
        files=(
            FileDiff(file="src/app.go", before="old", after="new", additions=3, deletions=1),
            FileDiff(file="README.md", before="", after="docs", additions=1, deletions=0),
        ),
    )

    entries = normalize_event(event, handle=handle, seen_changes=seen)

    assert [entry.message for entry in entries] == ["src/app.go (+3/-1)", "README.md (+1/-0)"]
    assert entries[0].kind == ProgressKind.CHANGES
    assert entries[0].metadata == {
        "file": "src/app.go",
        "before": "old",
        "after": "new",
        "additions": 3,
        "deletions": 1,
    }
    assert len(seen) == 2


def test_repeated_diff_is_reported_once(handle: RunHandle) -> None:
    seen: set[tuple[str, str]] = set()
    diff = FileDiff(file="src/app.go", before="old", after="new", additions=3, deletions=1)
    event = SessionDiff(session_id="ses_1", files=(diff,))

    first = normalize_event(event, handle=handle, seen_changes=seen)
    second = normalize_event(event, handle=handle, seen_changes=seen)
    changed = normalize_event(
        SessionDiff(
            session_id="ses_1",
            files=(FileDiff(file="src/app.go", before="new", after="newer", additions=1, deletions=1),),
        ),
        handle=handle,
        seen_changes=seen,
    )

    assert len(first) == 1
    assert second == []
    assert [entry.message for entry in changed] == ["src/app.go (+1/-1)"]


def test_diff_dedup_looks_at_content_prefix_only(handle: RunHandle) -> None:
    seen: set[tuple[str, str]] = set()
    prefix = "p" * 200

    normalize_event(
        SessionDiff(
            session_id="ses_1",
            files=(FileDiff(file="big.txt", before="", after=prefix + "A", additions=1, deletions=0),),
        ),
        handle=handle,
        seen_changes=seen,
    )
    again = normalize_event(
        SessionDiff(
            session_id="ses_1",
            files=(FileDiff(file="big.txt", before="", after=prefix + "B", additions=1, deletions=0),),
        ),
        handle=handle,
        seen_changes=seen,
    )

    assert again == []


def test_diff_content_is_truncated(handle: RunHandle) -> None:
    after = "y" * (DIFF_CONTENT_MAX_CHARS + 1)
    entries = normalize_event(
        SessionDiff(
            session_id="ses_1",
            files=(FileDiff(file="gen.txt", before="", after=after, additions=1, deletions=0),),
        ),
        handle=handle,
        seen_changes=set(),
    )

    assert entries[0].metadata["after"] == "y" * DIFF_CONTENT_MAX_CHARS + TRUNCATION_SUFFIX


def test_session_error_is_serialized(handle: RunHandle) -> None:
    entries = normalize_event(
        SessionErrored(session_id="ses_1", error={"name": "ProviderAuthError"}),
        handle=handle,
        seen_changes=set(),
    )
    unknown = normalize_event(
        SessionErrored(session_id="ses_1", error=None),
        handle=handle,
        seen_changes=set(),
    )

    assert entries[0].kind == ProgressKind.ERROR
    assert entries[0].message == '{"name": "ProviderAuthError"}'
    assert unknown[0].message == "Unknown error"


def test_todo_summary_counts_statuses(handle: RunHandle) -> None:
    todos = (
        {"content": "a", "status": "completed"},
        {"content": "b", "status": "in_progress"},
        {"content": "c", "status": "pending"},
    )
    entries = normalize_event(
        TodoUpdated(session_id="ses_1", todos=todos),
        handle=handle,
        seen_changes=set(),
    )
    quiet = normalize_event(
        TodoUpdated(session_id="ses_1", todos=({"status": "completed"},)),
        handle=handle,
        seen_changes=set(),
    )

    assert entries[0].kind == ProgressKind.TODO_UPDATE
    assert entries[0].message == "1/3 complete, 1 in progress"
    assert entries[0].metadata == {"todos": list(todos)}
    assert quiet[0].message == "1/1 complete"


def test_events_of_other_sessions_are_ignored(handle: RunHandle) -> None:
    events = [
        ReasoningUpdated(session_id="ses_other", text="not ours", time={}),
        SessionErrored(session_id="ses_other", error="boom"),
        TodoUpdated(session_id="ses_other", todos=({"status": "pending"},)),
        SessionDiff(
            session_id="ses_other",
            files=(FileDiff(file="x", before="", after="y", additions=1, deletions=0),),
        ),
    ]

    assert all(normalize_event(event, handle=handle, seen_changes=set()) == [] for event in events)


def test_unmapped_events_produce_nothing(handle: RunHandle) -> None:
    assert normalize_event(TextUpdated(session_id="ses_1", text="hi"), handle=handle, seen_changes=set()) == []
    assert (
        normalize_event(UnrecognizedEvent(type="server.connected"), handle=handle, seen_changes=set())
        == []
    )


def test_progress_message_is_bounded() -> None:
    entry = ProgressEntry(
        run_id="r",
        correlation_id="c",
        kind=ProgressKind.ACTION,
        message="m" * (MESSAGE_MAX_CHARS + 50),
    )

    assert len(entry.message) == MESSAGE_MAX_CHARS
    assert entry.message.endswith("...")


def test_truncate_leaves_short_values_alone() -> None:
    assert truncate("abc", 3) == "abc"
    assert truncate("abcd", 3) == "abc" + TRUNCATION_SUFFIX
