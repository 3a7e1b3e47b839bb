"""Progress sink protocol and best-effort recording."""

from __future__ import annotations

import logging
from typing import Protocol

from fly_agent.runtime.models import ProgressEntry

logger = logging.getLogger(__name__)


class ProgressSink(Protocol):
    def append_log_entry(self, entry: ProgressEntry) -> None: ...


def record_progress(sink: ProgressSink, entry: ProgressEntry) -> None:
    """Append one entry; a failing sink must never stop the run."""

    logger.info("[%s] %s", entry.kind.value, entry.message)
    try:
        sink.append_log_entry(entry)
    except Exception:  # noqa: BLE001
        logger.exception("Failed to record progress entry kind=%s", entry.kind.value)
