"""Worker -> orchestrator event protocol.

One JSON object per stdout line, discriminated by ``event``. Anything that is
not a JSON object with a known ``event`` is a plain diagnostic line.
"""

from __future__ import annotations

import json
import sys
import time
from typing import Any, Callable, TextIO

EVENT_KINDS = ("started", "count", "progress", "heartbeat", "done")
COUNTER_FIELDS = ("ok", "skipped", "failed", "processed", "total")
TERMINAL_RUN_STATUSES = ("completed", "stopped")

# Job-state field each event kind is merged into.
STATE_FIELD_BY_EVENT = {
    "started": "startedEvent",
    "count": "countEvent",
    "progress": "lastProgress",
    "heartbeat": "lastHeartbeat",
    "done": "doneEvent",
}

Emitter = Callable[[dict[str, Any]], None]


def build_event(kind: str, **fields: Any) -> dict[str, Any]:
    if kind not in EVENT_KINDS:
        raise ValueError(f"unknown event kind {kind!r}")
    return {"event": kind, "ts": int(time.time() * 1000), **fields}


def encode_event(event: dict[str, Any]) -> str:
    return json.dumps(event, ensure_ascii=False, separators=(",", ":"), default=str)


def stdout_emitter(stream: TextIO | None = None) -> Emitter:
    """Return an emitter writing one flushed JSON line per event."""

    def emit(event: dict[str, Any]) -> None:
        out = stream or sys.stdout
        out.write(encode_event(event) + "\n")
        out.flush()

    return emit


def parse_event_line(line: str) -> dict[str, Any] | None:
    """Return the event object for a protocol line, or ``None`` for diagnostics."""

    text = line.strip()
    if not text or not text.startswith("{"):
        return None
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(value, dict):
        return None
    if value.get("event") not in EVENT_KINDS:
        return None
    return value


__all__ = [
    "COUNTER_FIELDS",
    "EVENT_KINDS",
    "Emitter",
    "STATE_FIELD_BY_EVENT",
    "TERMINAL_RUN_STATUSES",
    "build_event",
    "encode_event",
    "parse_event_line",
    "stdout_emitter",
]
