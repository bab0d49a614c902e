"""
In-process event bus for the tutoring session.

The session core publishes every state change the presentation layer cares
about (status, transcript entries, phase, generation flags, errors) as a
BusEvent. Listeners register per event type or with "*" for everything.
Recent events are kept in a bounded in-memory ring; nothing is written to
disk, so transcripts never outlive the process.
"""

import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Callable

logger = logging.getLogger(__name__)

# Lines longer than this get their string payload values truncated
_MAX_LINE = 4096

# Event types excluded from the recent-events ring (high-frequency, no replay value)
_RING_EXCLUDE = {"audio_out"}


class EventType(str, Enum):
    """All event types in the bus catalog."""
    STATUS = "status"
    SESSION_STATE = "session_state"
    TRANSCRIPT = "transcript"
    PHASE = "phase"
    GENERATING = "generating"
    ERROR = "error"
    RETRY_SCHEDULED = "retry_scheduled"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    INTERRUPTED = "interrupted"
    AUDIO_OUT = "audio_out"
    CREDENTIAL = "credential"


@dataclass
class BusEvent:
    """A single event on the bus."""
    ts: float
    src: str
    type: str
    gen: int
    payload: dict = field(default_factory=dict)

    def __init__(self, ts: float, src: str, type: str, gen: int, **kwargs):
        self.ts = ts
        self.src = src
        self.type = type
        self.gen = gen
        self.payload = kwargs

    def as_dict(self) -> dict:
        return {"ts": self.ts, "src": self.src, "type": self.type, "gen": self.gen,
                **self.payload}

    def to_json_line(self) -> str:
        """One JSON line (with newline) for --json output.

        Payload strings are shortened when the line would pass _MAX_LINE;
        image data URLs are the usual culprit.
        """
        line = _dumps(self.as_dict())
        if len(line.encode()) <= _MAX_LINE:
            return line
        payload = {
            key: (val[:200] + "...[truncated]" if isinstance(val, str) and len(val) > 200 else val)
            for key, val in self.payload.items()
        }
        return _dumps({"ts": self.ts, "src": self.src, "type": self.type, "gen": self.gen,
                       **payload})


class EventBus:
    """In-process publish/subscribe with a ring of recent events.

    Usage:
        bus = EventBus("tutor_session")
        bus.on("*", my_callback)                  # Register listener
        bus.emit("status", gen=1, status="LISTENING")
        events = bus.read_recent(last_n=10)
    """

    def __init__(self, src: str = "tutor_session", max_events: int = 500):
        self._src = src
        self._recent: deque = deque(maxlen=max_events)
        self._lock = Lock()
        self._callbacks: dict[str, list[Callable]] = {}  # type -> [callback]

    def on(self, event_type: str, callback: Callable):
        """Register an in-process callback.

        Args:
            event_type: Event type to listen for, or "*" for all events.
            callback: Called with BusEvent as argument.
        """
        self._callbacks.setdefault(str(_value(event_type)), []).append(callback)

    def off(self, event_type: str, callback: Callable):
        """Remove a previously registered callback (no-op if absent)."""
        callbacks = self._callbacks.get(str(_value(event_type)), [])
        if callback in callbacks:
            callbacks.remove(callback)

    def _fire_callbacks(self, evt: BusEvent):
        """Fire registered callbacks for an event."""
        for cb_type in (evt.type, "*"):
            for cb in list(self._callbacks.get(cb_type, [])):
                try:
                    cb(evt)
                except Exception as e:
                    logger.error("Bus callback error for %s: %s", evt.type, e)

    def emit(self, event_type: str, gen: int = 0, **payload) -> BusEvent:
        """Record the event in the recent ring and fire in-process callbacks."""
        evt = BusEvent(ts=time.time(), src=self._src, type=_value(event_type),
                       gen=gen, **payload)
        if evt.type not in _RING_EXCLUDE:
            with self._lock:
                self._recent.append(evt)
        self._fire_callbacks(evt)
        return evt

    def read_recent(self, last_n: int = 50, event_type: str | None = None,
                    since_ts: float | None = None) -> list[BusEvent]:
        """Return recent events, oldest first.

        Args:
            last_n: Maximum number of events to return.
            event_type: Filter to only this event type.
            since_ts: Only events after this timestamp.
        """
        wanted = _value(event_type) if event_type else None
        with self._lock:
            events = list(self._recent)
        if wanted:
            events = [e for e in events if e.type == wanted]
        if since_ts:
            events = [e for e in events if e.ts >= since_ts]
        if last_n:
            events = events[-last_n:]
        return events


def _value(event_type) -> str:
    return event_type.value if isinstance(event_type, EventType) else event_type


def _dumps(data: dict) -> str:
    return json.dumps(data, separators=(',', ':'), ensure_ascii=False, default=str) + "\n"
