"""
Session event log for the voice link.

Each session can write a JSONL file of what happened (state changes,
transcripts, finished turns, errors) and fan the same events out to
in-process listeners, e.g. a terminal printer or a UI bridge.

Line size: every JSON line is kept under 4096 bytes (POSIX PIPE_BUF) so a
reader tailing the file never sees a torn line.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

_PIPE_BUF = 4096
_MAX_STRING = 200

# Envelope fields; everything else is payload
_CORE_FIELDS = ("ts", "sid", "type", "seq")


class EventType(str, Enum):
    """Events emitted by VoiceLinkSession."""
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    STATE = "state"
    TRANSCRIPTION = "transcription"
    TURN_COMPLETE = "turn_complete"
    INTERRUPTED = "interrupted"
    LOG = "log"
    ERROR = "error"


def _type_name(event_type) -> str:
    return event_type.value if isinstance(event_type, Enum) else str(event_type)


@dataclass
class BusEvent:
    """One logged event."""
    ts: float
    sid: str
    type: str
    seq: int
    payload: dict = field(default_factory=dict)

    def to_json_line(self) -> str:
        """Serialize to one JSON line, shortening long strings to fit PIPE_BUF."""
        data = {"ts": self.ts, "sid": self.sid, "type": self.type, "seq": self.seq,
                **self.payload}
        line = json.dumps(data, separators=(',', ':')) + "\n"
        if len(line.encode()) <= _PIPE_BUF:
            return line

        for key, val in list(data.items()):
            if key not in _CORE_FIELDS and isinstance(val, str) and len(val) > _MAX_STRING:
                data[key] = val[:_MAX_STRING] + "...[truncated]"
        line = json.dumps(data, separators=(',', ':')) + "\n"
        if len(line.encode()) <= _PIPE_BUF:
            return line

        minimal = {k: data[k] for k in _CORE_FIELDS}
        minimal["_truncated"] = True
        return json.dumps(minimal, separators=(',', ':')) + "\n"

    @classmethod
    def from_json_line(cls, line: str) -> "BusEvent":
        data = json.loads(line)
        core = {k: data.pop(k) for k in _CORE_FIELDS}
        return cls(payload=data, **core)


class EventBus:
    """JSONL event file plus in-process listeners for one session.

    Usage:
        bus = EventBus(session_dir, session_id)
        bus.open()
        bus.on("turn_complete", print_turn)
        bus.emit("turn_complete", user_text="hi", assistant_text="hello")
        bus.close()

    Without open() (or with session_dir=None) events only reach listeners.
    """

    def __init__(self, session_dir: Path | None, sid: str):
        self._sid = sid
        self._path = Path(session_dir) / "events.jsonl" if session_dir else None
        self._file = None
        self._seq = 0
        self._callbacks: dict[str, list[Callable]] = {}

    @property
    def path(self) -> Path | None:
        return self._path

    def open(self):
        if self._path is None or self._file is not None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._path, "a")

    def close(self):
        if self._file:
            self._file.close()
            self._file = None

    def on(self, event_type: str, callback: Callable):
        """Register a listener for one event type, or "*" for all."""
        self._callbacks.setdefault(_type_name(event_type), []).append(callback)

    def _make_event(self, event_type, payload) -> BusEvent:
        self._seq += 1
        return BusEvent(ts=time.time(), sid=self._sid, type=_type_name(event_type),
                        seq=self._seq, payload=payload)

    def _fire_callbacks(self, evt: BusEvent):
        for cb_type in (evt.type, "*"):
            for cb in self._callbacks.get(cb_type, []):
                try:
                    cb(evt)
                except Exception as e:
                    logger.error("Bus callback error for %s: %s", evt.type, e)

    def emit(self, event_type, **payload) -> BusEvent:
        """Write the event to the file (if open) and fire listeners."""
        evt = self._make_event(event_type, payload)
        if self._file:
            try:
                self._file.write(evt.to_json_line())
                self._file.flush()
            except OSError as e:
                logger.error("Event log write failed: %s", e)
        self._fire_callbacks(evt)
        return evt

    def emit_ephemeral(self, event_type, **payload) -> BusEvent:
        """Fire listeners only. For high-frequency events like transcript deltas."""
        evt = self._make_event(event_type, payload)
        self._fire_callbacks(evt)
        return evt

    def read_recent(self, last_n: int = 50, event_type: str | None = None,
                    since_ts: float | None = None) -> list[BusEvent]:
        """Read back events from the file, oldest first."""
        if self._path is None or not self._path.exists():
            return []
        events = []
        try:
            with open(self._path, "r") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        evt = BusEvent.from_json_line(line)
                    except (json.JSONDecodeError, KeyError):
                        continue
                    if event_type and evt.type != _type_name(event_type):
                        continue
                    if since_ts and evt.ts < since_ts:
                        continue
                    events.append(evt)
        except OSError:
            return []
        if last_n:
            events = events[-last_n:]
        return events
