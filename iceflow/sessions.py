"""
Session windowing.

A session is a maximal interval of activity in which consecutive events are less than `gap_seconds` apart.
Sessions of a device are recomputed from its full event history, so the result never depends on the order or
batching in which events arrived.
"""
from typing import Iterable

import pyarrow as pa

DEFAULT_GAP_SECONDS = 15 * 60

SESSION_TYPE = pa.struct([
    pa.field("start_time", pa.int64()),
    pa.field("end_time", pa.int64()),
])

ROLLUP_COLUMNS = {
    "device": pa.string(),
    "first_seen_date": pa.int64(),
    "last_seen_date": pa.int64(),
    "event_count": pa.int64(),
    "sessions": pa.list_(SESSION_TYPE),
}


class Session:
    start_time: int
    end_time: int

    def __init__(self, start_time: int, end_time: int):
        self.start_time = start_time
        self.end_time = end_time

    @property
    def seconds(self) -> int:
        return self.end_time - self.start_time

    @property
    def minutes(self) -> float:
        return self.seconds / 60

    def dict(self) -> dict:
        return {"start_time": self.start_time, "end_time": self.end_time}

    def __eq__(self, other):
        if not isinstance(other, Session):
            return NotImplemented
        return self.start_time == other.start_time and self.end_time == other.end_time

    def __hash__(self):
        return hash((self.start_time, self.end_time))

    def __repr__(self):
        return f"Session({self.start_time}, {self.end_time})"


def compute_sessions(timestamps: Iterable[int], gap_seconds: int = DEFAULT_GAP_SECONDS) -> list[Session]:
    """
    Merges event timestamps (epoch seconds, any order) into the minimal list of maximal sessions.

    A new session starts on the first event and whenever the gap since the previous event reaches `gap_seconds`,
    otherwise the current session is extended to the event. The result is ordered by start time, non-overlapping,
    and consecutive sessions are at least `gap_seconds` apart. A single event is a zero length session, and events
    at the same instant always share a session.
    """
    if gap_seconds < 0:
        raise ValueError(f"gap_seconds must not be negative, got {gap_seconds}")

    sessions: list[Session] = []
    current: Session | None = None
    for ts in sorted(timestamps):
        if current is None or (ts > current.end_time and ts - current.end_time >= gap_seconds):
            current = Session(ts, ts)
            sessions.append(current)
        else:
            current.end_time = ts
    return sessions


class SessionRollup:
    """
    Per device summary over its whole history: first and last event time and its sessions
    """
    device: str
    first_seen_date: int
    last_seen_date: int
    event_count: int
    sessions: list[Session]

    def __init__(self, device: str, first_seen_date: int, last_seen_date: int, sessions: list[Session],
                 event_count: int = 0):
        self.device = device
        self.first_seen_date = first_seen_date
        self.last_seen_date = last_seen_date
        self.sessions = sessions
        self.event_count = event_count

    def session_seconds(self) -> int:
        return sum(s.seconds for s in self.sessions)

    def dict(self) -> dict:
        return {
            "device": self.device,
            "first_seen_date": self.first_seen_date,
            "last_seen_date": self.last_seen_date,
            "event_count": self.event_count,
            "sessions": [s.dict() for s in self.sessions],
        }

    def __repr__(self):
        return f"SessionRollup({self.device}, {self.first_seen_date}, {self.last_seen_date}, {self.sessions})"


def RollupFromRow(row: dict) -> SessionRollup:
    return SessionRollup(
        row["device"],
        row["first_seen_date"],
        row["last_seen_date"],
        [Session(s["start_time"], s["end_time"]) for s in (row["sessions"] or [])],
        row.get("event_count") or 0,
    )


def build_rollup(device: str, timestamps: list[int], gap_seconds: int = DEFAULT_GAP_SECONDS) -> SessionRollup | None:
    if len(timestamps) == 0:
        return None
    return SessionRollup(device, min(timestamps), max(timestamps), compute_sessions(timestamps, gap_seconds),
                         len(timestamps))


def compute_uptime(rollup: SessionRollup) -> float | None:
    """
    Share of the device's observed lifetime spent in sessions: total session minutes over the minutes between
    first and last seen. None when the device was only ever seen at a single instant.
    """
    span = rollup.last_seen_date - rollup.first_seen_date
    if span <= 0:
        return None
    return (rollup.session_seconds() / 60.0) / (span / 60.0)
