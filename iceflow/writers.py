"""
The two downstream jobs joining newly committed events against the device rollups.

`FlattenSessionsJob` appends one row per (device, session). `DeviceUptimeJob` keeps exactly one row per device,
replaced on every batch that saw the device.
"""
import logging

import pyarrow as pa

from .aggregator import SessionAggregator, device_partition
from .events import format_ts
from .jobs import Job, JobState, JobStateStore, RunStats
from .s3 import S3Client
from .sessions import SessionRollup, compute_uptime
from .table import IceTable, CompressionCodec

logger = logging.getLogger(__name__)

FLATTEN_COLUMNS = {
    "device": pa.string(),
    "s_sessions_15m_starttime": pa.string(),
    "s_sessions_15m_endtime": pa.string(),
    "session_minutes": pa.float64(),
    "att1": pa.string(),
    "att2": pa.string(),
}

UPTIME_COLUMNS = {
    "device": pa.string(),
    "att1": pa.string(),
    "att2": pa.string(),
    "first_seen_date": pa.string(),
    "last_seen_date": pa.string(),
    "uptime": pa.float64(),
}


def session_date_partition(row: dict) -> str:
    return f"d={row['s_sessions_15m_starttime'][:10]}"


def flatten_table(s3c: S3Client, path_safe_hostname: str, name: str = "event_logs_flatten_sessions",
                  compression_codec: CompressionCodec = CompressionCodec.SNAPPY) -> IceTable:
    return IceTable(
        name,
        session_date_partition,
        ["device", "s_sessions_15m_starttime"],
        s3c,
        path_safe_hostname,
        columns=FLATTEN_COLUMNS,
        compression_codec=compression_codec
    )


def uptime_table(s3c: S3Client, path_safe_hostname: str, name: str = "event_logs_device_uptime",
                 compression_codec: CompressionCodec = CompressionCodec.SNAPPY) -> IceTable:
    return IceTable(
        name,
        device_partition,
        ["device"],
        s3c,
        path_safe_hostname,
        columns=UPTIME_COLUMNS,
        unique_row_key="device",
        compression_codec=compression_codec
    )


def latest_attributes(events: IceTable, window: pa.Table) -> dict[str, dict]:
    """
    The last att1/att2 of every device in the window, by event time then commit order
    """
    latest = events.query(window, """
        select device, att1, att2 from (
            select device, att1, att2, row_number() over (
                partition by device order by unix_timestamp desc, _commit_ms desc, _row_id desc
            ) as rn
            from _rows
        )
        where rn = 1
    """)
    return {row["device"]: row for row in latest.to_pylist()}


def session_row_id(device: str, start_time: int, end_time: int) -> str:
    return f"{device}|{start_time}|{end_time}"


def flatten_rollup(rollup: SessionRollup, attrs: dict) -> list[dict]:
    rows = []
    for s in rollup.sessions:
        rows.append({
            "device": rollup.device,
            "s_sessions_15m_starttime": format_ts(s.start_time),
            "s_sessions_15m_endtime": format_ts(s.end_time),
            "session_minutes": s.minutes,
            "att1": attrs.get("att1"),
            "att2": attrs.get("att2"),
            "_row_id": session_row_id(rollup.device, s.start_time, s.end_time),
        })
    return rows


def uptime_row(rollup: SessionRollup, attrs: dict) -> dict:
    return {
        "device": rollup.device,
        "att1": attrs.get("att1"),
        "att2": attrs.get("att2"),
        "first_seen_date": format_ts(rollup.first_seen_date),
        "last_seen_date": format_ts(rollup.last_seen_date),
        "uptime": compute_uptime(rollup),
    }


class RollupJoinJob(Job):
    """
    Base for jobs that join committed events with the rollups. The window never ends past the aggregator's
    watermark, so every event in it already has its device's rollup refreshed.
    """
    events: IceTable
    aggregator: SessionAggregator
    output: IceTable

    def __init__(self, name: str, events: IceTable, aggregator: SessionAggregator, output: IceTable,
                 store: JobStateStore, **kwargs):
        super().__init__(name, store, **kwargs)
        self.events = events
        self.aggregator = aggregator
        self.output = output

    def window_end(self, now: int) -> int:
        return min(super().window_end(now), self.aggregator.watermark())

    def joined(self, start_ms: int, end_ms: int) -> tuple[int, list[tuple[SessionRollup, dict]], int]:
        """
        Returns the number of events in the window, the (rollup, latest attributes) pairs of their devices, and the
        number of devices that had no rollup
        """
        window = self.events.read_window(start_ms, end_ms)
        if window.num_rows == 0:
            return 0, [], 0
        attrs = latest_attributes(self.events, window)
        rollups = self.aggregator.lookup(sorted(attrs.keys()))
        missing = [d for d in attrs.keys() if d not in rollups]
        if len(missing) > 0:
            logger.warning("job %s: %d devices have no rollup, skipped until their next event: %s", self.name,
                           len(missing), ', '.join(sorted(missing)[:10]))
        pairs = [(rollups[d], attrs[d]) for d in sorted(attrs.keys()) if d in rollups]
        return window.num_rows, pairs, len(missing)


class FlattenSessionsJob(RollupJoinJob):
    """
    Append mode. Every run rescans `lookback_ms` before its watermark, and a (device, session) row that already
    exists in the output is not written again, so overlapping runs never duplicate rows.
    """
    lookback_ms: int

    def __init__(self, events: IceTable, aggregator: SessionAggregator, output: IceTable, store: JobStateStore,
                 lookback_ms: int = 60_000, name: str = "event_logs_flatten_sessions", **kwargs):
        super().__init__(name, events, aggregator, output, store, **kwargs)
        self.lookback_ms = lookback_ms

    def window_start(self, watermark: int) -> int:
        return max(0, watermark - self.lookback_ms)

    def existing_row_ids(self, rows: list[dict]) -> set[str]:
        partitions = sorted({session_date_partition(r) for r in rows})
        ids = [r["_row_id"] for r in rows]
        existing = self.output.scan(partitions=partitions, where="list_contains(?, _row_id)", params=[ids])
        return set(existing.column("_row_id").to_pylist())

    def process(self, state: JobState, start_ms: int, end_ms: int) -> RunStats:
        rows_in, pairs, missing = self.joined(start_ms, end_ms)

        # group by device and session bounds
        grouped: dict[str, dict] = {}
        for rollup, attrs in pairs:
            for row in flatten_rollup(rollup, attrs):
                grouped[row["_row_id"]] = row
        rows = list(grouped.values())

        if len(rows) > 0:
            existing = self.existing_row_ids(rows)
            rows = [r for r in rows if r["_row_id"] not in existing]
            self.output.insert(rows)
        return RunStats(self.name, start_ms, end_ms, rows_in=rows_in, rows_out=len(rows), skipped=missing)


class DeviceUptimeJob(RollupJoinJob):
    """
    Upsert mode: one row per device, replaced as a whole when the device shows up in a batch
    """

    def __init__(self, events: IceTable, aggregator: SessionAggregator, output: IceTable, store: JobStateStore,
                 name: str = "event_logs_device_uptime", **kwargs):
        super().__init__(name, events, aggregator, output, store, **kwargs)

    def process(self, state: JobState, start_ms: int, end_ms: int) -> RunStats:
        rows_in, pairs, missing = self.joined(start_ms, end_ms)
        rows = [uptime_row(rollup, attrs) for rollup, attrs in pairs]
        self.output.upsert(rows, key="device")
        return RunStats(self.name, start_ms, end_ms, rows_in=rows_in, rows_out=len(rows), skipped=missing)
