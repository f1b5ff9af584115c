import logging
from urllib.parse import quote

from .jobs import Job, JobState, JobStateStore, RunStats
from .sessions import SessionRollup, RollupFromRow, build_rollup, DEFAULT_GAP_SECONDS, ROLLUP_COLUMNS
from .table import IceTable, CompressionCodec
from .s3 import S3Client

logger = logging.getLogger(__name__)


def device_partition(row: dict) -> str:
    return f"device={quote(str(row['device']), safe='')}"


def rollup_table(s3c: S3Client, path_safe_hostname: str, name: str = "event_rollup_sessions_lookup",
                 compression_codec: CompressionCodec = CompressionCodec.SNAPPY) -> IceTable:
    """
    The rollup table holds one live row per device, partitioned by device so a refresh only rewrites the devices
    it touched
    """
    return IceTable(
        name,
        device_partition,
        ["device"],
        s3c,
        path_safe_hostname,
        columns=ROLLUP_COLUMNS,
        unique_row_key="device",
        compression_codec=compression_codec
    )


class SessionAggregator(Job):
    """
    Keeps the rollup table (first seen, last seen, sessions per device) in step with the event table.

    Each run looks at the events committed in its window only to find which devices changed, then recomputes those
    devices from their full event history and upserts the result. Recomputing from history makes a rerun of the
    same window a no-op and keeps late or out of order events correct.
    """
    events: IceTable
    rollups: IceTable
    gap_seconds: int

    def __init__(self, events: IceTable, rollups: IceTable, store: JobStateStore,
                 gap_seconds: int = DEFAULT_GAP_SECONDS, name: str = "event_rollup_sessions_lookup", **kwargs):
        super().__init__(name, store, **kwargs)
        self.events = events
        self.rollups = rollups
        self.gap_seconds = gap_seconds

    def device_timestamps(self, devices: list[str]) -> dict[str, list[int]]:
        history = self.events.scan(where="list_contains(?, device)", params=[devices])
        grouped = self.events.query(history, """
            select device, list(unix_timestamp) as timestamps
            from _rows
            group by device
        """)
        return {row["device"]: row["timestamps"] for row in grouped.to_pylist()}

    def refresh(self, devices: list[str]) -> list[SessionRollup]:
        """
        Recomputes and upserts the rollups of the given devices
        """
        if len(devices) == 0:
            return []
        timestamps = self.device_timestamps(devices)
        rollups = []
        for device in sorted(timestamps.keys()):
            rollup = build_rollup(device, timestamps[device], self.gap_seconds)
            if rollup is not None:
                rollups.append(rollup)
        self.rollups.upsert([r.dict() for r in rollups], key="device")
        return rollups

    def process(self, state: JobState, start_ms: int, end_ms: int) -> RunStats:
        window = self.events.read_window(start_ms, end_ms)
        if window.num_rows == 0:
            return RunStats(self.name, start_ms, end_ms)

        devices = sorted(set(window.column("device").to_pylist()))
        rollups = self.refresh(devices)
        logger.debug("refreshed %d device rollups from %d events", len(rollups), window.num_rows)
        return RunStats(self.name, start_ms, end_ms, rows_in=window.num_rows, rows_out=len(rollups))

    def lookup(self, devices: list[str]) -> dict[str, SessionRollup]:
        """
        Current rollups of the given devices, devices without one are left out
        """
        if len(devices) == 0:
            return {}
        partitions = [device_partition({"device": d}) for d in devices]
        rows = self.rollups.scan(partitions=partitions, where="list_contains(?, device)", params=[devices])
        return {row["device"]: RollupFromRow(row) for row in rows.to_pylist()}
