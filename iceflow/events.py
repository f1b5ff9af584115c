"""
Parsing of delimited device events into typed rows for the event table.

A source object is CSV with a header row. The columns the pipeline relies on are `device` and `dt_updated`
(`yyyy-MM-dd HH:mm`, UTC); `att1` and `att2` are opaque attributes, and any other column is carried through as a
string.
"""
import csv
import io
import logging
from calendar import timegm
from datetime import datetime, timezone

import pyarrow as pa

from .errors import ParseError

logger = logging.getLogger(__name__)

DT_FORMAT = "%Y-%m-%d %H:%M"
OUTPUT_DT_FORMAT = "%Y-%m-%d %H:%M:%S"

EVENT_COLUMNS = {
    "device": pa.string(),
    "att1": pa.string(),
    "att2": pa.string(),
    "dt_updated": pa.string(),
    "unix_timestamp": pa.int64(),
    "event_date": pa.string(),
    "_source": pa.string(),
}

EVENT_SORT_ORDER = ["device", "unix_timestamp"]


def parse_dt(value: str) -> int:
    """
    Parses `yyyy-MM-dd HH:mm` (seconds tolerated) as UTC and returns epoch seconds
    """
    value = value.strip()
    try:
        parsed = datetime.strptime(value, DT_FORMAT)
    except ValueError:
        parsed = datetime.strptime(value, OUTPUT_DT_FORMAT)
    return timegm(parsed.timetuple())


def format_ts(ts: int | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime(OUTPUT_DT_FORMAT)


def event_partition(row: dict) -> str:
    return f"d={row['event_date']}"


class ParseResult:
    rows: list[dict]
    malformed: int
    errors: list[ParseError]

    def __init__(self):
        self.rows = []
        self.malformed = 0
        self.errors = []

    def skip(self, err: ParseError):
        self.malformed += 1
        # keep a handful for the run report, the count is what matters
        if len(self.errors) < 10:
            self.errors.append(err)


def parse_event(record: dict, source_key: str, offset: int) -> dict:
    """
    Turns one CSV record into an event row, raising ParseError if it can't be used
    """
    if None in record or any(v is None for v in record.values()):
        raise ParseError(source_key, offset, "wrong number of fields")
    device = (record.get("device") or "").strip()
    if device == "":
        raise ParseError(source_key, offset, "missing device")
    dt_updated = record.get("dt_updated")
    if dt_updated is None or dt_updated.strip() == "":
        raise ParseError(source_key, offset, "missing dt_updated")
    try:
        unix_timestamp = parse_dt(dt_updated)
    except ValueError:
        raise ParseError(source_key, offset, f"unparseable dt_updated '{dt_updated}'")

    row = {k: (v if v != "" else None) for k, v in record.items()}
    row["device"] = device
    row["dt_updated"] = dt_updated.strip()
    row["unix_timestamp"] = unix_timestamp
    row["event_date"] = datetime.fromtimestamp(unix_timestamp, tz=timezone.utc).strftime("%Y-%m-%d")
    row["_source"] = source_key
    row["_row_id"] = f"{source_key}#{offset}"
    return row


def parse_csv(body: bytes, source_key: str, delimiter: str = ",") -> ParseResult:
    """
    Parses a CSV object. Malformed records are skipped and counted, never raised.
    Offsets are 1-based line numbers of the record within the object, the header being line 1.
    """
    result = ParseResult()
    text = body.decode("utf-8-sig", errors="replace")
    reader = csv.DictReader(io.StringIO(text, newline=""), delimiter=delimiter)
    if reader.fieldnames is None:
        return result
    reader.fieldnames = [f.strip() for f in reader.fieldnames]
    for record in reader:
        offset = reader.line_num
        try:
            result.rows.append(parse_event(record, source_key, offset))
        except ParseError as e:
            logger.debug("skipping record: %s", e)
            result.skip(e)
    return result
