import hashlib
import logging

from .errors import TransientIOError
from .events import parse_csv, event_partition, EVENT_COLUMNS, EVENT_SORT_ORDER
from .jobs import Job, JobState, JobStateStore, RunStats
from .s3 import S3Client
from .table import IceTable, CompressionCodec

logger = logging.getLogger(__name__)


def event_table(s3c: S3Client, path_safe_hostname: str, name: str = "event_raw_data",
                add_missing_columns: bool = True,
                compression_codec: CompressionCodec = CompressionCodec.SNAPPY) -> IceTable:
    """
    The staging table of raw events, partitioned by event date
    """
    return IceTable(
        name,
        event_partition,
        EVENT_SORT_ORDER,
        s3c,
        path_safe_hostname,
        columns=EVENT_COLUMNS,
        add_missing_columns=add_missing_columns,
        compression_codec=compression_codec
    )


def object_file_id(key: str, etag: str) -> str:
    return hashlib.sha1(f"{key}:{etag}".encode("utf-8")).hexdigest()


class IngestReader(Job):
    """
    Copies new CSV objects from a read-only source prefix into the event table.

    Ingested objects are remembered by key and ETag in the job state, so an object is copied once unless it is
    rewritten at the source. If a run dies between the insert and saving the state, the object is copied again on
    the next run into the same data files (their names derive from the key and ETag) with the same row ids, so
    readers still see each record once. Files a merge already replaced are recognized by their path and not written
    again.
    """
    source: S3Client
    events: IceTable

    def __init__(self, source: S3Client, events: IceTable, store: JobStateStore, name: str = "event_staging_job",
                 **kwargs):
        super().__init__(name, store, **kwargs)
        self.source = source
        self.events = events

    def window_end(self, now: int) -> int:
        # the window is only bookkeeping here, new objects are found by listing
        return now

    def pending_objects(self, state: JobState) -> list[dict]:
        ingested: dict = state.extra.get("objects", {})
        objects = self.source.list_objects(self.source.key() + '/' if self.source.s3prefix else '')
        pending = [o for o in objects if not o['Key'].endswith('/') and ingested.get(o['Key']) != o.get('ETag')]
        return sorted(pending, key=lambda o: (o['LastModified'], o['Key']))

    def ingest_object(self, obj: dict) -> tuple[int, int, int]:
        """
        Copies a single object, returns (records parsed, rows inserted, records skipped)
        """
        body = self.source.get_bytes(obj['Key'])
        result = parse_csv(body, obj['Key'])
        if result.malformed > 0:
            logger.warning("skipped %d malformed records of %s, first: %s", result.malformed, obj['Key'],
                           result.errors[0])
        accepted, rejected = self.events.split_unknown_columns(result.rows)
        if len(rejected) > 0:
            logger.warning("rejected %d rows of %s with columns unknown to %s", len(rejected), obj['Key'],
                           self.events.name)
        self.events.insert(accepted, file_id=object_file_id(obj['Key'], obj.get('ETag', '')))
        return len(result.rows) + result.malformed, len(accepted), result.malformed + len(rejected)

    def process(self, state: JobState, start_ms: int, end_ms: int) -> RunStats:
        ingested = state.extra.setdefault("objects", {})
        try:
            pending = self.pending_objects(state)
        except TransientIOError as e:
            # nothing was read, keep the watermark where it is
            state.last_error = str(e)
            logger.error("could not list %s this run: %s", self.source.key(), e)
            return RunStats(self.name, start_ms, state.watermark, failed=1, degraded=True)

        stats = RunStats(self.name, start_ms, end_ms)
        for obj in pending:
            try:
                rows_in, rows_out, skipped = self.ingest_object(obj)
            except TransientIOError as e:
                stats.failed += 1
                stats.degraded = True
                state.last_error = str(e)
                logger.error("giving up on %s for this run: %s", obj['Key'], e)
                continue
            stats.rows_in += rows_in
            stats.rows_out += rows_out
            stats.skipped += skipped
            ingested[obj['Key']] = obj.get('ETag')
            self.store.save(state)
            logger.info("ingested %s: %d rows, %d skipped", obj['Key'], rows_out, skipped)
        return stats
