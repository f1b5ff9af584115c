"""
Wires the device session pipeline together:

    source prefix --IngestReader--> event_raw_data --SessionAggregator--> event_rollup_sessions_lookup
    event_raw_data + rollups --FlattenSessionsJob--> event_logs_flatten_sessions (append)
    event_raw_data + rollups --DeviceUptimeJob--> event_logs_device_uptime (upsert by device)

Jobs share nothing in memory: they coordinate through the tables and their persisted watermarks only.
"""
import logging

from .aggregator import SessionAggregator, rollup_table
from .config import Config
from .ingest import IngestReader, event_table
from .jobs import Job, JobState, JobStateStore, JobScheduler, RunStats, ClockType, now_ms
from .s3 import S3Client
from .table import IceTable
from .writers import FlattenSessionsJob, DeviceUptimeJob, flatten_table, uptime_table

logger = logging.getLogger(__name__)


class TableMaintenanceJob(Job):
    """
    Compacts and tombstone cleans every table. Not windowed, each run works on the current state.
    """
    tables: list[IceTable]
    min_age_ms: int
    max_merges: int

    def __init__(self, tables: list[IceTable], store: JobStateStore, min_age_ms: int = 10 * 60 * 1000,
                 max_merges: int = 10, name: str = "table_maintenance", **kwargs):
        super().__init__(name, store, **kwargs)
        self.tables = tables
        self.min_age_ms = min_age_ms
        self.max_merges = max_merges

    def window_end(self, now: int) -> int:
        return now

    def process(self, state: JobState, start_ms: int, end_ms: int) -> RunStats:
        stats = RunStats(self.name, start_ms, end_ms)
        for table in self.tables:
            for _ in range(self.max_merges):
                merged_log, _, partition, merged_files, _ = table.merge()
                if merged_log is None:
                    break
                stats.rows_in += len(merged_files)
                stats.rows_out += 1
            _, _, deleted_data_files = table.tombstone_cleanup(self.min_age_ms)
            stats.skipped += len(deleted_data_files)
        return stats


class PipelineRun:
    """
    Stats of one pass over every job, by job name
    """
    stats: dict[str, RunStats | None]

    def __init__(self):
        self.stats = {}

    def __getitem__(self, item) -> RunStats | None:
        return self.stats[item]

    def rows_out(self, job: str) -> int:
        s = self.stats.get(job)
        return s.rows_out if s is not None else 0

    def __repr__(self):
        return f"PipelineRun({self.stats})"


class Pipeline:
    config: Config
    s3c: S3Client
    source: S3Client
    store: JobStateStore
    events: IceTable
    rollups: IceTable
    flattened: IceTable
    uptime: IceTable
    ingest_job: IngestReader
    aggregator: SessionAggregator
    flatten_job: FlattenSessionsJob
    uptime_job: DeviceUptimeJob
    maintenance_job: TableMaintenanceJob
    scheduler: JobScheduler

    def __init__(self, config: Config, s3_client: S3Client = None, source_client: S3Client = None,
                 clock: ClockType = now_ms):
        self.config = config
        self.s3c = s3_client if s3_client is not None else S3Client(
            config.table_prefix, config.s3_bucket, config.s3_region, config.s3_endpoint, config.s3_access_key,
            config.s3_secret_key, max_retries=config.max_retries)
        self.source = source_client if source_client is not None else S3Client(
            config.source_prefix, config.source_bucket, config.source_region, config.source_endpoint,
            config.source_access_key, config.source_secret_key, max_retries=config.max_retries)
        self.store = JobStateStore(self.s3c)

        host = config.path_safe_hostname
        codec = config.compression_codec
        self.events = event_table(self.s3c.with_prefix(self.s3c.key("event_raw_data")), host,
                                  add_missing_columns=config.add_missing_columns, compression_codec=codec)
        self.rollups = rollup_table(self.s3c.with_prefix(self.s3c.key("event_rollup_sessions_lookup")), host,
                                    compression_codec=codec)
        self.flattened = flatten_table(self.s3c.with_prefix(self.s3c.key("event_logs_flatten_sessions")), host,
                                       compression_codec=codec)
        self.uptime = uptime_table(self.s3c.with_prefix(self.s3c.key("event_logs_device_uptime")), host,
                                   compression_codec=codec)

        job_args = {
            "interval_sec": config.run_interval_sec,
            "commit_settle_ms": config.commit_settle_ms,
            "clock": clock,
        }
        self.ingest_job = IngestReader(self.source, self.events, self.store, **job_args)
        self.aggregator = SessionAggregator(self.events, self.rollups, self.store,
                                            gap_seconds=config.session_gap_sec, **job_args)
        self.flatten_job = FlattenSessionsJob(self.events, self.aggregator, self.flattened, self.store,
                                              lookback_ms=config.lookback_sec * 1000, **job_args)
        self.uptime_job = DeviceUptimeJob(self.events, self.aggregator, self.uptime, self.store, **job_args)
        self.maintenance_job = TableMaintenanceJob(self.tables(), self.store,
                                                   interval_sec=config.run_interval_sec * 10, clock=clock)
        self.scheduler = JobScheduler(self.jobs() + [self.maintenance_job])

    def tables(self) -> list[IceTable]:
        return [self.events, self.rollups, self.flattened, self.uptime]

    def jobs(self) -> list[Job]:
        """
        The pipeline jobs in dependency order
        """
        return [self.ingest_job, self.aggregator, self.flatten_job, self.uptime_job]

    def create_tables(self) -> list[str]:
        created = []
        for table in self.tables():
            if table.create():
                created.append(table.name)
        return created

    def run_once(self) -> PipelineRun:
        """
        Runs every job once, in dependency order. A failing job stops the pass, the jobs after it would only see
        what was committed before it anyway.
        """
        run = PipelineRun()
        for job in self.jobs():
            run.stats[job.name] = job.run_once()
        return run

    def maintain(self) -> RunStats | None:
        return self.maintenance_job.run_once()

    def start(self):
        self.create_tables()
        self.scheduler.start()
        logger.info("pipeline started, running every %ds", self.config.run_interval_sec)

    def stop(self):
        self.scheduler.stop()
        logger.info("pipeline stopped")

    def status(self) -> dict[str, dict]:
        out = {}
        for job in self.jobs() + [self.maintenance_job]:
            state = job.state()
            out[job.name] = {
                "status": job.status.value,
                "health": state.health.value,
                "watermark": state.watermark,
                "last_run": state.last_run,
                "last_error": state.last_error,
            }
        return out

    def teardown(self, delete_data: bool = True):
        """
        Stops the scheduler, drops every job's state, then drops the tables
        """
        self.stop()
        for job in self.jobs() + [self.maintenance_job]:
            job.drop()
        for table in [self.rollups, self.events, self.flattened, self.uptime]:
            table.drop(delete_data=delete_data)
        logger.info("pipeline torn down, delete_data=%s", delete_data)
