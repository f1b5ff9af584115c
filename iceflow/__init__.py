from .errors import (
    IceFlowException, TransientIOError, ParseError, SchemaMismatchException, MergeConflictException,
    SchemaConflictException, NoLogFilesException
)
from .s3 import S3Client
from .log import TableLog, Schema, LogMetadata, LogTombstone, DataFile, get_log_file_info
from .table import IceTable, CompressionCodec, PartitionFunctionType
from .sessions import Session, SessionRollup, compute_sessions, build_rollup, compute_uptime
from .jobs import Job, JobState, JobStateStore, JobStatus, JobHealth, JobScheduler, RunStats
from .ingest import IngestReader
from .aggregator import SessionAggregator
from .writers import FlattenSessionsJob, DeviceUptimeJob
from .config import Config
from .pipeline import Pipeline, PipelineRun
