import os
import socket

from dotenv import load_dotenv

from .sessions import DEFAULT_GAP_SECONDS
from .table import CompressionCodec


def env_int(name: str, default: int) -> int:
    return int(os.environ[name]) if name in os.environ and os.environ[name].isdigit() else default


def env_bool(name: str, default: bool) -> bool:
    if name not in os.environ:
        return default
    return os.environ[name].strip().lower() in ("1", "true", "yes")


def env_str(name: str, default: str | None) -> str | None:
    return os.environ[name] if name in os.environ and os.environ[name] != "" else default


class Config:
    """
    Pipeline settings. `Config.from_env()` reads them from the environment, after loading a `.env` file if one
    exists.
    """
    s3_bucket: str
    s3_region: str
    s3_endpoint: str | None
    s3_access_key: str | None
    s3_secret_key: str | None
    table_prefix: str
    source_bucket: str
    source_prefix: str
    source_region: str
    source_endpoint: str | None
    source_access_key: str | None
    source_secret_key: str | None
    path_safe_hostname: str
    session_gap_sec: int
    run_interval_sec: int
    lookback_sec: int
    commit_settle_ms: int
    max_retries: int
    add_missing_columns: bool
    compression_codec: CompressionCodec

    def __init__(
            self,
            s3_bucket: str,
            s3_region: str = "us-east-1",
            s3_endpoint: str = None,
            s3_access_key: str = None,
            s3_secret_key: str = None,
            table_prefix: str = "iceflow",
            source_bucket: str = None,
            source_prefix: str = "",
            source_region: str = None,
            source_endpoint: str = None,
            source_access_key: str = None,
            source_secret_key: str = None,
            path_safe_hostname: str = None,
            session_gap_sec: int = DEFAULT_GAP_SECONDS,
            run_interval_sec: int = 60,
            lookback_sec: int = 60,
            commit_settle_ms: int = 5000,
            max_retries: int = 3,
            add_missing_columns: bool = True,
            compression_codec: CompressionCodec = CompressionCodec.SNAPPY
    ):
        self.s3_bucket = s3_bucket
        self.s3_region = s3_region
        self.s3_endpoint = s3_endpoint
        self.s3_access_key = s3_access_key
        self.s3_secret_key = s3_secret_key
        self.table_prefix = table_prefix
        # the source defaults to the same account as the tables
        self.source_bucket = source_bucket if source_bucket is not None else s3_bucket
        self.source_prefix = source_prefix.strip("/")
        self.source_region = source_region if source_region is not None else s3_region
        self.source_endpoint = source_endpoint if source_endpoint is not None else s3_endpoint
        self.source_access_key = source_access_key if source_access_key is not None else s3_access_key
        self.source_secret_key = source_secret_key if source_secret_key is not None else s3_secret_key
        self.path_safe_hostname = path_safe_hostname if path_safe_hostname is not None else \
            socket.gethostname().replace("_", "-").replace("/", "-")
        self.session_gap_sec = session_gap_sec
        self.run_interval_sec = run_interval_sec
        self.lookback_sec = lookback_sec
        self.commit_settle_ms = commit_settle_ms
        self.max_retries = max_retries
        self.add_missing_columns = add_missing_columns

        if not isinstance(compression_codec, CompressionCodec):
            raise AttributeError(f"invalid compression codec '{compression_codec}', must be one of type CompressionCodec")
        self.compression_codec = compression_codec

    @staticmethod
    def from_env(dotenv_path: str = None) -> "Config":
        load_dotenv(dotenv_path)
        return Config(
            s3_bucket=os.environ["S3_BUCKET"],
            s3_region=env_str("S3_REGION", "us-east-1"),
            s3_endpoint=env_str("S3_ENDPOINT", None),
            s3_access_key=env_str("S3_ACCESS_KEY", None),
            s3_secret_key=env_str("S3_SECRET_KEY", None),
            table_prefix=env_str("TABLE_PREFIX", "iceflow"),
            source_bucket=env_str("SOURCE_BUCKET", None),
            source_prefix=env_str("SOURCE_PREFIX", ""),
            source_region=env_str("SOURCE_REGION", None),
            source_endpoint=env_str("SOURCE_ENDPOINT", None),
            source_access_key=env_str("SOURCE_ACCESS_KEY", None),
            source_secret_key=env_str("SOURCE_SECRET_KEY", None),
            path_safe_hostname=env_str("HOSTNAME_ID", None),
            session_gap_sec=env_int("SESSION_GAP_SEC", DEFAULT_GAP_SECONDS),
            run_interval_sec=env_int("RUN_INTERVAL_SEC", 60),
            lookback_sec=env_int("LOOKBACK_SEC", 60),
            commit_settle_ms=env_int("COMMIT_SETTLE_MS", 5000),
            max_retries=env_int("MAX_RETRIES", 3),
            add_missing_columns=env_bool("ADD_MISSING_COLUMNS", True),
            compression_codec=CompressionCodec[env_str("COMPRESSION_CODEC", "SNAPPY").upper()]
        )
