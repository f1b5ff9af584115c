import json
import logging
from time import time
from typing import Dict
from uuid import uuid4

from .errors import SchemaConflictException, NoLogFilesException
from .s3 import S3Client

logger = logging.getLogger(__name__)


class Schema:
    """
    Accumulated schema. It is safe to pass in columns and types redundantly. Can raise a `SchemaConflictException`
    if conflicting types are passed in.
    """
    d = {}

    def __init__(self):
        self.d = {}

    def accumulate(self, columns: list[str], types: list[str]) -> bool:
        added = True
        for i in range(len(columns)):
            col = columns[i]
            colType = types[i]
            if col in self.d:
                added = False
                # NULL is what duckdb infers for a column that only holds nulls in one batch
                if colType == "NULL":
                    continue
                if self.d[col] == "NULL":
                    self.d[col] = colType
                    continue
                if colType != self.d[col]:
                    raise SchemaConflictException(col, [self.d[col], colType])
            self.d[col] = colType
        return added

    def merge(self, other: "Schema") -> bool:
        return self.accumulate(other.columns(), other.types())

    def columns(self) -> list[str]:
        return list(self.d.keys())

    def types(self) -> list[str]:
        return list(self.d.values())

    def missing(self, columns: list[str]) -> list[str]:
        return [col for col in columns if col not in self.d]

    def toJSON(self) -> str:
        return json.dumps(self.d)

    def __str__(self):
        return self.toJSON()

    def __repr__(self):
        return self.toJSON()

    def __getitem__(self, item):
        return self.d[item]

    def __contains__(self, item):
        return item in self.d


def SchemaFromJSON(d: dict) -> Schema:
    s = Schema()
    s.accumulate(list(d.keys()), list(d.values()))
    return s


class DataFile:
    """
    A parquet file referenced by the log. `createdMS` is when the file became part of the table, `tombstone` is set
    once a later log replaced it (merge, upsert rewrite, partition drop).
    """
    path: str
    createdMS: int
    fileBytes: int
    tombstone: int | None

    # Only used for reading state, not included in serialization
    vir_source_log_file: str | None

    def __init__(self, path: str, createdMS: int, fileBytes: int, tombstone: int = None):
        self.path = path
        self.createdMS = createdMS
        self.fileBytes = fileBytes
        self.tombstone = tombstone
        self.vir_source_log_file = None

    @property
    def alive(self) -> bool:
        return self.tombstone is None

    @property
    def partition(self) -> str:
        base_path = self.path.split("_data/")[1]
        # remove the file name
        return '/'.join(base_path.split("/")[:-1])

    def dict(self) -> dict:
        d = {
            "p": self.path,
            "b": self.fileBytes,
            "t": self.createdMS,
        }
        if self.tombstone is not None:
            d["tmb"] = self.tombstone
        return d

    def json(self) -> str:
        return json.dumps(self.dict())

    def __repr__(self):
        d = self.dict()
        if self.vir_source_log_file is not None:
            d["vir_source_log_file"] = self.vir_source_log_file
        return json.dumps(d)

    __str__ = __repr__


def DataFileFromJSON(d: dict) -> DataFile:
    return DataFile(d["p"], int(d["t"]), int(d["b"]), d["tmb"] if "tmb" in d else None)


class LogTombstone:
    path: str
    createdMS: int

    def __init__(self, path: str, createdMS: int):
        self.path = path
        self.createdMS = createdMS

    def toJSON(self) -> str:
        return json.dumps({
            "p": self.path,
            "t": self.createdMS
        })

    def __str__(self):
        return self.toJSON()

    def __repr__(self):
        return self.toJSON()


def LogTombstoneFromJSON(d: dict) -> LogTombstone:
    return LogTombstone(d["p"], int(d["t"]))


class LogMetadata:
    version: int
    schemaLineIndex: int
    fileLineIndex: int
    tombstoneLineIndex: int | None
    timestamp: int

    def __init__(self, version: int, schemaLineIndex: int, fileLineIndex: int, tombstoneLineIndex: int = None,
                 timestamp: int = None):
        self.version = version
        self.schemaLineIndex = schemaLineIndex
        self.fileLineIndex = fileLineIndex
        self.tombstoneLineIndex = tombstoneLineIndex
        self.timestamp = timestamp if timestamp is not None else round(time()*1000)

    def toJSON(self) -> str:
        d = {
            "v": self.version,
            "sch": self.schemaLineIndex,
            "f": self.fileLineIndex,
            "t": self.timestamp
        }
        if self.tombstoneLineIndex is not None:
            d["tmb"] = self.tombstoneLineIndex
        return json.dumps(d)

    def __str__(self):
        return self.toJSON()

    def __repr__(self):
        return self.toJSON()


def LogMetadataFromJSON(d: dict) -> LogMetadata:
    return LogMetadata(d["v"], d["sch"], d["f"], d["tmb"] if "tmb" in d else None, timestamp=d["t"])


class LogFile:
    """
    A parsed log file: metadata, schema, log tombstones and data files in file order
    """
    key: str
    meta: LogMetadata
    schema: Schema
    tombstones: list[LogTombstone]
    files: list[DataFile]

    def __init__(self, key: str, body: bytes):
        self.key = key
        jsonl = str(body, encoding="utf-8").split("\n")
        self.meta = LogMetadataFromJSON(json.loads(jsonl[0]))
        self.schema = SchemaFromJSON(dict(json.loads(jsonl[self.meta.schemaLineIndex])))
        self.tombstones = []
        if self.meta.tombstoneLineIndex is not None:
            for i in range(self.meta.tombstoneLineIndex, self.meta.fileLineIndex):
                self.tombstones.append(LogTombstoneFromJSON(dict(json.loads(jsonl[i]))))
        self.files = []
        for i in range(self.meta.fileLineIndex, len(jsonl)):
            if jsonl[i] == "":
                continue
            fm = DataFileFromJSON(dict(json.loads(jsonl[i])))
            fm.vir_source_log_file = key
            self.files.append(fm)


class TableLog:
    """
    Reads and appends the JSONL log of a single table. A log append is a single object put, which makes it the
    commit point of every table write: data files that no log references do not exist for readers.
    """
    path_safe_hostname: str
    last_timestamp: int

    def __init__(self, path_safe_hostname: str):
        self.path_safe_hostname = path_safe_hostname
        self.last_timestamp = 0

    def next_timestamp(self) -> int:
        """
        Monotonic commit timestamp for this writer, so two commits in the same millisecond still sort in order
        """
        ts = max(round(time() * 1000), self.last_timestamp + 1)
        self.last_timestamp = ts
        return ts

    def read_log_forward(self, s3client: S3Client, s3_files: list[str]) -> tuple[Schema, list[DataFile],
    list[LogTombstone]]:
        """
        Reads the current state of the log for a given set of files, later files override earlier markers
        for the same data file path.
        """
        if len(s3_files) == 0:
            raise NoLogFilesException

        total_schema = Schema()
        file_markers: Dict[str, DataFile] = {}
        tombstones: Dict[str, LogTombstone] = {}

        for file in sorted(s3_files, key=log_sort_key):
            log_file = LogFile(file, s3client.get_bytes(file))
            total_schema.merge(log_file.schema)
            for tmb in log_file.tombstones:
                tombstones[tmb.path] = tmb
            for fm in log_file.files:
                file_markers[fm.path] = fm

        return total_schema, list(file_markers.values()), list(tombstones.values())

    def get_current_log_files(self, s3client: S3Client) -> list[dict]:
        """
        Returns the list of known log files as S3 object dictionaries
        """
        return s3client.list_objects(s3client.key('_log') + '/')

    def read_at_max_time(self, s3client: S3Client, timestamp: int) -> tuple[Schema, list[DataFile],
    list[LogTombstone], list[str]]:
        """
        Read the state of the log up to a given timestamp (exclusive)
        """
        s3_files = self.get_current_log_files(s3client)
        s3_files = list(filter(lambda x: get_log_file_info(x['Key'])[0] < timestamp, s3_files))
        if len(s3_files) == 0:
            raise NoLogFilesException

        log_files = list(map(lambda x: x['Key'], s3_files))
        schema, file_markers, log_tombstones = self.read_log_forward(s3client, log_files)
        return schema, file_markers, log_tombstones, log_files

    def read_current(self, s3client: S3Client) -> tuple[Schema, list[DataFile], list[LogTombstone], list[str]]:
        s3_files = self.get_current_log_files(s3client)
        if len(s3_files) == 0:
            raise NoLogFilesException
        log_files = list(map(lambda x: x['Key'], s3_files))
        schema, file_markers, log_tombstones = self.read_log_forward(s3client, log_files)
        return schema, file_markers, log_tombstones, log_files

    def append(self, s3client: S3Client, version: int, schema: Schema, files: list[DataFile], tombstones: list[
        LogTombstone] = None, merged=False, timestamp: int = None, file_key: str = None) -> tuple[str, LogMetadata]:
        """
        Creates a new log file in S3, in the order of version, schema, tombstones?, files.
        `file_key` rewrites an existing log file in place (tombstone cleanup).
        """
        if timestamp is None:
            timestamp = self.next_timestamp()
        else:
            self.last_timestamp = max(self.last_timestamp, timestamp)

        has_tombstones = tombstones is not None and len(tombstones) > 0
        meta = LogMetadata(version, 1, 2+len(tombstones) if has_tombstones else 2,
                           2 if has_tombstones else None, timestamp=timestamp)
        log_file_lines: list[str] = [meta.toJSON(), schema.toJSON()]
        if has_tombstones:
            for tmb in tombstones:
                log_file_lines.append(tmb.toJSON())
        for data_file in files:
            log_file_lines.append(data_file.json())

        if file_key is None:
            file_id = f"{meta.timestamp}"
            if merged:
                file_id += "_m"
            file_id += f"_{self.path_safe_hostname}_{uuid4().hex[:8]}"
            file_key = s3client.key('_log', file_id + '.jsonl')

        s3client.put_bytes(file_key, bytes('\n'.join(log_file_lines), 'utf-8'))
        logger.debug("appended log %s with %d files and %d tombstones", file_key, len(files),
                     len(tombstones) if tombstones is not None else 0)
        return file_key, meta


def get_log_file_info(file_name: str) -> tuple[int, bool]:
    """
    Returns the timestamp of the file, and whether it was written by a merge
    """
    file_name = file_name.split("/")[-1]
    name_parts = file_name.split("_")
    file_ts = int(name_parts[0])
    merged = len(name_parts) > 2 and name_parts[1] == "m"
    return file_ts, merged


def log_sort_key(file_name: str) -> tuple[int, str]:
    return get_log_file_info(file_name)[0], file_name.split("/")[-1]
