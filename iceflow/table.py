import concurrent.futures
import logging
import os
from copy import deepcopy
from enum import Enum
from threading import Lock
from time import time
from typing import Callable, Dict, List
from uuid import uuid4

import duckdb
import pyarrow as pa
import pyarrow.compute as pc
import pyarrow.parquet as pq

from .errors import NoLogFilesException, SchemaMismatchException
from .log import TableLog, Schema, LogMetadata, DataFile, LogTombstone, LogFile, get_log_file_info
from .s3 import S3Client

logger = logging.getLogger(__name__)

ROW_ID = "_row_id"
COMMIT_MS = "_commit_ms"
BOOKKEEPING_COLUMNS = {
    ROW_ID: pa.string(),
    COMMIT_MS: pa.int64(),
}
ROW_GROUP_SIZE = 122_880


class CompressionCodec(Enum):
    UNCOMPRESSED = "NONE"
    SNAPPY = "SNAPPY"
    ZSTD = "ZSTD"
    GZIP = "GZIP"


PartitionFunctionType = Callable[[dict], str]
PartitionRemovalFunctionType = Callable[[list[str]], list[str]]

DEDUPE_QUERY = f"""
select * from source_files
qualify row_number() over (partition by {ROW_ID} order by {COMMIT_MS} desc) = 1
"""


class IceTable:
    """
    A table of partitioned parquet files in S3, tracked by an append-only JSONL log under the same prefix.

    Every row carries `_row_id` and `_commit_ms`. `_commit_ms` is the commit time of the batch that wrote the row
    and survives merges, so incremental readers can select "rows committed in (start, end]" regardless of how the
    files were compacted since.
    """
    name: str
    partition_function: PartitionFunctionType
    sort_order: List[str]
    s3c: S3Client
    columns: Dict[str, pa.DataType]
    unique_row_key: str | None
    path_safe_hostname: str
    compression_codec: CompressionCodec
    add_missing_columns: bool
    max_threads: int
    logio: TableLog
    merge_lock: Lock

    def __init__(
            self,
            name: str,
            partition_function: PartitionFunctionType,
            sort_order: List[str],
            s3_client: S3Client,
            path_safe_hostname: str,
            columns: Dict[str, pa.DataType] = None,
            unique_row_key: str = None,
            compression_codec: CompressionCodec = CompressionCodec.SNAPPY,
            add_missing_columns: bool = True,
            max_threads: int = os.cpu_count()
    ):
        self.name = name
        self.partition_function = partition_function
        self.sort_order = sort_order
        self.s3c = s3_client
        self.path_safe_hostname = path_safe_hostname
        self.columns = dict(columns) if columns is not None else {}
        for col, col_type in BOOKKEEPING_COLUMNS.items():
            self.columns.setdefault(col, col_type)
        self.unique_row_key = unique_row_key
        self.add_missing_columns = add_missing_columns
        self.max_threads = max_threads
        self.logio = TableLog(path_safe_hostname)
        self.merge_lock = Lock()

        if not isinstance(compression_codec, CompressionCodec):
            raise AttributeError(f"invalid compression codec '{compression_codec}', must be one of type CompressionCodec")

        self.compression_codec = compression_codec

    def get_duckdb(self) -> duckdb.DuckDBPyConnection:
        """
        threadsafe creation of a duckdb session
        """
        return duckdb.connect(":memory:")

    def __str__(self):
        return f"IceTable({self.name}, s3://{self.s3c.s3bucket}/{self.s3c.key()})"

    # ------------------------------------------------------------------ schema

    def empty(self) -> pa.Table:
        return pa.schema([pa.field(col, col_type) for col, col_type in self.columns.items()]).empty_table()

    def conform(self, tbl: pa.Table) -> pa.Table:
        """
        Casts declared columns to their declared types and adds missing declared columns as nulls
        """
        for col, col_type in self.columns.items():
            idx = tbl.schema.get_field_index(col)
            if idx < 0:
                tbl = tbl.append_column(pa.field(col, col_type), pa.nulls(tbl.num_rows, type=col_type))
            elif tbl.schema.field(idx).type != col_type:
                tbl = tbl.set_column(idx, pa.field(col, col_type), tbl.column(idx).cast(col_type))
        return tbl

    def describe(self, tbl: pa.Table) -> Schema:
        running_schema = Schema()
        ddb = self.get_duckdb()
        ddb.register("_rows", tbl)
        schema_arrow = ddb.execute("describe select * from _rows").fetch_arrow_table()
        running_schema.accumulate(list(map(lambda x: str(x), schema_arrow.column('column_name'))),
                                  list(map(lambda x: str(x), schema_arrow.column('column_type'))))
        return running_schema

    def get_schema(self, rows: list[dict] = None) -> Schema:
        """
        Returns the schema a set of rows would be written with, or the declared schema when no rows are given
        """
        if rows is None or len(rows) == 0:
            return self.describe(self.empty())
        return self.describe(self.conform(pa.Table.from_pylist(rows)))

    def current_schema(self) -> Schema:
        schema, _, _, _ = self.logio.read_current(self.s3c)
        return schema

    def split_unknown_columns(self, rows: list[dict]) -> tuple[list[dict], list[dict]]:
        """
        Splits rows into (accepted, rejected) against the table's current schema. When the table adds missing
        columns every row is accepted.
        """
        if self.add_missing_columns:
            return rows, []
        schema = self.current_schema()
        accepted, rejected = [], []
        for row in rows:
            if len(schema.missing([k for k in row.keys() if k != "_partition"])) > 0:
                rejected.append(row)
            else:
                accepted.append(row)
        return accepted, rejected

    def _check_columns(self, rows: list[dict]):
        if self.add_missing_columns:
            return
        _, rejected = self.split_unknown_columns(rows)
        if len(rejected) > 0:
            schema = self.current_schema()
            unknown = sorted({col for row in rejected for col in schema.missing(list(row.keys()))})
            raise SchemaMismatchException(self.name, unknown)

    # ------------------------------------------------------------------ lifecycle

    def exists(self) -> bool:
        return len(self.logio.get_current_log_files(self.s3c)) > 0

    def create(self) -> bool:
        """
        Writes an empty log holding the declared schema, so the table exists before the first insert.
        Returns False if the table already existed.
        """
        if self.exists():
            return False
        self.logio.append(self.s3c, 1, self.get_schema(), [])
        logger.info("created table %s", self)
        return True

    def drop(self, delete_data: bool = False) -> int:
        """
        Drops every partition. With `delete_data` every object under the table prefix is deleted, including the log,
        otherwise the files are only tombstoned. Returns the number of objects deleted or files tombstoned.
        """
        with self.merge_lock:
            if not delete_data:
                _, _, removed = self._remove_partitions(lambda partitions: partitions, max_files=None)
                return removed
            deleted = 0
            for obj in self.s3c.list_objects(self.s3c.key() + '/'):
                self.s3c.delete(obj['Key'])
                deleted += 1
            logger.info("dropped table %s, deleted %d objects", self, deleted)
            return deleted

    # ------------------------------------------------------------------ state

    def current_files(self) -> tuple[Schema, list[DataFile], list[LogTombstone], list[str]]:
        return self.logio.read_current(self.s3c)

    def alive_files(self, partitions: list[str] = None) -> list[DataFile]:
        try:
            _, cur_files, _, _ = self.current_files()
        except NoLogFilesException:
            return []
        alive = list(filter(lambda x: x.alive, cur_files))
        if partitions is not None:
            wanted = set(partitions)
            alive = list(filter(lambda x: x.partition in wanted, alive))
        return alive

    def partitions(self) -> list[str]:
        return sorted({f.partition for f in self.alive_files()})

    # ------------------------------------------------------------------ writes

    def __data_path(self, partition: str, file_id: str = None) -> str:
        filename = (file_id if file_id is not None else str(uuid4())) + '.parquet'
        return self.s3c.key('_data', partition, filename)

    def __write_parquet(self, fullpath: str, tbl: pa.Table, query: str = None):
        """
        Runs the rows through the query (sorted by the sort order by default) and uploads the result as parquet
        """
        ddb = self.get_duckdb()
        ddb.register("_rows", tbl)
        ordered = ddb.execute(query if query is not None else "select * from _rows order by {}".format(
            ','.join(map(lambda c: f'"{c}"', self.sort_order)))).fetch_arrow_table()
        buf = pa.BufferOutputStream()
        pq.write_table(ordered, buf, compression=self.compression_codec.value, row_group_size=ROW_GROUP_SIZE)
        self.s3c.put_bytes(fullpath, buf.getvalue().to_pybytes())
        return ordered.num_rows

    def __insert_part(self, part: str, part_ref: list[dict], file_id: str | None) -> tuple[str, int, Schema]:
        fullpath = self.__data_path(part, file_id)

        for row in part_ref:
            if ROW_ID not in row:
                row[ROW_ID] = str(uuid4()) if self.unique_row_key is None else str(row[self.unique_row_key])

        # _commit_ms stays null in the file, readers take it from the log's commit time
        _rows = self.conform(pa.Table.from_pylist(part_ref))
        running_schema = self.describe(_rows)
        self.__write_parquet(fullpath, _rows)
        return fullpath, self.s3c.content_length(fullpath), running_schema

    def _partition_rows(self, rows: list[dict]) -> Dict[str, list[dict]]:
        part_map: Dict[str, list[dict]] = {}
        for row in rows:
            # rows get bookkeeping columns added, don't leak them back to the caller
            row = deepcopy(row)
            if "_partition" in row:
                part = row["_partition"]
                del row["_partition"]
            else:
                part = self.partition_function(row)

            if part not in part_map:
                part_map[part] = []
            part_map[part].append(row)
        return part_map

    def _committed_paths(self) -> set[str]:
        try:
            _, cur_files, _, _ = self.current_files()
        except NoLogFilesException:
            return set()
        return {f.path for f in cur_files}

    def insert(self, rows: list[dict], file_id: str = None) -> list[DataFile]:
        """
        Creates one file per partition and commits them with a single log append. Rows must have the keys the
        partition function and sort order expect.

        The commit time is taken once every file is uploaded, right before the log append, and becomes the
        `_commit_ms` of every inserted row.

        `file_id` makes the data file names deterministic (`<file_id>.parquet` in each partition), so a retried
        insert of the same source overwrites its own uncommitted files instead of adding new ones. Partitions whose
        file a log already references, alive or tombstoned by a later merge, were committed before and are skipped.
        """
        if len(rows) == 0:
            return []
        self._check_columns(rows)

        part_map = self._partition_rows(rows)
        if file_id is not None:
            committed = self._committed_paths()
            for part in [p for p in part_map.keys() if self.__data_path(p, file_id) in committed]:
                logger.debug("%s already committed to %s, skipping", self.__data_path(part, file_id), self.name)
                del part_map[part]
            if len(part_map) == 0:
                return []
        running_schema = Schema()
        uploaded: list[tuple[str, int]] = []

        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_threads) as executor:
            futures = []
            for part, part_ref in part_map.items():
                futures.append(executor.submit(self.__insert_part, part, part_ref, file_id))

            for future in concurrent.futures.as_completed(futures):
                fullpath, file_bytes, schema = future.result()
                uploaded.append((fullpath, file_bytes))
                running_schema.merge(schema)

        commit_ms = self.logio.next_timestamp()
        file_markers = [DataFile(fullpath, commit_ms, file_bytes) for fullpath, file_bytes in uploaded]
        self.logio.append(self.s3c, 1, running_schema, file_markers, timestamp=commit_ms)
        logger.debug("inserted %d rows into %d files of %s at %d", len(rows), len(file_markers), self.name,
                     commit_ms)
        return file_markers

    def upsert(self, rows: list[dict], key: str, commit_ms: int = None) -> tuple[str | None, list[DataFile]]:
        """
        Insert-or-replace by `key`: after the call every key in `rows` has exactly one live row, the one given here.

        Each affected partition is rewritten into a single new file holding the existing rows plus the new ones,
        keeping the newest row per key. The old files are tombstoned and the new ones added in the same log append,
        which is the only commit point: a failure before it leaves the table untouched, and a reader sees either
        the whole batch or none of it.

        Returns the new log file and the new data files.
        """
        if len(rows) == 0:
            return None, []
        with self.merge_lock:
            self._check_columns(rows)
            if commit_ms is None:
                commit_ms = self.logio.next_timestamp()

            part_map = self._partition_rows(rows)
            for part_ref in part_map.values():
                for row in part_ref:
                    row[ROW_ID] = str(row[key])
                    row[COMMIT_MS] = commit_ms

            cur_schema, cur_files, _, all_log_files = self.current_files()
            alive_by_partition: Dict[str, list[DataFile]] = {}
            for f in cur_files:
                if f.alive:
                    alive_by_partition.setdefault(f.partition, []).append(f)

            running_schema = Schema()
            running_schema.merge(cur_schema)
            replaced_paths: set[str] = set()
            new_files: list[DataFile] = []
            for part, part_ref in part_map.items():
                old_files = alive_by_partition.get(part, [])
                incoming = self.conform(pa.Table.from_pylist(part_ref))
                running_schema.merge(self.describe(incoming))
                existing = self._read_files(old_files)

                ddb = self.get_duckdb()
                ddb.register("_incoming", incoming)
                ddb.register("_existing", existing)
                combined = ddb.execute(f"""
                    select * exclude (_upsert_new, _upsert_rank) from (
                        select *, row_number() over (
                            partition by "{key}" order by _upsert_new desc, {COMMIT_MS} desc
                        ) as _upsert_rank
                        from (
                            select *, 1 as _upsert_new from _incoming
                            union all by name
                            select *, 0 as _upsert_new from _existing
                        )
                    )
                    where _upsert_rank = 1
                """).fetch_arrow_table()

                fullpath = self.__data_path(part)
                self.__write_parquet(fullpath, self.conform(combined))
                new_files.append(DataFile(fullpath, commit_ms, self.s3c.content_length(fullpath)))
                replaced_paths.update(map(lambda x: x.path, old_files))

            new_log, _ = self._checkpoint(running_schema, cur_files, all_log_files, replaced_paths, new_files,
                                          commit_ms)
            logger.debug("upserted %d rows into %d partitions of %s", len(rows), len(part_map), self.name)
            return new_log, new_files

    def _checkpoint(self, schema: Schema, cur_files: list[DataFile], log_files: list[str], tombstone_paths: set[str],
                    new_files: list[DataFile], timestamp: int) -> tuple[str, LogMetadata]:
        """
        Writes a merged log holding the full state read from `log_files`, with `tombstone_paths` tombstoned and
        `new_files` added. Every log it was built from gets a log tombstone for cleanup.
        """
        updated_markers = list(map(lambda x: DataFile(
            x.path,
            x.createdMS,
            x.fileBytes,
            timestamp if x.path in tombstone_paths and x.tombstone is None else x.tombstone),
                                   cur_files))
        log_tombstones = list(map(lambda x: LogTombstone(x, timestamp), log_files))
        return self.logio.append(
            self.s3c,
            1,
            schema,
            updated_markers + new_files,
            log_tombstones,
            merged=True,
            timestamp=timestamp
        )

    # ------------------------------------------------------------------ reads

    def _read_file(self, data_file: DataFile) -> pa.Table:
        tbl = self.conform(pq.read_table(pa.BufferReader(self.s3c.get_bytes(data_file.path))))
        idx = tbl.schema.get_field_index(COMMIT_MS)
        if tbl.column(idx).null_count > 0:
            # inserted rows inherit the commit time of the log that added their file
            tbl = tbl.set_column(idx, tbl.schema.field(idx), pc.fill_null(tbl.column(idx), data_file.createdMS))
        return tbl

    def _read_files(self, files: list[DataFile]) -> pa.Table:
        if len(files) == 0:
            return self.empty()
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_threads) as executor:
            tables = list(executor.map(self._read_file, files))
        return pa.concat_tables(tables, promote_options="default")

    def query(self, tbl: pa.Table, query: str, params: list = None) -> pa.Table:
        """
        Runs a duckdb query against the given rows, registered as `_rows`
        """
        ddb = self.get_duckdb()
        ddb.register("_rows", tbl)
        return ddb.execute(query, params).fetch_arrow_table() if params is not None else \
            ddb.execute(query).fetch_arrow_table()

    def scan(self, partitions: list[str] = None, where: str = None, params: list = None) -> pa.Table:
        """
        Returns the live rows of the table (or of the given partitions), one per `_row_id`.
        `where` is a SQL predicate over the table's columns.
        """
        rows = self._read_files(self.alive_files(partitions))
        query = f"""
            select * from _rows
            {"where " + where if where is not None else ""}
            qualify row_number() over (partition by {ROW_ID} order by {COMMIT_MS} desc) = 1
        """
        return self.query(rows, query, params)

    def read_window(self, start_ms: int, end_ms: int) -> pa.Table:
        """
        Rows whose commit time is in (start_ms, end_ms]. Files created at or before `start_ms` can only hold rows
        committed before it, so they are not read.
        """
        files = list(filter(lambda x: x.createdMS > start_ms, self.alive_files()))
        rows = self._read_files(files)
        return self.query(rows, f"""
            select * from _rows
            where {COMMIT_MS} > ? and {COMMIT_MS} <= ?
            qualify row_number() over (partition by {ROW_ID} order by {COMMIT_MS}) = 1
            order by {COMMIT_MS}
        """, [start_ms, end_ms])

    def count(self) -> int:
        return self.scan().num_rows

    # ------------------------------------------------------------------ maintenance

    def merge(self, max_file_size=10_000_000, max_file_count=10, asc=False, custom_merge_query: str = None) -> tuple[
        str | None, DataFile | None, str | None, list[DataFile], LogMetadata | None]:
        """
        Compacts small files of a single partition into one. desc merge should be fast, working on active
        partitions. asc merge should be slow and in background, slowly fully optimizes partitions over time.

        The merge query reads from `source_files` and must keep `_row_id` and `_commit_ms`. By default duplicate
        `_row_id`s are collapsed to the latest commit.

        Returns new_log, new_file_marker, partition, merged_file_markers, meta
        """
        with self.merge_lock:
            try:
                cur_schema, cur_files, _, all_log_files = self.current_files()
            except NoLogFilesException:
                return None, None, None, [], None

            partitions: Dict[str, list[DataFile]] = {}
            for file in cur_files:
                if not file.alive:
                    continue
                partitions.setdefault(file.partition, []).append(file)

            partitions = dict(sorted(partitions.items(), key=lambda item: len(item[1]), reverse=not asc))
            for partition, file_markers in partitions.items():
                if len(file_markers) <= 1:
                    continue
                # sort by file size asc, aggregate until we meet the max file count or size
                sorted_file_markers = sorted(file_markers, key=lambda item: item.fileBytes)
                acc_bytes = 0
                acc_file_markers: list[DataFile] = []
                for file_marker in sorted_file_markers:
                    acc_bytes += file_marker.fileBytes
                    acc_file_markers.append(file_marker)
                    if acc_bytes >= max_file_size or len(acc_file_markers) > 1 and len(
                            acc_file_markers) >= max_file_count:
                        break
                if len(acc_file_markers) <= 1:
                    continue

                q = custom_merge_query or DEDUPE_QUERY
                fullpath = self.__data_path(partition)
                source = self._read_files(acc_file_markers)
                self.__write_parquet(fullpath, source, q.replace("source_files", "_rows"))

                merged_time = self.logio.next_timestamp()
                new_file_marker = DataFile(fullpath, merged_time, self.s3c.content_length(fullpath))
                new_log, meta = self._checkpoint(cur_schema, cur_files, all_log_files,
                                                 set(map(lambda x: x.path, acc_file_markers)), [new_file_marker],
                                                 merged_time)
                logger.info("merged %d files of %s partition %s", len(acc_file_markers), self.name, partition)
                return new_log, new_file_marker, partition, acc_file_markers, meta

            # otherwise we did not merge
            return None, None, None, [], None

    def tombstone_cleanup(self, min_age_ms: int) -> tuple[list[str], list[str], list[str]]:
        """
        Removes data files and log files that were tombstoned at least `min_age_ms` ago.

        Files are deleted optimistically, so a crash in the middle of a cleanup can leave objects in S3 that the
        log already considers gone.

        Returns the list of log files that were cleaned, log files that were deleted, and data files that
        were deleted
        """
        with self.merge_lock:
            cleaned_log_files: list[str] = []
            deleted_log_files: list[str] = []
            deleted_data_files: list[str] = []
            now = max(round(time() * 1000), self.logio.last_timestamp)

            current_log_files = self.logio.get_current_log_files(self.s3c)
            # a path a newer log marks alive again is still referenced, keep it
            alive_paths = {f.path for f in self.alive_files()}
            # only merge logs carry tombstones, newest first so superseded checkpoints are deleted before reading
            merge_log_files = sorted(filter(lambda x: get_log_file_info(x['Key'])[1], current_log_files),
                                     key=lambda x: get_log_file_info(x['Key'])[0], reverse=True)
            for file in merge_log_files:
                if file['Key'] in deleted_log_files:
                    continue
                log_file = LogFile(file['Key'], self.s3c.get_bytes(file['Key']))

                log_files_to_delete = [tmb.path for tmb in log_file.tombstones
                                       if tmb.createdMS <= now - min_age_ms and tmb.path != file['Key']
                                       and tmb.path not in deleted_log_files]
                for log_path in log_files_to_delete:
                    self.s3c.delete(log_path)

                file_paths_to_delete = [x.path for x in log_file.files
                                        if x.tombstone is not None and x.tombstone <= now - min_age_ms
                                        and x.path not in alive_paths]
                for data_path in file_paths_to_delete:
                    if data_path not in deleted_data_files:
                        self.s3c.delete(data_path)

                remaining_tombstones = [tmb for tmb in log_file.tombstones
                                        if tmb.path not in log_files_to_delete and tmb.path != file['Key']]
                self.logio.append(
                    self.s3c,
                    1,
                    log_file.schema,
                    [x for x in log_file.files if x.path not in file_paths_to_delete],
                    remaining_tombstones,
                    merged=True,
                    timestamp=log_file.meta.timestamp,
                    file_key=file['Key']
                )
                cleaned_log_files.append(file['Key'])
                deleted_log_files += log_files_to_delete
                deleted_data_files += [p for p in file_paths_to_delete if p not in deleted_data_files]

            if len(deleted_data_files) > 0 or len(deleted_log_files) > 0:
                logger.info("tombstone cleanup of %s deleted %d log files and %d data files", self.name,
                            len(deleted_log_files), len(deleted_data_files))
            return cleaned_log_files, deleted_log_files, deleted_data_files

    def remove_partitions(self, removal_func: PartitionRemovalFunctionType, max_files=1000) -> tuple[
        str | None, LogMetadata | None, int]:
        """
        Drops entire partitions for functionality such as TTL or user data deletion. The `removal_func` is provided
        the list of live partitions and must return the ones that should be dropped. Their files are tombstoned in a
        log-only merge.

        Returns the new log file path, the log file metadata, and the number of data files tombstoned
        """
        with self.merge_lock:
            return self._remove_partitions(removal_func, max_files)

    def _remove_partitions(self, removal_func: PartitionRemovalFunctionType, max_files: int | None) -> tuple[
        str | None, LogMetadata | None, int]:
        try:
            cur_schema, cur_files, _, all_log_files = self.current_files()
        except NoLogFilesException:
            return None, None, 0

        partitions: Dict[str, list[DataFile]] = {}
        for file in filter(lambda x: x.alive, cur_files):
            partitions.setdefault(file.partition, []).append(file)

        partitions_to_remove = removal_func(list(partitions.keys()))
        if len(partitions_to_remove) == 0:
            return None, None, 0

        removed_paths: set[str] = set()
        for partition in partitions_to_remove:
            for file_marker in partitions.get(partition, []):
                removed_paths.add(file_marker.path)
            if max_files is not None and len(removed_paths) >= max_files:
                break

        if len(removed_paths) == 0:
            return None, None, 0

        remove_time = self.logio.next_timestamp()
        new_log, meta = self._checkpoint(cur_schema, cur_files, all_log_files, removed_paths, [], remove_time)
        logger.info("removed %d files from %d partitions of %s", len(removed_paths), len(partitions_to_remove),
                    self.name)
        return new_log, meta, len(removed_paths)
