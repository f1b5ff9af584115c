from copy import deepcopy

import pyarrow as pa
import pytest

from iceflow.errors import SchemaMismatchException
from iceflow.log import DataFile, get_log_file_info
from iceflow.table import IceTable, CompressionCodec


def part_func(row: dict) -> str:
    return f"d={row['day']}"


def make_table(s3c, **kwargs) -> IceTable:
    return IceTable(
        "things",
        part_func,
        ["key", "ts"],
        s3c.with_prefix(s3c.key("things")),
        "dan-mbp",
        columns={"key": pa.string(), "day": pa.string(), "ts": pa.int64(), "value": pa.string()},
        compression_codec=CompressionCodec.ZSTD,
        **kwargs
    )


example_rows = [
    {"key": "a", "day": "2023-01-01", "ts": 1, "value": "one"},
    {"key": "b", "day": "2023-01-01", "ts": 2, "value": "two"},
    {"key": "c", "day": "2023-01-02", "ts": 3, "value": "three"},
]


def test_create_and_schema(s3c):
    tbl = make_table(s3c)
    assert not tbl.exists()
    assert tbl.create()
    assert not tbl.create()
    assert tbl.count() == 0
    schema = tbl.current_schema()
    assert schema["ts"] == "BIGINT"
    assert schema["_row_id"] == "VARCHAR"
    assert schema["_commit_ms"] == "BIGINT"

    with pytest.raises(AttributeError):
        IceTable("things", part_func, ["key"], s3c, "dan-mbp", compression_codec="zstd")


def test_insert_scan(s3c):
    tbl = make_table(s3c)
    tbl.create()
    rows = deepcopy(example_rows)
    inserted = tbl.insert(rows)
    assert len(inserted) == 2
    assert sorted(f.partition for f in inserted) == ["d=2023-01-01", "d=2023-01-02"]
    # the caller's rows are untouched
    assert rows == example_rows

    assert tbl.count() == 3
    assert tbl.partitions() == ["d=2023-01-01", "d=2023-01-02"]

    only = tbl.scan(partitions=["d=2023-01-02"])
    assert only.column("key").to_pylist() == ["c"]

    filtered = tbl.scan(where="list_contains(?, key)", params=[["a", "c"]])
    assert sorted(filtered.column("key").to_pylist()) == ["a", "c"]

    # inserted rows take the commit time of their file
    commits = set(tbl.scan().column("_commit_ms").to_pylist())
    assert commits == {inserted[0].createdMS}


def test_read_window(s3c):
    tbl = make_table(s3c)
    tbl.create()
    first = tbl.insert(deepcopy(example_rows[:2]))[0].createdMS
    second = tbl.insert(deepcopy(example_rows[2:]))[0].createdMS
    assert second > first

    assert sorted(tbl.read_window(0, first).column("key").to_pylist()) == ["a", "b"]
    assert tbl.read_window(first, second).column("key").to_pylist() == ["c"]
    assert tbl.read_window(second, second + 1000).num_rows == 0
    assert tbl.read_window(0, second).num_rows == 3


def test_window_survives_merge(s3c):
    tbl = make_table(s3c)
    tbl.create()
    first = tbl.insert([{"key": "a", "day": "2023-01-01", "ts": 1, "value": "one"}])[0].createdMS
    second = tbl.insert([{"key": "b", "day": "2023-01-01", "ts": 2, "value": "two"}])[0].createdMS

    new_log, new_file, partition, merged_files, _ = tbl.merge()
    assert new_log is not None
    assert partition == "d=2023-01-01"
    assert len(merged_files) == 2
    assert get_log_file_info(new_log)[1]
    assert len(tbl.alive_files()) == 1

    # the merged file is newer than both inserts but its rows keep their own commit times
    assert new_file.createdMS > second
    assert tbl.read_window(first, second).column("key").to_pylist() == ["b"]
    assert tbl.read_window(0, first).column("key").to_pylist() == ["a"]
    assert tbl.read_window(second, new_file.createdMS).num_rows == 0


def test_merge_dedupes_row_ids(s3c):
    tbl = make_table(s3c)
    tbl.create()
    row = {"key": "a", "day": "2023-01-01", "ts": 1, "value": "one", "_row_id": "fixed"}
    tbl.insert([dict(row)])
    tbl.insert([dict(row)])
    assert tbl.count() == 1
    tbl.merge()
    assert tbl.count() == 1
    assert tbl.merge()[0] is None


def test_tombstone_cleanup(s3c):
    tbl = make_table(s3c)
    tbl.create()
    tbl.insert(deepcopy(example_rows[:1]))
    tbl.insert(deepcopy(example_rows[1:2]))
    tbl.merge()

    cleaned, deleted_logs, deleted_data = tbl.tombstone_cleanup(0)
    assert len(cleaned) == 1
    # create log and both insert logs
    assert len(deleted_logs) == 3
    assert len(deleted_data) == 2
    assert len(tbl.logio.get_current_log_files(tbl.s3c)) == 1
    assert sorted(tbl.scan().column("key").to_pylist()) == ["a", "b"]

    # nothing left to clean
    _, deleted_logs, deleted_data = tbl.tombstone_cleanup(0)
    assert deleted_logs == []
    assert deleted_data == []


def test_cleanup_after_two_merges(s3c):
    tbl = make_table(s3c)
    tbl.create()
    for i in range(3):
        tbl.insert([{"key": str(i), "day": "2023-01-01", "ts": i, "value": "v"}])
    tbl.merge(max_file_count=2)
    tbl.merge(max_file_count=2)
    assert len(tbl.alive_files()) == 1

    tbl.tombstone_cleanup(0)
    assert len(tbl.logio.get_current_log_files(tbl.s3c)) == 1
    data_objects = tbl.s3c.list_objects(tbl.s3c.key("_data") + "/")
    assert len(data_objects) == 1
    assert tbl.count() == 3


def test_upsert(s3c):
    tbl = make_table(s3c, unique_row_key="key")
    tbl.create()
    tbl.insert(deepcopy(example_rows))

    new_log, new_files = tbl.upsert([{"key": "a", "day": "2023-01-01", "ts": 10, "value": "ONE"},
                                     {"key": "d", "day": "2023-01-01", "ts": 11, "value": "four"}], key="key")
    assert new_log is not None
    assert len(new_files) == 1
    rows = {r["key"]: r for r in tbl.scan().to_pylist()}
    assert sorted(rows.keys()) == ["a", "b", "c", "d"]
    assert rows["a"]["value"] == "ONE"
    assert rows["b"]["value"] == "two"
    # untouched partitions keep their files
    assert len(tbl.alive_files(["d=2023-01-02"])) == 1
    assert len(tbl.alive_files(["d=2023-01-01"])) == 1

    # upserting the same rows again changes nothing but the commit time
    tbl.upsert([{"key": "a", "day": "2023-01-01", "ts": 10, "value": "ONE"}], key="key")
    assert tbl.count() == 4

    assert tbl.upsert([], key="key") == (None, [])


def test_upsert_is_atomic(s3c, monkeypatch):
    tbl = make_table(s3c, unique_row_key="key")
    tbl.create()
    tbl.insert(deepcopy(example_rows))
    before = sorted(tbl.scan().column("value").to_pylist())

    def fail(*args, **kwargs):
        raise RuntimeError("killed before commit")

    with monkeypatch.context() as m:
        m.setattr(tbl.logio, "append", fail)
        with pytest.raises(RuntimeError):
            tbl.upsert([{"key": "a", "day": "2023-01-01", "ts": 10, "value": "ONE"},
                        {"key": "c", "day": "2023-01-02", "ts": 10, "value": "THREE"}], key="key")

    assert sorted(tbl.scan().column("value").to_pylist()) == before


def test_strict_columns(s3c):
    tbl = make_table(s3c, add_missing_columns=False)
    tbl.create()
    with pytest.raises(SchemaMismatchException) as e:
        tbl.insert([{"key": "a", "day": "2023-01-01", "ts": 1, "value": "one", "surprise": "x"}])
    assert e.value.columns == ["surprise"]

    accepted, rejected = tbl.split_unknown_columns([
        {"key": "a", "day": "2023-01-01", "ts": 1},
        {"key": "b", "day": "2023-01-01", "ts": 1, "surprise": "x"},
    ])
    assert len(accepted) == 1
    assert len(rejected) == 1

    # missing declared columns are fine and come back as nulls
    tbl.insert([{"key": "a", "day": "2023-01-01", "ts": 1}])
    assert tbl.scan().column("value").to_pylist() == [None]


def test_new_columns_are_added(s3c):
    tbl = make_table(s3c)
    tbl.create()
    tbl.insert([{"key": "a", "day": "2023-01-01", "ts": 1, "extra": "x"}])
    tbl.insert([{"key": "b", "day": "2023-01-01", "ts": 2}])
    assert tbl.current_schema()["extra"] == "VARCHAR"
    rows = {r["key"]: r for r in tbl.scan().to_pylist()}
    assert rows["a"]["extra"] == "x"
    assert rows["b"]["extra"] is None


def test_remove_partitions(s3c):
    tbl = make_table(s3c)
    tbl.create()
    tbl.insert(deepcopy(example_rows))
    _, _, removed = tbl.remove_partitions(lambda parts: [p for p in parts if p == "d=2023-01-01"])
    assert removed == 1
    assert tbl.partitions() == ["d=2023-01-02"]

    # removed files stay removed once their logs are cleaned up
    tbl.tombstone_cleanup(0)
    assert tbl.partitions() == ["d=2023-01-02"]
    assert tbl.count() == 1


def test_drop(s3c):
    tbl = make_table(s3c)
    tbl.create()
    tbl.insert(deepcopy(example_rows))
    assert tbl.drop() == 2
    assert tbl.count() == 0
    assert tbl.exists()

    assert tbl.drop(delete_data=True) > 0
    assert not tbl.exists()
    assert tbl.s3c.list_objects(tbl.s3c.key() + "/") == []


def test_reinsert_after_merge_is_skipped(s3c):
    tbl = make_table(s3c)
    tbl.create()
    batch = [example_rows[0], example_rows[2]]
    assert len(tbl.insert(deepcopy(batch), file_id="batch-1")) == 2
    tbl.insert(deepcopy(example_rows[1:2]))
    _, _, partition, merged_files, _ = tbl.merge()
    assert partition == "d=2023-01-01"
    assert len(merged_files) == 2

    # one file of the batch is tombstoned by the merge, the other is still live, both were committed
    assert tbl.insert(deepcopy(batch), file_id="batch-1") == []
    assert tbl.count() == 3

    tbl.tombstone_cleanup(0)
    assert tbl.count() == 3
    assert sorted(tbl.scan().column("key").to_pylist()) == ["a", "b", "c"]


def test_cleanup_keeps_paths_marked_alive_again(s3c):
    tbl = make_table(s3c)
    tbl.create()
    tbl.insert(deepcopy(example_rows[:1]))
    tbl.insert(deepcopy(example_rows[1:2]))
    tbl.merge()

    schema, cur_files, _, _ = tbl.current_files()
    tombstoned = [f for f in cur_files if not f.alive]
    assert len(tombstoned) == 2
    revived = tombstoned[0]
    tbl.logio.append(tbl.s3c, 1, schema, [DataFile(revived.path, tbl.logio.next_timestamp(), revived.fileBytes)])
    assert revived.path in [f.path for f in tbl.alive_files()]

    _, _, deleted_data = tbl.tombstone_cleanup(0)
    assert revived.path not in deleted_data
    assert len(deleted_data) == 1
    assert tbl.s3c.exists(revived.path)
    assert sorted(tbl.scan().column("key").to_pylist()) == ["a", "b"]


def test_custom_merge_query(s3c):
    tbl = make_table(s3c)
    tbl.create()
    tbl.insert([{"key": "a", "day": "2023-01-01", "ts": 1, "value": "one"}])
    tbl.insert([{"key": "a", "day": "2023-01-01", "ts": 2, "value": "two"}])
    assert tbl.count() == 2

    # keep only the latest row per key
    replacing = """
    select * from source_files
    qualify row_number() over (partition by key order by ts desc) = 1
    """
    new_log, _, _, merged_files, _ = tbl.merge(custom_merge_query=replacing)
    assert new_log is not None
    assert len(merged_files) == 2
    assert tbl.scan().column("value").to_pylist() == ["two"]
