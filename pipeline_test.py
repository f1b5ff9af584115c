import threading

import pytest

from conftest import BUCKET, SOURCE_BUCKET
from iceflow.config import Config
from iceflow.errors import TransientIOError
from iceflow.jobs import JobHealth
from iceflow.pipeline import Pipeline

FIRST_BATCH = b"""device,att1,att2,dt_updated
A,red,1,2023-01-01 00:00
A,red,1,2023-01-01 00:05
B,blue,7,2023-01-01 00:10
A,green,2,2023-01-01 00:20
A,green,3,2023-01-01 00:25
C,,,garbage
"""

SECOND_BATCH = b"""device,att1,att2,dt_updated
A,yellow,4,2023-01-01 00:35
"""


def put_source(s3, key: str, body: bytes):
    s3.put_object(Bucket=SOURCE_BUCKET, Key=f"incoming/{key}", Body=body)


def make_pipeline(s3c, source, **kwargs) -> Pipeline:
    config = Config(
        s3_bucket=BUCKET,
        table_prefix="tenant",
        source_bucket=SOURCE_BUCKET,
        source_prefix="incoming",
        path_safe_hostname="dan-mbp",
        commit_settle_ms=0,
        **kwargs
    )
    p = Pipeline(config, s3_client=s3c, source_client=source)
    p.create_tables()
    return p


def uptime_rows(p: Pipeline) -> dict[str, dict]:
    return {r["device"]: r for r in p.uptime.scan().to_pylist()}


def flatten_rows(p: Pipeline) -> list[tuple]:
    return sorted((r["device"], r["s_sessions_15m_starttime"], r["s_sessions_15m_endtime"], r["session_minutes"])
                  for r in p.flattened.scan().to_pylist())


def test_end_to_end(s3, s3c, source):
    p = make_pipeline(s3c, source)
    put_source(s3, "batch-1.csv", FIRST_BATCH)

    run = p.run_once()
    assert run["event_staging_job"].rows_out == 5
    assert run["event_staging_job"].skipped == 1
    assert run.rows_out("event_rollup_sessions_lookup") == 2
    assert p.events.count() == 5

    rollups = p.aggregator.lookup(["A", "B", "nope"])
    assert sorted(rollups.keys()) == ["A", "B"]
    assert [(s.start_time, s.end_time) for s in rollups["A"].sessions] == [(1672531200, 1672531500),
                                                                           (1672532400, 1672532700)]

    assert flatten_rows(p) == [
        ("A", "2023-01-01 00:00:00", "2023-01-01 00:05:00", 5.0),
        ("A", "2023-01-01 00:20:00", "2023-01-01 00:25:00", 5.0),
        ("B", "2023-01-01 00:10:00", "2023-01-01 00:10:00", 0.0),
    ]
    flat_a = [r for r in p.flattened.scan().to_pylist() if r["device"] == "A"]
    # attributes come from the device's latest event in the batch
    assert {(r["att1"], r["att2"]) for r in flat_a} == {("green", "3")}

    uptime = uptime_rows(p)
    assert sorted(uptime.keys()) == ["A", "B"]
    assert uptime["A"]["uptime"] == pytest.approx(0.4)
    assert uptime["A"]["first_seen_date"] == "2023-01-01 00:00:00"
    assert uptime["A"]["last_seen_date"] == "2023-01-01 00:25:00"
    assert uptime["A"]["att1"] == "green"
    assert uptime["B"]["uptime"] is None

    status = p.status()
    assert all(s["health"] == JobHealth.HEALTHY.value for s in status.values())
    assert status["event_logs_device_uptime"]["watermark"] > 0


def test_rerun_is_idempotent(s3, s3c, source):
    p = make_pipeline(s3c, source)
    put_source(s3, "batch-1.csv", FIRST_BATCH)
    p.run_once()
    before = flatten_rows(p)

    # the flatten lookback rescans the same events, nothing is written twice
    run = p.run_once()
    assert run["event_staging_job"].rows_out == 0
    assert run.rows_out("event_logs_flatten_sessions") == 0
    assert flatten_rows(p) == before
    assert p.events.count() == 5
    assert len(uptime_rows(p)) == 2

    # a source object is only ingested again when it changes
    put_source(s3, "batch-1.csv", FIRST_BATCH + b"D,x,1,2023-01-02 00:00\n")
    run = p.run_once()
    assert run["event_staging_job"].rows_out == 6
    # same object, same row ids, the earlier copy is replaced by its row ids
    assert p.events.count() == 6
    assert sorted(uptime_rows(p).keys()) == ["A", "B", "D"]


def test_late_events_update_sessions(s3, s3c, source):
    p = make_pipeline(s3c, source)
    put_source(s3, "batch-1.csv", FIRST_BATCH)
    p.run_once()
    put_source(s3, "batch-2.csv", SECOND_BATCH)
    p.run_once()

    rollup = p.aggregator.lookup(["A"])["A"]
    # 00:35 is 10 minutes after 00:25, so it extends the second session
    assert [(s.start_time, s.end_time) for s in rollup.sessions] == [(1672531200, 1672531500),
                                                                     (1672532400, 1672533300)]
    uptime = uptime_rows(p)
    assert len(uptime) == 2
    assert uptime["A"]["uptime"] == pytest.approx((5 + 15) / 35)
    assert uptime["A"]["att1"] == "yellow"
    # B was not in the second batch and keeps its row
    assert uptime["B"]["uptime"] is None

    rows = flatten_rows(p)
    assert ("A", "2023-01-01 00:20:00", "2023-01-01 00:35:00", 15.0) in rows
    assert len(rows) == 4

    # compaction does not change what readers see
    p.maintain()
    assert uptime_rows(p) == uptime
    assert flatten_rows(p) == rows
    assert p.events.count() == 6


def test_restart_after_failed_upsert(s3, s3c, source, monkeypatch):
    p = make_pipeline(s3c, source)
    put_source(s3, "batch-1.csv", FIRST_BATCH)

    def fail(*args, **kwargs):
        raise RuntimeError("killed mid batch")

    with monkeypatch.context() as m:
        m.setattr(p.uptime.logio, "append", fail)
        with pytest.raises(RuntimeError):
            p.run_once()

    state = p.uptime_job.state()
    assert state.health == JobHealth.FAILED
    assert state.watermark == 0
    assert state.last_error == "killed mid batch"
    assert p.uptime.count() == 0

    p.run_once()
    uptime = uptime_rows(p)
    assert sorted(uptime.keys()) == ["A", "B"]
    assert uptime["A"]["uptime"] == pytest.approx(0.4)
    assert p.uptime_job.state().health == JobHealth.HEALTHY


def test_transient_source_errors_degrade(s3, s3c, source, monkeypatch):
    p = make_pipeline(s3c, source)
    put_source(s3, "batch-1.csv", FIRST_BATCH)
    put_source(s3, "batch-2.csv", SECOND_BATCH)

    get_bytes = source.get_bytes

    def flaky(key: str) -> bytes:
        if key.endswith("batch-2.csv"):
            raise TransientIOError("get_object", 4, ConnectionError("reset"))
        return get_bytes(key)

    with monkeypatch.context() as m:
        m.setattr(source, "get_bytes", flaky)
        run = p.run_once()
    assert run["event_staging_job"].failed == 1
    assert run["event_staging_job"].degraded
    assert p.ingest_job.state().health == JobHealth.DEGRADED
    assert p.events.count() == 5

    p.run_once()
    assert p.ingest_job.state().health == JobHealth.HEALTHY
    assert p.events.count() == 6


def test_strict_event_columns(s3, s3c, source):
    p = make_pipeline(s3c, source, add_missing_columns=False)
    put_source(s3, "batch-1.csv", b"device,dt_updated,att3\nA,2023-01-01 00:00,x\n")
    put_source(s3, "batch-2.csv", SECOND_BATCH)
    run = p.run_once()
    assert run["event_staging_job"].rows_out == 1
    assert run["event_staging_job"].skipped == 1
    assert "att3" not in p.events.current_schema()


def test_teardown(s3, s3c, source):
    p = make_pipeline(s3c, source)
    put_source(s3, "batch-1.csv", FIRST_BATCH)
    p.run_once()
    p.teardown()
    assert s3c.list_objects("tenant/") == []
    # the source is read only
    assert len(source.list_objects("incoming/")) == 1
    assert not p.events.exists()


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("S3_BUCKET", "tables")
    monkeypatch.setenv("S3_ENDPOINT", "http://localhost:9000")
    monkeypatch.setenv("SOURCE_PREFIX", "/landing/")
    monkeypatch.setenv("SESSION_GAP_SEC", "600")
    monkeypatch.setenv("LOOKBACK_SEC", "not a number")
    monkeypatch.setenv("ADD_MISSING_COLUMNS", "false")
    monkeypatch.setenv("COMPRESSION_CODEC", "zstd")
    monkeypatch.setenv("HOSTNAME_ID", "worker-1")
    config = Config.from_env()
    assert config.s3_bucket == "tables"
    assert config.source_bucket == "tables"
    assert config.source_endpoint == "http://localhost:9000"
    assert config.source_prefix == "landing"
    assert config.session_gap_sec == 600
    assert config.lookback_sec == 60
    assert config.add_missing_columns is False
    assert config.compression_codec.value == "ZSTD"
    assert config.path_safe_hostname == "worker-1"


def test_malformed_records_are_summarized(s3, s3c, source, caplog):
    p = make_pipeline(s3c, source)
    put_source(s3, "batch-1.csv", FIRST_BATCH + b"D,x,1,also garbage\n")
    run = p.ingest_job.run_once()
    assert run.skipped == 2
    summary = [r for r in caplog.records if r.name == "iceflow.ingest" and "malformed" in r.getMessage()]
    assert len(summary) == 1
    assert "skipped 2 malformed records of incoming/batch-1.csv" in summary[0].getMessage()


def test_listing_errors_degrade(s3, s3c, source, monkeypatch):
    p = make_pipeline(s3c, source)
    put_source(s3, "batch-1.csv", FIRST_BATCH)
    p.ingest_job.run_once()
    watermark = p.ingest_job.watermark()
    assert watermark > 0

    def unreachable(prefix: str):
        raise TransientIOError("list_objects_v2", 4, ConnectionError("reset"))

    put_source(s3, "batch-2.csv", SECOND_BATCH)
    with monkeypatch.context() as m:
        m.setattr(source, "list_objects", unreachable)
        run = p.ingest_job.run_once()
    assert run.failed == 1
    assert run.degraded
    state = p.ingest_job.state()
    assert state.health == JobHealth.DEGRADED
    assert state.watermark == watermark
    assert "list_objects_v2" in state.last_error
    assert p.events.count() == 5

    run = p.ingest_job.run_once()
    assert run.rows_out == 1
    assert p.ingest_job.state().health == JobHealth.HEALTHY
    assert p.events.count() == 6


def test_crash_before_state_save_then_merge_and_cleanup(s3, s3c, source, monkeypatch):
    p = make_pipeline(s3c, source)
    put_source(s3, "batch-0.csv", SECOND_BATCH)
    p.ingest_job.run_once()

    def fail(*args, **kwargs):
        raise RuntimeError("killed before saving state")

    # the insert of batch-1 commits, its key never makes it into the job state
    put_source(s3, "batch-1.csv", FIRST_BATCH)
    with monkeypatch.context() as m:
        m.setattr(p.store, "save", fail)
        with pytest.raises(RuntimeError):
            p.ingest_job.run_once()
    assert p.events.count() == 6

    # both files share a partition, the merge tombstones the batch-1 file
    assert p.events.merge()[0] is not None
    p.ingest_job.run_once()
    p.events.tombstone_cleanup(0)
    assert p.events.count() == 6

    p.run_once()
    uptime = uptime_rows(p)
    assert sorted(uptime.keys()) == ["A", "B"]
    assert uptime["A"]["uptime"] == pytest.approx((5 + 15) / 35)


def test_devices_without_rollup_are_skipped(s3, s3c, source):
    p = make_pipeline(s3c, source)
    put_source(s3, "batch-1.csv", FIRST_BATCH)
    p.ingest_job.run_once()
    p.aggregator.run_once()
    # B's rollup goes missing behind the pipeline's back
    p.rollups.remove_partitions(lambda parts: [x for x in parts if x == "device=B"])

    run = p.uptime_job.run_once()
    assert run.skipped == 1
    assert sorted(uptime_rows(p).keys()) == ["A"]

    # the next event of B rebuilds its rollup from the full history and brings it back
    put_source(s3, "batch-2.csv", b"device,att1,att2,dt_updated\nB,blue,8,2023-01-01 00:12\n")
    p.run_once()
    uptime = uptime_rows(p)
    assert sorted(uptime.keys()) == ["A", "B"]
    assert uptime["B"]["first_seen_date"] == "2023-01-01 00:10:00"
    assert uptime["B"]["last_seen_date"] == "2023-01-01 00:12:00"


def test_teardown_waits_for_runs_in_flight(s3, s3c, source, monkeypatch):
    p = make_pipeline(s3c, source)
    put_source(s3, "batch-1.csv", FIRST_BATCH)
    started = threading.Event()
    release = threading.Event()
    process = p.ingest_job.process

    def slow(state, start_ms, end_ms):
        started.set()
        release.wait(5)
        return process(state, start_ms, end_ms)

    monkeypatch.setattr(p.ingest_job, "process", slow)
    runner = threading.Thread(target=p.ingest_job.run_once)
    runner.start()
    assert started.wait(5)

    stopper = threading.Thread(target=p.teardown)
    stopper.start()
    stopper.join(0.2)
    assert stopper.is_alive()

    release.set()
    runner.join(5)
    stopper.join(5)
    assert not stopper.is_alive()
    assert s3c.list_objects("tenant/") == []
    assert not p.events.exists()
