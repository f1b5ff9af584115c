"""
Drops a couple of CSV files of device events into the source prefix, runs every pipeline job once, and prints the
flattened sessions and the per device uptime.

Needs an S3 compatible store on localhost:9000 (a local minio with user `user`, password `password`) that already has
a `testbucket` bucket, see `helpers.py`.

Then:
`python device-uptime.py`

Pass `--watch` to keep the scheduler running and drop your own CSV files under `incoming/`.
"""
import logging
import sys
from time import sleep

from helpers import get_local_config, get_local_s3_client, delete_all_s3
from iceflow import Pipeline

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

source = get_local_s3_client("incoming")
tables = get_local_s3_client("tenant")

# Device A is active 00:00-00:05 and 00:20-00:25, device B is only seen once
first_batch = """device,att1,att2,dt_updated
A,red,1,2023-01-01 00:00
A,red,1,2023-01-01 00:05
B,blue,7,2023-01-01 00:10
A,green,2,2023-01-01 00:20
A,green,3,2023-01-01 00:25
"""

# A comes back 10 minutes later, extending its second session
second_batch = """device,att1,att2,dt_updated
A,yellow,4,2023-01-01 00:35
C,,,not a date
"""

pipeline = Pipeline(get_local_config(), s3_client=tables, source_client=source)

try:
    print("============= creating tables ==================")
    print("created", pipeline.create_tables())

    print("============= first batch ==================")
    source.put_bytes(source.key("batch-1.csv"), bytes(first_batch, "utf-8"))
    # let the commits settle before the downstream jobs pick them up
    sleep(1.5)
    print(pipeline.run_once())
    sleep(1.5)
    print(pipeline.run_once())

    print("============= second batch ==================")
    source.put_bytes(source.key("batch-2.csv"), bytes(second_batch, "utf-8"))
    sleep(1.5)
    print(pipeline.run_once())
    sleep(1.5)
    print(pipeline.run_once())

    print("============= flattened sessions ==================")
    for row in pipeline.flattened.scan().sort_by("s_sessions_15m_starttime").to_pylist():
        print(row["device"], row["s_sessions_15m_starttime"], row["s_sessions_15m_endtime"], row["session_minutes"],
              row["att1"], row["att2"])

    print("============= device uptime ==================")
    for row in pipeline.uptime.scan().sort_by("device").to_pylist():
        print(row["device"], row["first_seen_date"], row["last_seen_date"], row["uptime"])

    print("============= compacting ==================")
    print(pipeline.maintain())
    print(pipeline.status())

    if "--watch" in sys.argv:
        pipeline.start()
        try:
            while True:
                sleep(10)
                print(pipeline.status())
        except KeyboardInterrupt:
            pipeline.stop()
finally:
    pipeline.teardown()
    delete_all_s3(source)
