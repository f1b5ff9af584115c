from iceflow import Config
from iceflow.s3 import S3Client


def get_local_config() -> Config:
    """
    Tables and source both live in the local minio `testbucket`
    """
    return Config(
        s3_bucket="testbucket",
        s3_region="us-east-1",  # This is all local minio stuff
        s3_endpoint="http://localhost:9000",
        s3_access_key="user",
        s3_secret_key="password",
        table_prefix="tenant",
        source_prefix="incoming",
        path_safe_hostname="dan-mbp",
        commit_settle_ms=1000,
        run_interval_sec=5
    )


def get_local_s3_client(prefix: str = "tenant"):
    return S3Client(s3prefix=prefix, s3bucket="testbucket", s3region="us-east-1",
                    s3endpoint="http://localhost:9000",
                    s3accesskey="user", s3secretkey="password")


def delete_all_s3(s3c: S3Client):
    """
    Deletes all files under the client's prefix in the local s3 bucket!
    """
    s3_files = s3c.list_objects(s3c.key() + '/')
    for file in s3_files:
        s3c.delete(file['Key'])
    print(f"deleted {len(s3_files)} files")
