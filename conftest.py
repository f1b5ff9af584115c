import boto3
import pytest
from moto import mock_aws

from iceflow.s3 import S3Client

BUCKET = "testbucket"
SOURCE_BUCKET = "sourcebucket"


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "user")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "password")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def s3():
    with mock_aws():
        client = boto3.client("s3", region_name="us-east-1")
        client.create_bucket(Bucket=BUCKET)
        client.create_bucket(Bucket=SOURCE_BUCKET)
        yield client


@pytest.fixture
def s3c(s3) -> S3Client:
    return S3Client(s3prefix="tenant", s3bucket=BUCKET, s3region="us-east-1", s3accesskey="user",
                    s3secretkey="password", retry_backoff_sec=0)


@pytest.fixture
def source(s3) -> S3Client:
    return S3Client(s3prefix="incoming", s3bucket=SOURCE_BUCKET, s3region="us-east-1", s3accesskey="user",
                    s3secretkey="password", retry_backoff_sec=0)


class FakeClock:
    """
    Settable millisecond clock for jobs
    """

    def __init__(self, now: int = 0):
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
