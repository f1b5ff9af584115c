import logging
from time import sleep
from typing import Callable, TypeVar

import boto3
import botocore
import botocore.config
import botocore.exceptions

from .errors import TransientIOError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERROR_CODES = {"SlowDown", "Throttling", "ThrottlingException", "RequestTimeout", "InternalError",
                         "ServiceUnavailable"}


def is_retryable(e: Exception) -> bool:
    if isinstance(e, (botocore.exceptions.ConnectionError, botocore.exceptions.HTTPClientError)):
        return True
    if isinstance(e, botocore.exceptions.ClientError):
        status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        code = e.response.get("Error", {}).get("Code", "")
        return status >= 500 or code in RETRYABLE_ERROR_CODES
    return False


class S3Client():
    """
    Thin wrapper over a boto3 S3 client bound to a single bucket and key prefix. Every call goes through
    `with_retries`, so callers only ever see 4xx errors or a `TransientIOError`.
    """
    s3: any
    s3prefix: str
    s3bucket: str
    session: any
    max_retries: int
    retry_backoff_sec: float

    def __init__(
        self,
        s3prefix: str,
        s3bucket: str,
        s3region: str,
        s3endpoint: str | None = None,
        s3accesskey: str | None = None,
        s3secretkey: str | None = None,
        max_retries: int = 3,
        retry_backoff_sec: float = 0.3
    ):
        self.s3prefix = s3prefix
        self.session = boto3.session.Session()
        self.s3 = self.session.client('s3',
            config=botocore.config.Config(s3={'addressing_style': 'path'}),
            region_name=s3region,
            endpoint_url=s3endpoint,
            aws_access_key_id=s3accesskey,
            aws_secret_access_key=s3secretkey
        )
        self.s3bucket = s3bucket
        self.max_retries = max_retries
        self.retry_backoff_sec = retry_backoff_sec

    def with_prefix(self, s3prefix: str) -> "S3Client":
        """
        Returns a client sharing the same boto3 connection, rooted at another prefix in the same bucket.
        """
        c = S3Client.__new__(S3Client)
        c.s3 = self.s3
        c.session = self.session
        c.s3bucket = self.s3bucket
        c.s3prefix = s3prefix
        c.max_retries = self.max_retries
        c.retry_backoff_sec = self.retry_backoff_sec
        return c

    def key(self, *parts: str) -> str:
        path_parts = [p for p in parts if p]
        if self.s3prefix:
            path_parts = [self.s3prefix] + path_parts
        return '/'.join(path_parts)

    def with_retries(self, operation: str, fn: Callable[..., T], **kwargs) -> T:
        retries = 0
        while True:
            try:
                return fn(**kwargs)
            except Exception as e:
                if not is_retryable(e):
                    raise
                retries += 1
                if retries > self.max_retries:
                    raise TransientIOError(operation, retries, e) from e
                logger.warning("%s failed on try %d (%s), sleeping %dms before retrying", operation, retries, e,
                               round(self.retry_backoff_sec * retries * 1000))
                sleep(self.retry_backoff_sec * retries)

    def get_bytes(self, key: str) -> bytes:
        obj = self.with_retries("get_object", self.s3.get_object, Bucket=self.s3bucket, Key=key)
        return obj['Body'].read()

    def put_bytes(self, key: str, body: bytes):
        self.with_retries("put_object", self.s3.put_object, Body=body, Bucket=self.s3bucket, Key=key)

    def content_length(self, key: str) -> int:
        obj = self.with_retries("head_object", self.s3.head_object, Bucket=self.s3bucket, Key=key)
        return obj['ContentLength']

    def delete(self, key: str):
        self.with_retries("delete_object", self.s3.delete_object, Bucket=self.s3bucket, Key=key)

    def exists(self, key: str) -> bool:
        try:
            self.with_retries("head_object", self.s3.head_object, Bucket=self.s3bucket, Key=key)
        except botocore.exceptions.ClientError as e:
            if e.response.get("ResponseMetadata", {}).get("HTTPStatusCode") == 404:
                return False
            raise
        return True

    def list_objects(self, prefix: str) -> list[dict]:
        """
        Returns every object under the prefix as S3 object dictionaries (Key, Size, ETag, LastModified)
        """
        s3_files: list[dict] = []
        no_more_files = False
        continuation_token = ""
        while not no_more_files:
            kwargs = {
                "Bucket": self.s3bucket,
                "MaxKeys": 1000,
                "Prefix": prefix
            }
            if continuation_token != "":
                kwargs["ContinuationToken"] = continuation_token
            res = self.with_retries("list_objects_v2", self.s3.list_objects_v2, **kwargs)
            if 'Contents' not in res:
                return s3_files
            s3_files += res['Contents']
            no_more_files = not res['IsTruncated']
            if not no_more_files:
                continuation_token = res['NextContinuationToken']
        return s3_files
