"""S3-compatible object store client (Backblaze B2 by default).

A thin wrapper over a boto3 ``s3`` client exposing exactly the calls the
upload coordinator and key resolver need.  Retries and backoff are left to
botocore's own configuration.

B2 needs path-style addressing and a custom endpoint, e.g.::

    endpoint_url = "https://s3.us-east-005.backblazeb2.com"
    region       = "us-east-005"
"""
import logging
from typing import Any, BinaryIO, Dict, List, Optional, Union

from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

# Error codes S3-compatible stores use for "no such object" on HEAD.
_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}

Body = Union[bytes, BinaryIO]


def is_not_found(exc: ClientError) -> bool:
    """True if *exc* reports a missing object rather than a real failure."""
    error = exc.response.get("Error", {})
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return str(error.get("Code")) in _NOT_FOUND_CODES or status == 404


class S3ObjectStore:
    """Object store operations against one bucket.

    Args:
        bucket:                Target bucket name.
        endpoint_url:          Custom endpoint.  ``None`` → AWS S3.
        region_name:           Region passed to boto3.
        aws_access_key_id:     Access key.  ``None`` → default credential chain.
        aws_secret_access_key: Secret key.
        cdn_base_url:          Public base URL objects are served from.
        client:                Pre-built client (tests inject fakes here).
    """

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        region_name: Optional[str] = None,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        cdn_base_url: str = "",
        client: Optional[Any] = None,
    ) -> None:
        self._bucket       = bucket
        self._endpoint_url = endpoint_url
        self._region       = region_name
        self._access_key   = aws_access_key_id
        self._secret_key   = aws_secret_access_key
        self._cdn_base_url = cdn_base_url.rstrip("/")
        self._client       = client

    @property
    def bucket(self) -> str:
        return self._bucket

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    def _get_client(self) -> Any:
        """Return a cached boto3 s3 client."""
        if self._client is None:
            import boto3

            kwargs: Dict[str, Any] = {
                "config": BotoConfig(s3={"addressing_style": "path"}),
            }
            if self._region:
                kwargs["region_name"] = self._region
            if self._endpoint_url:
                kwargs["endpoint_url"] = self._endpoint_url
            if self._access_key and self._secret_key:
                kwargs["aws_access_key_id"]     = self._access_key
                kwargs["aws_secret_access_key"] = self._secret_key

            self._client = boto3.client("s3", **kwargs)

        return self._client

    # -----------------------------------------------------------------------
    # Object operations
    # -----------------------------------------------------------------------

    def object_exists(self, key: str) -> bool:
        """HEAD the object.

        Returns False only on a definite "not found".

        Raises:
            ClientError: Any other store error (auth, throttling, 5xx, …).
        """
        try:
            self._get_client().head_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if is_not_found(exc):
                return False
            raise
        return True

    def put_object(self, key: str, body: Body, content_type: str) -> str:
        """Upload a whole object in one request and return its ETag."""
        response = self._get_client().put_object(
            Bucket=self._bucket,
            Key=key,
            Body=body,
            ContentType=content_type,
        )
        return response.get("ETag", "")

    # -----------------------------------------------------------------------
    # Multipart protocol
    # -----------------------------------------------------------------------

    def create_multipart_upload(self, key: str, content_type: str) -> str:
        response = self._get_client().create_multipart_upload(
            Bucket=self._bucket,
            Key=key,
            ContentType=content_type,
        )
        upload_id = response.get("UploadId")
        if not upload_id:
            raise RuntimeError(f"Store returned no UploadId for {key}")
        return upload_id

    def upload_part(self, key: str, upload_id: str, part_number: int, body: bytes) -> str:
        response = self._get_client().upload_part(
            Bucket=self._bucket,
            Key=key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=body,
        )
        return response["ETag"]

    def complete_multipart_upload(
        self,
        key: str,
        upload_id: str,
        parts: List[Dict[str, Any]],
    ) -> str:
        response = self._get_client().complete_multipart_upload(
            Bucket=self._bucket,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={"Parts": parts},
        )
        return response.get("ETag", "")

    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        self._get_client().abort_multipart_upload(
            Bucket=self._bucket,
            Key=key,
            UploadId=upload_id,
        )

    # -----------------------------------------------------------------------
    # URLs
    # -----------------------------------------------------------------------

    def public_url(self, key: str) -> str:
        """Return the CDN URL an object is reachable at."""
        return f"{self._cdn_base_url}/{key}"
