"""
S3-compatible object store client.

Thin wrapper over a boto3 S3 client: builds object keys from local paths,
uploads with a content type and canned ACL, deletes objects and builds the
public URL of a key (through the CDN domain when one is configured).
"""

import logging
import mimetypes
import os
from typing import Any, Dict, Optional
from urllib.parse import quote

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from file_enumerator import relative_key
from migration_models import DeleteFailedError, UploadFailedError

logger = logging.getLogger(__name__)


def guess_content_type(path: str) -> str:
    content_type, _encoding = mimetypes.guess_type(path)
    return content_type or "application/octet-stream"


def _client_error_message(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "Unknown")
        message = error.get("Message") or str(exc)
        return f"{code}: {message}"
    return str(exc)


class S3ObjectStore:
    """Uploads and deletes objects in one bucket."""

    def __init__(
        self,
        *,
        bucket: str,
        uploads_root: str,
        folder: str = "",
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        cdn_domain: Optional[str] = None,
        acl: Optional[str] = "public-read",
        path_style: bool = True,
        connect_timeout: int = 10,
        read_timeout: int = 60,
        client: Any = None,
    ) -> None:
        if not bucket:
            raise ValueError("S3 bucket name is required")
        self.bucket = bucket
        self.uploads_root = os.path.abspath(uploads_root)
        self.folder = folder.strip("/")
        self.endpoint_url = endpoint_url.rstrip("/") if endpoint_url else None
        self.region = region
        self.cdn_domain = cdn_domain
        self.acl = acl
        self.path_style = path_style
        self.client = client or boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            config=BotoConfig(
                s3={"addressing_style": "path" if path_style else "auto"},
                connect_timeout=connect_timeout,
                read_timeout=read_timeout,
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        )

    @classmethod
    def from_config(cls, storage_config=None, migration_config=None, client: Any = None) -> "S3ObjectStore":
        """Create a store from StorageConfig/MigrationConfig (global config by default)."""
        if storage_config is None or migration_config is None:
            from config import get_config
            app_config = get_config()
            storage_config = storage_config or app_config.storage
            migration_config = migration_config or app_config.migration
        return cls(
            bucket=storage_config.bucket,
            uploads_root=migration_config.uploads_root,
            folder=storage_config.folder,
            region=storage_config.region,
            endpoint_url=storage_config.endpoint_url,
            access_key=storage_config.access_key,
            secret_key=storage_config.secret_key,
            cdn_domain=storage_config.cdn_domain,
            acl=storage_config.acl,
            path_style=storage_config.path_style,
            connect_timeout=storage_config.connect_timeout,
            read_timeout=storage_config.read_timeout,
            client=client,
        )

    # -- keys and URLs -------------------------------------------------------

    def key_for(self, path: str) -> str:
        """Object key for a local file: <folder>/<path relative to the uploads root>."""
        rel = relative_key(self.uploads_root, os.path.abspath(path))
        if rel.startswith("../"):
            rel = os.path.basename(path)
        return f"{self.folder}/{rel}" if self.folder else rel

    def url_for(self, key: str) -> str:
        quoted = quote(key, safe="/")
        if self.cdn_domain:
            return f"https://{self.cdn_domain}/{quoted}"
        if self.endpoint_url:
            if self.path_style:
                return f"{self.endpoint_url}/{self.bucket}/{quoted}"
            scheme, _, host = self.endpoint_url.partition("://")
            return f"{scheme}://{self.bucket}.{host}/{quoted}"
        region = self.region or "us-east-1"
        return f"https://{self.bucket}.s3.{region}.amazonaws.com/{quoted}"

    # -- operations ----------------------------------------------------------

    def upload(self, path: str, key: Optional[str] = None) -> str:
        """Upload a local file and return its key.

        Overwrites any existing object with the same key.

        Raises:
            UploadFailedError: If the file is missing or the upload fails.
        """
        key = key or self.key_for(path)
        if not os.path.isfile(path):
            raise UploadFailedError(f"File not found: {path}")

        extra_args: Dict[str, str] = {"ContentType": guess_content_type(path)}
        if self.acl:
            extra_args["ACL"] = self.acl

        try:
            self.client.upload_file(path, self.bucket, key, ExtraArgs=extra_args)
        except (ClientError, BotoCoreError, S3UploadFailedError, OSError) as e:
            message = _client_error_message(e)
            logger.error("Upload of %s to s3://%s/%s failed: %s", path, self.bucket, key, message)
            raise UploadFailedError(f"S3 upload failed: {message}") from e

        logger.debug("Uploaded %s -> s3://%s/%s", path, self.bucket, key)
        return key

    def delete(self, key: str) -> None:
        """Delete an object.

        Raises:
            DeleteFailedError: If the delete request fails.
        """
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            message = _client_error_message(e)
            logger.error("Failed to delete s3://%s/%s: %s", self.bucket, key, message)
            raise DeleteFailedError(f"S3 delete failed: {message}") from e
        logger.info("Deleted s3://%s/%s", self.bucket, key)

    def check_bucket(self) -> Dict[str, Any]:
        """Check that the bucket is reachable with the configured credentials."""
        try:
            self.client.head_bucket(Bucket=self.bucket)
            return {"status": "healthy", "bucket": self.bucket, "endpoint": self.endpoint_url}
        except (ClientError, BotoCoreError) as e:
            message = _client_error_message(e)
            logger.warning("Bucket check failed for %s: %s", self.bucket, message)
            return {
                "status": "unhealthy",
                "bucket": self.bucket,
                "endpoint": self.endpoint_url,
                "error": message,
            }
