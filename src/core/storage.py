"""
Object storage for uploaded documents.

Works against AWS S3 or any S3-compatible endpoint (MinIO on the local
network) through boto3.
"""

import time
import logging
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from src.config.settings import Settings
from src.core.exceptions import ConfigurationError, NotFoundError, TransientServiceError
from src.utils.helpers import sanitize_filename

logger = logging.getLogger(__name__)

_MISSING_OBJECT_CODES = ("NoSuchKey", "404", "NotFound")
_CONFIGURATION_CODES = ("AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch", "NoSuchBucket")


class StorageObjectNotFoundError(NotFoundError):
    def __init__(self, key: str):
        super().__init__(f"Object {key} not found")
        self.key = key


class ObjectStorage:
    def __init__(self, client, bucket_name: str, key_prefix: str = "uploads",
                 public_base_url: Optional[str] = None):
        """
        Initialize the storage adapter.

        Args:
            client: boto3 S3 client
            bucket_name: Bucket holding the uploads
            key_prefix: First path segment of every object key
            public_base_url: Base URL used to build object URLs (endpoint or AWS)
        """
        self.client = client
        self.bucket_name = bucket_name
        self.key_prefix = key_prefix
        self.public_base_url = public_base_url

    @classmethod
    def from_settings(cls, settings: Settings) -> "ObjectStorage":
        if not settings.storage_bucket:
            raise ConfigurationError("STORAGE_BUCKET is not configured")

        client_config = {
            "service_name": "s3",
            "region_name": settings.storage_region,
        }
        if settings.storage_access_key_id and settings.storage_secret_access_key:
            client_config["aws_access_key_id"] = settings.storage_access_key_id
            client_config["aws_secret_access_key"] = settings.storage_secret_access_key

        if settings.storage_endpoint_url:
            client_config["endpoint_url"] = settings.storage_endpoint_url
        if settings.storage_endpoint_url or settings.storage_force_path_style:
            client_config["config"] = Config(s3={"addressing_style": "path"})

        if settings.storage_endpoint_url:
            public_base_url = f"{settings.storage_endpoint_url.rstrip('/')}/{settings.storage_bucket}"
        else:
            public_base_url = f"https://{settings.storage_bucket}.s3.{settings.storage_region}.amazonaws.com"

        return cls(
            client=boto3.client(**client_config),
            bucket_name=settings.storage_bucket,
            key_prefix=settings.storage_key_prefix,
            public_base_url=public_base_url,
        )

    def build_key(self, agent_id: str, filename: str, timestamp: Optional[float] = None) -> str:
        """Object key of an upload: {prefix}/{agent_id}/{ms timestamp}-{filename}."""
        millis = int((timestamp if timestamp is not None else time.time()) * 1000)
        return f"{self.key_prefix}/{agent_id}/{millis}-{sanitize_filename(filename)}"

    def object_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"s3://{self.bucket_name}/{key}"

    @staticmethod
    def _translate(error: Exception, operation: str) -> Exception:
        if isinstance(error, ClientError):
            code = error.response.get("Error", {}).get("Code", "")
            if code in _CONFIGURATION_CODES:
                return ConfigurationError(f"Storage rejected {operation}: {code}")
        return TransientServiceError(f"Storage failure during {operation}: {error}", service="storage")

    def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store bytes under key and return the object URL."""
        try:
            self.client.put_object(Bucket=self.bucket_name, Key=key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to upload {key}: {e}")
            raise self._translate(e, f"upload {key}")

        logger.info(f"Successfully uploaded {key} to {self.bucket_name} ({len(data)} bytes)")
        return self.object_url(key)

    def get(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket_name, Key=key)
            return response["Body"].read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_OBJECT_CODES:
                logger.warning(f"Object {key} not found")
                raise StorageObjectNotFoundError(key)
            logger.error(f"Failed to download {key}: {e}")
            raise self._translate(e, f"download {key}")
        except BotoCoreError as e:
            logger.error(f"Failed to download {key}: {e}")
            raise self._translate(e, f"download {key}")

    def delete(self, key: str) -> None:
        """Delete an object; deleting a missing key succeeds."""
        try:
            self.client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_OBJECT_CODES:
                logger.info(f"Object {key} already gone")
                return
            logger.error(f"Failed to delete {key}: {e}")
            raise self._translate(e, f"delete {key}")
        except BotoCoreError as e:
            logger.error(f"Failed to delete {key}: {e}")
            raise self._translate(e, f"delete {key}")

        logger.info(f"Successfully deleted {key}")
