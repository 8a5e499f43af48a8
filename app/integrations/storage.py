"""
Object storage access for uploaded import files.

Files are uploaded by the browser straight to S3-compatible storage (AWS S3,
Backblaze B2, MinIO, ...) with a pre-signed PUT URL; workers read them back
through a time-limited pre-signed GET URL, streamed to a temporary file so
the parser can seek. A local-disk source is available for development.
"""
import logging
import os
import re
import shutil
import tempfile
from datetime import datetime, timezone
from typing import BinaryIO, Optional

import boto3
import requests
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import settings

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 1024 * 1024
DOWNLOAD_TIMEOUT = (10, 300)  # connect, read (seconds)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageConnectionError(StorageError):
    """Raised when storage connection fails."""
    pass


class StorageDownloadError(StorageError):
    """Raised when file download fails."""
    pass


def get_storage_client():
    """
    Build an S3 client for the configured provider.

    Raises:
        StorageConnectionError: If configuration is incomplete or the client
            cannot be created
    """
    if not all([settings.storage_access_key_id, settings.storage_secret_access_key, settings.storage_bucket_name]):
        raise StorageConnectionError(
            "Storage configuration is incomplete. Please set STORAGE_ACCESS_KEY_ID, "
            "STORAGE_SECRET_ACCESS_KEY, and STORAGE_BUCKET_NAME in your environment."
        )

    client_kwargs = {
        "service_name": "s3",
        "aws_access_key_id": settings.storage_access_key_id,
        "aws_secret_access_key": settings.storage_secret_access_key,
        "config": Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"}),
    }
    if settings.storage_endpoint_url:
        client_kwargs["endpoint_url"] = settings.storage_endpoint_url
    if settings.storage_region:
        client_kwargs["region_name"] = settings.storage_region

    try:
        return boto3.client(**client_kwargs)
    except (BotoCoreError, ValueError) as e:
        logger.error("Failed to create storage client: %s", e)
        raise StorageConnectionError(f"Failed to connect to storage: {e}") from e


def sanitize_file_name(file_name: str) -> str:
    base = os.path.basename(file_name or "").strip()
    base = re.sub(r"[^A-Za-z0-9._-]+", "_", base)
    return base.strip("._") or "upload"


def build_storage_path(file_name: str, created_by: Optional[str] = None) -> str:
    """``imports/{user}/{timestamp}_{sanitized name}``"""
    timestamp = int(datetime.now(timezone.utc).timestamp() * 1000)
    owner = sanitize_file_name(created_by) if created_by else "anonymous"
    return f"imports/{owner}/{timestamp}_{sanitize_file_name(file_name)}"


def generate_presigned_upload_url(
    file_path: str,
    content_type: str = "application/octet-stream",
    expires_in: Optional[int] = None,
) -> str:
    """Pre-signed PUT URL the client uploads the file to."""
    client = get_storage_client()
    try:
        return client.generate_presigned_url(
            "put_object",
            Params={"Bucket": settings.storage_bucket_name, "Key": file_path, "ContentType": content_type},
            ExpiresIn=expires_in or settings.signed_url_expires_seconds,
        )
    except (ClientError, BotoCoreError) as e:
        logger.error("Failed to generate presigned upload URL: %s", e)
        raise StorageError(f"Failed to generate upload URL: {e}") from e


def generate_presigned_download_url(file_path: str, expires_in: Optional[int] = None) -> str:
    """Time-limited GET URL used by the parse worker."""
    client = get_storage_client()
    try:
        return client.generate_presigned_url(
            "get_object",
            Params={"Bucket": settings.storage_bucket_name, "Key": file_path},
            ExpiresIn=expires_in or settings.signed_url_expires_seconds,
        )
    except (ClientError, BotoCoreError) as e:
        logger.error("Failed to generate presigned download URL: %s", e)
        raise StorageError(f"Failed to generate download URL: {e}") from e


class StorageFileSource:
    """Opens stored files through signed URLs."""

    def __init__(self, http: Optional[requests.Session] = None):
        self.http = http or requests.Session()

    def open(self, file_path: str) -> BinaryIO:
        """
        Download ``file_path`` to a temporary file and return it rewound.

        The caller closes the returned file, which deletes it.
        """
        url = generate_presigned_download_url(file_path)
        target = tempfile.TemporaryFile()
        try:
            with self.http.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT) as response:
                if response.status_code == 404:
                    raise StorageDownloadError(f"File not found: {file_path}")
                response.raise_for_status()
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        target.write(chunk)
        except requests.RequestException as e:
            target.close()
            logger.error("Storage download failed for %s: %s", file_path, e)
            raise StorageDownloadError(f"Download failed: {e}") from e
        except StorageDownloadError:
            target.close()
            raise

        logger.info("Downloaded %s (%s bytes)", file_path, target.tell())
        target.seek(0)
        return target

    def save(self, file_path: str, stream: BinaryIO) -> int:
        """Upload a seekable stream under ``file_path``; returns the size in bytes."""
        stream.seek(0, os.SEEK_END)
        size = stream.tell()
        stream.seek(0)
        try:
            get_storage_client().upload_fileobj(stream, settings.storage_bucket_name, file_path)
        except (ClientError, BotoCoreError) as e:
            logger.error("Storage upload failed for %s: %s", file_path, e)
            raise StorageError(f"Upload failed: {e}") from e
        return size


class LocalFileSource:
    """Reads files from a directory on disk (development and tests)."""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    def _resolve(self, file_path: str) -> str:
        full_path = os.path.abspath(os.path.join(self.root, file_path))
        if os.path.commonpath([self.root, full_path]) != self.root:
            raise StorageDownloadError(f"Path escapes storage root: {file_path}")
        return full_path

    def open(self, file_path: str) -> BinaryIO:
        try:
            return open(self._resolve(file_path), "rb")
        except FileNotFoundError as e:
            raise StorageDownloadError(f"File not found: {file_path}") from e

    def save(self, file_path: str, stream: BinaryIO) -> int:
        """Copy an uploaded stream under ``file_path``; returns the size in bytes."""
        full_path = self._resolve(file_path)
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        with open(full_path, "wb") as target:
            shutil.copyfileobj(stream, target)
            return target.tell()


def build_file_source():
    if settings.storage_provider == "local":
        return LocalFileSource(settings.storage_local_root)
    return StorageFileSource()
