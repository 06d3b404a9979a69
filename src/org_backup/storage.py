from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, BinaryIO, List, Optional, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import RunCredentials, StorageConfig
from .exceptions import DeleteFailure, StoreUnavailable, UploadFailure

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredObject:
    key: str
    size: int
    last_modified: Optional[datetime] = None


@dataclass
class ObjectPage:
    objects: List[StoredObject] = field(default_factory=list)
    truncated: bool = False
    last_key: Optional[str] = None


class ObjectStore(Protocol):
    bucket: str

    def put_object(self, key: str, body: BinaryIO) -> None:
        ...

    def list_objects_page(self, marker: Optional[str] = None) -> ObjectPage:
        ...

    def delete_object(self, key: str) -> None:
        ...


class S3ObjectStore:
    """Object store backed by an S3 (or S3-compatible) bucket."""

    def __init__(self, bucket: str, client: Any) -> None:
        self.bucket = bucket
        self._client = client

    @classmethod
    def from_config(cls, config: StorageConfig, credentials: RunCredentials) -> "S3ObjectStore":
        client = boto3.client(
            "s3",
            region_name=credentials.region,
            endpoint_url=config.endpoint_url,
            aws_access_key_id=credentials.access_key,
            aws_secret_access_key=credentials.secret_key,
        )
        return cls(bucket=credentials.bucket, client=client)

    def put_object(self, key: str, body: BinaryIO) -> None:
        try:
            self._client.put_object(Bucket=self.bucket, Key=key, Body=body)
        except (ClientError, BotoCoreError) as exc:
            LOG.error("Failed to upload data to %s/%s: %s", self.bucket, key, exc)
            raise UploadFailure(key, f"upload to {self.bucket} failed: {exc}") from exc

    def list_objects_page(self, marker: Optional[str] = None) -> ObjectPage:
        params = {"Bucket": self.bucket}
        if marker:
            params["Marker"] = marker
        try:
            response = self._client.list_objects(**params)
        except (ClientError, BotoCoreError) as exc:
            raise StoreUnavailable(f"Listing {self.bucket} after {marker!r} failed: {exc}") from exc

        objects = [
            StoredObject(
                key=item["Key"],
                size=item.get("Size", 0),
                last_modified=item.get("LastModified"),
            )
            for item in response.get("Contents", [])
        ]
        return ObjectPage(
            objects=objects,
            truncated=bool(response.get("IsTruncated", False)),
            last_key=objects[-1].key if objects else None,
        )

    def delete_object(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise DeleteFailure(key, f"delete from {self.bucket} failed: {exc}") from exc


def artifact_key(key_prefix: str, artifact: Path, scratch_root: Path) -> str:
    """Key for an artifact: the prefix followed by its path below the scratch root."""
    relative = artifact.relative_to(scratch_root).as_posix()
    return f"{key_prefix.rstrip('/')}/{relative}"


def upload_artifact(store: ObjectStore, artifact: Path, key: str) -> bool:
    """Upload one archive. Returns False when the file was empty and skipped."""
    LOG.info("Uploading %s to %s/%s", artifact, store.bucket, key)
    try:
        with artifact.open("rb") as fh:
            size = artifact.stat().st_size
            if size == 0:
                LOG.info("Skipping empty artifact %s", artifact)
                return False
            store.put_object(key, fh)
    except OSError as exc:
        raise UploadFailure(key, f"cannot read {artifact}: {exc}") from exc
    LOG.info("Uploaded %s (%d bytes)", key, size)
    return True
