"""S3-compatible object storage (Cloudflare R2 by default) for backup archives."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..config import RemoteConfig


class RemoteStorageError(RuntimeError):
    """Raised when an object storage call fails."""


@dataclass(frozen=True)
class RemoteObject:
    """An object listed from the bucket."""

    key: str
    size: int
    last_modified: datetime | None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "key": self.key,
            "size": self.size,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
        }


def parse_s3_url(url: str) -> tuple[str, str]:
    """Split ``s3://bucket/key`` into ``(bucket, key)``."""
    if not url.startswith("s3://"):
        raise RemoteStorageError(f"Not an s3:// URL: {url}")
    bucket, _, key = url[len("s3://") :].partition("/")
    if not bucket or not key:
        raise RemoteStorageError(f"s3 URL must include bucket and key: {url}")
    return bucket, key


@dataclass
class RemoteStorage:
    """Upload, list and download backup archives."""

    config: RemoteConfig
    client: Any = field(default=None, repr=False)

    def _client(self) -> Any:
        if self.client is None:
            self.client = boto3.client(
                "s3",
                endpoint_url=self.config.endpoint,
                aws_access_key_id=self.config.access_key_id or None,
                aws_secret_access_key=self.config.secret_access_key or None,
                region_name=self.config.region,
            )
        return self.client

    def key_for(self, name: str) -> str:
        """Return the object key for a file called ``name``."""
        if self.config.prefix:
            return f"{self.config.prefix}/{name}"
        return name

    def url_for(self, key: str) -> str:
        """Return the ``s3://`` URL of ``key``."""
        return f"s3://{self.config.bucket}/{key}"

    def upload(self, path: Path, *, key: str | None = None) -> str:
        """Upload ``path`` and return its object key."""
        object_key = key or self.key_for(path.name)
        try:
            self._client().upload_file(str(path), self.config.bucket, object_key)
        except (BotoCoreError, ClientError) as exc:
            raise RemoteStorageError(
                f"Upload of {path.name} to {self.url_for(object_key)} failed: {exc}"
            ) from exc
        return object_key

    def exists(self, key: str, *, bucket: str | None = None) -> bool:
        """Return ``True`` when ``key`` exists in the bucket."""
        try:
            self._client().head_object(Bucket=bucket or self.config.bucket, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in {"404", "NoSuchKey", "NotFound"}:
                return False
            raise RemoteStorageError(f"head_object {key} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise RemoteStorageError(f"head_object {key} failed: {exc}") from exc
        return True

    def list(self, prefix: str | None = None) -> list[RemoteObject]:
        """List objects below ``prefix`` (the configured prefix by default)."""
        search = prefix if prefix is not None else (
            f"{self.config.prefix}/" if self.config.prefix else ""
        )
        objects: list[RemoteObject] = []
        try:
            paginator = self._client().get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.config.bucket, Prefix=search):
                for item in page.get("Contents", []):
                    objects.append(
                        RemoteObject(
                            key=str(item["Key"]),
                            size=int(item.get("Size", 0)),
                            last_modified=item.get("LastModified"),
                        )
                    )
        except (BotoCoreError, ClientError) as exc:
            raise RemoteStorageError(f"Listing s3://{self.config.bucket}/{search} failed: {exc}") from exc
        return sorted(objects, key=lambda obj: obj.key)

    def download(self, key: str, destination: Path, *, bucket: str | None = None) -> Path:
        """Download ``key`` into ``destination``."""
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._client().download_file(bucket or self.config.bucket, key, str(destination))
        except (BotoCoreError, ClientError) as exc:
            raise RemoteStorageError(f"Download of {key} failed: {exc}") from exc
        return destination


__all__ = ["RemoteObject", "RemoteStorage", "RemoteStorageError", "parse_s3_url"]
