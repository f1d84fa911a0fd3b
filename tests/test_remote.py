"""Tests for the S3-compatible remote storage wrapper."""
from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest
from conftest import FakePaginator, FakeS3Client

from ncctl.config import RemoteConfig
from ncctl.providers.remote import RemoteStorage, RemoteStorageError, parse_s3_url


def _storage(prefix: str = "") -> tuple[RemoteStorage, FakeS3Client]:
    client = FakeS3Client()
    config = RemoteConfig(enabled=True, bucket="nc-backups", prefix=prefix)
    return RemoteStorage(config, client=client), client


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("s3://nc-backups/nextcloud_backup_20250101_020000.tar.gz", ("nc-backups", "nextcloud_backup_20250101_020000.tar.gz")),
        ("s3://bucket/nested/path/file.tar.gz", ("bucket", "nested/path/file.tar.gz")),
    ],
)
def test_parse_s3_url(url: str, expected: tuple[str, str]) -> None:
    """s3:// URLs split into bucket and key."""
    assert parse_s3_url(url) == expected


@pytest.mark.parametrize("url", ["https://example.com/file", "s3://bucket-only", "s3:///key"])
def test_parse_s3_url_rejects_invalid(url: str) -> None:
    """URLs without a bucket and key are rejected."""
    with pytest.raises(RemoteStorageError):
        parse_s3_url(url)


def test_upload_and_download_round_trip(tmp_path: Path) -> None:
    """Uploads land under the prefix and can be downloaded again."""
    storage, _ = _storage(prefix="nextcloud")
    archive = tmp_path / "nextcloud_backup_20250101_020000.tar.gz"
    archive.write_bytes(b"archive-bytes")

    key = storage.upload(archive)

    assert key == "nextcloud/nextcloud_backup_20250101_020000.tar.gz"
    assert storage.url_for(key) == "s3://nc-backups/nextcloud/nextcloud_backup_20250101_020000.tar.gz"
    assert storage.exists(key) is True
    target = storage.download(key, tmp_path / "restore" / archive.name)
    assert target.read_bytes() == b"archive-bytes"


def test_exists_returns_false_for_missing_key() -> None:
    """A 404 from head_object means the key does not exist."""
    storage, _ = _storage()

    assert storage.exists("missing.tar.gz") is False


def test_download_failure_raises(tmp_path: Path) -> None:
    """Client errors surface as RemoteStorageError."""
    storage, _ = _storage()

    with pytest.raises(RemoteStorageError, match="Download of missing.tar.gz failed"):
        storage.download("missing.tar.gz", tmp_path / "x.tar.gz")


def test_list_uses_prefix_and_sorts() -> None:
    """Listing searches below the configured prefix and sorts by key."""
    storage, client = _storage(prefix="nextcloud")
    modified = datetime(2025, 1, 2, tzinfo=UTC)
    client.paginator = FakePaginator(
        [
            {"Contents": [{"Key": "nextcloud/b.tar.gz", "Size": 20, "LastModified": modified}]},
            {"Contents": [{"Key": "nextcloud/a.tar.gz", "Size": 10}]},
            {},
        ]
    )

    objects = storage.list()

    assert [item.key for item in objects] == ["nextcloud/a.tar.gz", "nextcloud/b.tar.gz"]
    assert client.paginator.calls == [{"Bucket": "nc-backups", "Prefix": "nextcloud/"}]
    assert objects[1].to_dict() == {
        "key": "nextcloud/b.tar.gz",
        "size": 20,
        "last_modified": "2025-01-02T00:00:00+00:00",
    }
    assert objects[0].last_modified is None


def test_exists_checks_an_explicit_bucket() -> None:
    """An explicit bucket overrides the configured one."""
    storage, client = _storage()
    client.objects[("other-bucket", "archive.tar.gz")] = b"x"

    assert storage.exists("archive.tar.gz", bucket="other-bucket") is True
    assert storage.exists("archive.tar.gz") is False
