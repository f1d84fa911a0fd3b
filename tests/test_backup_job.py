"""Tests for the backup pipeline."""
from __future__ import annotations

import shutil
from datetime import datetime

import pytest
from conftest import FakeS3Client, Sandbox, make_backup

from ncctl.backup_job import BackupJob
from ncctl.backups import FULL, INCREMENTAL
from ncctl.config import RemoteConfig
from ncctl.providers.remote import RemoteStorage
from ncctl.steps import StepError

requires_rsync = pytest.mark.skipif(shutil.which("rsync") is None, reason="rsync not installed")
requires_tar = pytest.mark.skipif(shutil.which("tar") is None, reason="tar not installed")

PHP_STUB = """#!/bin/sh
echo "$@" >> "$(dirname "$0")/php.calls"
exit 0
"""


@requires_rsync
def test_full_then_incremental_backup(sandbox: Sandbox) -> None:
    """The first run is full; the next one hard-links against it."""
    runtime = sandbox.runtime()

    with runtime.logger.operation("backup create") as op:
        first = BackupJob(runtime, now=datetime(2025, 1, 1, 2, 0, 0)).run(op)
    (sandbox.data_dir / "admin" / "files" / "hello.txt").write_text("changed\n", encoding="utf-8")
    with runtime.logger.operation("backup create") as op:
        second = BackupJob(runtime, now=datetime(2025, 1, 2, 2, 0, 0)).run(op)

    assert first.backup.backup_type == FULL
    assert first.backup.name == "nextcloud_backup_20250101_020000_full"
    assert first.components == ["config", "data", "apps", "database"]
    assert second.backup.backup_type == INCREMENTAL
    assert second.backup.base == first.backup.name

    large_full = (first.backup.path / "data" / "admin" / "files" / "large.bin").stat()
    large_incr = (second.backup.path / "data" / "admin" / "files" / "large.bin").stat()
    assert large_full.st_ino == large_incr.st_ino
    hello = second.backup.path / "data" / "admin" / "files" / "hello.txt"
    assert hello.read_text(encoding="utf-8") == "changed\n"
    original = first.backup.path / "data" / "admin" / "files" / "hello.txt"
    assert original.stat().st_ino != hello.stat().st_ino
    assert original.read_text(encoding="utf-8") != "changed\n"

    dump = second.backup.path / "database" / "nextcloud_backup_db_20250102_020000.sql"
    assert "CREATE TABLE `oc_users`" in dump.read_text(encoding="utf-8")
    assert "--single-transaction" in sandbox.calls("mysqldump")[0]

    metadata = (second.backup.path / "backup_metadata").read_text(encoding="utf-8")
    assert f"BASE_BACKUP={first.backup.name}" in metadata
    info = (second.backup.path / "backup_info.txt").read_text(encoding="utf-8")
    assert "Nextcloud Version: 29.0.4" in info
    assert (sandbox.backups / "latest").resolve() == second.backup.path.resolve()

    entries = runtime.backups.list_entries()
    assert [entry["id"] for entry in entries] == [first.backup.name, second.backup.name]
    assert entries[1]["base"] == first.backup.name
    assert entries[1]["size_bytes"] > 0


@requires_rsync
def test_force_full_ignores_existing_base(sandbox: Sandbox) -> None:
    """--full creates a full backup even when a base exists."""
    runtime = sandbox.runtime()

    with runtime.logger.operation("backup create") as op:
        BackupJob(runtime, now=datetime(2025, 1, 1, 2, 0, 0)).run(op)
        second = BackupJob(runtime, force_full=True, now=datetime(2025, 1, 2, 2, 0, 0)).run(op)

    assert second.backup.is_full
    assert second.backup.base is None


@requires_rsync
@requires_tar
def test_archive_with_checksum(sandbox: Sandbox) -> None:
    """Archiving produces a .tar.gz, a .sha256 file and index details."""
    runtime = sandbox.runtime()

    with runtime.logger.operation("backup create") as op:
        result = BackupJob(runtime, archive=True, now=datetime(2025, 1, 1, 2, 0, 0)).run(op)

    archive = sandbox.backups / "archives" / "nextcloud_backup_20250101_020000.tar.gz"
    assert result.archive == archive
    assert archive.is_file()
    checksum_file = archive.with_name(archive.name + ".sha256")
    assert checksum_file.read_text(encoding="utf-8").split()[0] == result.checksum
    entry = runtime.backups.find_by_id(result.backup.name)
    assert entry is not None
    assert entry["archive"] == str(archive)
    assert entry["checksum"] == {"algorithm": "sha256", "value": result.checksum}


def test_upload_without_remote_fails(sandbox: Sandbox) -> None:
    """Requesting an upload without remote storage is an error."""
    sandbox.write_stub("rsync")
    runtime = sandbox.runtime(tools={"rsync": str(sandbox.bin_dir / "rsync")})

    with pytest.raises(Exception, match="remote storage is not enabled"):
        with runtime.logger.operation("backup create") as op:
            BackupJob(runtime, upload=True, now=datetime(2025, 1, 1, 2, 0, 0)).run(op)


def test_failed_dump_discards_partial_backup_and_leaves_maintenance(sandbox: Sandbox) -> None:
    """A failing step removes the half-written directory and disables maintenance."""
    sandbox.write_stub("rsync")
    sandbox.write_stub("php", PHP_STUB)
    sandbox.write_stub("mysqldump", "#!/bin/sh\necho 'Access denied for user' >&2\nexit 2\n")
    runtime = sandbox.runtime(
        maintenance={"enabled": True, "services": []},
        tools={"rsync": str(sandbox.bin_dir / "rsync")},
    )

    with pytest.raises(StepError, match="Access denied"):
        with runtime.logger.operation("backup create") as op:
            BackupJob(runtime, now=datetime(2025, 1, 1, 2, 0, 0)).run(op)

    assert runtime.store.discover() == []
    assert runtime.backups.list_entries() == []
    php_calls = sandbox.calls("php")
    assert any(call.endswith("maintenance:mode --on") for call in php_calls)
    assert php_calls[-1].endswith("maintenance:mode --off")
    assert runtime.maintenance.active is False


def test_choose_base_starts_a_new_chain_at_the_length_limit(sandbox: Sandbox) -> None:
    """Once a chain holds max_chain_length backups the next run is full."""
    runtime = sandbox.runtime(backups={"max_chain_length": 3})
    store = runtime.store
    previous = make_backup(store, age_days=3)
    assert BackupJob(runtime).choose_base() == previous

    for age in (2, 1):
        previous = make_backup(store, age_days=age, backup_type=INCREMENTAL, base=previous)

    assert BackupJob(runtime).choose_base() is None
    fresh = make_backup(store, age_days=0.5)
    assert BackupJob(runtime).choose_base() == fresh


@requires_rsync
@requires_tar
def test_uploaded_archive_removed_locally_is_indexed_by_remote_key(sandbox: Sandbox) -> None:
    """Without keep_local_archive the index points at the remote object only."""
    runtime = sandbox.runtime(remote={"keep_local_archive": False})
    client = FakeS3Client()
    runtime.remote = RemoteStorage(RemoteConfig(enabled=True, bucket="nc-backups"), client=client)

    with runtime.logger.operation("backup create") as op:
        result = BackupJob(runtime, upload=True, now=datetime(2025, 1, 1, 2, 0, 0)).run(op)

    assert result.remote_key == "nextcloud_backup_20250101_020000.tar.gz"
    assert ("nc-backups", result.remote_key) in client.objects
    assert ("nc-backups", f"{result.remote_key}.sha256") in client.objects
    assert result.archive is not None and not result.archive.exists()
    entry = runtime.backups.find_by_id(result.backup.name)
    assert entry is not None
    assert "archive" not in entry
    assert entry["remote_key"] == result.remote_key
    assert entry["checksum"] == {"algorithm": "sha256", "value": result.checksum}
