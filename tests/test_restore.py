"""Tests for restore planning and execution."""
from __future__ import annotations

import os
import re
import shutil
from datetime import datetime
from pathlib import Path

import pytest
from conftest import FakeS3Client, Sandbox
from typer.testing import CliRunner

from ncctl import restore as restore_module
from ncctl.backup_job import BackupJob, BackupResult
from ncctl.backups import FULL, INCREMENTAL
from ncctl.cli import app
from ncctl.config import RemoteConfig
from ncctl.providers.remote import RemoteStorage
from ncctl.restore import RestoreError, RestoreJob
from ncctl.runtime import RuntimeContext

requires_rsync = pytest.mark.skipif(shutil.which("rsync") is None, reason="rsync not installed")
requires_tar = pytest.mark.skipif(shutil.which("tar") is None, reason="tar not installed")

runner = CliRunner()


@pytest.fixture(autouse=True)
def _skip_chown(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ownership fixes need root; tests run as the invoking user."""
    monkeypatch.setattr(restore_module, "fix_ownership", lambda *args, **kwargs: None)


def _backup(runtime: RuntimeContext, **kwargs: object) -> BackupResult:
    with runtime.logger.operation("backup create") as op:
        return BackupJob(runtime, now=datetime(2025, 1, 1, 2, 0, 0), **kwargs).run(op)  # type: ignore[arg-type]


def _tree(root: Path) -> dict[str, bytes]:
    return {
        str(path.relative_to(root)): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


def test_nonexistent_source_raises(sandbox: Sandbox) -> None:
    """A missing path is reported without touching the installation."""
    runtime = sandbox.runtime()
    missing = sandbox.base / "does-not-exist"

    with pytest.raises(RestoreError, match=re.escape(f"Backup source does not exist: {missing}")):
        with runtime.logger.operation("restore run") as op:
            RestoreJob(runtime, source=str(missing)).prepare(op)


def test_cli_nonexistent_source_exits_with_error_log(sandbox: Sandbox) -> None:
    """The CLI exits 1 and writes an ERROR line naming the missing path."""
    before = _tree(sandbox.data_dir)
    missing = sandbox.base / "does-not-exist"

    result = runner.invoke(app, ["restore", "run", str(missing), "--yes"], env=sandbox.env())

    assert result.exit_code == 1
    log_files = sorted(sandbox.logs.glob("ncctl-*.log"))
    assert log_files
    text = log_files[-1].read_text(encoding="utf-8")
    assert f"[ERROR] Restore failed: Backup source does not exist: {missing}" in text
    assert _tree(sandbox.data_dir) == before
    assert sandbox.calls("mysql") == []


@pytest.mark.skipif(os.geteuid() == 0, reason="requires a non-root user")
def test_cli_missing_source_is_reported_before_root_check(sandbox: Sandbox) -> None:
    """An unprivileged run with a bad path names the path, not the missing privileges."""
    missing = sandbox.base / "does-not-exist"
    env = {**sandbox.env(), "NCCTL_REQUIRE_ROOT": "true"}

    result = runner.invoke(app, ["restore", "run", str(missing), "--yes"], env=env)

    assert result.exit_code == 1
    text = next(sandbox.logs.glob("ncctl-*.log")).read_text(encoding="utf-8")
    assert f"Backup source does not exist: {missing}" in text
    assert "must be run as root" not in text


def test_check_source_accepts_paths_names_and_deferred_sources(sandbox: Sandbox) -> None:
    """Existing paths, stored backup names, dates and s3 URLs pass the early check."""
    runtime = sandbox.runtime()
    full = runtime.store.create_directory(FULL, now=datetime(2025, 1, 1, 2, 0, 0))

    RestoreJob(runtime, source=str(full.path)).check_source()
    RestoreJob(runtime, source=full.name).check_source()
    RestoreJob(runtime, date="20250101").check_source()
    RestoreJob(runtime, source="s3://nc-backups/missing.tar.gz").check_source()
    with pytest.raises(RestoreError, match="Backup source does not exist"):
        RestoreJob(runtime, source="nextcloud_backup_20200101_020000_full").check_source()


def test_missing_remote_object_is_reported(sandbox: Sandbox) -> None:
    """An s3:// source that is not in the bucket fails before any download."""
    runtime = sandbox.runtime()
    runtime.remote = RemoteStorage(
        RemoteConfig(enabled=True, bucket="nc-backups"), client=FakeS3Client()
    )
    url = "s3://nc-backups/nextcloud_backup_20250101_020000.tar.gz"

    job = RestoreJob(runtime, source=url)
    try:
        with pytest.raises(RestoreError, match=re.escape(f"Backup source does not exist: {url}")):
            with runtime.logger.operation("restore run") as op:
                job.prepare(op)
    finally:
        job.cleanup()

def test_restore_requires_source_or_date(sandbox: Sandbox) -> None:
    """Without a source or date there is nothing to restore."""
    runtime = sandbox.runtime()

    with pytest.raises(RestoreError, match="--date"):
        with runtime.logger.operation("restore run") as op:
            RestoreJob(runtime).prepare(op)


def test_incremental_without_base_is_refused(sandbox: Sandbox) -> None:
    """An incremental directory whose base is gone cannot be restored."""
    runtime = sandbox.runtime()
    store = runtime.store
    full = store.create_directory(FULL, now=datetime(2025, 1, 1, 2, 0, 0))
    incr = store.create_directory(INCREMENTAL, base=full, now=datetime(2025, 1, 2, 2, 0, 0))
    (incr.path / "config").mkdir()
    store.remove(full)

    with pytest.raises(RestoreError, match=f"Base backup {full.name} of incremental"):
        with runtime.logger.operation("restore run") as op:
            RestoreJob(runtime, source=str(incr.path)).prepare(op)


def test_unknown_date_is_reported(sandbox: Sandbox) -> None:
    """A date without matching backups is an error."""
    runtime = sandbox.runtime()

    with pytest.raises(RestoreError, match="No backup found for date 20200101"):
        with runtime.logger.operation("restore run") as op:
            RestoreJob(runtime, date="20200101").prepare(op)


@requires_rsync
def test_full_restore_reproduces_tree(sandbox: Sandbox) -> None:
    """Restoring a full backup into a damaged installation brings it back."""
    runtime = sandbox.runtime()
    backup = _backup(runtime).backup
    original_data = _tree(sandbox.data_dir)
    original_config = _tree(sandbox.root / "config")

    shutil.rmtree(sandbox.data_dir)
    sandbox.data_dir.mkdir()
    (sandbox.data_dir / "stray.txt").write_text("stray\n", encoding="utf-8")
    (sandbox.root / "config" / "config.php").write_text("<?php broken\n", encoding="utf-8")

    job = RestoreJob(runtime, date="20250101")
    with runtime.logger.operation("restore run") as op:
        plan = job.prepare(op)
        warnings = job.execute(op, plan)

    assert plan.kind == "directory"
    assert plan.backup_dir == backup.path
    assert set(plan.targets) == {"config", "data", "apps"}
    assert plan.database_dump is not None
    assert warnings == []
    assert _tree(sandbox.data_dir) == original_data
    assert _tree(sandbox.root / "config") == original_config

    mysql_calls = sandbox.calls("mysql")
    assert "DROP DATABASE IF EXISTS `nextcloud`;" in mysql_calls[0]
    imported = (sandbox.bin_dir / "mysql.stdin").read_text(encoding="utf-8")
    assert "CREATE TABLE `oc_users`" in imported


@requires_rsync
def test_restore_by_directory_name(sandbox: Sandbox) -> None:
    """Bare directory names resolve under the backup root."""
    runtime = sandbox.runtime()
    backup = _backup(runtime).backup

    with runtime.logger.operation("restore run") as op:
        plan = RestoreJob(runtime, source=backup.name).prepare(op)

    assert plan.backup_dir == sandbox.backups / backup.name
    assert plan.backup_type == FULL


@requires_rsync
@requires_tar
def test_restore_from_archive_verifies_checksum(sandbox: Sandbox) -> None:
    """Archives are checksum-verified and extracted into a scratch directory."""
    runtime = sandbox.runtime()
    result = _backup(runtime, archive=True)
    assert result.archive is not None

    job = RestoreJob(runtime, source=str(result.archive))
    with runtime.logger.operation("restore run") as op:
        plan = job.prepare(op)
    scratch = plan.backup_dir
    try:
        assert plan.kind == "archive"
        assert plan.checksum == "match"
        assert (scratch / "data" / "admin" / "files" / "hello.txt").is_file()
    finally:
        job.cleanup()
    assert not scratch.exists()


@requires_rsync
@requires_tar
def test_restore_rejects_checksum_mismatch(sandbox: Sandbox) -> None:
    """A tampered archive is refused before extraction."""
    runtime = sandbox.runtime()
    result = _backup(runtime, archive=True)
    assert result.archive is not None
    checksum_file = result.archive.with_name(result.archive.name + ".sha256")
    checksum_file.write_text(f"{'0' * 64}  {result.archive.name}\n", encoding="utf-8")

    job = RestoreJob(runtime, source=str(result.archive))
    try:
        with pytest.raises(RestoreError, match="Checksum verification failed"):
            with runtime.logger.operation("restore run") as op:
                job.prepare(op)
    finally:
        job.cleanup()
