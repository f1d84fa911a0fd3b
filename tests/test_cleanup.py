"""Tests for the cleanup housekeeping run."""
from __future__ import annotations

import os
import time
from pathlib import Path

from conftest import Sandbox, daily_fulls

from ncctl.cleanup import expired_logs, run_cleanup, temp_entries

NOW = float(int(time.time()))


def _aged(path: Path, days: float, content: str = "x\n") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    stamp = NOW - days * 86400
    os.utime(path, (stamp, stamp))
    return path


def test_expired_logs_matches_rotated_files(tmp_path: Path) -> None:
    """Plain and rotated log files older than the retention are selected."""
    old = _aged(tmp_path / "logs" / "nextcloud.log", 40)
    rotated = _aged(tmp_path / "logs" / "archive" / "nextcloud.log.1.gz", 35)
    _aged(tmp_path / "logs" / "recent.log", 2)
    _aged(tmp_path / "logs" / "notes.txt", 90)
    (tmp_path / "logs" / "link.log").symlink_to(old)

    found = expired_logs([tmp_path / "logs", tmp_path / "missing"], 30, now=NOW)

    assert found == sorted([rotated, old])


def test_temp_entries_lists_children_of_matching_directories(tmp_path: Path) -> None:
    """Glob patterns select directories whose contents are emptied."""
    upload = tmp_path / "data" / "admin" / "uploads"
    (upload / "chunk-1").mkdir(parents=True)
    (upload / "part.tmp").write_text("x", encoding="utf-8")
    (tmp_path / "data" / "bob" / "uploads").mkdir(parents=True)

    entries = temp_entries([str(tmp_path / "data" / "*" / "uploads")])

    assert entries == [upload / "chunk-1", upload / "part.tmp"]


def test_run_cleanup_removes_logs_temp_and_backups(sandbox: Sandbox) -> None:
    """A cleanup run removes expired logs and temp files and applies retention."""
    app_logs = sandbox.base / "nclogs"
    expired = _aged(app_logs / "nextcloud.log", 45)
    own_log = _aged(sandbox.logs / "ncctl-20200101.log", 45)
    fresh = _aged(app_logs / "audit.log", 1)
    tmp_dir = sandbox.base / "tmpdir"
    _aged(tmp_dir / "sess_abc", 1)
    runtime = sandbox.runtime(
        cleanup={"log_dirs": [str(app_logs)], "temp_globs": [str(tmp_dir)]},
        retention={"keep_last": 3, "min_age_days": 0},
    )
    daily_fulls(runtime.store, 5, now=NOW)

    preview = run_cleanup(runtime, dry_run=True, now=NOW)
    assert preview.logs == [expired, own_log]
    assert len(preview.backups) == 2
    assert expired.exists()
    assert len(runtime.store.discover()) == 5

    result = run_cleanup(runtime, now=NOW)

    assert result.to_dict()["logs"] == [str(expired), str(own_log)]
    assert not expired.exists()
    assert not own_log.exists()
    assert fresh.exists()
    assert tmp_dir.is_dir()
    assert list(tmp_dir.iterdir()) == []
    assert len(runtime.store.discover()) == 3
