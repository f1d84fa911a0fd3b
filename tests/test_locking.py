"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from ncctl.locking import LockManager, LockTimeoutError


def test_operation_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "backup.lock"
    with manager.operation_lock("backup") as handle:
        assert handle.wait_ms >= 0
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)
        assert data["operation"] == "backup"

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.operation_lock("backup", timeout=0.2):
        pass


def test_operation_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.operation_lock("backup"):
        with pytest.raises(LockTimeoutError):
            with manager.operation_lock("backup", timeout=0.1):
                pass


def test_mutate_acquires_global_then_operation(tmp_path: Path) -> None:
    """Lock bundles acquire the global lock first, then each operation lock."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate(["update", "backup"]) as bundle:
        assert bundle.wait_ms >= 0
        assert [handle.name for handle in bundle.handles] == ["ncctl", "backup", "update"]
        assert (tmp_path / "run" / "ncctl.lock").exists()
        assert (tmp_path / "run" / "backup.lock").exists()
        assert (tmp_path / "run" / "update.lock").exists()


def test_global_lock_serialises_different_operations(tmp_path: Path) -> None:
    """A restore cannot start while a backup holds the global lock."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate(["backup"]):
        with pytest.raises(LockTimeoutError):
            with manager.mutate(["restore"], timeout=0.1):
                pass


def test_status_reports_held_free_and_stale(tmp_path: Path) -> None:
    """Lock status distinguishes held, released and dead-owner lock files."""
    run_dir = tmp_path / "run"
    manager = LockManager(run_dir, default_timeout=1.0)

    with manager.operation_lock("released"):
        pass
    run_dir.mkdir(parents=True, exist_ok=True)
    (run_dir / "crashed.lock").write_text(
        json.dumps({"pid": 2**22 + 12345, "acquired_at": "2025-01-01T00:00:00Z", "operation": "backup"}),
        encoding="utf-8",
    )

    with manager.operation_lock("backup"):
        states = {info.name: info.state for info in manager.status()}

    assert states["backup"] == "held"
    assert states["released"] == "free"
    assert states["crashed"] == "stale"
