"""Housekeeping: rotate old log files, empty temp directories, prune backups."""
from __future__ import annotations

import glob
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

from .retention import apply_retention, plan_retention
from .runtime import RuntimeContext

SECONDS_PER_DAY = 86400


@dataclass
class CleanupResult:
    """Files and backups removed (or that would be removed) by a cleanup run."""

    logs: list[Path] = field(default_factory=list)
    temp_entries: list[Path] = field(default_factory=list)
    backups: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "logs": [str(path) for path in self.logs],
            "temp_entries": [str(path) for path in self.temp_entries],
            "backups": list(self.backups),
        }


def expired_logs(directories: tuple[Path, ...] | list[Path], retention_days: int, *, now: float) -> list[Path]:
    """Return ``*.log*`` files under ``directories`` older than ``retention_days``."""
    cutoff = now - retention_days * SECONDS_PER_DAY
    expired: list[Path] = []
    for directory in directories:
        if not directory.is_dir():
            continue
        for path in sorted(directory.rglob("*.log*")):
            if path.is_file() and not path.is_symlink() and path.stat().st_mtime < cutoff:
                expired.append(path)
    return expired


def temp_entries(patterns: tuple[str, ...] | list[str]) -> list[Path]:
    """Return the children of every directory matched by ``patterns``."""
    entries: list[Path] = []
    for pattern in patterns:
        for match in sorted(glob.glob(pattern)):
            directory = Path(match)
            if directory.is_dir() and not directory.is_symlink():
                entries.extend(sorted(directory.iterdir()))
    return entries


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


def run_cleanup(runtime: RuntimeContext, *, dry_run: bool = False, now: float | None = None) -> CleanupResult:
    """Delete expired logs and temp files, then apply backup retention."""
    config = runtime.config
    current = time.time() if now is None else now
    log_dirs = list(dict.fromkeys([*config.cleanup.log_dirs, config.logs_dir]))
    result = CleanupResult(
        logs=expired_logs(log_dirs, config.log_retention_days, now=current),
        temp_entries=temp_entries(config.cleanup.temp_globs),
    )
    if not dry_run:
        for path in [*result.logs, *result.temp_entries]:
            _remove(path)
            runtime.logger.info(f"Removed {path}")

    plan = plan_retention(runtime.store.discover(), config.retention, now=current)
    result.backups = apply_retention(
        runtime.store,
        plan,
        archive_dir=config.backups.archive_dir,
        registry=runtime.backups,
        dry_run=dry_run,
    )
    return result


__all__ = ["CleanupResult", "expired_logs", "run_cleanup", "temp_entries"]
