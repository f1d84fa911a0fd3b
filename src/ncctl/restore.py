"""Restore a Nextcloud installation from a backup directory or archive.

Restoring is split in two phases. :meth:`RestoreJob.prepare` resolves and
validates the source (download, checksum, extraction, base check) without
touching the installation. :meth:`RestoreJob.execute` then quiesces Nextcloud,
mirrors each component back, recreates the database and runs the post-restore
``occ`` repairs. When execution fails, maintenance mode stays on because the
installation may be half restored.
"""
from __future__ import annotations

import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from . import archive as archive_ops
from .backups import BackupError, BackupInstance, BackupStore
from .database import find_dump, import_database, recreate_database
from .logging import OperationScope
from .providers.remote import RemoteStorage, RemoteStorageError, parse_s3_url
from .runtime import RuntimeContext
from .snapshot import fix_ownership, restore_component
from .steps import StepRunner

ARCHIVE_SUFFIXES = (".tar.gz", ".tgz")
POST_RESTORE_OCC = (
    ("maintenance:repair",),
    ("db:add-missing-indices",),
    ("db:add-missing-columns",),
)


class RestoreError(RuntimeError):
    """Raised when a restore cannot proceed."""


@dataclass
class RestorePlan:
    """A validated restore source and what will be written where."""

    source: str
    kind: str
    backup_dir: Path
    backup_type: str
    base: str | None
    targets: dict[str, Path] = field(default_factory=dict)
    database_dump: Path | None = None
    checksum: str = "absent"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "source": self.source,
            "kind": self.kind,
            "backup_dir": str(self.backup_dir),
            "backup_type": self.backup_type,
            "base": self.base,
            "targets": {name: str(path) for name, path in self.targets.items()},
            "database_dump": str(self.database_dump) if self.database_dump else None,
            "checksum": self.checksum,
        }


@dataclass
class RestoreJob:
    """Restore from ``source`` (path, directory name or ``s3://`` URL) or ``date``."""

    runtime: RuntimeContext
    source: str | None = None
    date: str | None = None
    backup_root: Path | None = None
    _workdir: Path | None = field(default=None, init=False, repr=False)

    @property
    def store(self) -> BackupStore:
        """Return the store used to resolve directory names and dates."""
        if self.backup_root is None:
            return self.runtime.store
        return BackupStore(self.backup_root, prefix=self.runtime.config.backups.prefix)

    def check_source(self) -> None:
        """Reject a local source path that does not exist, before any privileged work.

        Dates and ``s3://`` URLs are resolved later by :meth:`prepare`. Paths
        below a directory the caller cannot search are left to :meth:`prepare`
        as well.
        """
        if self.source is None or self.source.startswith("s3://"):
            return
        candidate = Path(self.source).expanduser()
        if candidate.exists():
            return
        searched = [candidate.parent]
        if candidate.name == self.source:
            if (self.store.root / candidate.name).is_dir():
                return
            searched.append(self.store.root)
        if any(path.exists() and not os.access(path, os.X_OK) for path in searched):
            return
        raise RestoreError(f"Backup source does not exist: {candidate}")

    # ------------------------------------------------------------------
    def prepare(self, op: OperationScope) -> RestorePlan:
        """Resolve and validate the source without modifying the installation."""
        if self.source and self.source.startswith("s3://"):
            archive_path = self._download(op, self.source)
            return self._plan_from_archive(op, archive_path, kind="remote")
        if self.source is None:
            if not self.date:
                raise RestoreError("Provide a backup source or --date.")
            backup = self._backup_for_date(self.date)
            return self._plan_from_directory(backup.path, backup=backup)

        candidate = Path(self.source).expanduser()
        if self.source.endswith(ARCHIVE_SUFFIXES) or candidate.is_file():
            if not candidate.is_file():
                raise RestoreError(f"Backup source does not exist: {candidate}")
            if not candidate.name.endswith(ARCHIVE_SUFFIXES):
                raise RestoreError(f"Backup archive must be a .tar.gz file: {candidate}")
            return self._plan_from_archive(op, candidate, kind="archive")

        if candidate.is_dir():
            return self._plan_from_directory(candidate)
        named = self.store.root / candidate.name
        if candidate.name == self.source and named.is_dir():
            return self._plan_from_directory(named)
        raise RestoreError(f"Backup source does not exist: {candidate}")

    def _backup_for_date(self, date: str) -> BackupInstance:
        matches = self.store.find_by_date(date)
        if not matches:
            raise RestoreError(f"No backup found for date {date} under {self.store.root}")
        return matches[-1]

    def _download(self, op: OperationScope, url: str) -> Path:
        bucket, key = parse_s3_url(url)
        remote = self.runtime.remote or RemoteStorage(self.runtime.config.remote)
        workdir = self._scratch()
        destination = workdir / Path(key).name
        checksum_key = f"{key}.sha256"
        try:
            if not remote.exists(key, bucket=bucket):
                raise RestoreError(f"Backup source does not exist: {url}")
            remote.download(key, destination, bucket=bucket)
            op.add_step("remote.download", status="succeeded", detail=url)
            if remote.exists(checksum_key, bucket=bucket):
                remote.download(
                    checksum_key, archive_ops.checksum_path_for(destination), bucket=bucket
                )
                op.add_step("remote.download.checksum", status="succeeded")
            else:
                op.add_step("remote.download.checksum", status="skipped", detail="not available")
        except RemoteStorageError as exc:
            raise RestoreError(str(exc)) from exc
        return destination

    def _plan_from_archive(self, op: OperationScope, archive_path: Path, *, kind: str) -> RestorePlan:
        checksum_state = "absent"
        try:
            matches = archive_ops.verify_checksum(archive_path)
        except BackupError as exc:
            raise RestoreError(str(exc)) from exc
        if matches is False:
            raise RestoreError(f"Checksum verification failed for {archive_path}; file may be corrupted.")
        if matches is True:
            checksum_state = "match"
        op.add_step("archive.checksum", status="succeeded" if matches else "skipped", detail=checksum_state)

        extract_root = self._scratch() / "extracted"
        try:
            payload = archive_ops.extract_archive(
                archive_path,
                extract_root,
                tar_bin=self.runtime.config.tools.tar,
            )
        except BackupError as exc:
            raise RestoreError(str(exc)) from exc
        op.add_step("archive.extract", status="succeeded", detail=str(payload))
        metadata = BackupStore.read_metadata(payload)
        plan = self._build_plan(str(archive_path), kind, payload, metadata.backup_type, metadata.base_backup)
        plan.checksum = checksum_state
        return plan

    def _plan_from_directory(
        self,
        path: Path,
        *,
        backup: BackupInstance | None = None,
    ) -> RestorePlan:
        store = BackupStore(path.parent, prefix=self.runtime.config.backups.prefix)
        instance = backup or store.load(path)
        if instance is None:
            metadata = BackupStore.read_metadata(path)
            backup_type, base = metadata.backup_type, metadata.base_backup
        else:
            backup_type, base = instance.backup_type, instance.base
            if not store.base_exists(instance):
                raise RestoreError(
                    f"Base backup {instance.base or 'unknown'} of incremental "
                    f"{instance.name} not found under {store.root}"
                )
        return self._build_plan(str(path), "directory", path, backup_type, base)

    def _build_plan(
        self,
        source: str,
        kind: str,
        backup_dir: Path,
        backup_type: str,
        base: str | None,
    ) -> RestorePlan:
        config = self.runtime.config
        components = config.backups.components
        nextcloud = config.nextcloud
        wanted = {
            "config": (components.config, nextcloud.root / "config"),
            "data": (components.data, nextcloud.data_dir),
            "apps": (components.apps, nextcloud.root / "apps"),
            "custom_apps": (components.apps, nextcloud.root / "custom_apps"),
        }
        targets = {
            name: target
            for name, (enabled, target) in wanted.items()
            if enabled and (backup_dir / name).is_dir()
        }
        dump = find_dump(backup_dir) if components.database else None
        if not targets and dump is None:
            raise RestoreError(f"No restorable components found in {backup_dir}")
        return RestorePlan(
            source=source,
            kind=kind,
            backup_dir=backup_dir,
            backup_type=backup_type,
            base=base,
            targets=targets,
            database_dump=dump,
        )

    # ------------------------------------------------------------------
    def execute(self, op: OperationScope, plan: RestorePlan) -> list[str]:
        """Apply ``plan`` to the installation; return optional-step warnings."""
        runtime = self.runtime
        runner = runtime.step_runner(op)
        try:
            runtime.maintenance.enter(runner, stop_services=True)
            self._restore(runner, plan)
        except Exception:
            runtime.logger.error(
                "Restore failed; maintenance mode left enabled for manual inspection."
            )
            runtime.maintenance.resume_services(runner)
            raise
        runtime.maintenance.leave(runner)
        return list(runner.warnings)

    def _restore(self, runner: StepRunner, plan: RestorePlan) -> None:
        config = self.runtime.config
        for name, target in plan.targets.items():
            restore_component(
                runner,
                name,
                plan.backup_dir / name,
                target,
                rsync_bin=config.tools.rsync,
            )
            fix_ownership(runner, target, config.nextcloud.web_user)
        if plan.database_dump is not None:
            recreate_database(runner, config.database, config.tools)
            import_database(runner, config.database, config.tools, plan.database_dump)
        occ = self.runtime.occ
        for args in POST_RESTORE_OCC:
            runner.run(f"occ.{args[0]}", lambda args=args: occ.run(*args), optional=True)

    # ------------------------------------------------------------------
    def _scratch(self) -> Path:
        if self._workdir is None:
            self._workdir = Path(tempfile.mkdtemp(prefix="ncctl-restore-"))
        return self._workdir

    def cleanup(self) -> None:
        """Remove temporary download/extraction directories."""
        if self._workdir is not None:
            shutil.rmtree(self._workdir, ignore_errors=True)
            self._workdir = None


__all__ = ["RestoreError", "RestoreJob", "RestorePlan"]
