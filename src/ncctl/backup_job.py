"""The ``backup create`` pipeline.

The job quiesces Nextcloud, decides between a full and an incremental backup,
copies each component with rsync (hard-linking unchanged files against the
base for incrementals), dumps the database, records metadata, optionally
archives and uploads the result and finally applies retention. Maintenance
mode is always switched off again, including after a failure: a backup never
modifies the live installation.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from . import archive as archive_ops
from .backups import (
    FULL,
    INCREMENTAL,
    BackupEntryBuilder,
    BackupError,
    BackupInstance,
    copy_into,
    directory_size,
)
from .database import dump_database, dump_filename
from .logging import OperationScope
from .providers.remote import RemoteStorageError
from .retention import apply_retention, plan_retention, resolve_chain_root
from .runtime import RuntimeContext
from .snapshot import copy_component
from .steps import StepRunner

REDIS_CONFIG = Path("/etc/redis/redis.conf")
APP_DIRECTORIES = ("apps", "custom_apps")


@dataclass
class BackupResult:
    """What a backup run produced."""

    backup: BackupInstance
    components: list[str] = field(default_factory=list)
    archive: Path | None = None
    checksum: str | None = None
    remote_key: str | None = None
    removed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "backup": self.backup.to_dict(),
            "components": list(self.components),
            "archive": str(self.archive) if self.archive else None,
            "checksum": self.checksum,
            "remote_key": self.remote_key,
            "removed": list(self.removed),
            "warnings": list(self.warnings),
        }


@dataclass
class BackupJob:
    """Run one backup against the configured installation."""

    runtime: RuntimeContext
    force_full: bool = False
    archive: bool | None = None
    upload: bool | None = None
    prune: bool = True
    now: datetime | None = None
    _partial: BackupInstance | None = field(default=None, init=False, repr=False)

    def choose_base(self) -> BackupInstance | None:
        """Return the base for an incremental run, or ``None`` for a full one."""
        if self.force_full or self.runtime.config.backups.force_full:
            return None
        backups = self.runtime.store.discover()
        if not backups:
            return None
        latest = backups[-1]
        by_name = {backup.name: backup for backup in backups}
        root = resolve_chain_root(latest, by_name)
        # An incremental on top of an orphan would be pruned immediately.
        if root is None:
            return None
        chain_length = sum(
            1 for backup in backups if resolve_chain_root(backup, by_name) == root
        )
        if chain_length >= self.runtime.config.backups.max_chain_length:
            return None
        return latest

    def run(self, op: OperationScope) -> BackupResult:
        """Execute the pipeline, recording steps on ``op``."""
        runtime = self.runtime
        runner = runtime.step_runner(op)
        try:
            runtime.maintenance.enter(runner)
            result = self._run_steps(runner, op)
        except Exception as exc:
            runner.run(
                "notify",
                lambda: runtime.notifier.failure("Nextcloud backup failed", str(exc)),
                optional=True,
            )
            if self._partial is not None and self._partial.path.exists():
                partial = self._partial
                runner.run(
                    "backup.discard",
                    lambda: runtime.store.remove(partial),
                    optional=True,
                )
            runtime.maintenance.leave(runner, optional=True)
            raise
        runtime.maintenance.leave(runner)
        runner.run(
            "notify",
            lambda: runtime.notifier.success(
                "Nextcloud backup completed",
                f"{result.backup.backup_type} backup {result.backup.name}",
            ),
            optional=True,
        )
        result.warnings = list(dict.fromkeys(result.warnings + runner.warnings))
        return result

    def _run_steps(self, runner: StepRunner, op: OperationScope) -> BackupResult:
        runtime = self.runtime
        config = runtime.config
        components_cfg = config.backups.components

        base = self.choose_base()
        backup_type = FULL if base is None else INCREMENTAL
        created = runner.run(
            "backup.directory",
            lambda: runtime.store.create_directory(backup_type, base=base, now=self.now),
        )
        if created is None:  # pragma: no cover - only reachable in dry-run runners
            raise BackupError("Backup directory was not created.")
        backup: BackupInstance = created
        self._partial = backup
        result = BackupResult(backup=backup)
        runtime.logger.info(
            f"Creating {backup_type} backup {backup.name}"
            + (f" based on {base.name}" if base is not None else "")
        )

        tools = config.tools
        nextcloud = config.nextcloud
        if components_cfg.config:
            if copy_component(
                runner,
                "config",
                nextcloud.root / "config",
                backup.path / "config",
                rsync_bin=tools.rsync,
                base=base.path / "config" if base else None,
            ):
                result.components.append("config")
        if components_cfg.data:
            if copy_component(
                runner,
                "data",
                nextcloud.data_dir,
                backup.path / "data",
                rsync_bin=tools.rsync,
                base=base.path / "data" if base else None,
                excludes=config.backups.excludes,
            ):
                result.components.append("data")
        if components_cfg.apps:
            for directory in APP_DIRECTORIES:
                if copy_component(
                    runner,
                    directory,
                    nextcloud.root / directory,
                    backup.path / directory,
                    rsync_bin=tools.rsync,
                    base=base.path / directory if base else None,
                ):
                    result.components.append(directory)

        if components_cfg.database:
            dump_path = backup.path / "database" / dump_filename(
                config.backups.prefix, backup.timestamp
            )
            dump_database(runner, config.database, tools, dump_path)
            result.components.append("database")

        if components_cfg.system:
            copied = self._copy_system_files(runner, backup)
            if copied:
                result.components.append("system")

        version = runner.run("occ.version", runtime.occ.version, optional=True)
        runtime.store.write_info(
            backup.path,
            {
                "Backup Date": datetime.now().astimezone().isoformat(timespec="seconds"),
                "Backup Directory": backup.path,
                "Backup Type": backup.backup_type,
                "Base Backup": base.name if base else "none",
                "Components": ", ".join(result.components),
                "Database Name": config.database.name,
                "Database User": config.database.user,
                "Nextcloud Version": version or "unknown",
            },
        )
        op.add_step("backup.info", status="succeeded")

        runner.run("backup.latest", lambda: runtime.store.update_latest_link(backup))
        entry = BackupEntryBuilder(
            backup=backup,
            components=result.components,
            nextcloud_version=version,
            actor=op.actor,
        ).build()
        runner.run("backup.index", lambda: runtime.backups.append(entry))
        # The local backup is complete from here on; later failures keep it.
        self._partial = None

        wants_upload = runtime.remote is not None if self.upload is None else self.upload
        if wants_upload and runtime.remote is None:
            raise BackupError("Remote upload requested but remote storage is not enabled.")
        wants_archive = (
            (config.backups.archive if self.archive is None else self.archive) or wants_upload
        )
        if wants_archive:
            self._archive(runner, backup, result)
        if wants_upload and result.archive is not None:
            self._upload(runner, result)

        updates = self._index_updates(result)
        runtime.backups.update_entry(backup.name, lambda item: item.update(updates))

        if self.prune:
            result.removed = self._apply_retention(runner)
        return result

    def _copy_system_files(self, runner: StepRunner, backup: BackupInstance) -> list[Path]:
        config = self.runtime.config
        sources = list(config.backups.system_files)
        if config.backups.components.redis:
            sources.append(REDIS_CONFIG)
        copied: list[Path] = []
        for source in sources:
            if not source.exists():
                continue
            destination = backup.path / "system" / source.relative_to(source.anchor)
            if runner.run(
                f"system.{source.name}",
                lambda source=source, destination=destination: copy_into(source, destination),
                optional=True,
            ):
                copied.append(source)
        return copied

    def _archive(self, runner: StepRunner, backup: BackupInstance, result: BackupResult) -> None:
        config = self.runtime.config
        stamp = backup.timestamp.strftime("%Y%m%d_%H%M%S")
        archive_path = config.backups.archive_dir / archive_ops.archive_name(
            config.backups.prefix, stamp, config.backups.compression
        )
        runner.run(
            "archive.create",
            lambda: archive_ops.create_archive(
                backup.path,
                archive_path,
                config.backups.compression,
                config.backups.compression_level,
                tar_bin=config.tools.tar,
            ),
        )
        runner.run(
            "archive.test",
            lambda: archive_ops.list_members(archive_path, tar_bin=config.tools.tar),
        )
        checksum = runner.run("archive.checksum", lambda: archive_ops.compute_checksum(archive_path))
        if checksum is not None:
            archive_ops.write_checksum_file(archive_path, checksum)
        result.archive = archive_path
        result.checksum = checksum

    def _upload(self, runner: StepRunner, result: BackupResult) -> None:
        remote = self.runtime.remote
        archive_path = result.archive
        if remote is None or archive_path is None:
            return
        key = runner.run(
            "remote.upload",
            lambda: remote.upload(archive_path),
            retry_on=(RemoteStorageError,),
        )
        result.remote_key = key
        checksum_file = archive_ops.checksum_path_for(archive_path)
        if checksum_file.exists():
            runner.run(
                "remote.upload.checksum",
                lambda: remote.upload(checksum_file),
                optional=True,
                retry_on=(RemoteStorageError,),
            )
        if not self.runtime.config.remote.keep_local_archive:
            archive_path.unlink(missing_ok=True)
            checksum_file.unlink(missing_ok=True)
            self.runtime.logger.info(f"Removed local archive {archive_path.name} after upload")

    def _index_updates(self, result: BackupResult) -> dict[str, object]:
        updates: dict[str, object] = {}
        if result.archive is not None:
            # Uploaded archives may be gone locally; remote_key locates them then.
            if result.archive.exists():
                updates["archive"] = str(result.archive)
                updates["size_bytes"] = result.archive.stat().st_size
        else:
            updates["size_bytes"] = directory_size(result.backup.path)
        if result.checksum:
            updates["checksum"] = {"algorithm": "sha256", "value": result.checksum}
        if result.remote_key:
            updates["remote_key"] = result.remote_key
        return updates

    def _apply_retention(self, runner: StepRunner) -> list[str]:
        runtime = self.runtime
        config = runtime.config
        plan = plan_retention(runtime.store.discover(), config.retention)
        removed = runner.run(
            "retention.apply",
            lambda: apply_retention(
                runtime.store,
                plan,
                archive_dir=config.backups.archive_dir,
                registry=runtime.backups,
            ),
        )
        return list(removed or [])


__all__ = ["BackupJob", "BackupResult"]
