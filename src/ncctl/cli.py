"""Typer-powered command line interface for ``ncctl``.

Every command runs inside a structured operation scope so that the outcome,
the recorded steps and any lock wait time land in ``operations.jsonl``.
Commands that modify the installation or the backup store hold the global
lock (plus a per-operation lock) for their whole duration.
"""
from __future__ import annotations

import json
import os
import textwrap
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .archive import verify_archive
from .backup_job import BackupJob
from .backups import BackupError, BackupInstance, BackupRegistryError, BackupStore
from .cleanup import run_cleanup
from .config import ConfigError, load_config
from .database import DatabaseError, optimize_database
from .exit_codes import ExitCode
from .locking import LockError
from .logging import OperationScope
from .monitor import collect_status, evaluate, write_status
from .notify import NotificationError
from .occ import OccError
from .providers import RemoteStorage, RemoteStorageError, SystemdError
from .restore import RestoreError, RestoreJob
from .retention import apply_retention, plan_retention
from .runtime import RuntimeContext, build_runtime
from .steps import StepError
from .update import UpdateError, UpdateJob, check_for_update

console = Console()

OPERATION_ERRORS: tuple[type[BaseException], ...] = (
    BackupError,
    DatabaseError,
    LockError,
    NotificationError,
    OccError,
    RemoteStorageError,
    RestoreError,
    StepError,
    SystemdError,
    UpdateError,
    OSError,
)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to ncctl's YAML config file.",
)
ENV_FILE_OPTION = typer.Option(
    None,
    "--env-file",
    dir_okay=False,
    help="Read legacy KEY=VALUE settings (e.g. .env or backup.conf) from this file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON.",
)
YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Do not ask for confirmation.",
)
DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Show what would happen without changing anything.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Nextcloud backup, restore, update and monitoring CLI.

        Backups are hard-linked incremental snapshots with a database dump,
        optionally archived and uploaded to S3-compatible storage.
        """
    ).strip(),
)
backup_app = typer.Typer(help="Create, inspect, verify and prune backups.")
restore_app = typer.Typer(help="Restore Nextcloud from a backup.")
update_app = typer.Typer(help="Check for and apply Nextcloud core updates.")
status_app = typer.Typer(help="Report and check system and Nextcloud health.")
maintenance_app = typer.Typer(help="Maintenance mode, repairs and database optimisation.")
config_app = typer.Typer(help="Inspect the effective configuration.")
lock_app = typer.Typer(help="Inspect ncctl lock files.")
notify_app = typer.Typer(help="Exercise the notification channel.")

app.add_typer(backup_app, name="backup")
app.add_typer(restore_app, name="restore")
app.add_typer(update_app, name="update")
app.add_typer(status_app, name="status")
app.add_typer(maintenance_app, name="maintenance")
app.add_typer(config_app, name="config")
app.add_typer(lock_app, name="lock")
app.add_typer(notify_app, name="notify")


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    env_file: Path | None = None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, env_file=env_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc
    runtime = build_runtime(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the ncctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    env_file: Path | None = ENV_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    runtime = _ensure_runtime(ctx, config_file, env_file, lock_timeout)
    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"ncctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FAILURE,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def _require_root(runtime: RuntimeContext, op: OperationScope) -> None:
    """Abort before any mutation when root is required but not held."""
    if runtime.config.require_root and os.geteuid() != 0:
        _command_error(op, "This command must be run as root (set require_root: false to override).")


def _maintenance_hint(runtime: RuntimeContext) -> None:
    """Tell the operator when a failed run left maintenance mode enabled."""
    if not runtime.maintenance.active:
        return
    message = (
        "Maintenance mode is still enabled; run 'ncctl maintenance off' once the "
        "installation is consistent."
    )
    console.print(f"[yellow]warning:[/yellow] {message}")
    runtime.logger.warning(message)


def _warn_list(warnings: Sequence[str]) -> None:
    for item in warnings:
        console.print(f"[yellow]warning:[/yellow] {item}")


def _render_backups(
    backups: Sequence[BackupInstance],
    entries: Mapping[str, Mapping[str, object]],
) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Name", style="bold")
    table.add_column("Type")
    table.add_column("Base")
    table.add_column("Status")
    table.add_column("Archive")
    if not backups:
        table.add_row("(none)", "", "", "", "")
    for backup in backups:
        entry = entries.get(backup.name, {})
        table.add_row(
            backup.name,
            backup.backup_type,
            backup.base or "",
            str(entry.get("status", "untracked")),
            str(entry.get("archive", "")),
        )
    console.print(table)


def _index_by_id(runtime: RuntimeContext, op: OperationScope) -> dict[str, dict[str, object]]:
    try:
        entries = runtime.backups.list_entries()
    except BackupRegistryError as exc:
        _command_error(op, f"Failed to read backup index: {exc}")
    return {str(entry.get("id")): entry for entry in entries}


# ----------------------------------------------------------------------
# backup


@backup_app.command("create")
def backup_create(
    ctx: typer.Context,
    full: bool = typer.Option(
        False,
        "--full",
        help="Force a full backup even when an incremental base is available.",
    ),
    archive: bool | None = typer.Option(
        None,
        "--archive/--no-archive",
        help="Pack the backup into a .tar.gz with a .sha256 checksum (default from config).",
    ),
    upload: bool | None = typer.Option(
        None,
        "--upload/--no-upload",
        help="Upload the archive to remote storage (default: when remote storage is enabled).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Create a full or incremental backup of the installation."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup create",
        args={"full": full, "archive": archive, "upload": upload, "json": json_output},
        target={"kind": "backup", "root": str(runtime.config.backups.root)},
    ) as op:
        _require_root(runtime, op)
        try:
            with runtime.locks.mutate(["backup"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = BackupJob(runtime, force_full=full, archive=archive, upload=upload).run(op)
        except OPERATION_ERRORS as exc:
            _command_error(op, f"Backup failed: {exc}")

        payload = result.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            console.print(
                f"[green]Created {result.backup.backup_type} backup "
                f"'{result.backup.name}'.[/green]"
            )
            if result.backup.base:
                console.print(f"Base: {result.backup.base}")
            console.print(f"Components: {', '.join(result.components) or '(none)'}")
            if result.archive is not None:
                console.print(f"Archive: {result.archive}")
            if result.checksum:
                console.print(f"Checksum (sha256): {result.checksum}")
            if result.remote_key:
                console.print(f"Remote key: {result.remote_key}")
            if result.removed:
                console.print(f"Pruned: {', '.join(result.removed)}")
            _warn_list(result.warnings)

        if result.warnings:
            op.warning(
                "Backup created with warnings.",
                warnings=result.warnings,
                backups=[result.backup.name],
                context=payload,
            )
        else:
            op.success(
                "Backup created.",
                changed=1 + len(result.removed),
                backups=[result.backup.name],
                context=payload,
            )


@backup_app.command("list")
def backup_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List backups found under the backup root."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"json": json_output},
        target={"kind": "backup", "scope": "store"},
    ) as op:
        backups = runtime.store.discover()
        entries = _index_by_id(runtime, op)
        if json_output:
            rows = []
            for backup in backups:
                row = backup.to_dict()
                entry = entries.get(backup.name)
                if entry is not None:
                    row["index"] = entry
                rows.append(row)
            console.print_json(data={"backups": rows})
            op.success("Reported backup list (JSON).", changed=0)
            return
        _render_backups(backups, entries)
        op.success("Reported backup list.", changed=0)


@backup_app.command("show")
def backup_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Backup directory name to inspect."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show metadata and index details for a backup."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup show",
        args={"name": name, "json": json_output},
        target={"kind": "backup", "id": name},
    ) as op:
        instance = runtime.store.get(name)
        try:
            entry = runtime.backups.find_by_id(name)
        except BackupRegistryError as exc:
            _command_error(op, f"Failed to read backup index: {exc}")
        if instance is None and entry is None:
            _command_error(op, f"Backup '{name}' not found.")

        details: dict[str, object] = {}
        if instance is not None:
            details.update(instance.to_dict())
            details["base_present"] = runtime.store.base_exists(instance)
        if entry is not None:
            details["index"] = entry

        if json_output:
            console.print_json(data=details)
        else:
            table = Table(show_header=False)
            table.add_column("Field", style="bold")
            table.add_column("Value")
            for key, value in details.items():
                rendered = json.dumps(value, indent=2) if isinstance(value, (dict, list)) else str(value)
                table.add_row(key, rendered)
            console.print(table)
        op.success("Reported backup details.", changed=0, context={"backup": name})


@backup_app.command("verify")
def backup_verify(
    ctx: typer.Context,
    archive: Path = typer.Argument(..., help="Backup archive (.tar.gz) to verify."),
    check_database: bool = typer.Option(
        False,
        "--database",
        help="Also inspect the embedded SQL dump.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Check an archive's checksum, readability and contents."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup verify",
        args={"archive": str(archive), "database": check_database, "json": json_output},
        target={"kind": "backup", "scope": "verify", "archive": str(archive)},
    ) as op:
        report = verify_archive(
            archive,
            tar_bin=runtime.config.tools.tar,
            check_database=check_database,
            table_prefix=runtime.config.database.table_prefix,
        )
        payload = report.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            for error in report.errors:
                console.print(f"[red]error:[/red] {error}")
            _warn_list(report.warnings)
            if report.valid:
                console.print(
                    f"[green]Archive {archive} is valid ({report.members} entries, "
                    f"checksum {report.checksum}).[/green]"
                )

        if not report.valid:
            op.error("Backup verification failed.", errors=report.errors, context=payload)
            raise typer.Exit(code=ExitCode.FAILURE)
        if report.warnings:
            op.warning("Backup verified with warnings.", warnings=report.warnings, context=payload)
            return
        op.success("Backup verified.", changed=0, context=payload)


@backup_app.command("prune")
def backup_prune(
    ctx: typer.Context,
    dry_run: bool = DRY_RUN_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Apply the retention policy to the backup store."""
    runtime = _get_runtime(ctx)
    policy = runtime.config.retention
    with runtime.logger.operation(
        "backup prune",
        args={"dry_run": dry_run, "json": json_output},
        target={"kind": "backup", "scope": "prune", "strategy": policy.strategy},
    ) as op:
        if not dry_run:
            _require_root(runtime, op)
        try:
            with runtime.locks.mutate(["backup"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                plan = plan_retention(runtime.store.discover(), policy)
                removed = apply_retention(
                    runtime.store,
                    plan,
                    archive_dir=runtime.config.backups.archive_dir,
                    registry=runtime.backups,
                    dry_run=dry_run,
                )
        except OPERATION_ERRORS as exc:
            _command_error(op, f"Prune failed: {exc}")

        payload = {**plan.to_dict(), "removed": removed}
        if json_output:
            console.print_json(data=payload)
        else:
            verb = "Would remove" if dry_run else "Removed"
            if not removed:
                console.print("Nothing to prune.")
            for name in removed:
                console.print(f"{verb} {name} ({plan.reasons.get(name, 'expired')})")
            promote_verb = "Would promote" if dry_run else "Promoted"
            for backup in plan.promote:
                console.print(f"{promote_verb} {backup.name} to a full backup")
        if dry_run:
            _dry_run_complete(op, f"{len(removed)} backup(s) would be removed.", context=payload)
            return
        op.success(
            "Retention applied.",
            changed=len(removed),
            backups=removed,
            context=payload,
        )


# ----------------------------------------------------------------------
# restore


def _list_restore_candidates(store: BackupStore) -> None:
    backups = store.discover()
    if not backups:
        console.print(f"No backups found under {store.root}.")
        return
    for backup in backups:
        base = f" (base: {backup.base})" if backup.base else ""
        console.print(f"{backup.name}  {backup.backup_type}{base}")


@restore_app.command("run")
def restore_run(
    ctx: typer.Context,
    source: str | None = typer.Argument(
        None,
        help="Archive path, backup directory (name or path) or s3://bucket/key URL.",
    ),
    date: str | None = typer.Option(
        None,
        "--date",
        "-d",
        help="Restore the newest backup taken on YYYYMMDD[_HHMMSS].",
    ),
    backup_dir: Path | None = typer.Option(
        None,
        "--backup-dir",
        "-b",
        file_okay=False,
        help="Look for backups under this directory instead of the configured root.",
    ),
    list_only: bool = typer.Option(
        False,
        "--list",
        "-l",
        help="List restorable backups and exit.",
    ),
    yes: bool = YES_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Restore files and database from a backup."""
    runtime = _get_runtime(ctx)
    job = RestoreJob(runtime, source=source, date=date, backup_root=backup_dir)
    if list_only:
        _list_restore_candidates(job.store)
        return

    with runtime.logger.operation(
        "restore run",
        args={
            "source": source,
            "date": date,
            "backup_dir": str(backup_dir) if backup_dir else None,
            "dry_run": dry_run,
        },
        target={"kind": "restore", "root": str(runtime.config.nextcloud.root)},
    ) as op:
        if source is None and date is None:
            _command_error(op, "Provide a backup SOURCE or --date.")
        try:
            job.check_source()
        except OPERATION_ERRORS as exc:
            _command_error(op, f"Restore failed: {exc}")
        if not dry_run:
            _require_root(runtime, op)
        try:
            with runtime.locks.mutate(["restore"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                plan = job.prepare(op)
                payload = plan.to_dict()
                if json_output:
                    console.print_json(data=payload)
                else:
                    console.print(f"Restoring {plan.backup_type} backup from {plan.source}")
                    for name, target in plan.targets.items():
                        console.print(f"  - {name} -> {target}")
                    if plan.database_dump is not None:
                        console.print(
                            f"  - database {runtime.config.database.name} <- {plan.database_dump.name}"
                        )
                if dry_run:
                    _dry_run_complete(op, "restore plan validated; nothing changed.", context=payload)
                    return
                if not yes:
                    confirmed = typer.confirm(
                        "This will overwrite the current Nextcloud installation. Continue?",
                        default=False,
                    )
                    if not confirmed:
                        console.print("[yellow]Restore cancelled.[/yellow]")
                        op.warning("Restore cancelled by operator.", warnings=["user-cancelled"])
                        return
                warnings = job.execute(op, plan)
        except OPERATION_ERRORS as exc:
            _maintenance_hint(runtime)
            _command_error(op, f"Restore failed: {exc}")
        finally:
            job.cleanup()

        console.print("[green]Restore completed.[/green]")
        _warn_list(warnings)
        if warnings:
            op.warning("Restore completed with warnings.", warnings=warnings, context=payload)
            return
        op.success("Restore completed.", changed=len(plan.targets), context=payload)


@restore_app.command("list")
def restore_list(
    ctx: typer.Context,
    remote: bool = typer.Option(
        False,
        "--remote",
        help="List archives in remote storage instead of local backups.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List restorable backups locally or in remote storage."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restore list",
        args={"remote": remote, "json": json_output},
        target={"kind": "restore", "scope": "remote" if remote else "local"},
    ) as op:
        if not remote:
            backups = runtime.store.discover()
            if json_output:
                console.print_json(data={"backups": [b.to_dict() for b in backups]})
            else:
                _list_restore_candidates(runtime.store)
            op.success("Reported local backups.", changed=0)
            return

        storage = runtime.remote
        if storage is None:
            if not runtime.config.remote.bucket:
                _command_error(op, "Remote storage is not configured.")
            storage = RemoteStorage(runtime.config.remote)
        try:
            objects = [item for item in storage.list() if not item.key.endswith(".sha256")]
        except RemoteStorageError as exc:
            _command_error(op, f"Failed to list remote backups: {exc}")

        if json_output:
            console.print_json(data={"objects": [item.to_dict() for item in objects]})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("URL", style="bold")
            table.add_column("Size")
            table.add_column("Last Modified")
            if not objects:
                table.add_row("(none)", "", "")
            for item in objects:
                modified = item.last_modified.isoformat() if item.last_modified else ""
                table.add_row(storage.url_for(item.key), str(item.size), modified)
            console.print(table)
        op.success("Reported remote backups.", changed=0)


# ----------------------------------------------------------------------
# update


@update_app.command("check")
def update_check(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Report whether a newer Nextcloud release is offered (exit 2 when it is)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "update check",
        args={"json": json_output},
        target={"kind": "update", "root": str(runtime.config.nextcloud.root)},
    ) as op:
        try:
            check = check_for_update(runtime.occ)
            available = check.update_available
        except (UpdateError, OccError) as exc:
            _command_error(op, f"Update check failed: {exc}")

        payload = check.to_dict()
        if json_output:
            console.print_json(data=payload)
        elif available:
            console.print(
                f"[yellow]Update available:[/yellow] {check.installed} -> {check.available}"
            )
        else:
            console.print(f"[green]Nextcloud {check.installed} is up to date.[/green]")
        op.success("Checked for updates.", changed=0, context=payload)
    if available:
        raise typer.Exit(code=ExitCode.UPDATE_AVAILABLE)


@update_app.command("run")
def update_run(
    ctx: typer.Context,
    force: bool = typer.Option(
        False,
        "--force",
        help="Run the updater even when no newer version is reported.",
    ),
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip the pre-update backup.",
    ),
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Back up, then update Nextcloud with the web updater and occ upgrade."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "update run",
        args={"force": force, "no_backup": no_backup, "json": json_output},
        target={"kind": "update", "root": str(runtime.config.nextcloud.root)},
    ) as op:
        _require_root(runtime, op)
        try:
            check = check_for_update(runtime.occ)
            available = check.update_available
        except (UpdateError, OccError) as exc:
            _command_error(op, f"Update check failed: {exc}")
        if not available and not force:
            console.print(f"[green]Nextcloud {check.installed} is up to date.[/green]")
            op.success("No update available.", changed=0, context=check.to_dict())
            return
        if not yes:
            target_version = check.available or check.installed
            if not typer.confirm(f"Update Nextcloud to {target_version}?", default=False):
                console.print("[yellow]Update cancelled.[/yellow]")
                op.warning("Update cancelled by operator.", warnings=["user-cancelled"])
                return

        try:
            # The pre-update backup runs under the same locks.
            with runtime.locks.mutate(["update", "backup"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = UpdateJob(runtime, force=force, pre_backup=not no_backup).run(op)
        except OPERATION_ERRORS as exc:
            _maintenance_hint(runtime)
            _command_error(op, f"Update failed: {exc}")

        payload = result.to_dict()
        if json_output:
            console.print_json(data=payload)
        elif result.updated:
            console.print(
                f"[green]Nextcloud updated: {check.installed} -> "
                f"{result.new_version or 'unknown'}.[/green]"
            )
        else:
            console.print(f"[green]Nextcloud {check.installed} is up to date.[/green]")
        _warn_list(result.warnings)
        backups = [result.backup.backup.name] if result.backup else None
        if result.warnings:
            op.warning("Update completed with warnings.", warnings=result.warnings, backups=backups, context=payload)
            return
        op.success("Update completed.", changed=int(result.updated), backups=backups, context=payload)


# ----------------------------------------------------------------------
# status


@status_app.callback(invoke_without_command=True)
def status_report(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
    write: bool = typer.Option(
        False,
        "--write",
        help="Also write the snapshot to the configured status file.",
    ),
) -> None:
    """Print a health snapshot of the host and Nextcloud."""
    if ctx.invoked_subcommand is not None:
        return
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output, "write": write},
        target={"kind": "status"},
    ) as op:
        snapshot = collect_status(runtime)
        if write:
            try:
                path = write_status(snapshot, runtime.config.monitoring.status_file)
            except OSError as exc:
                _command_error(op, f"Failed to write status file: {exc}")
            op.add_step("status.write", status="succeeded", detail=str(path))
        if json_output:
            console.print_json(data=snapshot)
        else:
            _render_status(snapshot)
        op.success("Reported status.", changed=int(write))


def _render_status(snapshot: Mapping[str, object]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Section", style="bold")
    table.add_column("Key")
    table.add_column("Value")
    for section in ("system", "nextcloud", "services", "disks"):
        values = snapshot.get(section)
        if not isinstance(values, Mapping):
            continue
        for key, value in values.items():
            table.add_row(section, str(key), "" if value is None else str(value))
    console.print(table)
    console.print(f"Collected at {snapshot.get('timestamp')}")


@status_app.command("check")
def status_check(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Evaluate disk, service and maintenance thresholds (exit 1 on issues)."""
    runtime = _get_runtime(ctx)
    monitoring = runtime.config.monitoring
    with runtime.logger.operation(
        "status check",
        args={"json": json_output},
        target={"kind": "status", "scope": "check"},
    ) as op:
        snapshot = collect_status(runtime)
        report = evaluate(
            snapshot,
            warn_percent=monitoring.disk_warn_percent,
            critical_percent=monitoring.disk_critical_percent,
        )
        payload = report.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            for issue in report.issues:
                console.print(f"[red]issue:[/red] {issue}")
            _warn_list(report.warnings)
            if report.healthy and not report.warnings:
                console.print("[green]All checks passed.[/green]")

        if not report.healthy:
            op.error("Health check found issues.", errors=report.issues, context=payload)
            raise typer.Exit(code=ExitCode.FAILURE)
        if report.warnings:
            op.warning("Health check passed with warnings.", warnings=report.warnings, context=payload)
            return
        op.success("Health check passed.", changed=0, context=payload)


# ----------------------------------------------------------------------
# maintenance / cleanup


def _set_maintenance(ctx: typer.Context, enabled: bool) -> None:
    runtime = _get_runtime(ctx)
    label = "on" if enabled else "off"
    with runtime.logger.operation(
        f"maintenance {label}",
        args={"enabled": enabled},
        target={"kind": "maintenance", "root": str(runtime.config.nextcloud.root)},
    ) as op:
        _require_root(runtime, op)
        try:
            with runtime.locks.mutate(["maintenance"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                runtime.occ.set_maintenance(enabled)
        except OPERATION_ERRORS as exc:
            _command_error(op, f"Failed to turn maintenance mode {label}: {exc}")
        op.add_step(f"maintenance.{label}", status="succeeded")
        console.print(f"[green]Maintenance mode {label}.[/green]")
        op.success(f"Maintenance mode turned {label}.", changed=1)


@maintenance_app.command("on")
def maintenance_on(ctx: typer.Context) -> None:
    """Enable Nextcloud maintenance mode."""
    _set_maintenance(ctx, True)


@maintenance_app.command("off")
def maintenance_off(ctx: typer.Context) -> None:
    """Disable Nextcloud maintenance mode."""
    _set_maintenance(ctx, False)


@maintenance_app.command("status")
def maintenance_status(ctx: typer.Context) -> None:
    """Report whether maintenance mode is enabled."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "maintenance status",
        target={"kind": "maintenance", "root": str(runtime.config.nextcloud.root)},
    ) as op:
        try:
            enabled = runtime.occ.maintenance_enabled()
        except OccError as exc:
            _command_error(op, f"Failed to read maintenance mode: {exc}")
        console.print(f"Maintenance mode: {'enabled' if enabled else 'disabled'}")
        op.success("Reported maintenance mode.", changed=0, context={"enabled": enabled})


@maintenance_app.command("repair")
def maintenance_repair(ctx: typer.Context) -> None:
    """Run occ repair, missing-index, file-scan and preview repairs."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "maintenance repair",
        target={"kind": "maintenance", "root": str(runtime.config.nextcloud.root)},
    ) as op:
        _require_root(runtime, op)
        if not runtime.occ.available():
            _command_error(op, f"occ not found at {runtime.occ.occ_path}; is Nextcloud installed?")
        try:
            with runtime.locks.mutate(["maintenance"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                failed = runtime.maintenance.repair(runtime.step_runner(op))
        except OPERATION_ERRORS as exc:
            _maintenance_hint(runtime)
            _command_error(op, f"Repair failed: {exc}")
        if failed:
            _maintenance_hint(runtime)
            _command_error(
                op,
                f"Repair completed with errors: {', '.join(failed)}",
                errors=failed,
            )
        console.print("[green]Repair completed successfully.[/green]")
        op.success("Repair completed.", changed=1)


@maintenance_app.command("optimize-db")
def maintenance_optimize_db(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Run OPTIMIZE TABLE on every table of the MySQL/MariaDB database."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "maintenance optimize-db",
        args={"json": json_output},
        target={"kind": "database", "name": runtime.config.database.name},
    ) as op:
        _require_root(runtime, op)
        try:
            with runtime.locks.mutate(["database"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                optimized, failed = optimize_database(
                    runtime.step_runner(op),
                    runtime.config.database,
                    runtime.config.tools,
                )
        except OPERATION_ERRORS as exc:
            _command_error(op, f"Database optimisation failed: {exc}")

        payload = {"optimized": optimized, "failed": failed}
        if json_output:
            console.print_json(data=payload)
        else:
            console.print(f"Optimized {len(optimized)} table(s).")
            _warn_list([f"Failed to optimize table: {table}" for table in failed])
        for table in failed:
            runtime.logger.warning(f"Failed to optimize table: {table}")
        op.success(
            f"Optimized {len(optimized)} table(s).",
            changed=len(optimized),
            context=payload,
        )


@app.command()
def cleanup(
    ctx: typer.Context,
    dry_run: bool = DRY_RUN_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Remove expired logs and temp files, then apply backup retention."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cleanup",
        args={"dry_run": dry_run, "json": json_output},
        target={"kind": "cleanup"},
    ) as op:
        if not dry_run:
            _require_root(runtime, op)
        try:
            with runtime.locks.mutate(["cleanup", "backup"]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = run_cleanup(runtime, dry_run=dry_run)
        except OPERATION_ERRORS as exc:
            _command_error(op, f"Cleanup failed: {exc}")

        payload = result.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            verb = "Would remove" if dry_run else "Removed"
            console.print(f"{verb} {len(result.logs)} log file(s).")
            console.print(f"{verb} {len(result.temp_entries)} temporary entr(ies).")
            console.print(f"{verb} {len(result.backups)} backup(s).")
        if dry_run:
            _dry_run_complete(op, "cleanup plan computed; nothing removed.", context=payload)
            return
        changed = len(result.logs) + len(result.temp_entries) + len(result.backups)
        op.success("Cleanup complete.", changed=changed, backups=result.backups, context=payload)


# ----------------------------------------------------------------------
# config / lock / notify


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges (secrets masked)."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@lock_app.command("status")
def lock_status(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show held, free and stale lock files."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "lock status",
        args={"json": json_output},
        target={"kind": "lock", "dir": str(runtime.config.runtime_dir)},
    ) as op:
        infos = runtime.locks.status()
        if json_output:
            console.print_json(data={"locks": [info.to_dict() for info in infos]})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Lock", style="bold")
            table.add_column("State")
            table.add_column("PID")
            table.add_column("Operation")
            table.add_column("Acquired At")
            if not infos:
                table.add_row("(none)", "", "", "", "")
            for info in infos:
                table.add_row(
                    info.name,
                    info.state,
                    str(info.pid or ""),
                    info.operation or "",
                    info.acquired_at or "",
                )
            console.print(table)
        stale = [info.name for info in infos if info.state == "stale"]
        if stale:
            op.warning("Stale locks found.", warnings=[f"stale lock: {name}" for name in stale])
            return
        op.success("Reported lock status.", changed=0)


@notify_app.command("test")
def notify_test(ctx: typer.Context) -> None:
    """Send a test message through the configured notification method."""
    runtime = _get_runtime(ctx)
    method = runtime.config.notifications.method
    with runtime.logger.operation(
        "notify test",
        args={"method": method},
        target={"kind": "notify", "method": method},
    ) as op:
        try:
            runtime.notifier.send("ncctl test notification", "Notification channel is working.")
        except NotificationError as exc:
            _command_error(op, f"Notification failed: {exc}")
        console.print(f"[green]Test notification sent via {method}.[/green]")
        op.success("Sent test notification.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
