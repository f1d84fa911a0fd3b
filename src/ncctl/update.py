"""Nextcloud core update check and guarded update run."""
from __future__ import annotations

from dataclasses import dataclass, field

from packaging.version import InvalidVersion, Version

from .backup_job import BackupJob, BackupResult
from .logging import OperationScope
from .occ import OccClient, OccError
from .runtime import RuntimeContext


class UpdateError(RuntimeError):
    """Raised when checking for or applying an update fails."""


@dataclass(frozen=True)
class UpdateCheck:
    """Installed and offered core versions."""

    installed: str
    available: str | None

    @property
    def update_available(self) -> bool:
        """Return ``True`` when the offered version is newer than the installed one."""
        if not self.available:
            return False
        try:
            return Version(self.available) > Version(self.installed)
        except InvalidVersion as exc:
            raise UpdateError(f"Cannot compare versions: {exc}") from exc

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "installed": self.installed,
            "available": self.available,
            "update_available": self.update_available,
        }


def check_for_update(occ: OccClient) -> UpdateCheck:
    """Return the current :class:`UpdateCheck` for the installation."""
    installed = occ.version()
    if not installed:
        raise UpdateError("Could not determine the installed Nextcloud version.")
    try:
        available = occ.available_update()
    except OccError as exc:
        raise UpdateError(str(exc)) from exc
    return UpdateCheck(installed=installed, available=available)


@dataclass
class UpdateResult:
    """Outcome of :class:`UpdateJob`."""

    check: UpdateCheck
    updated: bool = False
    new_version: str | None = None
    backup: BackupResult | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "check": self.check.to_dict(),
            "updated": self.updated,
            "new_version": self.new_version,
            "backup": self.backup.backup.name if self.backup else None,
            "warnings": list(self.warnings),
        }


@dataclass
class UpdateJob:
    """Back up, then run the web updater and ``occ upgrade`` in maintenance mode."""

    runtime: RuntimeContext
    force: bool = False
    pre_backup: bool = True

    def run(self, op: OperationScope) -> UpdateResult:
        """Execute the update; maintenance mode stays on if an upgrade step fails."""
        runtime = self.runtime
        check = check_for_update(runtime.occ)
        op.add_step("update.check", status="succeeded", detail=check.available or "up to date")
        result = UpdateResult(check=check)
        if not check.update_available and not self.force:
            return result

        updater = runtime.config.nextcloud.root / "updater" / "updater.phar"
        if not updater.is_file():
            raise UpdateError(f"Updater not found: {updater}")

        if self.pre_backup:
            try:
                result.backup = BackupJob(runtime, prune=False).run(op)
            except Exception as exc:
                raise UpdateError(f"Pre-update backup failed; update aborted: {exc}") from exc

        runner = runtime.step_runner(op)
        occ = runtime.occ
        try:
            runtime.maintenance.enter(runner)
            runner.command(
                "updater",
                occ.php_command(updater, "--no-interaction"),
                cwd=runtime.config.nextcloud.root,
            )
            runner.run("occ.upgrade", lambda: occ.run("upgrade"))
            runner.run("occ.db:add-missing-indices", lambda: occ.run("db:add-missing-indices"))
            runner.run("occ.app:update", lambda: occ.run("app:update", "--all"), optional=True)
        except Exception as exc:
            runtime.logger.error(
                "Update failed; maintenance mode left enabled for manual inspection."
            )
            runtime.maintenance.resume_services(runner)
            runner.run(
                "notify",
                lambda: runtime.notifier.failure("Nextcloud update failed", str(exc)),
                optional=True,
            )
            raise
        runtime.maintenance.leave(runner)

        result.updated = True
        result.new_version = occ.version()
        result.warnings = list(runner.warnings)
        runner.run(
            "notify",
            lambda: runtime.notifier.success(
                "Nextcloud updated",
                f"{check.installed} -> {result.new_version or check.available}",
            ),
            optional=True,
        )
        return result


__all__ = ["UpdateCheck", "UpdateError", "UpdateJob", "UpdateResult", "check_for_update"]
