"""Entering and leaving maintenance around mutating operations."""
from __future__ import annotations

from dataclasses import dataclass

from .config import MaintenanceConfig
from .occ import OccClient
from .providers.systemd import SystemdProvider
from .steps import StepRunner, StepState

REPAIR_OCC = (
    ("maintenance:repair",),
    ("db:add-missing-indices",),
    ("files:scan", "--all"),
    ("preview:repair",),
)


@dataclass
class MaintenanceController:
    """Quiesce Nextcloud (cron timer, maintenance flag, web services) and resume it."""

    occ: OccClient
    systemd: SystemdProvider
    config: MaintenanceConfig
    cron_timer: str
    active: bool = False

    def enter(self, runner: StepRunner, *, stop_services: bool = False) -> None:
        """Stop the cron timer (and optionally services), then enable maintenance mode."""
        runner.run("cron.stop", lambda: self.systemd.stop(self.cron_timer), optional=True)
        if stop_services:
            for service in self.config.services:
                runner.run(
                    f"service.stop.{service}",
                    lambda service=service: self.systemd.stop(service),
                    optional=True,
                )
        if self.config.enabled:
            runner.run("maintenance.on", lambda: self.occ.set_maintenance(True))
            self.active = True

    def leave(self, runner: StepRunner, *, optional: bool = False) -> None:
        """Disable maintenance mode, start the cron timer and restart services."""
        if self.config.enabled:
            runner.run(
                "maintenance.off",
                lambda: self.occ.set_maintenance(False),
                optional=optional,
            )
            if runner.state_of("maintenance.off") is StepState.SUCCEEDED:
                self.active = False
        self.resume_services(runner)

    def resume_services(self, runner: StepRunner) -> None:
        """Start the cron timer and restart the configured services."""
        runner.run("cron.start", lambda: self.systemd.start(self.cron_timer), optional=True)
        for service in self.config.services:
            runner.run(
                f"service.restart.{service}",
                lambda service=service: self.systemd.restart(service),
                optional=True,
            )

    def repair(self, runner: StepRunner) -> list[str]:
        """Run the ``occ`` repair commands under maintenance mode.

        Every repair runs even when an earlier one fails. Maintenance mode is
        only switched off again when this call switched it on. Returns the
        commands that failed.
        """
        was_enabled = runner.run("maintenance.status", self.occ.maintenance_enabled, optional=True)
        if not was_enabled:
            runner.run("maintenance.on", lambda: self.occ.set_maintenance(True))
            if runner.state_of("maintenance.on") is StepState.SUCCEEDED:
                self.active = True

        failed: list[str] = []
        for args in REPAIR_OCC:
            name = f"occ.{args[0]}"
            runner.run(name, lambda args=args: self.occ.run(*args), optional=True)
            if runner.state_of(name) is StepState.FAILED:
                failed.append(" ".join(args))

        if not was_enabled:
            runner.run("maintenance.off", lambda: self.occ.set_maintenance(False), optional=True)
            if runner.state_of("maintenance.off") is StepState.FAILED:
                failed.append("maintenance:mode --off")
            elif runner.state_of("maintenance.off") is StepState.SUCCEEDED:
                self.active = False
        return failed


__all__ = ["REPAIR_OCC", "MaintenanceController"]
