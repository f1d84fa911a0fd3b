"""Runtime wiring shared by CLI commands and the backup/restore/update flows."""
from __future__ import annotations

from dataclasses import dataclass

from .backups import BackupsRegistry, BackupStore
from .config import AppConfig
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .maintenance import MaintenanceController
from .notify import Notifier
from .occ import OccClient
from .providers import RemoteStorage, SystemdProvider
from .steps import StepRunner


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    store: BackupStore
    backups: BackupsRegistry
    occ: OccClient
    systemd_provider: SystemdProvider
    maintenance: MaintenanceController
    remote: RemoteStorage | None
    notifier: Notifier

    def step_runner(self, op: OperationScope | None, *, dry_run: bool = False) -> StepRunner:
        """Return a :class:`StepRunner` using the configured timeouts and retries."""
        steps = self.config.steps
        return StepRunner(
            op=op,
            timeout=steps.timeout,
            retries=steps.retries,
            backoff_min=steps.backoff_min,
            backoff_max=steps.backoff_max,
            dry_run=dry_run,
        )


def build_runtime(config: AppConfig) -> RuntimeContext:
    """Construct every collaborator from ``config``."""
    logger = StructuredLogger(config.logs_dir, level=config.log_level)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    store = BackupStore(config.backups.root, prefix=config.backups.prefix)
    backups = BackupsRegistry(config.backups.root, config.backups.index)
    occ = OccClient(config.nextcloud, sudo_bin=config.tools.sudo, timeout=config.steps.timeout)
    systemd_provider = SystemdProvider(systemctl_bin=config.tools.systemctl)
    maintenance = MaintenanceController(
        occ=occ,
        systemd=systemd_provider,
        config=config.maintenance,
        cron_timer=config.nextcloud.cron_timer,
    )
    remote = RemoteStorage(config.remote) if config.remote.enabled else None
    notifier = Notifier(config.notifications, logger)
    return RuntimeContext(
        config=config,
        locks=locks,
        logger=logger,
        store=store,
        backups=backups,
        occ=occ,
        systemd_provider=systemd_provider,
        maintenance=maintenance,
        remote=remote,
        notifier=notifier,
    )


__all__ = ["RuntimeContext", "build_runtime"]
