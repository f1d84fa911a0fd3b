"""Health snapshot and threshold checks for ``ncctl status``."""
from __future__ import annotations

import json
import os
import shutil
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .occ import OccError
from .runtime import RuntimeContext
from .update import UpdateError, check_for_update

MEMINFO = Path("/proc/meminfo")


def disk_usage_percent(path: Path) -> int:
    """Return the used percentage of the filesystem holding ``path``."""
    usage = shutil.disk_usage(path)
    if usage.total == 0:
        return 0
    return round(usage.used / usage.total * 100)


def memory_usage_percent(meminfo: Path = MEMINFO) -> float | None:
    """Return used memory as a percentage, from ``/proc/meminfo``."""
    try:
        lines = meminfo.read_text(encoding="utf-8").splitlines()
    except OSError:
        return None
    values: dict[str, int] = {}
    for line in lines:
        key, _, rest = line.partition(":")
        parts = rest.split()
        if parts and parts[0].isdigit():
            values[key.strip()] = int(parts[0])
    total = values.get("MemTotal")
    available = values.get("MemAvailable")
    if not total or available is None:
        return None
    return round((total - available) / total * 100, 2)


def load_average() -> float | None:
    """Return the one-minute load average when the platform provides it."""
    try:
        return round(os.getloadavg()[0], 2)
    except OSError:
        return None


def collect_status(runtime: RuntimeContext, *, meminfo: Path = MEMINFO) -> dict[str, object]:
    """Assemble the status snapshot written by ``ncctl status``."""
    config = runtime.config
    occ = runtime.occ

    nextcloud: dict[str, object] = {"installed": occ.available()}
    if occ.available():
        version = occ.version()
        nextcloud["version"] = version
        try:
            nextcloud["maintenance_mode"] = occ.maintenance_enabled()
        except OccError:
            nextcloud["maintenance_mode"] = None
        nextcloud["user_count"] = occ.user_count()
        try:
            nextcloud["update_available"] = check_for_update(occ).update_available
        except UpdateError:
            nextcloud["update_available"] = None

    disks: dict[str, int] = {"root": disk_usage_percent(Path("/"))}
    if config.nextcloud.data_dir.is_dir():
        disks["data"] = disk_usage_percent(config.nextcloud.data_dir)
    if config.backups.root.is_dir():
        disks["backups"] = disk_usage_percent(config.backups.root)

    return {
        "timestamp": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "system": {
            "load_avg": load_average(),
            "memory_usage": memory_usage_percent(meminfo),
            "disk_usage": disks["root"],
        },
        "nextcloud": nextcloud,
        "services": runtime.systemd_provider.states(config.monitoring.services),
        "disks": disks,
    }


def write_status(status: Mapping[str, object], path: Path) -> Path:
    """Persist ``status`` as JSON at ``path`` (mode 0644)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(status, indent=2) + "\n", encoding="utf-8")
    os.chmod(path, 0o644)
    return path


@dataclass
class HealthReport:
    """Issues and warnings derived from a status snapshot."""

    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        """Return ``True`` when no issues were found."""
        return not self.issues

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "healthy": self.healthy,
            "issues": list(self.issues),
            "warnings": list(self.warnings),
        }


def evaluate(
    status: Mapping[str, object],
    *,
    warn_percent: int,
    critical_percent: int,
) -> HealthReport:
    """Apply disk, service and maintenance thresholds to ``status``."""
    report = HealthReport()
    disks = status.get("disks")
    if isinstance(disks, Mapping):
        for name, value in disks.items():
            if not isinstance(value, (int, float)):
                continue
            if value > critical_percent:
                report.issues.append(f"Disk usage for {name} is critical: {value}%")
            elif value > warn_percent:
                report.warnings.append(f"Disk usage for {name} is high: {value}%")

    services = status.get("services")
    if isinstance(services, Mapping):
        for name, state in services.items():
            if state != "running":
                report.issues.append(f"Service {name} is not running")

    nextcloud = status.get("nextcloud")
    if isinstance(nextcloud, Mapping):
        if not nextcloud.get("installed"):
            report.issues.append("Nextcloud occ not found")
        if nextcloud.get("maintenance_mode") is True:
            report.warnings.append("Nextcloud is in maintenance mode")
        if nextcloud.get("update_available") is True:
            report.warnings.append("A Nextcloud update is available")
    return report


__all__ = [
    "HealthReport",
    "collect_status",
    "disk_usage_percent",
    "evaluate",
    "load_average",
    "memory_usage_percent",
    "write_status",
]
