"""Systemd provider for the services around a Nextcloud installation."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Start, stop and query the units Nextcloud depends on."""

    systemctl_bin: str = "systemctl"

    def start(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Start *unit*."""
        return self._systemctl("start", unit, dry_run=dry_run)

    def stop(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Stop *unit*."""
        return self._systemctl("stop", unit, dry_run=dry_run)

    def restart(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Restart *unit*."""
        return self._systemctl("restart", unit, dry_run=dry_run)

    def is_active(self, unit: str) -> bool:
        """Return ``True`` when ``systemctl is-active`` reports the unit active."""
        try:
            result = self._systemctl("is-active", unit, check=False)
        except SystemdError:
            return False
        return result.returncode == 0 and result.stdout.strip() == "active"

    def states(self, units: Sequence[str]) -> dict[str, str]:
        """Return ``{unit: "running"|"stopped"}`` for *units*."""
        return {unit: "running" if self.is_active(unit) else "stopped" for unit in units}

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
            dry_run=dry_run,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        dry_run: bool,
    ) -> subprocess.CompletedProcess[str]:
        if dry_run:
            return subprocess.CompletedProcess(
                list(args),
                returncode=0,
                stdout="",
                stderr="",
            )
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdProvider", "SystemdError"]
