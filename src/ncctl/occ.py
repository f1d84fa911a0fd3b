"""Thin wrapper around Nextcloud's ``occ`` administration tool."""
from __future__ import annotations

import getpass
import json
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .config import NextcloudConfig
from .steps import CommandError, run_command

_VERSION_PATTERN = re.compile(r"(\d+\.\d+\.\d+)")
_CORE_UPDATE_PATTERNS = (
    re.compile(r"Nextcloud\s+(\d+(?:\.\d+)+)\s+is available", re.IGNORECASE),
    re.compile(r"Update for Nextcloud to version\s+(\d+(?:\.\d+)+)", re.IGNORECASE),
)


class OccError(RuntimeError):
    """Raised when an ``occ`` invocation fails."""


@dataclass
class OccClient:
    """Run ``php occ`` as the web server user."""

    nextcloud: NextcloudConfig
    sudo_bin: str = "sudo"
    timeout: float | None = None

    @property
    def occ_path(self) -> Path:
        """Return the path of the ``occ`` script."""
        return self.nextcloud.occ_path

    def available(self) -> bool:
        """Return ``True`` when the ``occ`` script exists."""
        return self.occ_path.is_file()

    def command(self, *args: str) -> list[str]:
        """Return the argv for ``occ args``."""
        return self.php_command(self.occ_path, *args)

    def php_command(self, script: Path, *args: str) -> list[str]:
        """Return the argv running PHP ``script`` as the web server user."""
        argv = [self.nextcloud.php_bin, str(script), *args]
        if _current_user() == self.nextcloud.web_user:
            return argv
        return [self.sudo_bin, "-u", self.nextcloud.web_user, *argv]

    def run(self, *args: str, timeout: float | None = None) -> subprocess.CompletedProcess[str]:
        """Run ``occ`` and return the completed process."""
        try:
            return run_command(
                self.command(*args),
                timeout=timeout if timeout is not None else self.timeout,
                cwd=self.nextcloud.root,
            )
        except CommandError as exc:
            raise OccError(f"occ {' '.join(args)} failed: {exc}") from exc

    def status(self) -> dict[str, object]:
        """Return ``occ status --output=json`` as a mapping."""
        result = self.run("status", "--output=json")
        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise OccError(f"Unexpected occ status output: {result.stdout!r}") from exc
        if not isinstance(data, dict):
            raise OccError("occ status did not return a JSON object.")
        return data

    def version(self) -> str | None:
        """Return the installed version (``occ status`` first, then ``version.php``)."""
        try:
            status = self.status()
        except OccError:
            status = {}
        value = status.get("versionstring") or status.get("version")
        if value:
            return str(value)
        return read_version_file(self.nextcloud.root)

    def maintenance_enabled(self) -> bool:
        """Return ``True`` when maintenance mode is on."""
        result = self.run("maintenance:mode")
        return "enabled" in (result.stdout or "").lower()

    def set_maintenance(self, enabled: bool) -> None:
        """Turn maintenance mode on or off."""
        self.run("maintenance:mode", "--on" if enabled else "--off")

    def user_count(self) -> int | None:
        """Return the number of users, or ``None`` if it cannot be read."""
        try:
            result = self.run("user:list", "--output=json")
            data = json.loads(result.stdout or "{}")
        except (OccError, json.JSONDecodeError):
            return None
        return len(data) if isinstance(data, (dict, list)) else None

    def available_update(self) -> str | None:
        """Return the core version offered by ``occ update:check`` (if any)."""
        result = self.run("update:check")
        return parse_update_check(result.stdout or "")


def parse_update_check(output: str) -> str | None:
    """Extract the offered core version from ``occ update:check`` output."""
    for pattern in _CORE_UPDATE_PATTERNS:
        match = pattern.search(output)
        if match:
            return match.group(1)
    return None


def read_version_file(root: Path) -> str | None:
    """Return the ``x.y.z`` version string from ``version.php``."""
    version_file = root / "version.php"
    try:
        text = version_file.read_text(encoding="utf-8")
    except OSError:
        return None
    string_match = re.search(r"\$OC_VersionString\s*=\s*'([^']+)'", text)
    if string_match:
        return string_match.group(1)
    match = _VERSION_PATTERN.search(text)
    return match.group(1) if match else None


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return ""


__all__ = ["OccClient", "OccError", "parse_update_check", "read_version_file"]
