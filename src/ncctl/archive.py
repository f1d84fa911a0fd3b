"""Archive helpers: compress, checksum, list, verify and extract backups."""
from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from .backups import BackupError
from .database import inspect_dump

EXPECTED_COMPONENTS = ("config", "data", "database")


def compression_extension(algorithm: str) -> str:
    """Return the archive file extension for *algorithm*."""
    if algorithm == "gzip":
        return "tar.gz"
    return "tar"


def archive_name(prefix: str, stamp: str, algorithm: str = "gzip") -> str:
    """Return ``<prefix>_<stamp>.<ext>`` for an archive of one backup."""
    return f"{prefix}_{stamp}.{compression_extension(algorithm)}"


def _tar(tar_bin: str) -> str:
    resolved = shutil.which(tar_bin)
    if resolved is None:
        raise BackupError(f"The '{tar_bin}' command is required for archive operations.")
    return resolved


def _run_tar(cmd: list[str], *, env: dict[str, str] | None = None) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # noqa: S603 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        env=env,
        check=False,
    )


def create_archive(
    source_dir: Path,
    archive_path: Path,
    algorithm: str,
    compression_level: int | None,
    *,
    tar_bin: str = "tar",
) -> None:
    """Create an archive from *source_dir* at *archive_path*."""
    env = os.environ.copy()
    cmd: list[str] = [_tar(tar_bin)]

    if algorithm == "gzip":
        cmd.extend(["-czf", str(archive_path)])
        if compression_level is not None:
            env["GZIP"] = f"-{compression_level}"
    else:
        cmd.extend(["-cf", str(archive_path)])

    cmd.extend(["-C", str(source_dir.parent), source_dir.name])

    archive_path.parent.mkdir(parents=True, exist_ok=True)
    result = _run_tar(cmd, env=env)
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise BackupError(message.strip())

    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass


def list_members(archive_path: Path, *, tar_bin: str = "tar") -> list[str]:
    """Return the member names of *archive_path*; raise on a damaged archive."""
    flag = "-tzf" if archive_path.name.endswith((".tar.gz", ".tgz")) else "-tf"
    result = _run_tar([_tar(tar_bin), flag, str(archive_path)])
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "tar listing failed").strip()
        raise BackupError(f"Archive {archive_path} is not a readable tar archive: {message}")
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def extract_archive(archive_path: Path, destination: Path, *, tar_bin: str = "tar") -> Path:
    """Extract *archive_path* into *destination* and return the payload directory."""
    destination.mkdir(parents=True, exist_ok=True)
    flag = "-xzf" if archive_path.name.endswith((".tar.gz", ".tgz")) else "-xf"
    result = _run_tar([_tar(tar_bin), flag, str(archive_path), "-C", str(destination)])
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "tar extraction failed").strip()
        raise BackupError(f"Failed to extract backup archive: {message}")

    candidates = [item for item in destination.iterdir() if item.is_dir()]
    if len(candidates) != 1:
        raise BackupError(
            "Backup archive must contain exactly one top-level backup directory."
        )
    return candidates[0]


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def checksum_path_for(archive_path: Path) -> Path:
    """Return the companion ``.sha256`` path."""
    return archive_path.with_name(f"{archive_path.name}.sha256")


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = checksum_path_for(archive_path)
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o640)
    except OSError:
        pass
    return checksum_path


def read_checksum_file(checksum_path: Path) -> str:
    """Return the hex digest recorded in ``checksum_path``."""
    text = checksum_path.read_text(encoding="utf-8").strip()
    if not text:
        raise BackupError(f"Checksum file is empty: {checksum_path}")
    return text.split()[0].lower()


def verify_checksum(archive_path: Path) -> bool | None:
    """Check the companion checksum; ``None`` when no checksum file exists."""
    checksum_path = checksum_path_for(archive_path)
    if not checksum_path.exists():
        return None
    return read_checksum_file(checksum_path) == compute_checksum(archive_path)


@dataclass
class ArchiveReport:
    """Outcome of :func:`verify_archive`."""

    archive: Path
    valid: bool = False
    members: int = 0
    checksum: str = "absent"
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "archive": str(self.archive),
            "valid": self.valid,
            "members": self.members,
            "checksum": self.checksum,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
        }


def _has_component(members: list[str], component: str) -> bool:
    for member in members:
        parts = [part for part in member.split("/") if part and part != "."]
        if component in parts[:2]:
            return True
    return False


def verify_archive(
    archive_path: Path,
    *,
    tar_bin: str = "tar",
    check_database: bool = False,
    table_prefix: str = "oc_",
) -> ArchiveReport:
    """Validate a backup archive.

    Structural problems (missing file, unreadable archive, checksum mismatch)
    are errors. Missing components or an odd-looking database dump are
    warnings.
    """
    report = ArchiveReport(archive=archive_path)
    if not archive_path.is_file():
        report.errors.append(f"Archive not found: {archive_path}")
        return report

    try:
        members = list_members(archive_path, tar_bin=tar_bin)
    except BackupError as exc:
        report.errors.append(str(exc))
        return report
    report.members = len(members)

    checksum_ok = verify_checksum(archive_path)
    if checksum_ok is True:
        report.checksum = "match"
    elif checksum_ok is False:
        report.checksum = "mismatch"
        report.errors.append(f"Checksum mismatch for {archive_path.name}")

    for component in EXPECTED_COMPONENTS:
        if not _has_component(members, component):
            report.warnings.append(f"Backup component missing: {component}/")
    sql_members = [member for member in members if member.endswith(".sql")]
    if not sql_members:
        report.warnings.append("No SQL dump found in archive")
    if not any(member.endswith("config/config.php") for member in members):
        report.warnings.append("config/config.php not found in archive")

    if check_database and sql_members:
        report.warnings.extend(
            _inspect_archived_dump(archive_path, sql_members[0], tar_bin, table_prefix)
        )

    report.valid = not report.errors
    return report


def _inspect_archived_dump(
    archive_path: Path,
    member: str,
    tar_bin: str,
    table_prefix: str,
) -> list[str]:
    with tempfile.TemporaryDirectory(prefix="ncctl-verify-") as scratch:
        flag = "-xzf" if archive_path.name.endswith((".tar.gz", ".tgz")) else "-xf"
        result = _run_tar([_tar(tar_bin), flag, str(archive_path), "-C", scratch, member])
        extracted = Path(scratch) / member
        if result.returncode != 0 or not extracted.is_file():
            return [f"Could not extract {member} for inspection"]
        return inspect_dump(extracted, table_prefix)


__all__ = [
    "ArchiveReport",
    "archive_name",
    "checksum_path_for",
    "compression_extension",
    "compute_checksum",
    "create_archive",
    "extract_archive",
    "list_members",
    "read_checksum_file",
    "verify_archive",
    "verify_checksum",
    "write_checksum_file",
]
