"""Backup directory naming, metadata and the JSON backup index.

The backup root holds one directory per run named
``<prefix>_<YYYYMMDD_HHMMSS>_<full|incr>``. Each directory carries a
``backup_metadata`` file (``BACKUP_DATE``, ``BACKUP_TYPE``, ``BASE_BACKUP``)
describing how it was produced. The directory tree is authoritative; the
``backups.json`` index is a journal of runs used for listing and remote keys.
"""
from __future__ import annotations

import json
import os
import re
import shutil
import tempfile
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path

FULL = "full"
INCREMENTAL = "incremental"
_SUFFIXES = {FULL: "full", INCREMENTAL: "incr"}
_TYPES_BY_SUFFIX = {suffix: kind for kind, suffix in _SUFFIXES.items()}
METADATA_FILE = "backup_metadata"
INFO_FILE = "backup_info.txt"
LATEST_LINK = "latest"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _normalise_identifier(value: str, *, label: str) -> str:
    normalised = value.strip()
    if not normalised:
        raise BackupRegistryError(f"{label} must be a non-empty string.")
    return normalised


@dataclass(frozen=True)
class BackupMetadata:
    """Contents of a ``backup_metadata`` file."""

    backup_date: str | None
    backup_type: str
    base_backup: str | None

    def render(self) -> str:
        """Return the ``KEY=VALUE`` text written to disk."""
        return (
            f"BACKUP_DATE={self.backup_date or ''}\n"
            f"BACKUP_TYPE={self.backup_type}\n"
            f"BASE_BACKUP={self.base_backup or 'none'}\n"
        )

    @classmethod
    def parse(cls, text: str, *, fallback_type: str) -> BackupMetadata:
        """Parse metadata text, tolerating missing keys."""
        values: dict[str, str] = {}
        for line in text.splitlines():
            key, sep, value = line.partition("=")
            if sep:
                values[key.strip()] = value.strip().strip('"')
        backup_type = values.get("BACKUP_TYPE") or fallback_type
        if backup_type not in _SUFFIXES:
            backup_type = fallback_type
        base = values.get("BASE_BACKUP")
        if not base or base == "none":
            base = None
        return cls(
            backup_date=values.get("BACKUP_DATE") or None,
            backup_type=backup_type,
            base_backup=Path(base).name if base else None,
        )


@dataclass(frozen=True)
class BackupInstance:
    """A backup directory discovered under the backup root."""

    name: str
    path: Path
    timestamp: datetime
    backup_type: str
    base: str | None
    mtime: float

    @property
    def is_full(self) -> bool:
        """Return ``True`` for full backups."""
        return self.backup_type == FULL

    @property
    def is_incremental(self) -> bool:
        """Return ``True`` for incremental backups."""
        return self.backup_type == INCREMENTAL

    def age_days(self, now: float) -> float:
        """Return the age in days relative to epoch seconds ``now``."""
        return (now - self.mtime) / 86400.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "path": str(self.path),
            "timestamp": self.timestamp.strftime(TIMESTAMP_FORMAT),
            "type": self.backup_type,
            "base": self.base,
            "mtime": datetime.fromtimestamp(self.mtime, tz=UTC).isoformat(),
        }


@dataclass
class BackupStore:
    """Discover and create backup directories below ``root``."""

    root: Path
    prefix: str = "nextcloud_backup"
    _pattern: re.Pattern[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Normalise the root and compile the naming pattern."""
        self.root = Path(self.root).expanduser()
        self._pattern = re.compile(
            rf"^{re.escape(self.prefix)}_(\d{{8}}_\d{{6}})_(full|incr)$"
        )

    def ensure_root(self) -> None:
        """Create the backup root with restrictive permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def backup_name(self, timestamp: datetime, backup_type: str) -> str:
        """Return the directory name for a backup taken at ``timestamp``."""
        return f"{self.prefix}_{timestamp.strftime(TIMESTAMP_FORMAT)}_{_SUFFIXES[backup_type]}"

    def parse_name(self, name: str) -> tuple[datetime, str] | None:
        """Return ``(timestamp, type)`` for a conforming name, else ``None``."""
        match = self._pattern.match(name)
        if match is None:
            return None
        try:
            timestamp = datetime.strptime(match.group(1), TIMESTAMP_FORMAT)
        except ValueError:
            return None
        return timestamp, _TYPES_BY_SUFFIX[match.group(2)]

    def load(self, path: Path) -> BackupInstance | None:
        """Return the :class:`BackupInstance` at ``path`` if it conforms."""
        if path.is_symlink() or not path.is_dir():
            return None
        parsed = self.parse_name(path.name)
        if parsed is None:
            return None
        timestamp, name_type = parsed
        metadata = self.read_metadata(path, fallback_type=name_type)
        return BackupInstance(
            name=path.name,
            path=path,
            timestamp=timestamp,
            backup_type=metadata.backup_type,
            base=metadata.base_backup if metadata.backup_type == INCREMENTAL else None,
            mtime=path.stat().st_mtime,
        )

    def discover(self) -> list[BackupInstance]:
        """Return every conforming backup ordered oldest first (mtime, then name)."""
        if not self.root.is_dir():
            return []
        found = [
            instance
            for instance in (self.load(child) for child in self.root.iterdir())
            if instance is not None
        ]
        return sorted(found, key=lambda item: (item.mtime, item.name))

    def latest(self) -> BackupInstance | None:
        """Return the most recent backup, if any."""
        backups = self.discover()
        return backups[-1] if backups else None

    def get(self, name: str) -> BackupInstance | None:
        """Return the backup called ``name`` (a bare name or a path)."""
        return self.load(self.root / Path(name).name)

    def find_by_date(self, date: str) -> list[BackupInstance]:
        """Return backups whose timestamp starts with ``YYYYMMDD[_HHMMSS]``."""
        needle = date.strip().replace("-", "")
        return [
            backup
            for backup in self.discover()
            if backup.timestamp.strftime(TIMESTAMP_FORMAT).startswith(needle)
        ]

    def base_exists(self, backup: BackupInstance) -> bool:
        """Return ``True`` when ``backup`` is restorable on its own or via its base."""
        if not backup.is_incremental:
            return True
        if backup.base is None:
            return False
        return (self.root / backup.base).is_dir()

    def create_directory(
        self,
        backup_type: str,
        *,
        base: BackupInstance | None = None,
        now: datetime | None = None,
    ) -> BackupInstance:
        """Create a new backup directory and write its metadata."""
        if backup_type == INCREMENTAL and base is None:
            raise BackupError("Incremental backups require a base backup.")
        moment = now or datetime.now()
        name = self.backup_name(moment, backup_type)
        path = self.root / name
        self.ensure_root()
        try:
            path.mkdir(mode=0o700)
        except FileExistsError as exc:
            raise BackupError(f"Backup directory already exists: {path}") from exc
        os.chmod(path, 0o700)
        metadata = BackupMetadata(
            backup_date=moment.astimezone().isoformat(timespec="seconds"),
            backup_type=backup_type,
            base_backup=base.name if base is not None else None,
        )
        self.write_metadata(path, metadata)
        return BackupInstance(
            name=name,
            path=path,
            timestamp=moment.replace(microsecond=0, tzinfo=None),
            backup_type=backup_type,
            base=metadata.base_backup,
            mtime=path.stat().st_mtime,
        )

    @staticmethod
    def write_metadata(path: Path, metadata: BackupMetadata) -> Path:
        """Write ``backup_metadata`` into ``path``."""
        target = path / METADATA_FILE
        target.write_text(metadata.render(), encoding="utf-8")
        return target

    @staticmethod
    def read_metadata(path: Path, *, fallback_type: str = FULL) -> BackupMetadata:
        """Read ``backup_metadata`` from ``path`` (defaults when absent)."""
        target = path / METADATA_FILE
        try:
            text = target.read_text(encoding="utf-8")
        except OSError:
            text = ""
        return BackupMetadata.parse(text, fallback_type=fallback_type)

    @staticmethod
    def write_info(path: Path, lines: Mapping[str, object]) -> Path:
        """Write the human-readable ``backup_info.txt`` file."""
        target = path / INFO_FILE
        body = ["Nextcloud Backup Information", "============================"]
        body.extend(f"{key}: {value}" for key, value in lines.items())
        target.write_text("\n".join(body) + "\n", encoding="utf-8")
        return target

    def update_latest_link(self, backup: BackupInstance) -> Path:
        """Point ``<root>/latest`` at ``backup``."""
        link = self.root / LATEST_LINK
        temp_link = self.root / f".{LATEST_LINK}.tmp"
        temp_link.unlink(missing_ok=True)
        temp_link.symlink_to(backup.name)
        os.replace(temp_link, link)
        return link

    def promote(self, backup: BackupInstance) -> BackupInstance:
        """Rewrite an incremental's metadata so it stands alone as a full backup.

        Incrementals are complete hard-link snapshots, so dropping the base
        reference loses nothing. The directory keeps its name and mtime.
        """
        stat = backup.path.stat()
        current = self.read_metadata(backup.path, fallback_type=backup.backup_type)
        self.write_metadata(
            backup.path,
            BackupMetadata(backup_date=current.backup_date, backup_type=FULL, base_backup=None),
        )
        os.utime(backup.path, (stat.st_atime, stat.st_mtime))
        return replace(backup, backup_type=FULL, base=None)

    def remove(self, backup: BackupInstance) -> None:
        """Delete ``backup`` from disk and drop a dangling ``latest`` link."""
        shutil.rmtree(backup.path)
        link = self.root / LATEST_LINK
        if link.is_symlink() and not link.exists():
            link.unlink()


@dataclass(slots=True)
class BackupsRegistry:
    """Manage the JSON backup index under the backups directory."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = self.root.expanduser()
        self.index = self.index.expanduser()

    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        if not self.index.exists():
            return {"backups": []}
        try:
            text = self.index.read_text(encoding="utf-8")
            data = json.loads(text)
        except FileNotFoundError:
            return {"backups": []}
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        self.ensure_root()
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index.parent),
            prefix=f".{self.index.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o640)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def append(self, entry: Mapping[str, object]) -> None:
        """Append *entry* to the index, replacing an entry with the same id."""
        entry_id = str(entry.get("id", ""))
        updated: list[object] = [
            item for item in self.list_entries() if str(item.get("id", "")) != entry_id
        ]
        updated.append(dict(entry))
        self.write({"backups": updated})

    def list_entries(self) -> list[dict[str, object]]:
        """Return a list of backup entries."""
        data = self.read()
        backups = data.get("backups", [])
        entries: list[dict[str, object]] = []
        if isinstance(backups, list):
            for item in backups:
                if isinstance(item, Mapping):
                    entries.append(dict(item))
        return entries

    def find_by_id(self, backup_id: str) -> dict[str, object] | None:
        """Return the entry for *backup_id* if present."""
        normalized = _normalise_identifier(backup_id, label="Backup identifier")
        for entry in self.list_entries():
            if str(entry.get("id", "")).strip() == normalized:
                return entry
        return None

    def update_entry(
        self,
        backup_id: str,
        mutator: Callable[[dict[str, object]], None],
    ) -> dict[str, object]:
        """Apply *mutator* to the entry for *backup_id* and persist changes."""
        normalized = _normalise_identifier(backup_id, label="Backup identifier")
        entries = self.list_entries()
        updated_entry: dict[str, object] | None = None
        for index, entry in enumerate(entries):
            if str(entry.get("id", "")).strip() == normalized:
                mutable = dict(entry)
                mutator(mutable)
                entries[index] = mutable
                updated_entry = mutable
                break
        if updated_entry is None:
            raise BackupRegistryError(f"Backup '{normalized}' not found in index.")
        self.write({"backups": entries})
        return updated_entry

    def mark_status(self, backup_id: str, status: str) -> bool:
        """Set the status of *backup_id*; return ``False`` when it is not indexed."""
        if self.find_by_id(backup_id) is None:
            return False

        def _mutate(entry: dict[str, object]) -> None:
            entry["status"] = status
            entry["updated_at"] = _now_iso()

        self.update_entry(backup_id, _mutate)
        return True

    def mark_promoted(self, backup_id: str) -> bool:
        """Record that *backup_id* became a full backup; ``False`` when not indexed."""
        if self.find_by_id(backup_id) is None:
            return False

        def _mutate(entry: dict[str, object]) -> None:
            entry["type"] = FULL
            entry["base"] = None
            entry["updated_at"] = _now_iso()

        self.update_entry(backup_id, _mutate)
        return True


@dataclass(slots=True)
class BackupEntryBuilder:
    """Helper for constructing backup index entries."""

    backup: BackupInstance
    components: Iterable[str]
    archive_path: Path | None = None
    checksum: str | None = None
    size_bytes: int | None = None
    compression_level: int | None = None
    remote_key: str | None = None
    nextcloud_version: str | None = None
    actor: Mapping[str, object] | None = None

    def build(self) -> dict[str, object]:
        """Return the JSON-serialisable entry for the backup index."""
        entry: dict[str, object] = {
            "id": self.backup.name,
            "type": self.backup.backup_type,
            "base": self.backup.base,
            "created_at": _now_iso(),
            "path": str(self.backup.path),
            "components": list(self.components),
            "status": "available",
        }
        if self.archive_path is not None:
            entry["archive"] = str(self.archive_path)
        if self.checksum:
            entry["checksum"] = {"algorithm": "sha256", "value": self.checksum}
        if self.size_bytes is not None:
            entry["size_bytes"] = self.size_bytes
        if self.compression_level is not None:
            entry["compression_level"] = self.compression_level
        if self.remote_key:
            entry["remote_key"] = self.remote_key
        if self.nextcloud_version:
            entry["nextcloud_version"] = self.nextcloud_version
        if self.actor:
            entry["created_by"] = dict(self.actor)
        return entry


def copy_into(source: Path, destination: Path) -> bool:
    """Copy *source* into *destination*; return ``False`` when it does not exist."""
    if not source.exists():
        return False
    if source.is_dir():
        shutil.copytree(source, destination, dirs_exist_ok=True)
    else:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)
    return True


def directory_size(path: Path) -> int:
    """Return the apparent size of ``path`` in bytes (hard links counted once)."""
    seen: set[tuple[int, int]] = set()
    total = 0
    for child in path.rglob("*"):
        try:
            stat = child.lstat()
        except OSError:
            continue
        key = (stat.st_dev, stat.st_ino)
        if key in seen:
            continue
        seen.add(key)
        if child.is_file() and not child.is_symlink():
            total += stat.st_size
    return total


__all__ = [
    "FULL",
    "INCREMENTAL",
    "BackupEntryBuilder",
    "BackupError",
    "BackupInstance",
    "BackupMetadata",
    "BackupRegistryError",
    "BackupStore",
    "BackupsRegistry",
    "copy_into",
    "directory_size",
]
