"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import getpass
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import yaml
from botocore.exceptions import ClientError

from ncctl.backups import FULL, INCREMENTAL, BackupInstance, BackupStore
from ncctl.config import AppConfig, load_config
from ncctl.runtime import RuntimeContext, build_runtime

MYSQLDUMP_STUB = """#!/bin/sh
echo "$@" >> "$(dirname "$0")/mysqldump.calls"
cat <<'EOF'
-- MySQL dump 10.13  Distrib 10.11.6-MariaDB, for debian-linux-gnu (x86_64)
CREATE TABLE `oc_users` (
  `uid` varchar(64) NOT NULL
);
INSERT INTO `oc_users` VALUES ('admin');
EOF
"""

MYSQL_STUB = """#!/bin/sh
echo "$@" >> "$(dirname "$0")/mysql.calls"
case "$*" in
  *" -e "*) ;;
  *) cat > "$(dirname "$0")/mysql.stdin" ;;
esac
exit 0
"""

SYSTEMCTL_STUB = """#!/bin/sh
echo "$@" >> "$(dirname "$0")/systemctl.calls"
if [ "$1" = "is-active" ]; then
  echo active
fi
exit 0
"""


class FakePaginator:
    """Yield pre-canned ``list_objects_v2`` pages."""

    def __init__(self, pages: list[dict[str, Any]]) -> None:
        self.pages = pages
        self.calls: list[dict[str, Any]] = []

    def paginate(self, **kwargs: Any) -> list[dict[str, Any]]:
        self.calls.append(kwargs)
        return self.pages


class FakeS3Client:
    """Minimal in-memory stand-in for a boto3 S3 client."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], bytes] = {}
        self.paginator = FakePaginator([])

    def upload_file(self, filename: str, bucket: str, key: str) -> None:
        self.objects[(bucket, key)] = Path(filename).read_bytes()

    def download_file(self, bucket: str, key: str, filename: str) -> None:
        if (bucket, key) not in self.objects:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        Path(filename).write_bytes(self.objects[(bucket, key)])

    def head_object(self, Bucket: str, Key: str) -> dict[str, Any]:  # noqa: N803 - boto3 naming
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        return {"ContentLength": len(self.objects[(Bucket, Key)])}

    def get_paginator(self, name: str) -> FakePaginator:
        assert name == "list_objects_v2"
        return self.paginator


@dataclass
class Sandbox:
    """A throwaway Nextcloud tree, backup root and stub binaries under ``tmp_path``."""

    base: Path
    root: Path
    data_dir: Path
    backups: Path
    logs: Path
    run: Path
    bin_dir: Path
    config_file: Path

    def load(self, **overrides: object) -> AppConfig:
        """Load the sandbox config with optional nested overrides."""
        return load_config(config_file=self.config_file, env={}, overrides=overrides)

    def runtime(self, **overrides: object) -> RuntimeContext:
        """Build a runtime from the sandbox config."""
        return build_runtime(self.load(**overrides))

    def env(self) -> dict[str, str]:
        """Environment selecting the sandbox config for CLI invocations."""
        return {"NCCTL_CONFIG_FILE": str(self.config_file)}

    def calls(self, binary: str) -> list[str]:
        """Return the argument lines recorded by a stub binary."""
        path = self.bin_dir / f"{binary}.calls"
        if not path.exists():
            return []
        return path.read_text(encoding="utf-8").splitlines()

    def write_stub(self, name: str, content: str = "#!/bin/sh\nexit 0\n") -> Path:
        """Write an executable stub into the sandbox bin directory."""
        path = self.bin_dir / name
        path.write_text(content, encoding="utf-8")
        path.chmod(0o755)
        return path


def _write_tree(root: Path, data_dir: Path) -> None:
    (root / "config").mkdir(parents=True)
    (root / "config" / "config.php").write_text(
        "<?php\n$CONFIG = array (\n  'instanceid' => 'oc1234',\n);\n",
        encoding="utf-8",
    )
    (root / "apps" / "files" / "appinfo").mkdir(parents=True)
    (root / "apps" / "files" / "appinfo" / "info.xml").write_text("<info/>\n", encoding="utf-8")
    (root / "version.php").write_text(
        "<?php\n$OC_Version = array(29,0,4,1);\n$OC_VersionString = '29.0.4';\n",
        encoding="utf-8",
    )
    (data_dir / "admin" / "files").mkdir(parents=True)
    (data_dir / "admin" / "files" / "hello.txt").write_text("hello\n", encoding="utf-8")
    (data_dir / "admin" / "files" / "large.bin").write_bytes(b"x" * 4096)


@pytest.fixture
def sandbox(tmp_path: Path) -> Sandbox:
    """Return a sandboxed installation with a config file pointing at it."""
    root = tmp_path / "nextcloud"
    data_dir = tmp_path / "ncdata"
    backups = tmp_path / "backups"
    logs = tmp_path / "logs"
    run = tmp_path / "run"
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    _write_tree(root, data_dir)

    box = Sandbox(
        base=tmp_path,
        root=root,
        data_dir=data_dir,
        backups=backups,
        logs=logs,
        run=run,
        bin_dir=bin_dir,
        config_file=tmp_path / "config.yml",
    )
    mysqldump = box.write_stub("mysqldump", MYSQLDUMP_STUB)
    mysql = box.write_stub("mysql", MYSQL_STUB)
    systemctl = box.write_stub("systemctl", SYSTEMCTL_STUB)
    php = box.write_stub("php")

    config = {
        "logs_dir": str(logs),
        "runtime_dir": str(run),
        "lock_timeout": 2,
        "require_root": False,
        "nextcloud": {
            "root": str(root),
            "data_dir": str(data_dir),
            "web_user": getpass.getuser(),
            "php_bin": str(php),
        },
        "backups": {
            "root": str(backups),
            "system_files": [],
            "components": {"system": False},
        },
        "maintenance": {"enabled": False, "services": []},
        "monitoring": {"services": ["apache2"]},
        "steps": {"timeout": 60},
        "cleanup": {"log_dirs": [], "temp_globs": []},
        "tools": {
            "mysqldump": str(mysqldump),
            "mysql": str(mysql),
            "systemctl": str(systemctl),
        },
    }
    box.config_file.write_text(yaml.safe_dump(config), encoding="utf-8")
    return box


def make_backup(
    store: BackupStore,
    *,
    age_days: float,
    backup_type: str = FULL,
    base: BackupInstance | None = None,
    now: float | None = None,
) -> BackupInstance:
    """Create a backup directory that appears ``age_days`` old."""
    current = time.time() if now is None else now
    moment = datetime.fromtimestamp(current) - timedelta(days=age_days)
    created = store.create_directory(backup_type, base=base, now=moment)
    stamp = current - age_days * 86400
    os.utime(created.path, (stamp, stamp))
    loaded = store.load(created.path)
    assert loaded is not None
    return loaded


def daily_fulls(store: BackupStore, count: int, *, now: float) -> list[BackupInstance]:
    """Create ``count`` full backups, one per day, newest last."""
    return [make_backup(store, age_days=age, now=now) for age in range(count - 1, -1, -1)]


__all__ = [
    "FULL",
    "INCREMENTAL",
    "FakePaginator",
    "FakeS3Client",
    "Sandbox",
    "daily_fulls",
    "make_backup",
]
