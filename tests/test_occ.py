"""Tests for the occ wrapper."""
from __future__ import annotations

from pathlib import Path

import pytest
from conftest import Sandbox

from ncctl import occ as occ_module
from ncctl.config import NextcloudConfig
from ncctl.occ import OccClient, OccError, parse_update_check, read_version_file

PHP_STUB = """#!/bin/sh
echo "$@" >> "$(dirname "$0")/php.calls"
case "$2" in
  status) echo '{"installed":true,"versionstring":"29.0.5","maintenance":false}' ;;
  maintenance:mode) echo "Maintenance mode is currently enabled" ;;
  user:list) echo '{"admin":"admin","bob":"Bob"}' ;;
  update:check) echo "Nextcloud 30.0.1 is available. Get more information on how to update at https://docs.nextcloud.com." ;;
  broken) echo "boom" >&2; exit 1 ;;
esac
exit 0
"""


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        ("Nextcloud 30.0.1 is available. Get more information ...", "30.0.1"),
        ("Update for Nextcloud to version 29.0.6 is available.", "29.0.6"),
        ("Everything up to date\n", None),
        ("Update for calendar to version 4.7.1 is available.", None),
    ],
)
def test_parse_update_check(output: str, expected: str | None) -> None:
    """Only core updates are reported."""
    assert parse_update_check(output) == expected


def test_read_version_file(tmp_path: Path) -> None:
    """The version string is preferred, then any x.y.z triple."""
    assert read_version_file(tmp_path) is None

    (tmp_path / "version.php").write_text(
        "<?php\n$OC_Version = array(28,0,1,2);\n$OC_VersionString = '28.0.1';\n",
        encoding="utf-8",
    )
    assert read_version_file(tmp_path) == "28.0.1"

    (tmp_path / "version.php").write_text("<?php\n// 27.1.3 build\n", encoding="utf-8")
    assert read_version_file(tmp_path) == "27.1.3"


def test_php_command_uses_sudo_for_other_users(monkeypatch: pytest.MonkeyPatch) -> None:
    """occ runs through sudo unless the caller already is the web user."""
    client = OccClient(NextcloudConfig(web_user="www-data"), sudo_bin="/usr/bin/sudo")

    monkeypatch.setattr(occ_module, "_current_user", lambda: "root")
    assert client.command("status") == [
        "/usr/bin/sudo",
        "-u",
        "www-data",
        "php",
        "/var/www/nextcloud/occ",
        "status",
    ]

    monkeypatch.setattr(occ_module, "_current_user", lambda: "www-data")
    assert client.command("status") == ["php", "/var/www/nextcloud/occ", "status"]


def test_occ_queries_against_stub(sandbox: Sandbox) -> None:
    """Status, maintenance, user and update queries parse occ output."""
    sandbox.write_stub("php", PHP_STUB)
    (sandbox.root / "occ").write_text("<?php\n", encoding="utf-8")
    client = sandbox.runtime().occ

    assert client.available() is True
    assert client.version() == "29.0.5"
    assert client.maintenance_enabled() is True
    assert client.user_count() == 2
    assert client.available_update() == "30.0.1"

    client.set_maintenance(False)
    assert f"{sandbox.root / 'occ'} maintenance:mode --off" in sandbox.calls("php")


def test_version_falls_back_to_version_file(sandbox: Sandbox) -> None:
    """Without usable occ output the version comes from version.php."""
    client = sandbox.runtime().occ

    assert client.available() is False
    assert client.version() == "29.0.4"


def test_failed_occ_raises(sandbox: Sandbox) -> None:
    """Non-zero occ exits surface as OccError with stderr."""
    sandbox.write_stub("php", PHP_STUB)
    client = sandbox.runtime().occ

    with pytest.raises(OccError, match="occ broken failed: .*boom"):
        client.run("broken")
