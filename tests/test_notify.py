"""Tests for outcome notifications."""
from __future__ import annotations

import json
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any

import pytest

from ncctl import notify as notify_module
from ncctl.config import NotificationConfig
from ncctl.logging import StructuredLogger
from ncctl.notify import NotificationError, Notifier


class FakeResponse:
    """Context manager mimicking ``urlopen``'s response."""

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc: object) -> None:
        return None

    def read(self) -> bytes:
        return b"ok"


def test_log_method_writes_text_log(tmp_path: Path) -> None:
    """The default method writes the notification into the text log."""
    logger = StructuredLogger(tmp_path / "logs")
    notifier = Notifier(NotificationConfig(), logger)

    notifier.success("Nextcloud backup completed", "full backup nextcloud_backup_20250101_020000_full")
    notifier.failure("Nextcloud backup failed", "rsync exploded")
    logger.close()

    text = logger.text_log_path.read_text(encoding="utf-8")
    assert "[INFO] Nextcloud backup completed: full backup" in text
    assert "[ERROR] Nextcloud backup failed: rsync exploded" in text


def test_webhook_posts_json(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Webhook notifications POST a JSON payload with the level."""
    captured: dict[str, Any] = {}

    def fake_urlopen(request: urllib.request.Request, **kwargs: Any) -> FakeResponse:
        captured["url"] = request.full_url
        captured["method"] = request.get_method()
        captured["body"] = json.loads(request.data)  # type: ignore[arg-type]
        captured["timeout"] = kwargs.get("timeout")
        return FakeResponse()

    monkeypatch.setattr(notify_module.urllib.request, "urlopen", fake_urlopen)
    config = NotificationConfig(method="webhook", webhook_url="https://hooks.example.com/ncctl")
    notifier = Notifier(config, StructuredLogger(tmp_path / "logs"), timeout=5)

    notifier.failure("Nextcloud update failed", "occ upgrade exited 1")

    assert captured["url"] == "https://hooks.example.com/ncctl"
    assert captured["method"] == "POST"
    assert captured["body"]["text"] == "*Nextcloud update failed*\nocc upgrade exited 1"
    assert captured["body"]["level"] == "ERROR"
    assert captured["body"]["timestamp"].endswith("Z")
    assert captured["timeout"] == 5


def test_webhook_failure_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Delivery errors become NotificationError."""

    def fake_urlopen(request: urllib.request.Request, **kwargs: Any) -> FakeResponse:
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(notify_module.urllib.request, "urlopen", fake_urlopen)
    config = NotificationConfig(method="webhook", webhook_url="https://hooks.example.com/ncctl")

    with pytest.raises(NotificationError, match="Webhook delivery failed"):
        Notifier(config, StructuredLogger(tmp_path / "logs")).send("subject", "body")


def test_email_pipes_body_to_mail(tmp_path: Path) -> None:
    """Email notifications call ``mail -s subject recipient`` with the body on stdin."""
    mail = tmp_path / "mail"
    mail.write_text(
        '#!/bin/sh\necho "$@" > "$(dirname "$0")/mail.args"\ncat > "$(dirname "$0")/mail.body"\n',
        encoding="utf-8",
    )
    mail.chmod(0o755)
    config = NotificationConfig(
        method="email",
        email_to="ops@example.com",
        email_from="nextcloud@example.com",
        mail_bin=str(mail),
    )

    Notifier(config, StructuredLogger(tmp_path / "logs")).send("Backup done", "all good", "success")

    args = (tmp_path / "mail.args").read_text(encoding="utf-8").strip()
    assert args == "-s Backup done -a From: nextcloud@example.com ops@example.com"
    body = (tmp_path / "mail.body").read_text(encoding="utf-8")
    assert "[SUCCESS] Backup done" in body
    assert body.rstrip().endswith("all good")


def test_email_without_mail_binary_raises(tmp_path: Path) -> None:
    """A missing mail command is reported instead of silently ignored."""
    config = NotificationConfig(method="email", email_to="ops@example.com", mail_bin="/nonexistent/mail")

    with pytest.raises(NotificationError, match="command not found"):
        Notifier(config, StructuredLogger(tmp_path / "logs")).send("subject", "body")
