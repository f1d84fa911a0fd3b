"""Outcome notifications: log line, email via ``mail``, or JSON webhook."""
from __future__ import annotations

import json
import shutil
import ssl
import subprocess
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import UTC, datetime

import certifi

from .config import NotificationConfig
from .logging import StructuredLogger

LEVELS = ("INFO", "SUCCESS", "WARNING", "ERROR")


class NotificationError(RuntimeError):
    """Raised when a notification cannot be delivered."""


def _ssl_context() -> ssl.SSLContext:
    return ssl.create_default_context(cafile=certifi.where())


@dataclass
class Notifier:
    """Deliver a subject/message pair through the configured channel."""

    config: NotificationConfig
    logger: StructuredLogger
    timeout: float = 30.0

    def send(self, subject: str, message: str, level: str = "INFO") -> None:
        """Send a notification; raise :class:`NotificationError` on failure."""
        level = level.upper() if level.upper() in LEVELS else "INFO"
        if self.config.method == "email":
            self._send_email(subject, message, level)
        elif self.config.method == "webhook":
            self._send_webhook(subject, message, level)
        else:
            self._send_log(subject, message, level)

    def success(self, subject: str, message: str) -> None:
        """Send a SUCCESS notification."""
        self.send(subject, message, "SUCCESS")

    def failure(self, subject: str, message: str) -> None:
        """Send an ERROR notification."""
        self.send(subject, message, "ERROR")

    def _send_log(self, subject: str, message: str, level: str) -> None:
        text = f"{subject}: {message}"
        if level == "ERROR":
            self.logger.error(text)
        elif level == "WARNING":
            self.logger.warning(text)
        else:
            self.logger.info(text)

    def _send_email(self, subject: str, message: str, level: str) -> None:
        mail_bin = shutil.which(self.config.mail_bin)
        if mail_bin is None:
            raise NotificationError(f"'{self.config.mail_bin}' command not found; email not sent.")
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        body = f"[{timestamp}] [{level}] {subject}\n{message}\n"
        cmd = [mail_bin, "-s", subject]
        if self.config.email_from:
            cmd.extend(["-a", f"From: {self.config.email_from}"])
        cmd.append(str(self.config.email_to))
        try:
            result = subprocess.run(  # noqa: S603 - controlled command execution
                cmd,
                input=body,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise NotificationError(f"mail failed: {exc}") from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise NotificationError(f"mail exited with status {result.returncode}: {detail}")

    def _send_webhook(self, subject: str, message: str, level: str) -> None:
        payload = {
            "text": f"*{subject}*\n{message}",
            "level": level,
            "timestamp": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        request = urllib.request.Request(
            str(self.config.webhook_url),
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(  # noqa: S310 - URL comes from operator config
                request,
                timeout=self.timeout,
                context=_ssl_context(),
            ) as response:
                response.read()
        except (urllib.error.URLError, OSError) as exc:
            raise NotificationError(f"Webhook delivery failed: {exc}") from exc


__all__ = ["NotificationError", "Notifier"]
