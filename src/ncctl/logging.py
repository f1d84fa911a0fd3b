"""Structured logging for ncctl operations.

Every CLI command runs inside :meth:`StructuredLogger.operation`, which yields an
:class:`OperationScope`. The scope collects steps and the final outcome and, on
exit, appends one JSON record to ``operations.jsonl``. Human-readable progress
lines go through the standard :mod:`logging` module into a per-day file named
``ncctl-YYYYMMDD.log`` using the ``[YYYY-MM-DD HH:MM:SS] [LEVEL] message`` layout
the original shell scripts produced.

Logging must never break an operation: if the log directory cannot be created
or written, the logger disables itself and carries on silently.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

TEXT_LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
TEXT_LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
LOGGER_NAME = "ncctl"


def _json_safe(value: object) -> object:
    """Convert ``value`` into something ``json.dumps`` accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


class OperationScope:
    """Collects the steps and outcome of a single CLI operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        self._logger = logger
        self.command = command
        self.op_id = uuid.uuid4().hex
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.actor: dict[str, object] = _current_actor()
        self.started_at = datetime.now(UTC)
        self._started_monotonic = time.monotonic()
        self.steps: list[dict[str, object]] = []
        self.lock_wait_ms: int | None = None
        self.result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str, detail: object | None = None) -> None:
        """Record a step outcome and mirror it into the text log."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = detail
        self.steps.append(step)
        level = logging.WARNING if status in {"failed", "warning"} else logging.INFO
        suffix = f" ({detail})" if detail else ""
        self._logger.log(level, f"{self.command}: {name} {status}{suffix}")

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its locks."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result(
            "success",
            message,
            rc=0,
            changed=changed,
            backups=backups,
            context=context,
        )
        self._logger.log(logging.INFO, message)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            rc=0,
            warnings=warnings,
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )
        self._logger.log(logging.WARNING, message)
        for item in warnings or ():
            self._logger.log(logging.WARNING, str(item))

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        error_list = list(errors) if errors else [message]
        self._set_result(
            "error",
            message,
            rc=rc,
            errors=error_list,
            context=context,
        )
        self._logger.log(logging.ERROR, message)
        for item in error_list:
            if item != message:
                self._logger.log(logging.ERROR, str(item))

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        rc: int,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message, "rc": rc}
        if warnings:
            result["warnings"] = [str(item) for item in warnings]
        if errors:
            result["errors"] = [str(item) for item in errors]
        if changed is not None:
            result["changed"] = changed
        if backups:
            result["backups"] = [str(item) for item in backups]
        if context:
            result["context"] = _json_safe(context)
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON-serialisable operations log record."""
        duration_ms = int((time.monotonic() - self._started_monotonic) * 1000)
        record: dict[str, object] = {
            "ts": self.started_at.isoformat(),
            "op_id": self.op_id,
            "command": self.command,
            "args": _json_safe(self.args),
            "target": _json_safe(self.target),
            "actor": _json_safe(self.actor),
            "steps": _json_safe(self.steps),
            "duration_ms": duration_ms,
            "result": self.result or {"status": "unknown", "rc": None},
        }
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return record


class StructuredLogger:
    """Write operation records and human-readable progress lines."""

    def __init__(self, log_dir: Path, *, level: str = "INFO") -> None:
        self.log_dir = Path(log_dir)
        self._operations_log_path = self.log_dir / "operations.jsonl"
        self._level = logging.getLevelName(level.upper())
        if not isinstance(self._level, int):
            self._level = logging.INFO
        self._text_logger = logging.getLogger(f"{LOGGER_NAME}.{id(self)}")
        self._text_logger.setLevel(self._level)
        self._text_logger.propagate = False
        # Logger names derive from id(), which can be reused after collection.
        self.close()
        self._enabled = True
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._attach_text_handler()

    @property
    def enabled(self) -> bool:
        """Return ``True`` while log files are still being written."""
        return self._enabled

    @property
    def text_log_path(self) -> Path:
        """Return today's human-readable log file path."""
        return self.log_dir / f"ncctl-{datetime.now():%Y%m%d}.log"

    def _attach_text_handler(self) -> None:
        try:
            handler = logging.FileHandler(self.text_log_path, encoding="utf-8")
        except OSError:
            self._enabled = False
            return
        handler.setFormatter(logging.Formatter(TEXT_LOG_FORMAT, datefmt=TEXT_LOG_DATEFMT))
        self._text_logger.addHandler(handler)

    def log(self, level: int, message: str) -> None:
        """Write ``message`` to the text log when enabled."""
        if not self._enabled:
            return
        self._text_logger.log(level, message)

    def info(self, message: str) -> None:
        """Shortcut for an INFO line."""
        self.log(logging.INFO, message)

    def warning(self, message: str) -> None:
        """Shortcut for a WARNING line."""
        self.log(logging.WARNING, message)

    def error(self, message: str) -> None:
        """Shortcut for an ERROR line."""
        self.log(logging.ERROR, message)

    def close(self) -> None:
        """Detach and close file handlers."""
        for handler in list(self._text_logger.handlers):
            handler.close()
            self._text_logger.removeHandler(handler)

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it when the block exits."""
        scope = OperationScope(self, command, args=args, target=target)
        self.log(logging.DEBUG, f"{command}: started")
        try:
            yield scope
        except Exception as exc:
            # typer.Exit(code=0) is a clean early return, not a failure.
            if scope.result is None and getattr(exc, "exit_code", 1) != 0:
                scope.error(f"{command} failed: {exc}", errors=[str(exc)], rc=1)
            raise
        finally:
            self._write_record(scope.to_record())

    def _write_record(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError:
            self._enabled = False


def _current_actor() -> dict[str, object]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return {"user": user, "uid": os.getuid() if hasattr(os, "getuid") else None}


__all__ = ["OperationScope", "StructuredLogger"]
