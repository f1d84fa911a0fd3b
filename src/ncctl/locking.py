"""File-based locking for mutating ncctl operations.

Locks are ``fcntl.flock`` advisory locks on files below the runtime directory.
A global ``ncctl.lock`` serialises every mutating command, and each operation
(``backup``, ``restore``, ``update``, ...) also holds its own lock so that
``ncctl lock status`` can tell what is running. Lock files keep JSON metadata
(``pid``, ``acquired_at``, ``path``, ``operation``) after release for
diagnostics; the kernel drops the flock itself when the process dies.
"""
from __future__ import annotations

import fcntl
import json
import os
import re
import time
from collections.abc import Iterator, Sequence
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

GLOBAL_LOCK_NAME = "ncctl"
POLL_INTERVAL = 0.05
_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class LockError(RuntimeError):
    """Base class for locking failures."""


class LockTimeoutError(LockError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(frozen=True)
class LockHandle:
    """A held lock."""

    name: str
    path: Path
    wait_ms: int


@dataclass(frozen=True)
class LockBundle:
    """Several locks acquired together (global first)."""

    handles: tuple[LockHandle, ...]

    @property
    def wait_ms(self) -> int:
        """Return the total time spent waiting for the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


@dataclass(frozen=True)
class LockInfo:
    """Diagnostic view of a lock file."""

    name: str
    path: Path
    state: str
    pid: int | None
    operation: str | None
    acquired_at: str | None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "path": str(self.path),
            "state": self.state,
            "pid": self.pid,
            "operation": self.operation,
            "acquired_at": self.acquired_at,
        }


class LockManager:
    """Acquire and inspect ncctl lock files."""

    def __init__(self, run_dir: Path, default_timeout: float) -> None:
        self.run_dir = Path(run_dir)
        self.default_timeout = float(default_timeout)

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for ``name``."""
        safe = _SAFE_NAME.sub("_", name).strip("_") or "lock"
        return self.run_dir / f"{safe}.lock"

    @contextmanager
    def operation_lock(
        self,
        name: str,
        *,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the lock for ``name`` for the duration of the block."""
        path = self.lock_path(name)
        wait = self.default_timeout if timeout is None else float(timeout)
        self.run_dir.mkdir(parents=True, exist_ok=True)
        handle = path.open("a+", encoding="utf-8")
        try:
            waited_ms = _acquire(handle, path, wait)
            _write_metadata(handle, {
                "pid": os.getpid(),
                "acquired_at": datetime.now(UTC).isoformat(),
                "path": str(path),
                "operation": name,
            })
            try:
                yield LockHandle(name=name, path=path, wait_ms=waited_ms)
            finally:
                _write_metadata(handle, {
                    "pid": os.getpid(),
                    "path": str(path),
                    "operation": name,
                    "released_at": datetime.now(UTC).isoformat(),
                })
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    @contextmanager
    def mutate(
        self,
        operations: Sequence[str],
        *,
        include_global: bool = True,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock (optionally) followed by each operation lock."""
        names: list[str] = [GLOBAL_LOCK_NAME] if include_global else []
        names.extend(sorted(set(operations)))
        with ExitStack() as stack:
            handles = tuple(
                stack.enter_context(self.operation_lock(name, timeout=timeout))
                for name in names
            )
            yield LockBundle(handles=handles)

    def status(self) -> list[LockInfo]:
        """Describe every lock file under the runtime directory."""
        if not self.run_dir.exists():
            return []
        infos: list[LockInfo] = []
        for path in sorted(self.run_dir.glob("*.lock")):
            metadata = _read_metadata(path)
            pid = metadata.get("pid")
            pid_value = pid if isinstance(pid, int) else None
            if _is_held(path):
                state = "held"
            elif "released_at" in metadata or pid_value is None:
                state = "free"
            elif _pid_alive(pid_value):
                state = "free"
            else:
                state = "stale"
            infos.append(
                LockInfo(
                    name=path.stem,
                    path=path,
                    state=state,
                    pid=pid_value,
                    operation=_optional_str(metadata.get("operation")),
                    acquired_at=_optional_str(metadata.get("acquired_at")),
                )
            )
        return infos


def _acquire(handle: IO[str], path: Path, timeout: float) -> int:
    start = time.monotonic()
    deadline = start + max(timeout, 0.0)
    while True:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            return int((time.monotonic() - start) * 1000)
        except BlockingIOError as exc:
            if time.monotonic() >= deadline:
                holder = _read_metadata(path).get("pid")
                raise LockTimeoutError(
                    f"Timed out after {timeout:.1f}s waiting for lock {path}"
                    + (f" (held by pid {holder})" if holder else "")
                ) from exc
            time.sleep(POLL_INTERVAL)


def _write_metadata(handle: IO[str], data: dict[str, object]) -> None:
    handle.seek(0)
    handle.truncate()
    handle.write(json.dumps(data, sort_keys=True))
    handle.flush()


def _read_metadata(path: Path) -> dict[str, object]:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def _is_held(path: Path) -> bool:
    try:
        with path.open("a", encoding="utf-8") as handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                return True
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    except OSError:
        return False
    return False


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _optional_str(value: object) -> str | None:
    return str(value) if value is not None else None


__all__ = [
    "GLOBAL_LOCK_NAME",
    "LockBundle",
    "LockError",
    "LockHandle",
    "LockInfo",
    "LockManager",
    "LockTimeoutError",
]
