"""Step execution with timeouts, retries and recorded state.

Each external action an ncctl command performs (copying a component, dumping
the database, toggling maintenance mode, ...) runs as a :class:`Step` through a
:class:`StepRunner`. Steps move ``pending -> running -> succeeded|failed|skipped``
and are mirrored onto the active :class:`~ncctl.logging.OperationScope`.
Optional steps that fail are downgraded to warnings; any other failure raises
:class:`StepError` and aborts the command.
"""
from __future__ import annotations

import os
import subprocess
from collections.abc import Callable, Mapping, Sequence
from contextlib import AbstractContextManager, nullcontext
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, TypeVar

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .logging import OperationScope

T = TypeVar("T")


class StepState(str, Enum):
    """Lifecycle of a step."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class CommandError(RuntimeError):
    """Raised when an external command fails or times out."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class StepError(RuntimeError):
    """Raised when a required step fails."""

    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"{step}: {message}")
        self.step = step


@dataclass
class Step:
    """One unit of work and its recorded outcome."""

    name: str
    key: str
    optional: bool = False
    state: StepState = StepState.PENDING
    attempts: int = 0
    detail: str | None = None


@dataclass
class StepRunner:
    """Run steps against an operation scope."""

    op: OperationScope | None = None
    timeout: float | None = None
    retries: int = 0
    backoff_min: float = 1.0
    backoff_max: float = 30.0
    dry_run: bool = False
    steps: list[Step] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def run(
        self,
        name: str,
        action: Callable[[], T],
        *,
        key: str | None = None,
        optional: bool = False,
        retries: int | None = None,
        retry_on: tuple[type[BaseException], ...] = (),
    ) -> T | None:
        """Execute ``action`` as step ``name``.

        Returns the action's result, or ``None`` when the step was skipped or
        an optional step failed.
        """
        step = Step(name=name, key=key or name, optional=optional)
        self.steps.append(step)

        if self.dry_run:
            return self._finish(step, StepState.SKIPPED, "dry-run")
        if any(
            previous.key == step.key and previous.state is StepState.SUCCEEDED
            for previous in self.steps[:-1]
        ):
            return self._finish(step, StepState.SKIPPED, "already completed")

        step.state = StepState.RUNNING
        attempts = (self.retries if retries is None else retries) + 1
        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(
                multiplier=self.backoff_min,
                min=self.backoff_min,
                max=self.backoff_max,
            ),
            retry=retry_if_exception_type((CommandError, OSError, *retry_on)),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    step.attempts += 1
                    result = action()
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            if optional:
                self.warnings.append(f"{name}: {message}")
                self._finish(step, StepState.FAILED, message)
                return None
            self._finish(step, StepState.FAILED, message)
            raise StepError(name, message) from exc

        self._finish(step, StepState.SUCCEEDED, None)
        return result

    def skip(self, name: str, reason: str) -> None:
        """Record ``name`` as skipped without running anything."""
        step = Step(name=name, key=name)
        self.steps.append(step)
        self._finish(step, StepState.SKIPPED, reason)

    def command(
        self,
        name: str,
        args: Sequence[str],
        *,
        optional: bool = False,
        key: str | None = None,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
    ) -> subprocess.CompletedProcess[str] | None:
        """Run an external command as a step using the runner's timeout."""
        return self.run(
            name,
            lambda: run_command(
                args,
                timeout=self.timeout,
                env=env,
                cwd=cwd,
                stdin_path=stdin_path,
                stdout_path=stdout_path,
            ),
            key=key,
            optional=optional,
        )

    def state_of(self, name: str) -> StepState | None:
        """Return the most recent state recorded for ``name``."""
        for step in reversed(self.steps):
            if step.name == name:
                return step.state
        return None

    def _finish(self, step: Step, state: StepState, detail: str | None) -> None:
        step.state = state
        step.detail = detail
        if self.op is not None:
            status = "warning" if state is StepState.FAILED and step.optional else state.value
            self.op.add_step(step.name, status=status, detail=detail)
        return None


def run_command(
    args: Sequence[str],
    *,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
    stdin_path: Path | None = None,
    stdout_path: Path | None = None,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    """Run ``args`` and return the completed process.

    ``env`` entries are added to the inherited environment. When ``stdout_path``
    is given, standard output is streamed into that file instead of captured.
    """
    argv = [str(part) for part in args]
    merged_env = None
    if env:
        merged_env = dict(os.environ)
        merged_env.update(env)
    try:
        with _maybe_open(stdin_path, "rb") as stdin, _maybe_open(stdout_path, "wb") as stdout:
            result = subprocess.run(  # noqa: S603
                argv,
                check=False,
                stdin=stdin,
                stdout=stdout if stdout is not None else subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=timeout,
                env=merged_env,
                cwd=str(cwd) if cwd else None,
            )
    except FileNotFoundError as exc:
        raise CommandError(f"Command not found: {argv[0]}") from exc
    except subprocess.TimeoutExpired as exc:
        raise CommandError(f"Command timed out after {timeout}s: {' '.join(argv)}") from exc

    if check and result.returncode != 0:
        stderr = (result.stderr or "").strip()
        detail = stderr
        if not detail and stdout_path is None:
            detail = (result.stdout or "").strip()
        message = f"{argv[0]} exited with status {result.returncode}"
        if detail:
            message = f"{message}: {detail}"
        raise CommandError(message, returncode=result.returncode, stderr=stderr)
    return result


def _maybe_open(path: Path | None, mode: str) -> AbstractContextManager[IO[bytes] | None]:
    if path is None:
        return nullcontext()
    return Path(path).open(mode)


__all__ = [
    "CommandError",
    "Step",
    "StepError",
    "StepRunner",
    "StepState",
    "run_command",
]
