"""Tests for the step runner and the subprocess wrapper."""
from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from ncctl.logging import OperationScope, StructuredLogger
from ncctl.steps import CommandError, StepError, StepRunner, StepState, run_command


def _runner(tmp_path: Path, **kwargs: object) -> tuple[StepRunner, OperationScope]:
    op = OperationScope(StructuredLogger(tmp_path / "logs"), "demo")
    runner = StepRunner(op=op, backoff_min=0.01, backoff_max=0.02, **kwargs)  # type: ignore[arg-type]
    return runner, op


def test_successful_step_is_recorded(tmp_path: Path) -> None:
    """A succeeding action returns its value and records the step."""
    runner, op = _runner(tmp_path)

    assert runner.run("compute", lambda: 42) == 42
    assert runner.state_of("compute") is StepState.SUCCEEDED
    assert op.steps == [{"name": "compute", "status": "succeeded"}]


def test_failed_step_raises_step_error(tmp_path: Path) -> None:
    """Required steps wrap failures in StepError naming the step."""
    runner, _ = _runner(tmp_path)

    def boom() -> None:
        raise ValueError("bad input")

    with pytest.raises(StepError) as excinfo:
        runner.run("parse", boom)
    assert excinfo.value.step == "parse"
    assert "bad input" in str(excinfo.value)
    assert runner.state_of("parse") is StepState.FAILED


def test_optional_step_failure_becomes_warning(tmp_path: Path) -> None:
    """Optional steps log a warning and let the run continue."""
    runner, op = _runner(tmp_path)

    def boom() -> None:
        raise RuntimeError("webhook down")

    assert runner.run("notify", boom, optional=True) is None
    assert runner.warnings == ["notify: webhook down"]
    assert op.steps[-1]["status"] == "warning"


def test_command_errors_are_retried(tmp_path: Path) -> None:
    """CommandError triggers retries up to the configured attempt count."""
    runner, _ = _runner(tmp_path, retries=2)
    attempts: list[int] = []

    def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise CommandError("transient", returncode=1)
        return "ok"

    assert runner.run("upload", flaky) == "ok"
    assert len(attempts) == 3
    assert runner.steps[-1].attempts == 3


def test_non_retryable_errors_fail_immediately(tmp_path: Path) -> None:
    """Errors outside the retry set are not retried."""
    runner, _ = _runner(tmp_path, retries=3)
    attempts: list[int] = []

    def broken() -> None:
        attempts.append(1)
        raise ValueError("logic error")

    with pytest.raises(StepError):
        runner.run("compute", broken)
    assert len(attempts) == 1


def test_idempotency_key_skips_completed_step(tmp_path: Path) -> None:
    """A step whose key already succeeded is skipped."""
    runner, _ = _runner(tmp_path)
    calls: list[int] = []

    runner.run("maintenance.on", lambda: calls.append(1), key="maintenance")
    runner.run("maintenance.on", lambda: calls.append(1), key="maintenance")

    assert calls == [1]
    assert runner.steps[-1].state is StepState.SKIPPED


def test_dry_run_skips_actions(tmp_path: Path) -> None:
    """Dry-run runners record steps as skipped without executing them."""
    runner, _ = _runner(tmp_path, dry_run=True)
    calls: list[int] = []

    assert runner.run("delete", lambda: calls.append(1)) is None
    assert calls == []
    assert runner.steps[0].state is StepState.SKIPPED


def test_run_command_captures_output() -> None:
    """run_command returns stdout for successful commands."""
    result = run_command(["sh", "-c", "echo hello"])
    assert isinstance(result, subprocess.CompletedProcess)
    assert result.stdout.strip() == "hello"


def test_run_command_failure_includes_stderr() -> None:
    """Non-zero exits raise CommandError with the stderr detail."""
    with pytest.raises(CommandError, match="exited with status 3: nope") as excinfo:
        run_command(["sh", "-c", "echo nope >&2; exit 3"])
    assert excinfo.value.returncode == 3


def test_run_command_missing_binary() -> None:
    """A missing executable is reported as CommandError."""
    with pytest.raises(CommandError, match="Command not found"):
        run_command(["/nonexistent/ncctl-test-binary"])


def test_run_command_streams_stdin_and_stdout(tmp_path: Path) -> None:
    """stdin_path and stdout_path redirect to files."""
    source = tmp_path / "in.sql"
    source.write_text("CREATE TABLE oc_users;\n", encoding="utf-8")
    target = tmp_path / "out.sql"

    run_command(["cat"], stdin_path=source, stdout_path=target)

    assert target.read_text(encoding="utf-8") == "CREATE TABLE oc_users;\n"


def test_run_command_merges_environment() -> None:
    """Extra environment entries are added to the inherited environment."""
    result = run_command(["sh", "-c", 'echo "$MYSQL_PWD:${PATH:+path}"'], env={"MYSQL_PWD": "pw"})
    assert result.stdout.strip() == "pw:path"
