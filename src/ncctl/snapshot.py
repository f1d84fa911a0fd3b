"""rsync helpers for copying Nextcloud components in and out of backups."""
from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from .steps import StepRunner


def rsync_command(
    source: Path,
    destination: Path,
    *,
    rsync_bin: str = "rsync",
    link_dest: Path | None = None,
    excludes: Sequence[str] = (),
    delete: bool = True,
) -> list[str]:
    """Return the rsync argv mirroring ``source`` into ``destination``.

    With ``link_dest`` unchanged files become hard links into that directory,
    which is how incremental backups share storage with their base.
    """
    command = [rsync_bin, "-a"]
    if delete:
        command.append("--delete")
    if link_dest is not None:
        command.append(f"--link-dest={link_dest.resolve()}")
    for pattern in excludes:
        command.append(f"--exclude={pattern}")
    command.extend([f"{source}/", f"{destination}/"])
    return command


def copy_component(
    runner: StepRunner,
    component: str,
    source: Path,
    destination: Path,
    *,
    rsync_bin: str = "rsync",
    base: Path | None = None,
    excludes: Sequence[str] = (),
    optional: bool = False,
) -> bool:
    """Copy one component directory; return ``False`` if the step did not run.

    ``base`` is the matching component directory of the base backup. It is only
    used as ``--link-dest`` when it exists.
    """
    if not source.is_dir():
        runner.skip(f"copy.{component}", f"source missing: {source}")
        return False
    if not runner.dry_run:
        destination.mkdir(parents=True, exist_ok=True)
    link_dest = base if base is not None and base.is_dir() else None
    result = runner.command(
        f"copy.{component}",
        rsync_command(
            source,
            destination,
            rsync_bin=rsync_bin,
            link_dest=link_dest,
            excludes=excludes,
        ),
        optional=optional,
    )
    return result is not None


def restore_component(
    runner: StepRunner,
    component: str,
    source: Path,
    target: Path,
    *,
    rsync_bin: str = "rsync",
) -> bool:
    """Mirror a component from a backup onto the live installation."""
    if not source.is_dir():
        runner.skip(f"restore.{component}", f"not in backup: {source}")
        return False
    if not runner.dry_run:
        target.mkdir(parents=True, exist_ok=True)
    result = runner.command(
        f"restore.{component}",
        rsync_command(source, target, rsync_bin=rsync_bin),
    )
    return result is not None


def fix_ownership(runner: StepRunner, target: Path, user: str) -> None:
    """``chown -R user:user`` the restored tree."""
    runner.command(f"chown.{target.name}", ["chown", "-R", f"{user}:{user}", str(target)])


__all__ = ["copy_component", "fix_ownership", "restore_component", "rsync_command"]
