"""Backup retention policies.

Two strategies are available:

``chain`` (default)
    Keep every backup younger than ``min_age_days``, the ``keep_last`` most
    recent backups and the newest full backup; delete the rest. An incremental
    that survives while its base is deleted is promoted to a full backup, so
    no kept incremental ever points at a missing base.

``legacy``
    The historical three-pass rotation: keep the N newest backups older than
    a week, keep only the newest full older than a week, then remove
    incrementals whose base has gone. Those passes can contradict each other
    (pass two removes bases that pass one kept); the strategy is kept for
    installations that depend on its exact behaviour.
"""
from __future__ import annotations

import math
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .backups import BackupInstance, BackupsRegistry, BackupStore
from .config import RetentionConfig

LEGACY_MIN_AGE_DAYS = 7


@dataclass
class RetentionPlan:
    """Backups to keep and delete, with the reason for each decision."""

    keep: list[BackupInstance] = field(default_factory=list)
    delete: list[BackupInstance] = field(default_factory=list)
    promote: list[BackupInstance] = field(default_factory=list)
    reasons: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "keep": [backup.name for backup in self.keep],
            "delete": [backup.name for backup in self.delete],
            "promote": [backup.name for backup in self.promote],
            "reasons": dict(self.reasons),
        }


def _recency(backup: BackupInstance) -> tuple[float, str]:
    return (backup.mtime, backup.name)


def resolve_chain_root(
    backup: BackupInstance,
    by_name: dict[str, BackupInstance],
) -> str | None:
    """Return the name of the full backup ``backup`` ultimately depends on."""
    current = backup
    seen: set[str] = set()
    while current.is_incremental:
        if current.name in seen or current.base is None:
            return None
        seen.add(current.name)
        parent = by_name.get(current.base)
        if parent is None:
            return None
        current = parent
    return current.name


def group_chains(
    backups: Sequence[BackupInstance],
) -> tuple[dict[str, list[BackupInstance]], list[BackupInstance]]:
    """Split ``backups`` into chains keyed by their full backup, plus orphans."""
    by_name = {backup.name: backup for backup in backups}
    chains: dict[str, list[BackupInstance]] = {}
    orphans: list[BackupInstance] = []
    for backup in backups:
        root = resolve_chain_root(backup, by_name)
        if root is None:
            orphans.append(backup)
            continue
        chains.setdefault(root, []).append(backup)
    return chains, orphans


def plan_chain_retention(
    backups: Sequence[BackupInstance],
    policy: RetentionConfig,
    *,
    now: float | None = None,
) -> RetentionPlan:
    """Decide which backups survive under the chain strategy."""
    current = time.time() if now is None else now
    chains, orphans = group_chains(backups)
    candidates = sorted(
        (member for members in chains.values() for member in members),
        key=_recency,
        reverse=True,
    )

    reasons: dict[str, str] = {}
    for backup in candidates:
        if backup.age_days(current) < policy.min_age_days:
            reasons[backup.name] = f"younger than {policy.min_age_days} days"
    for backup in candidates[: policy.keep_last]:
        reasons.setdefault(backup.name, f"within the {policy.keep_last} most recent backups")
    fulls = [backup for backup in candidates if backup.is_full]
    if fulls:
        reasons.setdefault(fulls[0].name, "most recent full backup")

    plan = RetentionPlan()
    for backup in candidates:
        reason = reasons.get(backup.name)
        if reason is None:
            plan.delete.append(backup)
            plan.reasons[backup.name] = "delete: outside retention"
            continue
        plan.keep.append(backup)
        if backup.is_incremental and backup.base not in reasons:
            plan.promote.append(backup)
            plan.reasons[backup.name] = f"keep: {reason}; promoted to full (base {backup.base} expires)"
        else:
            plan.reasons[backup.name] = f"keep: {reason}"
    for orphan in orphans:
        if policy.prune_orphans:
            plan.delete.append(orphan)
            plan.reasons[orphan.name] = f"delete: base {orphan.base or 'unknown'} missing"
        else:
            plan.keep.append(orphan)
            plan.reasons[orphan.name] = "keep: orphan pruning disabled"
    plan.keep.sort(key=_recency)
    plan.delete.sort(key=_recency)
    plan.promote.sort(key=_recency)
    return plan


def plan_legacy_retention(
    backups: Sequence[BackupInstance],
    policy: RetentionConfig,
    *,
    now: float | None = None,
) -> RetentionPlan:
    """Reproduce the three-pass rotation of the historical backup script."""
    current = time.time() if now is None else now
    remaining = {backup.name: backup for backup in backups}
    plan = RetentionPlan()

    def _old(backup: BackupInstance) -> bool:
        # find -mtime +7: whole days of age strictly greater than seven
        return math.floor(backup.age_days(current)) > LEGACY_MIN_AGE_DAYS

    def _drop(backup: BackupInstance, reason: str) -> None:
        remaining.pop(backup.name, None)
        plan.delete.append(backup)
        plan.reasons[backup.name] = f"delete: {reason}"

    old = sorted((b for b in remaining.values() if _old(b)), key=_recency, reverse=True)
    for backup in old[policy.keep_last :]:
        _drop(backup, f"beyond the {policy.keep_last} newest backups older than a week")

    old_fulls = sorted(
        (b for b in remaining.values() if b.is_full and _old(b)),
        key=lambda item: item.name,
        reverse=True,
    )
    for backup in old_fulls[1:]:
        _drop(backup, "older full backup")

    for backup in sorted(remaining.values(), key=_recency):
        if backup.is_incremental and (backup.base is None or backup.base not in remaining):
            _drop(backup, f"base {backup.base or 'unknown'} missing")

    plan.keep = sorted(remaining.values(), key=_recency)
    for backup in plan.keep:
        plan.reasons[backup.name] = "keep"
    plan.delete.sort(key=_recency)
    return plan


def plan_retention(
    backups: Sequence[BackupInstance],
    policy: RetentionConfig,
    *,
    now: float | None = None,
) -> RetentionPlan:
    """Dispatch to the configured strategy."""
    if policy.strategy == "legacy":
        return plan_legacy_retention(backups, policy, now=now)
    return plan_chain_retention(backups, policy, now=now)


def archives_for(backup: BackupInstance, archive_dir: Path, prefix: str) -> list[Path]:
    """Return archive and checksum files produced from ``backup``."""
    if not archive_dir.is_dir():
        return []
    stem = f"{prefix}_{backup.timestamp:%Y%m%d_%H%M%S}."
    return sorted(path for path in archive_dir.iterdir() if path.name.startswith(stem))


def apply_retention(
    store: BackupStore,
    plan: RetentionPlan,
    *,
    archive_dir: Path,
    registry: BackupsRegistry | None = None,
    dry_run: bool = False,
) -> list[str]:
    """Delete what ``plan`` marks for deletion; return the removed names.

    Promotions run first so an interrupted run never leaves a kept
    incremental whose base is already gone.
    """
    if not dry_run:
        for backup in plan.promote:
            store.promote(backup)
            if registry is not None:
                registry.mark_promoted(backup.name)
    removed: list[str] = []
    for backup in plan.delete:
        if dry_run:
            removed.append(backup.name)
            continue
        if backup.path.exists():
            store.remove(backup)
        for archive in archives_for(backup, archive_dir, store.prefix):
            archive.unlink(missing_ok=True)
        if registry is not None:
            registry.mark_status(backup.name, "removed")
        removed.append(backup.name)
    return removed


__all__ = [
    "RetentionPlan",
    "apply_retention",
    "archives_for",
    "group_chains",
    "plan_chain_retention",
    "plan_legacy_retention",
    "plan_retention",
    "resolve_chain_root",
]
