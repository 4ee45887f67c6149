"""Attachment engine: copies a resolved pack into the project tree.

Attaching is two-step.  ``simulate`` decides an action for every file the
pack would write without touching the disk; ``commit`` performs those actions
and refuses outright if the simulation found any conflict.  A conflict is a
destination that already exists outside the CLI-managed zone: those files
belong to the user and are never overwritten.  New files that would land
outside the CLI-managed zone are skipped with a warning.
"""

from __future__ import annotations

import fnmatch
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from rns.config import OwnershipZones, Zone
from rns.errors import AttachmentConflictError, PackResolutionError
from rns.modulator.backup import BackupStore
from rns.modulator.packs import PACK_MANIFEST, ResolvedPack
from rns.modulator.templates import TemplateRenderer, is_template, output_name
from rns.utils import atomic_write_bytes, normalize_rel_path

IGNORED_NAMES = {PACK_MANIFEST, ".DS_Store", ".git", "node_modules", "Thumbs.db"}
IGNORED_PATTERNS = ("*.log",)


class FileAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    UNCHANGED = "unchanged"
    SKIP = "skip"
    CONFLICT = "conflict"


class PlannedFile(BaseModel):
    source: str = Field(..., description="Path relative to the pack root")
    destination: str = Field(..., description="Project-relative destination")
    action: FileAction
    rendered: bool = False
    reason: str = ""


class AttachmentPlan(BaseModel):
    files: list[PlannedFile] = Field(default_factory=list)

    @property
    def conflicts(self) -> list[PlannedFile]:
        return [f for f in self.files if f.action is FileAction.CONFLICT]

    def with_action(self, action: FileAction) -> list[PlannedFile]:
        return [f for f in self.files if f.action is action]


class AttachmentOutcome(BaseModel):
    created: list[str] = Field(default_factory=list)
    created_dirs: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def owned_paths(self) -> list[str]:
        return sorted(set(self.created) | set(self.created_dirs))


class CleanupOutcome(BaseModel):
    removed: list[str] = Field(default_factory=list)
    kept: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


def _ignored(rel_parts: tuple[str, ...]) -> bool:
    for part in rel_parts:
        if part in IGNORED_NAMES:
            return True
        if any(fnmatch.fnmatch(part, pattern) for pattern in IGNORED_PATTERNS):
            return True
    return False


class AttachmentEngine:
    """Simulates and commits pack attachment under the ownership rules."""

    def __init__(self, project_root: Path, zones: OwnershipZones, backups: BackupStore) -> None:
        self.project_root = Path(project_root)
        self.zones = zones
        self.backups = backups

    # -- Collection -----------------------------------------------------------

    def _walk(self, base: Path, skip_top: set[str]) -> list[Path]:
        files = []
        for path in sorted(base.rglob("*")):
            rel = path.relative_to(base)
            if rel.parts and rel.parts[0] in skip_top:
                continue
            if path.is_file() and not _ignored(rel.parts):
                files.append(path)
        return files

    def collect(self, pack: ResolvedPack) -> dict[str, str]:
        """Map project destination -> pack-relative source.

        ``common/`` is collected first so the variant overrides it.
        """
        mapping: dict[str, str] = {}
        bases: list[tuple[Path, set[str]]] = []
        if pack.common_dir is not None:
            bases.append((pack.common_dir, set()))
        bases.append((pack.variant_dir, pack.nested_variants))

        for base, skip_top in bases:
            for path in self._walk(base, skip_top):
                rel = path.relative_to(base).as_posix()
                dest = output_name(rel)
                if pack.destination:
                    dest = f"{pack.destination}/{dest}"
                try:
                    dest = normalize_rel_path(dest)
                except ValueError as exc:
                    raise PackResolutionError(str(exc), phase="attachment", path=path) from exc
                mapping[dest] = path.relative_to(pack.root).as_posix()
        return dict(sorted(mapping.items()))

    def _content(self, pack: ResolvedPack, source: str, context: dict[str, Any]) -> bytes:
        if is_template(source):
            return TemplateRenderer(pack.root).render(source, context).encode("utf-8")
        return (pack.root / source).read_bytes()

    # -- Simulation -----------------------------------------------------------

    def simulate(
        self,
        pack: ResolvedPack,
        context: dict[str, Any],
        owned_paths: list[str] | tuple[str, ...] = (),
    ) -> AttachmentPlan:
        """Decide what attaching *pack* would do, without writing anything."""
        plan = AttachmentPlan()
        owned = set(owned_paths)
        for dest, source in self.collect(pack).items():
            target = self.project_root / dest
            rendered = is_template(source)
            zone = self.zones.zone_of(dest)
            if zone is not Zone.CLI:
                if target.exists():
                    action = FileAction.CONFLICT
                    reason = f"{dest} exists and is {zone.value}-owned"
                else:
                    action = FileAction.SKIP
                    reason = f"{dest} is outside CLI-managed directories"
            elif not target.exists():
                action, reason = FileAction.CREATE, ""
            elif target.is_dir():
                action, reason = FileAction.CONFLICT, f"{dest} is a directory"
            elif target.read_bytes() == self._content(pack, source, context):
                action, reason = FileAction.UNCHANGED, ""
            else:
                action = FileAction.UPDATE
                reason = "owned by this capability" if dest in owned else "existing CLI-managed file"
            plan.files.append(
                PlannedFile(
                    source=source, destination=dest, action=action, rendered=rendered, reason=reason
                )
            )
        return plan

    # -- Commit ---------------------------------------------------------------

    def commit(
        self,
        pack: ResolvedPack,
        context: dict[str, Any],
        plan: AttachmentPlan,
        run_id: str,
    ) -> AttachmentOutcome:
        """Write the simulated plan.

        Raises:
            AttachmentConflictError: If *plan* contains any conflict; nothing
                is written in that case.
        """
        if plan.conflicts:
            raise AttachmentConflictError([f.destination for f in plan.conflicts])

        outcome = AttachmentOutcome()
        for planned in plan.files:
            dest = planned.destination
            target = self.project_root / dest
            if planned.action is FileAction.SKIP:
                outcome.skipped.append(dest)
                outcome.warnings.append(f"Skipped {dest}: {planned.reason}")
                continue
            if planned.action is FileAction.UNCHANGED:
                continue
            content = self._content(pack, planned.source, context)
            if planned.action is FileAction.CREATE:
                outcome.created_dirs.extend(self._missing_cli_dirs(dest))
                atomic_write_bytes(target, content)
                outcome.created.append(dest)
            else:
                self.backups.backup(run_id, dest)
                atomic_write_bytes(target, content)
                outcome.updated.append(dest)
        outcome.created_dirs = sorted(set(outcome.created_dirs))
        return outcome

    def _missing_cli_dirs(self, dest: str) -> list[str]:
        missing = []
        parts = dest.split("/")[:-1]
        for depth in range(1, len(parts) + 1):
            rel = "/".join(parts[:depth])
            if not (self.project_root / rel).exists() and self.zones.is_cli_managed(rel):
                missing.append(rel)
        return missing

    # -- Cleanup --------------------------------------------------------------

    def cleanup(self, owned_paths: list[str]) -> CleanupOutcome:
        """Delete *owned_paths*: files first, then directories once empty.

        Paths outside the CLI-managed zone are never deleted.
        """
        outcome = CleanupOutcome()
        directories: list[str] = []
        for rel in sorted(set(owned_paths)):
            if not self.zones.is_cli_managed(rel):
                outcome.kept.append(rel)
                outcome.warnings.append(f"Kept {rel}: outside CLI-managed directories")
                continue
            path = self.project_root / rel
            if path.is_dir():
                directories.append(rel)
            elif path.exists():
                path.unlink()
                outcome.removed.append(rel)

        for rel in sorted(directories, key=lambda p: p.count("/"), reverse=True):
            path = self.project_root / rel
            if any(path.iterdir()):
                outcome.kept.append(rel)
                outcome.warnings.append(f"Kept {rel}: directory contains files not owned by this capability")
                continue
            path.rmdir()
            outcome.removed.append(rel)
        return outcome
