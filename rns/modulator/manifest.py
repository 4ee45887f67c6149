"""Project manifest store.

The manifest (``.rns/rn-init.json``) is the only durable mutable state of the
install engine: which capabilities are installed, what they created and
modified, and the aggregated permission summary.

* ``add_capability`` and ``remove_capability`` are the only writers.  Each
  re-reads the file, applies its change, validates the result against the
  schema and replaces the file atomically.
* Unknown fields, at any level, survive a rewrite so older CLIs do not strip
  data written by newer ones.
* ``lock()`` is the mutual-exclusion point between invocations: an
  ``O_EXCL`` lock file that fails fast when another run holds it.
"""

from __future__ import annotations

import json
import os
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from rns.capabilities.models import PermissionRequirement
from rns.errors import ManifestIOError, ManifestLockedError, ProjectNotInitializedError
from rns.utils import atomic_write_text, dump_json, ensure_dir

SCHEMA_VERSION = 1


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class _ManifestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class CliInfo(_ManifestModel):
    version: str
    created_at: str = Field(default_factory=utc_now)
    last_modified: str = Field(default_factory=utc_now)


class ProjectInfo(_ManifestModel):
    target: str = Field(default="expo", description="expo or bare")
    language: str = Field(default="ts")
    package_manager: Optional[str] = Field(default=None)
    platforms: list[str] = Field(default=["ios", "android"])


class InstalledCapabilityRecord(_ManifestModel):
    """What one installed capability owns and touched."""

    id: str
    version: str
    installed_at: str = Field(default_factory=utc_now)
    config: Optional[dict[str, Any]] = None
    owned_paths: list[str] = Field(default_factory=list)
    modified_files: list[str] = Field(default_factory=list)
    backup_runs: list[str] = Field(default_factory=list, description="Oldest first")
    file_hashes: dict[str, str] = Field(
        default_factory=dict, description="sha256 of each modified file right after install"
    )
    permissions: list[PermissionRequirement] = Field(default_factory=list)


class PermissionsSummary(_ManifestModel):
    permission_ids: list[str] = Field(default_factory=list)
    mandatory: list[str] = Field(default_factory=list)
    optional: list[str] = Field(default_factory=list)
    by_plugin: dict[str, list[str]] = Field(default_factory=dict)


class ProjectManifest(_ManifestModel):
    schema_version: int = SCHEMA_VERSION
    cli: CliInfo
    identity: dict[str, Any] = Field(default_factory=dict)
    project: ProjectInfo = Field(default_factory=ProjectInfo)
    plugins: dict[str, InstalledCapabilityRecord] = Field(default_factory=dict)
    permissions: Optional[PermissionsSummary] = None

    def installed_ids(self) -> list[str]:
        return sorted(self.plugins)

    def is_installed(self, capability_id: str) -> bool:
        return capability_id in self.plugins


def summarize_permissions(plugins: dict[str, InstalledCapabilityRecord]) -> PermissionsSummary:
    """Aggregate permissions: mandatory if any capability requires it."""
    mandatory: set[str] = set()
    every: set[str] = set()
    by_plugin: dict[str, list[str]] = {}
    for capability_id in sorted(plugins):
        record = plugins[capability_id]
        ids = sorted({p.id for p in record.permissions})
        if ids:
            by_plugin[capability_id] = ids
        for requirement in record.permissions:
            every.add(requirement.id)
            if requirement.mandatory:
                mandatory.add(requirement.id)
    return PermissionsSummary(
        permission_ids=sorted(every),
        mandatory=sorted(mandatory),
        optional=sorted(every - mandatory),
        by_plugin=by_plugin,
    )


def merge_records(
    existing: InstalledCapabilityRecord, incoming: InstalledCapabilityRecord
) -> InstalledCapabilityRecord:
    """Fold a re-apply of an installed capability into its record.

    The original install time and backup runs are kept so removal still
    restores pre-install bytes.
    """
    runs = list(existing.backup_runs)
    runs.extend(run for run in incoming.backup_runs if run not in runs)
    hashes = {**existing.file_hashes, **incoming.file_hashes}
    owned = sorted(set(existing.owned_paths) | set(incoming.owned_paths))
    modified = sorted((set(existing.modified_files) | set(incoming.modified_files)) - set(owned))
    return incoming.model_copy(
        update={
            "installed_at": existing.installed_at,
            "owned_paths": owned,
            "modified_files": modified,
            "backup_runs": runs,
            "file_hashes": {k: v for k, v in hashes.items() if k in modified},
        }
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class ManifestStore:
    """Reads and writes the manifest file; the single writer of project state."""

    def __init__(self, path: Path, lock_path: Path) -> None:
        self.path = Path(path)
        self.lock_path = Path(lock_path)

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> ProjectManifest:
        """Return a fresh copy parsed from disk.

        Raises:
            ProjectNotInitializedError: If there is no manifest.
            ManifestIOError: If it cannot be read or fails validation.
        """
        if not self.path.is_file():
            raise ProjectNotInitializedError(
                f"No project manifest at {self.path}; is this an rns project?", path=self.path
            )
        try:
            raw = self.path.read_text(encoding="utf-8")
            return ProjectManifest.model_validate(json.loads(raw))
        except OSError as exc:
            raise ManifestIOError(f"Cannot read manifest: {exc}", path=self.path) from exc
        except json.JSONDecodeError as exc:
            raise ManifestIOError(
                f"Manifest is not valid JSON: {exc.msg} (line {exc.lineno})", path=self.path
            ) from exc
        except ValidationError as exc:
            raise ManifestIOError(f"Manifest failed validation: {exc}", path=self.path) from exc

    def write(self, manifest: ProjectManifest) -> Path:
        """Validate *manifest* and atomically replace the file with it."""
        data = manifest.model_dump(mode="json", by_alias=True, exclude_none=True)
        try:
            ProjectManifest.model_validate(data)
        except ValidationError as exc:
            raise ManifestIOError(f"Refusing to write invalid manifest: {exc}", path=self.path) from exc
        try:
            return atomic_write_text(self.path, dump_json(data))
        except OSError as exc:
            raise ManifestIOError(f"Cannot write manifest: {exc}", path=self.path) from exc

    def create(
        self,
        cli_version: str,
        project: ProjectInfo | None = None,
        identity: dict[str, Any] | None = None,
    ) -> ProjectManifest:
        """Write the initial manifest of a freshly scaffolded project."""
        if self.exists():
            raise ManifestIOError(f"Manifest already exists at {self.path}", path=self.path)
        manifest = ProjectManifest(
            cli=CliInfo(version=cli_version),
            identity=identity or {},
            project=project or ProjectInfo(),
            permissions=PermissionsSummary(),
        )
        self.write(manifest)
        return manifest

    # -- Mutations ------------------------------------------------------------

    def _touch(self, manifest: ProjectManifest, cli_version: str | None) -> None:
        manifest.cli.last_modified = utc_now()
        if cli_version:
            manifest.cli.version = cli_version
        manifest.permissions = summarize_permissions(manifest.plugins)

    def add_capability(
        self, record: InstalledCapabilityRecord, cli_version: str | None = None
    ) -> ProjectManifest:
        manifest = self.read()
        existing = manifest.plugins.get(record.id)
        manifest.plugins[record.id] = merge_records(existing, record) if existing else record
        manifest.plugins = dict(sorted(manifest.plugins.items()))
        self._touch(manifest, cli_version)
        self.write(manifest)
        return manifest

    def remove_capability(
        self, capability_id: str, cli_version: str | None = None
    ) -> ProjectManifest:
        manifest = self.read()
        manifest.plugins.pop(capability_id, None)
        self._touch(manifest, cli_version)
        self.write(manifest)
        return manifest

    # -- Locking --------------------------------------------------------------

    @contextmanager
    def lock(self) -> Iterator[Path]:
        """Hold the project lock for the duration of the ``with`` block.

        Raises:
            ManifestLockedError: Immediately, if another invocation holds it.
        """
        ensure_dir(self.lock_path.parent)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            try:
                holder = self.lock_path.read_text(encoding="utf-8").strip()
            except OSError:
                holder = ""
            raise ManifestLockedError(self.lock_path, holder) from None
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(str(os.getpid()))
            yield self.lock_path
        finally:
            self.lock_path.unlink(missing_ok=True)
