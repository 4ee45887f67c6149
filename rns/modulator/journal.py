"""Pending-install journal.

An install that fails part way leaves files attached and host files patched
without a manifest record.  A retry sees that work as ``unchanged`` or
``skipped-already-present`` and would not know it owns it, so each install
keeps a journal at ``<state_dir>/pending/<capability>.json``::

    {"capabilityId": "auth.firebase",
     "runIds": ["20260101T000000000000Z-install-auth-firebase", ...],
     "ownedPaths": [...], "modifiedFiles": [...]}

Every mutating phase appends to it before moving on.  ``manifest-update``
folds the journal into the installed record and deletes it.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from rns.errors import ManifestIOError
from rns.utils import atomic_write_text, dump_json, ensure_dir, load_json, sanitize_name


class PendingInstall(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    capability_id: str
    run_ids: list[str] = Field(default_factory=list, description="Oldest first")
    owned_paths: list[str] = Field(default_factory=list)
    modified_files: list[str] = Field(default_factory=list)


class InstallJournal:
    """One journal file per capability with an unfinished install."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def path_for(self, capability_id: str) -> Path:
        return self.directory / f"{sanitize_name(capability_id)}.json"

    def read(self, capability_id: str) -> PendingInstall | None:
        """Return the journal for *capability_id*, or ``None`` if there is none.

        Raises:
            ManifestIOError: If the journal exists but cannot be parsed.
        """
        path = self.path_for(capability_id)
        if not path.is_file():
            return None
        try:
            return PendingInstall.model_validate(load_json(path))
        except OSError as exc:
            raise ManifestIOError(f"Cannot read install journal: {exc}", path=path) from exc
        except (ValueError, ValidationError) as exc:
            raise ManifestIOError(f"Install journal is corrupt: {exc}", path=path) from exc

    def record(
        self,
        capability_id: str,
        run_id: str | None = None,
        owned_paths: list[str] | tuple[str, ...] = (),
        modified_files: list[str] | tuple[str, ...] = (),
    ) -> PendingInstall:
        """Append to the journal, creating it on first use."""
        pending = self.read(capability_id) or PendingInstall(capability_id=capability_id)
        if run_id and run_id not in pending.run_ids:
            pending.run_ids.append(run_id)
        pending.owned_paths = sorted(set(pending.owned_paths) | set(owned_paths))
        pending.modified_files = sorted(set(pending.modified_files) | set(modified_files))
        path = self.path_for(capability_id)
        try:
            ensure_dir(self.directory)
            atomic_write_text(path, dump_json(pending.model_dump(mode="json", by_alias=True)))
        except OSError as exc:
            raise ManifestIOError(f"Cannot write install journal: {exc}", path=path) from exc
        return pending

    def clear(self, capability_id: str) -> None:
        self.path_for(capability_id).unlink(missing_ok=True)

