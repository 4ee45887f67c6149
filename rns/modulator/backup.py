"""Backup store for files the engine modifies.

Before a pre-existing file is rewritten, its bytes are copied to::

    <state_dir>/backups/<run id>/<project-relative path>

Run ids start with a UTC timestamp so lexical order is chronological.  Within
a run the first copy wins: a file patched twice in one run keeps its pre-run
bytes.
"""

from __future__ import annotations

import shutil
from datetime import datetime, timezone
from pathlib import Path

from rns.utils import atomic_write_bytes, ensure_dir, sanitize_name


class BackupStore:
    """Pre-write copies of modified files, namespaced by run id."""

    def __init__(self, project_root: Path, backups_dir: Path) -> None:
        self.project_root = Path(project_root)
        self.backups_dir = Path(backups_dir)

    @staticmethod
    def new_run_id(label: str) -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        return f"{stamp}-{sanitize_name(label) or 'run'}"

    def run_dir(self, run_id: str) -> Path:
        return self.backups_dir / run_id

    def backup(self, run_id: str, rel_path: str) -> Path | None:
        """Copy ``<project>/<rel_path>`` into the run's backup tree.

        Returns the backup path, or ``None`` if the source does not exist.
        """
        source = self.project_root / rel_path
        if not source.is_file():
            return None
        destination = self.run_dir(run_id) / rel_path
        if destination.exists():
            return destination
        ensure_dir(destination.parent)
        shutil.copy2(source, destination)
        return destination

    def list_runs(self) -> list[str]:
        """Run ids on disk, newest first."""
        if not self.backups_dir.is_dir():
            return []
        return sorted((p.name for p in self.backups_dir.iterdir() if p.is_dir()), reverse=True)

    def find(self, rel_path: str, run_id: str | None = None) -> Path | None:
        """Locate a backup of *rel_path*.

        With *run_id* only that run is consulted; otherwise the most recent
        run holding a copy wins.
        """
        runs = [run_id] if run_id else self.list_runs()
        for run in runs:
            candidate = self.run_dir(run) / rel_path
            if candidate.is_file():
                return candidate
        return None

    def restore(self, backup_path: Path, rel_path: str) -> Path:
        target = self.project_root / rel_path
        atomic_write_bytes(target, Path(backup_path).read_bytes())
        return target
