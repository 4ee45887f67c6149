"""Composition root for one rns invocation.

``Workspace.build`` wires every engine component from a resolved ``Config``
exactly once; the ``Modulator`` and the CLI receive the workspace explicitly
instead of reaching for module-level state.
"""

from __future__ import annotations

from dataclasses import dataclass

from rns.capabilities.registry import CapabilityRegistry
from rns.config import Config
from rns.modulator.attachment import AttachmentEngine
from rns.modulator.backup import BackupStore
from rns.modulator.journal import InstallJournal
from rns.modulator.manifest import ManifestStore
from rns.modulator.packs import PackResolver
from rns.modulator.patch_ops import PatchEngine
from rns.modulator.wiring import RuntimeWiringInjector


@dataclass
class Workspace:
    config: Config
    registry: CapabilityRegistry
    manifest: ManifestStore
    journal: InstallJournal
    backups: BackupStore
    packs: PackResolver
    attachment: AttachmentEngine
    patches: PatchEngine
    wiring: RuntimeWiringInjector

    @classmethod
    def build(cls, config: Config, registry: CapabilityRegistry | None = None) -> "Workspace":
        """Create every component from *config*.

        The capability registry is loaded (and fully validated) here unless
        one is passed in.
        """
        if registry is None:
            registry = CapabilityRegistry.load(config.plugins_path)
        root = config.project_root
        backups = BackupStore(root, config.backups_path)
        return cls(
            config=config,
            registry=registry,
            manifest=ManifestStore(config.manifest_path, config.lock_path),
            journal=InstallJournal(config.pending_path),
            backups=backups,
            packs=PackResolver(registry),
            attachment=AttachmentEngine(root, config.zones, backups),
            patches=PatchEngine(root, config.zones, backups, config.composition.file),
            wiring=RuntimeWiringInjector(root, config.composition, backups),
        )
