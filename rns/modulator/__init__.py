"""Capability install engine.

Plans, applies and removes capabilities against a scaffolded React Native
project: attaches file packs, installs npm dependencies, wires runtime
contributions into the composition file, patches native config and records
everything in the project manifest.

Usage::

    from rns.config import load_config
    from rns.modulator import Modulator, Operation, Workspace

    workspace = Workspace.build(load_config(project_root))
    modulator = Modulator(workspace)
    plan, result = await modulator.run("auth.firebase", Operation.INSTALL)
    print(result.state, result.executed)
"""

from rns.modulator.manifest import (
    InstalledCapabilityRecord,
    ManifestStore,
    ProjectInfo,
    ProjectManifest,
)
from rns.modulator.models import (
    INSTALL_PHASES,
    REMOVE_PHASES,
    ModulatorState,
    Operation,
    PhaseAction,
    PhaseResult,
    Plan,
    Result,
)
from rns.modulator.modulator import Modulator
from rns.modulator.workspace import Workspace

__all__ = [
    "Modulator",
    "Workspace",
    "Plan",
    "Result",
    "PhaseResult",
    "PhaseAction",
    "Operation",
    "ModulatorState",
    "INSTALL_PHASES",
    "REMOVE_PHASES",
    "ManifestStore",
    "ProjectManifest",
    "ProjectInfo",
    "InstalledCapabilityRecord",
]
