"""Pydantic v2 models for plans, phase results and run results.

``Plan`` is pure data computed by ``Modulator.plan``; identical inputs
(manifest state, capability id, operation, options) yield equal plans.
``Result`` is what ``Modulator.apply`` returns: one ``PhaseResult`` per phase
that ran, plus aggregated warnings and errors.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from rns.capabilities.models import PatchOp
from rns.errors import ExitCode
from rns.modulator.attachment import AttachmentPlan
from rns.modulator.conflicts import ConflictCheckResult
from rns.modulator.dependencies import DependencyPlan
from rns.modulator.manifest import InstalledCapabilityRecord
from rns.modulator.packs import ResolvedPack
from rns.modulator.patch_ops import PatchOutcome
from rns.modulator.wiring import WiringEntry


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Operation(str, Enum):
    INSTALL = "install"
    REMOVE = "remove"


class ModulatorState(str, Enum):
    """Where a plan/apply cycle ended up."""
    PLANNING = "planning"
    VALIDATED = "validated"
    REJECTED = "rejected"
    APPLYING = "applying"
    APPLIED = "applied"
    PARTIALLY_FAILED = "partially-failed"
    MANIFEST_UPDATED = "manifest-updated"


class PhaseAction(str, Enum):
    EXECUTED = "executed"
    SKIPPED = "skipped"
    ERROR = "error"


INSTALL_PHASES: tuple[str, ...] = (
    "dependency-plan",
    "conflict-check",
    "attachment",
    "dependency-install",
    "runtime-wiring",
    "patch-ops",
    "verify",
    "manifest-update",
)

REMOVE_PHASES: tuple[str, ...] = (
    "runtime-wiring",
    "patch-ops",
    "attachment",
    "manifest-update",
)


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------

class PermissionPlan(BaseModel):
    mandatory: list[str] = Field(default_factory=list)
    optional: list[str] = Field(default_factory=list)


class Plan(BaseModel):
    """Everything an apply would do, computed without side effects."""

    operation: Operation
    capability_id: str
    version: str = ""
    state: ModulatorState = ModulatorState.VALIDATED
    allowed: bool = True
    noop: bool = False
    reasons: list[str] = Field(default_factory=list, description="Why the plan is not allowed")
    target: str = ""
    language: str = ""
    platforms: list[str] = Field(default_factory=list)
    options: dict[str, Any] = Field(default_factory=dict)
    options_key: Optional[str] = None

    # install
    conflicts: ConflictCheckResult = Field(default_factory=ConflictCheckResult)
    dependencies: DependencyPlan = Field(default_factory=DependencyPlan)
    package_manager: str = ""
    install_commands: list[list[str]] = Field(default_factory=list)
    pack: Optional[ResolvedPack] = None
    attachment: AttachmentPlan = Field(default_factory=AttachmentPlan)
    wiring: list[WiringEntry] = Field(default_factory=list)
    wiring_new: list[WiringEntry] = Field(default_factory=list)
    patches: list[PatchOp] = Field(default_factory=list)
    patch_preview: list[PatchOutcome] = Field(default_factory=list)
    permissions: PermissionPlan = Field(default_factory=PermissionPlan)
    reinstall: bool = False

    # remove
    record: Optional[InstalledCapabilityRecord] = None
    remove_paths: list[str] = Field(default_factory=list)
    restore_files: list[str] = Field(default_factory=list)
    dependents: list[str] = Field(default_factory=list)

    warnings: list[str] = Field(default_factory=list)

    @property
    def phases(self) -> tuple[str, ...]:
        if self.noop:
            return ()
        return INSTALL_PHASES if self.operation is Operation.INSTALL else REMOVE_PHASES


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class PhaseResult(BaseModel):
    phase: str
    action: PhaseAction
    success: bool
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    duration: float = 0.0


class Result(BaseModel):
    operation: Operation
    capability_id: str
    success: bool = False
    state: ModulatorState = ModulatorState.PLANNING
    dry_run: bool = False
    forced: bool = False
    phases: list[PhaseResult] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    exit_code: int = int(ExitCode.OK)

    def phase(self, name: str) -> PhaseResult | None:
        for result in self.phases:
            if result.phase == name:
                return result
        return None

    @property
    def executed(self) -> list[str]:
        return [p.phase for p in self.phases if p.action is PhaseAction.EXECUTED]
