"""Dependency planning and installation.

Planning merges the runtime and dev package specs of a capability and its
transitive requirements into one list per group.  Duplicates are resolved by
package name: the first declaration wins and every later one is dropped and
reported, never silently overwritten.  A package declared as both runtime and
dev stays runtime.  Packages already provided by installed capabilities are
left out.

Installation runs the project's package manager in batches of at most
``max_batch_size`` specs, registry packages first and workspace-local
packages (``workspace:``, ``file:``, ``link:``) last so their symlinks resolve
against already-installed dependencies.  A failed or timed-out batch stops
the phase; batches that already succeeded are not rolled back.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from pathlib import Path

from pydantic import BaseModel, Field

from rns.capabilities.models import CapabilityDescriptor, DependencySpec
from rns.capabilities.registry import CapabilityRegistry
from rns.errors import DependencyInstallError, InvalidInputError
from rns.utils import run_command

LOCKFILES: dict[str, str] = {
    "package-lock.json": "npm",
    "pnpm-lock.yaml": "pnpm",
    "yarn.lock": "yarn",
}

PACKAGE_MANAGERS = ("npm", "pnpm", "yarn")

Runner = Callable[..., Awaitable[tuple[int, str, str]]]


class DroppedDependency(BaseModel):
    """A later declaration that lost to an earlier one with the same name."""

    name: str
    kept: str
    dropped: str
    group: str
    declared_by: str


class DependencyPlan(BaseModel):
    runtime: list[DependencySpec] = Field(default_factory=list)
    dev: list[DependencySpec] = Field(default_factory=list)
    dropped: list[DroppedDependency] = Field(default_factory=list)
    provided: list[str] = Field(default_factory=list, description="Names already installed")
    sources: list[str] = Field(default_factory=list, description="Capabilities merged, in order")

    @property
    def is_empty(self) -> bool:
        return not self.runtime and not self.dev


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def plan_dependencies(
    descriptor: CapabilityDescriptor,
    registry: CapabilityRegistry,
    installed_ids: list[str],
) -> DependencyPlan:
    """Merge the dependency specs for installing *descriptor*."""
    sources = [descriptor.id] + registry.requirement_closure(descriptor.id)
    plan = DependencyPlan(sources=sources)

    provided: set[str] = set()
    for installed in installed_ids:
        other = registry.find(installed)
        if other is None or installed == descriptor.id:
            continue
        provided.update(spec.name for spec in other.dependencies.runtime)
        provided.update(spec.name for spec in other.dependencies.dev)

    chosen: dict[str, tuple[str, DependencySpec]] = {}
    for group in ("runtime", "dev"):
        for source in sources:
            for spec in getattr(registry.get(source).dependencies, group):
                if spec.name in chosen:
                    kept_group, kept = chosen[spec.name]
                    if kept.version != spec.version or kept_group != group:
                        plan.dropped.append(
                            DroppedDependency(
                                name=spec.name,
                                kept=f"{kept_group}:{kept.to_spec()}",
                                dropped=f"{group}:{spec.to_spec()}",
                                group=group,
                                declared_by=source,
                            )
                        )
                    continue
                chosen[spec.name] = (group, spec)
                if spec.name in provided:
                    plan.provided.append(spec.name)
                    continue
                getattr(plan, group).append(spec)
    plan.provided.sort()
    return plan


# ---------------------------------------------------------------------------
# Package manager
# ---------------------------------------------------------------------------


def detect_package_manager(project_root: Path, declared: str | None = None) -> str:
    """Pick the package manager: explicit value first, then the lockfile.

    Raises:
        InvalidInputError: If *declared* is unknown or lockfiles disagree.
    """
    if declared:
        if declared not in PACKAGE_MANAGERS:
            raise InvalidInputError(
                f"Unknown package manager '{declared}' (expected one of {', '.join(PACKAGE_MANAGERS)})"
            )
        return declared
    found = sorted({pm for name, pm in LOCKFILES.items() if (project_root / name).is_file()})
    if len(found) > 1:
        raise InvalidInputError(
            f"Multiple lockfiles found ({', '.join(found)}); remove all but one or set the "
            "package manager explicitly"
        )
    return found[0] if found else "npm"


def install_command(package_manager: str, specs: list[str], dev: bool) -> list[str]:
    if package_manager == "npm":
        return ["npm", "install", *(["--save-dev"] if dev else []), *specs]
    if package_manager in ("pnpm", "yarn"):
        return [package_manager, "add", *(["-D"] if dev else []), *specs]
    raise InvalidInputError(f"Unknown package manager '{package_manager}'")


def _chunks(items: list[str], size: int) -> list[list[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class DependencyInstaller:
    """Runs batched package-manager commands for a ``DependencyPlan``."""

    def __init__(
        self,
        project_root: Path,
        package_manager: str,
        max_batch_size: int = 20,
        timeout: int = 300,
        runner: Runner = run_command,
    ) -> None:
        self.project_root = Path(project_root)
        self.package_manager = package_manager
        self.max_batch_size = max(1, max_batch_size)
        self.timeout = timeout
        self.runner = runner

    def commands(self, plan: DependencyPlan) -> list[list[str]]:
        """The exact commands ``install`` would run, in order."""
        batches: list[list[str]] = []
        for local in (False, True):
            for dev, specs in ((False, plan.runtime), (True, plan.dev)):
                selected = [s.to_spec() for s in specs if s.is_workspace_local == local]
                for chunk in _chunks(selected, self.max_batch_size):
                    batches.append(install_command(self.package_manager, chunk, dev))
        return batches

    async def install(self, plan: DependencyPlan) -> list[list[str]]:
        """Run every batch; return the commands that succeeded.

        Raises:
            DependencyInstallError: On the first failing or timed-out batch.
                ``installed_batches`` tells how many succeeded before it.
        """
        done: list[list[str]] = []
        for command in self.commands(plan):
            try:
                returncode, _stdout, stderr = await self.runner(
                    command, cwd=self.project_root, timeout=self.timeout
                )
            except OSError as exc:
                raise DependencyInstallError(
                    f"Cannot run '{command[0]}': {exc}",
                    command=" ".join(command),
                    stderr=str(exc),
                    installed_batches=len(done),
                ) from exc
            if returncode != 0:
                reason = "timed out" if returncode == -1 else f"exited with {returncode}"
                partial = (
                    f"; {len(done)} earlier batch(es) remain installed" if done else ""
                )
                raise DependencyInstallError(
                    f"'{' '.join(command)}' {reason}{partial}",
                    command=" ".join(command),
                    stderr=stderr,
                    installed_batches=len(done),
                )
            done.append(command)
        return done
