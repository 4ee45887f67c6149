"""Modulator: plan, apply and remove capabilities.

Install runs these phases in a fixed order, each one seeing the filesystem
state left by the previous::

    dependency-plan -> conflict-check (gate) -> attachment -> dependency-install
        -> runtime-wiring -> patch-ops -> verify -> manifest-update

Remove runs them in reverse dependency order::

    runtime-wiring -> patch-ops (restore) -> attachment (cleanup) -> manifest-update

The first failing phase stops the run and the manifest is left untouched, so
a failed install never marks a capability installed and a failed removal
never marks it removed.  What a failed install did attach and patch is kept
in a pending-install journal so a retry still records it as owned.  Engine
errors are reported inside the ``Result``; only manifest I/O errors propagate.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Iterator
from contextlib import ExitStack, contextmanager
from typing import Any

from rich.markup import escape
from rich.table import Table

from rns import __version__
from rns.errors import (
    AttachmentConflictError,
    DependencyInstallError,
    ExitCode,
    IncompatibleCapabilityError,
    ManifestIOError,
    MissingRequirementError,
    PatchError,
    ProjectNotInitializedError,
    RnsError,
    SlotConflictError,
)
from rns.modulator.attachment import AttachmentOutcome, AttachmentPlan, FileAction
from rns.modulator.conflicts import check_conflicts
from rns.modulator.dependencies import (
    DependencyInstaller,
    Runner,
    detect_package_manager,
    plan_dependencies,
)
from rns.modulator.journal import PendingInstall
from rns.modulator.manifest import InstalledCapabilityRecord, ProjectManifest
from rns.modulator.models import (
    ModulatorState,
    Operation,
    PermissionPlan,
    PhaseAction,
    PhaseResult,
    Plan,
    Result,
)
from rns.modulator.packs import normalize_options_key
from rns.modulator.patch_ops import PatchStatus, failed
from rns.modulator.wiring import entries_for
from rns.modulator.workspace import Workspace
from rns.utils import (
    console,
    format_duration,
    print_error,
    print_info,
    print_phase_header,
    print_success,
    print_warning,
    run_command,
    sha256_file,
)

Step = Callable[[], Awaitable[PhaseResult]]


def _executed(phase: str, message: str = "", **details: Any) -> PhaseResult:
    return PhaseResult(
        phase=phase, action=PhaseAction.EXECUTED, success=True, message=message, details=details
    )


def _skipped(phase: str, message: str) -> PhaseResult:
    return PhaseResult(phase=phase, action=PhaseAction.SKIPPED, success=True, message=message)


class Modulator:
    """Orchestrates plan/apply/remove against one project.

    Attributes:
        workspace: The composition root holding every engine component.
        runner: Coroutine used to run package-manager commands.
        report: Whether to print phase progress to the console.
    """

    def __init__(
        self,
        workspace: Workspace,
        runner: Runner = run_command,
        report: bool = True,
    ) -> None:
        self.workspace = workspace
        self.runner = runner
        self.report = report
        self._lock_depth = 0
        self._lock_stack: ExitStack | None = None

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        """Hold the project lock; re-entrant within this Modulator."""
        if self._lock_depth == 0:
            store = self.workspace.manifest
            if not store.exists():
                raise ProjectNotInitializedError(
                    f"No project manifest at {store.path}; is this an rns project?",
                    path=store.path,
                )
            stack = ExitStack()
            stack.enter_context(store.lock())
            self._lock_stack = stack
        self._lock_depth += 1
        try:
            yield
        finally:
            self._lock_depth -= 1
            if self._lock_depth == 0 and self._lock_stack is not None:
                self._lock_stack.close()
                self._lock_stack = None

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(
        self,
        capability_id: str,
        operation: Operation = Operation.INSTALL,
        options: dict[str, Any] | None = None,
    ) -> Plan:
        """Compute what *operation* would do, without side effects.

        The manifest is re-read from disk on every call.

        Raises:
            UnknownCapabilityError: If an install names an unknown id.
            IncompatibleCapabilityError: If the capability does not support
                the project's target, language or platforms.
            MissingRequirementError: If required capabilities are missing.
            ManifestIOError: If the manifest cannot be read.
        """
        manifest = self.workspace.manifest.read()
        if operation is Operation.REMOVE:
            return self._plan_remove(manifest, capability_id)
        return self._plan_install(manifest, capability_id, options or {})

    def _template_context(
        self, manifest: ProjectManifest, capability_id: str, options: dict[str, Any]
    ) -> dict[str, Any]:
        descriptor = self.workspace.registry.get(capability_id)
        return {
            "capability": {
                "id": descriptor.id,
                "name": descriptor.name,
                "version": descriptor.version,
                "slug": descriptor.directory_name,
            },
            "options": options,
            "project": manifest.project.model_dump(),
            "identity": manifest.identity,
        }

    def _installer(self, package_manager: str) -> DependencyInstaller:
        install = self.workspace.config.install
        return DependencyInstaller(
            self.workspace.config.project_root,
            package_manager,
            max_batch_size=install.max_batch_size,
            timeout=install.timeout,
            runner=self.runner,
        )

    def _plan_install(
        self, manifest: ProjectManifest, capability_id: str, options: dict[str, Any]
    ) -> Plan:
        ws = self.workspace
        descriptor = ws.registry.get(capability_id)
        project = manifest.project

        unsupported = descriptor.supports(project.target, project.language, project.platforms)
        if unsupported:
            raise IncompatibleCapabilityError(
                f"'{capability_id}' cannot be installed: {'; '.join(unsupported)}"
            )
        missing = [r for r in ws.registry.requirement_closure(capability_id) if not manifest.is_installed(r)]
        if missing:
            raise MissingRequirementError(capability_id, missing)

        warnings: list[str] = []
        installed = {}
        for installed_id in manifest.installed_ids():
            other = ws.registry.find(installed_id)
            if other is None:
                warnings.append(
                    f"Installed capability '{installed_id}' is not in the registry; "
                    "its slots are not checked"
                )
                continue
            installed[installed_id] = other
        conflicts = check_conflicts(descriptor, installed)
        pending = ws.journal.read(capability_id)
        if pending is not None:
            warnings.append(
                f"Resuming an interrupted install of '{capability_id}' "
                f"({len(pending.run_ids)} earlier attempt(s))"
            )

        dependencies = plan_dependencies(descriptor, ws.registry, manifest.installed_ids())
        for dropped in dependencies.dropped:
            warnings.append(
                f"Dependency {dropped.dropped} (from {dropped.declared_by}) dropped; "
                f"{dropped.kept} was declared first"
            )
        package_manager = ""
        commands: list[list[str]] = []
        if not dependencies.is_empty:
            package_manager = detect_package_manager(
                ws.config.project_root, ws.config.package_manager or project.package_manager
            )
            commands = self._installer(package_manager).commands(dependencies)

        options = dict(sorted(options.items()))
        options_key = normalize_options_key(options)
        pack = ws.packs.resolve(capability_id, project.target, project.language, options_key)
        record = manifest.plugins.get(capability_id)
        attachment = AttachmentPlan()
        if pack is not None:
            attachment = ws.attachment.simulate(
                pack,
                self._template_context(manifest, capability_id, options),
                record.owned_paths if record else (),
            )
            for conflict in attachment.conflicts:
                warnings.append(f"Attachment conflict: {conflict.reason}")

        wiring = entries_for(descriptor)
        wiring_new = []
        if wiring:
            try:
                wiring_new = ws.wiring.preview_install(wiring).added
            except RnsError as exc:
                warnings.append(f"runtime-wiring: {exc}")

        patch_preview = ws.patches.preview(list(descriptor.patches), project.target, project.platforms)
        for outcome in failed(patch_preview):
            warnings.append(f"patch-ops: {outcome.op_id}: {outcome.message}")

        return Plan(
            operation=Operation.INSTALL,
            capability_id=capability_id,
            version=descriptor.version,
            state=ModulatorState.VALIDATED if conflicts.ok else ModulatorState.REJECTED,
            allowed=conflicts.ok,
            reasons=[hit.describe() for hit in conflicts.hits],
            target=project.target,
            language=project.language,
            platforms=list(project.platforms),
            options=options,
            options_key=options_key,
            conflicts=conflicts,
            dependencies=dependencies,
            package_manager=package_manager,
            install_commands=commands,
            pack=pack,
            attachment=attachment,
            wiring=wiring,
            wiring_new=wiring_new,
            patches=list(descriptor.patches),
            patch_preview=patch_preview,
            permissions=PermissionPlan(
                mandatory=sorted({p.id for p in descriptor.permissions if p.mandatory}),
                optional=sorted({p.id for p in descriptor.permissions if not p.mandatory}),
            ),
            reinstall=record is not None,
            record=record,
            warnings=warnings,
        )

    def _plan_remove(self, manifest: ProjectManifest, capability_id: str) -> Plan:
        ws = self.workspace
        record = manifest.plugins.get(capability_id)
        if record is None:
            return Plan(
                operation=Operation.REMOVE,
                capability_id=capability_id,
                noop=True,
                warnings=[f"'{capability_id}' is not installed; nothing to remove"],
            )

        warnings: list[str] = []
        wiring = []
        try:
            wiring = ws.wiring.preview_remove(capability_id).removed
        except RnsError as exc:
            warnings.append(f"runtime-wiring: {exc}")

        dependents = ws.registry.dependents_of(capability_id, manifest.installed_ids())
        return Plan(
            operation=Operation.REMOVE,
            capability_id=capability_id,
            version=record.version,
            state=ModulatorState.REJECTED if dependents else ModulatorState.VALIDATED,
            allowed=not dependents,
            reasons=[f"required by installed capability '{d}'" for d in dependents],
            target=manifest.project.target,
            language=manifest.project.language,
            platforms=list(manifest.project.platforms),
            wiring=wiring,
            record=record,
            remove_paths=sorted(record.owned_paths),
            restore_files=sorted(record.modified_files),
            dependents=dependents,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def apply(self, plan: Plan, *, force: bool = False) -> Result:
        """Execute *plan* phase by phase.

        A plan that is not allowed is refused unless *force* is set; the
        refusal is a single gate phase with action ``error`` and nothing is
        touched.  Forcing proceeds with a warning and never displaces the
        current occupant of a slot.
        """
        result = Result(
            operation=plan.operation,
            capability_id=plan.capability_id,
            forced=force and not plan.allowed,
            warnings=list(plan.warnings),
        )
        with self._exclusive():
            if plan.noop:
                result.success = True
                result.state = ModulatorState.APPLIED
                if self.report:
                    print_info(f"'{plan.capability_id}' is not installed; nothing to do.")
                return result

            try:
                self._check_gate(plan, force)
            except SlotConflictError as exc:
                result.state = ModulatorState.REJECTED
                result.exit_code = int(exc.exit_code)
                result.errors.append(str(exc))
                result.phases.append(
                    PhaseResult(
                        phase="conflict-check",
                        action=PhaseAction.ERROR,
                        success=False,
                        message=exc.message,
                    )
                )
                if self.report:
                    print_error(f"Refusing to {plan.operation.value} '{plan.capability_id}': {exc.message}")
                return result

            run_id = self.workspace.backups.new_run_id(f"{plan.operation.value}-{plan.capability_id}")
            if plan.operation is Operation.INSTALL:
                steps = self._install_steps(plan, run_id, result, force)
            else:
                steps = self._remove_steps(plan, run_id, result)

            result.state = ModulatorState.APPLYING
            if await self._run_steps(steps, result):
                result.success = True
                result.state = ModulatorState.MANIFEST_UPDATED
            else:
                result.state = ModulatorState.PARTIALLY_FAILED
        if self.report:
            self.report_result(result)
        return result

    @staticmethod
    def _check_gate(plan: Plan, force: bool) -> None:
        """Raise ``SlotConflictError`` for a rejected plan unless *force* is set."""
        if plan.allowed or force:
            return
        message = "; ".join(plan.reasons) or "plan rejected"
        raise SlotConflictError(f"{message} (use --force to override)", phase="conflict-check")

    async def _run_steps(self, steps: list[tuple[str, Step]], result: Result) -> bool:
        total = len(steps)
        for index, (name, step) in enumerate(steps, 1):
            if self.report:
                print_phase_header(index, total, name)
            started = time.monotonic()
            try:
                phase = await step()
            except ManifestIOError:
                raise
            except RnsError as exc:
                if exc.phase is None:
                    exc.phase = name
                phase = PhaseResult(
                    phase=name, action=PhaseAction.ERROR, success=False, message=str(exc),
                    details={"path": exc.path} if exc.path else {},
                )
                result.errors.append(str(exc))
                result.exit_code = int(exc.exit_code)
            except OSError as exc:
                phase = PhaseResult(
                    phase=name, action=PhaseAction.ERROR, success=False, message=f"[{name}] {exc}",
                    details={"path": exc.filename} if exc.filename else {},
                )
                result.errors.append(f"[{name}] {exc}")
                result.exit_code = int(ExitCode.PHASE_FAILURE)
            phase.duration = time.monotonic() - started
            result.phases.append(phase)

            if self.report:
                elapsed = format_duration(phase.duration)
                if phase.action is PhaseAction.ERROR:
                    print_error(f"{name} failed after {elapsed}: {phase.message}")
                elif phase.action is PhaseAction.SKIPPED:
                    print_info(f"{name} skipped: {phase.message}")
                else:
                    print_success(f"{name} done in {elapsed}" + (f": {phase.message}" if phase.message else ""))
            if phase.action is PhaseAction.ERROR:
                return False
        return True

    # -- Install phases -------------------------------------------------------

    def _install_steps(
        self, plan: Plan, run_id: str, result: Result, force: bool
    ) -> list[tuple[str, Step]]:
        ws = self.workspace
        state: dict[str, Any] = {"attachment": AttachmentOutcome(), "patched": []}

        async def dependency_plan() -> PhaseResult:
            deps = plan.dependencies
            return _executed(
                "dependency-plan",
                f"{len(deps.runtime)} runtime, {len(deps.dev)} dev, {len(deps.dropped)} dropped",
                runtime=[s.to_spec() for s in deps.runtime],
                dev=[s.to_spec() for s in deps.dev],
                provided=deps.provided,
            )

        async def conflict_check() -> PhaseResult:
            if plan.allowed:
                return _executed("conflict-check", "no conflicts")
            message = "; ".join(plan.reasons)
            result.warnings.append(f"Forced past conflicts: {message}")
            if self.report:
                print_warning(f"Forced past conflicts: {message}")
            return _executed("conflict-check", f"forced: {message}", hits=len(plan.conflicts.hits))

        async def attachment() -> PhaseResult:
            ws.journal.record(plan.capability_id, run_id=run_id)
            if plan.pack is None:
                return _skipped("attachment", "capability has no pack")
            manifest = ws.manifest.read()
            context = self._template_context(manifest, plan.capability_id, plan.options)
            owned = plan.record.owned_paths if plan.record else []
            simulated = ws.attachment.simulate(plan.pack, context, owned)
            if simulated.conflicts:
                raise AttachmentConflictError([f.destination for f in simulated.conflicts])
            ws.journal.record(
                plan.capability_id,
                owned_paths=[f.destination for f in simulated.with_action(FileAction.CREATE)],
                modified_files=[f.destination for f in simulated.with_action(FileAction.UPDATE)],
            )
            outcome = ws.attachment.commit(plan.pack, context, simulated, run_id)
            state["attachment"] = outcome
            ws.journal.record(plan.capability_id, owned_paths=outcome.owned_paths)
            result.warnings.extend(outcome.warnings)
            return _executed(
                "attachment",
                f"{len(outcome.created)} created, {len(outcome.updated)} updated, "
                f"{len(outcome.skipped)} skipped",
                created=outcome.created,
                updated=outcome.updated,
                skipped=outcome.skipped,
            )

        async def dependency_install() -> PhaseResult:
            if plan.dependencies.is_empty:
                return _skipped("dependency-install", "no packages to install")
            try:
                done = await self._installer(plan.package_manager).install(plan.dependencies)
            except DependencyInstallError as exc:
                if exc.installed_batches:
                    result.warnings.append(
                        f"{exc.installed_batches} dependency batch(es) were installed before the "
                        "failure and were not rolled back"
                    )
                raise
            return _executed("dependency-install", f"{len(done)} batch(es)", commands=done)

        async def runtime_wiring() -> PhaseResult:
            if not plan.wiring:
                return _skipped("runtime-wiring", "no runtime contributions")
            outcome = ws.wiring.install(plan.wiring, run_id)
            return _executed(
                "runtime-wiring",
                f"{len(outcome.added)} added, {len(outcome.already_present)} already present",
                added=[e.export_name for e in outcome.added],
                already_present=[e.export_name for e in outcome.already_present],
            )

        async def patch_ops() -> PhaseResult:
            if not plan.patches:
                return _skipped("patch-ops", "no patch operations")
            outcomes = ws.patches.apply(plan.patches, plan.target, plan.platforms, run_id)
            state["patched"] = [o.file for o in outcomes if o.status is PatchStatus.APPLIED]
            ws.journal.record(plan.capability_id, modified_files=state["patched"])
            errors = failed(outcomes)
            if errors:
                first = errors[0]
                raise PatchError(first.op_id, first.message, path=first.file)
            counts = {status.value: 0 for status in PatchStatus if status is not PatchStatus.PENDING}
            for outcome in outcomes:
                counts[outcome.status.value] += 1
            return _executed(
                "patch-ops",
                ", ".join(f"{n} {s}" for s, n in counts.items() if n),
                outcomes=[o.model_dump(mode="json") for o in outcomes],
            )

        async def verify() -> PhaseResult:
            problems: list[str] = []
            outcome: AttachmentOutcome = state["attachment"]
            for rel in outcome.created:
                if not (ws.config.project_root / rel).is_file():
                    problems.append(f"attached file missing: {rel}")
            if plan.wiring:
                for entry in ws.wiring.missing(plan.wiring):
                    problems.append(f"symbol not wired: {entry.export_name} ({entry.kind.value})")
            for check in ws.patches.preview(plan.patches, plan.target, plan.platforms):
                if check.status not in (PatchStatus.SKIPPED_PRESENT, PatchStatus.SKIPPED_FILTERED):
                    problems.append(f"patch {check.op_id} not in place: {check.message or check.status.value}")
            if problems:
                raise RnsError(
                    "Verification failed: " + "; ".join(problems),
                    phase="verify",
                    exit_code=ExitCode.PHASE_FAILURE,
                )
            return _executed("verify", "install verified")

        async def manifest_update() -> PhaseResult:
            outcome: AttachmentOutcome = state["attachment"]
            pending = ws.journal.read(plan.capability_id) or PendingInstall(
                capability_id=plan.capability_id, run_ids=[run_id]
            )
            owned = sorted(set(outcome.owned_paths) | set(pending.owned_paths))
            modified = sorted(
                (set(state["patched"]) | set(outcome.updated) | set(pending.modified_files))
                - set(owned)
                - set(plan.record.owned_paths if plan.record else [])
            )
            root = ws.config.project_root
            descriptor = ws.registry.get(plan.capability_id)
            record = InstalledCapabilityRecord(
                id=plan.capability_id,
                version=plan.version,
                config=plan.options or None,
                owned_paths=owned,
                modified_files=modified,
                backup_runs=[run for run in pending.run_ids if ws.backups.run_dir(run).is_dir()],
                file_hashes={rel: sha256_file(root / rel) for rel in modified if (root / rel).is_file()},
                permissions=list(descriptor.permissions),
            )
            ws.manifest.add_capability(record, cli_version=__version__)
            ws.journal.clear(plan.capability_id)
            return _executed("manifest-update", f"'{plan.capability_id}' recorded as installed")

        return [
            ("dependency-plan", dependency_plan),
            ("conflict-check", conflict_check),
            ("attachment", attachment),
            ("dependency-install", dependency_install),
            ("runtime-wiring", runtime_wiring),
            ("patch-ops", patch_ops),
            ("verify", verify),
            ("manifest-update", manifest_update),
        ]

    # -- Remove phases --------------------------------------------------------

    def _remove_steps(self, plan: Plan, run_id: str, result: Result) -> list[tuple[str, Step]]:
        ws = self.workspace
        record = plan.record
        assert record is not None

        async def runtime_wiring() -> PhaseResult:
            outcome = ws.wiring.remove(plan.capability_id, run_id)
            result.warnings.extend(outcome.warnings)
            if not outcome.removed:
                return _skipped("runtime-wiring", "nothing wired")
            return _executed(
                "runtime-wiring",
                f"{len(outcome.removed)} entr{'y' if len(outcome.removed) == 1 else 'ies'} removed",
                removed=[e.export_name for e in outcome.removed],
            )

        async def patch_ops() -> PhaseResult:
            if not record.modified_files:
                return _skipped("patch-ops", "no modified files to restore")
            outcomes = ws.patches.revert(record.modified_files, record.backup_runs, record.file_hashes)
            for outcome in outcomes:
                if not outcome.restored:
                    result.warnings.append(f"{outcome.file}: {outcome.message}")
            restored = [o.file for o in outcomes if o.restored]
            return _executed(
                "patch-ops",
                f"{len(restored)} of {len(outcomes)} file(s) restored",
                restored=restored,
            )

        async def attachment() -> PhaseResult:
            if not record.owned_paths:
                return _skipped("attachment", "no owned paths")
            outcome = ws.attachment.cleanup(record.owned_paths)
            result.warnings.extend(outcome.warnings)
            return _executed(
                "attachment",
                f"{len(outcome.removed)} removed, {len(outcome.kept)} kept",
                removed=outcome.removed,
                kept=outcome.kept,
            )

        async def manifest_update() -> PhaseResult:
            ws.manifest.remove_capability(plan.capability_id, cli_version=__version__)
            return _executed("manifest-update", f"'{plan.capability_id}' recorded as removed")

        return [
            ("runtime-wiring", runtime_wiring),
            ("patch-ops", patch_ops),
            ("attachment", attachment),
            ("manifest-update", manifest_update),
        ]

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        capability_id: str,
        operation: Operation = Operation.INSTALL,
        *,
        options: dict[str, Any] | None = None,
        force: bool = False,
        dry_run: bool = False,
    ) -> tuple[Plan | None, Result]:
        """Plan and (unless *dry_run*) apply under one project lock.

        Validation and incompatibility errors raised while planning become a
        failed ``Result``; manifest I/O errors propagate.
        """
        with self._exclusive():
            try:
                plan = self.plan(capability_id, operation, options)
            except ManifestIOError:
                raise
            except RnsError as exc:
                if self.report:
                    print_error(str(exc))
                return None, Result(
                    operation=operation,
                    capability_id=capability_id,
                    state=ModulatorState.REJECTED,
                    errors=[str(exc)],
                    exit_code=int(exc.exit_code),
                )

            if self.report:
                self.report_plan(plan)
            if dry_run:
                preview = Result(
                    operation=operation,
                    capability_id=capability_id,
                    success=True,
                    state=plan.state,
                    dry_run=True,
                    warnings=list(plan.warnings),
                )
                try:
                    self._check_gate(plan, force)
                except SlotConflictError as exc:
                    preview.success = False
                    preview.errors.append(str(exc))
                    preview.exit_code = int(exc.exit_code)
                return plan, preview
            return plan, await self.apply(plan, force=force)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def report_plan(self, plan: Plan) -> None:
        table = Table(
            title=f"Plan: {plan.operation.value} {plan.capability_id}",
            show_header=True,
            header_style="bold cyan",
        )
        table.add_column("Item", style="dim", no_wrap=True)
        table.add_column("Value")
        if plan.noop:
            table.add_row("status", "not installed (no-op)")
        elif plan.operation is Operation.INSTALL:
            table.add_row("allowed", "yes" if plan.allowed else "[red]no[/red]")
            for reason in plan.reasons:
                table.add_row("conflict", escape(reason))
            table.add_row("runtime deps", ", ".join(s.to_spec() for s in plan.dependencies.runtime) or "-")
            table.add_row("dev deps", ", ".join(s.to_spec() for s in plan.dependencies.dev) or "-")
            table.add_row("pack", plan.pack.matched if plan.pack else "-")
            table.add_row("files", str(len(plan.attachment.files)))
            table.add_row("wiring", ", ".join(e.export_name for e in plan.wiring) or "-")
            table.add_row(
                "patches",
                ", ".join(f"{o.op_id} ({o.status.value})" for o in plan.patch_preview) or "-",
            )
            if plan.permissions.mandatory or plan.permissions.optional:
                table.add_row(
                    "permissions",
                    ", ".join(plan.permissions.mandatory + [f"{p} (optional)" for p in plan.permissions.optional]),
                )
        else:
            table.add_row("allowed", "yes" if plan.allowed else "[red]no[/red]")
            for reason in plan.reasons:
                table.add_row("blocked", escape(reason))
            table.add_row("unwire", ", ".join(e.export_name for e in plan.wiring) or "-")
            table.add_row("restore", ", ".join(plan.restore_files) or "-")
            table.add_row("delete", ", ".join(plan.remove_paths) or "-")
        console.print(table)
        for warning in plan.warnings:
            print_warning(warning)

    def report_result(self, result: Result) -> None:
        table = Table(
            title=f"{result.operation.value} {result.capability_id}",
            show_header=True,
            header_style="bold cyan",
        )
        table.add_column("Phase", no_wrap=True)
        table.add_column("Action")
        table.add_column("Detail")
        for phase in result.phases:
            style = {"executed": "green", "skipped": "dim", "error": "red"}[phase.action.value]
            table.add_row(phase.phase, f"[{style}]{phase.action.value}[/{style}]", escape(phase.message))
        console.print(table)
        for warning in result.warnings:
            print_warning(warning)
        if result.success:
            print_success(f"{result.operation.value} {result.capability_id}: {result.state.value}")
        else:
            print_error(f"{result.operation.value} {result.capability_id}: {result.state.value}")
