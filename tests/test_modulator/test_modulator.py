"""Unit tests for the Modulator (rns.modulator.modulator).

Tests cover:
- plan(): install and remove plans, determinism, no side effects
- Plan-time rejections: unknown, incompatible, missing requirement
- apply(): phase order, manifest record, backups, permissions
- Conflict gate with and without force
- Failure handling per phase (dependency install, patch, wiring)
- Remove: restore, cleanup, dependents, no-op
- Locking and uninitialised projects
- Dry runs
"""

from __future__ import annotations

import pytest

from rns.errors import ExitCode, ManifestLockedError, ProjectNotInitializedError
from rns.modulator import INSTALL_PHASES, REMOVE_PHASES, ModulatorState, Operation, PhaseAction
from rns.modulator.attachment import FileAction
from rns.modulator.modulator import Modulator
from rns.modulator.patch_ops import PatchStatus

from conftest import COMPOSITION_SOURCE, FakeRunner, snapshot

DEST = "packages/@rns/auth-firebase"
MODIFIED = [
    ".gitignore",
    "android/app/src/main/AndroidManifest.xml",
    "app.json",
    "ios/DemoApp/Info.plist",
]


async def _install(modulator, capability_id, **kwargs):
    _plan, result = await modulator.run(capability_id, **kwargs)
    assert result.success, result.errors
    return result


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

class TestPlanInstall:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_auth_plan(self, modulator):
        await _install(modulator, "state.zustand")
        plan = modulator.plan("auth.firebase")

        assert plan.allowed and plan.state is ModulatorState.VALIDATED
        assert plan.dependencies.provided == ["zustand"]
        assert plan.package_manager == "npm"
        assert plan.install_commands == [
            ["npm", "install", "@react-native-firebase/app@^20.0.0", "@react-native-firebase/auth@^20.0.0"],
            ["npm", "install", "--save-dev", "@types/react-native-firebase@^1.0.0"],
            ["npm", "install", "@rns/plugin-auth-firebase@workspace:*"],
        ]
        assert plan.pack.matched == "variants/expo/ts"
        assert [f.action for f in plan.attachment.files] == [FileAction.CREATE] * 4
        assert [e.export_name for e in plan.wiring_new] == ["initAuth", "AuthProvider"]
        assert [o.status for o in plan.patch_preview][-1] is PatchStatus.SKIPPED_FILTERED
        assert plan.permissions.mandatory == ["internet"]
        assert plan.permissions.optional == ["biometrics"]
        assert not plan.reinstall
        assert plan.phases == INSTALL_PHASES
        assert any("zustand@^4.5.0" in w for w in plan.warnings)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_plan_is_deterministic_and_side_effect_free(self, modulator, project_dir):
        await _install(modulator, "state.zustand")
        before = snapshot(project_dir, exclude=())
        first = modulator.plan("auth.firebase", options={"provider": "google"})
        second = modulator.plan("auth.firebase", options={"provider": "google"})
        assert first == second
        assert first.options_key == "provider:google"
        assert first.pack.matched == "variants/expo/ts/provider:google"
        assert snapshot(project_dir, exclude=()) == before

    @pytest.mark.unit
    def test_capability_without_pack(self, modulator):
        plan = modulator.plan("nav.react-navigation")
        assert plan.package_manager == "npm"
        assert plan.install_commands == [["npm", "install", "@react-navigation/native@^6.1.0"]]
        assert plan.pack is None

    @pytest.mark.unit
    def test_configured_package_manager(self, workspace, fake_runner):
        workspace.config.package_manager = "pnpm"
        plan = Modulator(workspace, runner=fake_runner, report=False).plan("state.zustand")
        assert plan.install_commands == [["pnpm", "add", "zustand@^4.5.0"]]


class TestPlanRejections:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_capability(self, modulator):
        plan, result = await modulator.run("auth.nope")
        assert plan is None
        assert result.state is ModulatorState.REJECTED
        assert result.exit_code == ExitCode.UNKNOWN_CAPABILITY

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_requirement(self, modulator, project_dir):
        before = snapshot(project_dir)
        _plan, result = await modulator.run("auth.firebase")
        assert result.exit_code == ExitCode.MISSING_REQUIREMENT
        assert "state.zustand" in result.errors[0]
        assert snapshot(project_dir) == before

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_incompatible_language(self, modulator, workspace):
        manifest = workspace.manifest.read()
        manifest.project.language = "js"
        workspace.manifest.write(manifest)
        _plan, result = await modulator.run("auth.firebase")
        assert result.exit_code == ExitCode.INCOMPATIBLE
        assert "language 'js' not supported" in result.errors[0]


# ---------------------------------------------------------------------------
# Install
# ---------------------------------------------------------------------------

class TestInstall:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_phases_and_commands(self, modulator, fake_runner, project_dir):
        result = await _install(modulator, "state.zustand")
        assert [p.phase for p in result.phases] == list(INSTALL_PHASES)
        assert result.phase("attachment").action is PhaseAction.SKIPPED
        assert result.phase("runtime-wiring").action is PhaseAction.SKIPPED
        assert result.state is ModulatorState.MANIFEST_UPDATED
        assert fake_runner.commands == [["npm", "install", "zustand@^4.5.0"]]
        assert fake_runner.calls[0]["cwd"] == project_dir

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_auth_record(self, modulator, workspace, project_dir):
        await _install(modulator, "state.zustand")
        result = await _install(modulator, "auth.firebase")
        assert result.executed == list(INSTALL_PHASES)

        manifest = workspace.manifest.read()
        record = manifest.plugins["auth.firebase"]
        assert record.version == "1.2.0"
        assert record.config is None
        assert record.owned_paths == [
            DEST,
            f"{DEST}/README.md",
            f"{DEST}/auth.ts",
            f"{DEST}/config.ts",
            f"{DEST}/index.ts",
        ]
        assert record.modified_files == MODIFIED
        assert sorted(record.file_hashes) == MODIFIED
        assert len(record.backup_runs) == 1
        assert workspace.backups.find("app.json", record.backup_runs[0]) is not None
        assert manifest.permissions.mandatory == ["internet"]
        assert manifest.permissions.optional == ["biometrics"]
        assert "AuthProvider" in (project_dir / "packages/@rns/runtime/composition.ts").read_text()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_user_file_untouched(self, modulator, project_dir):
        original = (project_dir / "src" / "App.tsx").read_bytes()
        await _install(modulator, "state.zustand")
        await _install(modulator, "auth.firebase")
        assert (project_dir / "src" / "App.tsx").read_bytes() == original

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reapply_is_idempotent(self, modulator, workspace, project_dir):
        await _install(modulator, "state.zustand")
        await _install(modulator, "auth.firebase")
        first_record = workspace.manifest.read().plugins["auth.firebase"]
        before = snapshot(project_dir)

        plan = modulator.plan("auth.firebase")
        assert plan.reinstall
        assert plan.wiring_new == []
        assert {f.action for f in plan.attachment.files} == {FileAction.UNCHANGED}

        await _install(modulator, "auth.firebase")
        assert snapshot(project_dir) == before
        record = workspace.manifest.read().plugins["auth.firebase"]
        assert record.owned_paths == first_record.owned_paths
        assert record.modified_files == first_record.modified_files
        assert record.backup_runs == first_record.backup_runs
        assert record.installed_at == first_record.installed_at

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_options_recorded(self, modulator, workspace, project_dir):
        await _install(modulator, "state.zustand")
        await _install(modulator, "auth.firebase", options={"provider": "google"})
        record = workspace.manifest.read().plugins["auth.firebase"]
        assert record.config == {"provider": "google"}
        assert (project_dir / DEST / "index.ts").read_text() == "export const provider = 'google';\n"
        assert not (project_dir / DEST / "auth.ts").exists()


# ---------------------------------------------------------------------------
# Conflict gate
# ---------------------------------------------------------------------------

class TestConflictGate:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejected_without_force(self, modulator, workspace, fake_runner, project_dir):
        await _install(modulator, "nav.react-navigation")
        before = snapshot(project_dir, exclude=())
        calls = len(fake_runner.calls)

        plan, result = await modulator.run("nav.expo-router")
        assert not plan.allowed
        assert plan.state is ModulatorState.REJECTED
        assert "nav.react-navigation" in plan.reasons[0]
        assert result.exit_code == ExitCode.CONFLICT
        assert result.state is ModulatorState.REJECTED
        [gate] = result.phases
        assert gate.phase == "conflict-check" and gate.action is PhaseAction.ERROR
        assert "--force" in gate.message
        assert result.errors == [f"[conflict-check] {gate.message}"]
        assert snapshot(project_dir, exclude=()) == before
        assert len(fake_runner.calls) == calls

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_force_keeps_current_occupant(self, modulator, workspace, project_dir):
        await _install(modulator, "nav.react-navigation")
        result = await _install(modulator, "nav.expo-router", force=True)
        assert result.forced
        assert any(w.startswith("Forced past conflicts") for w in result.warnings)
        assert workspace.manifest.read().installed_ids() == ["nav.expo-router", "nav.react-navigation"]
        source = (project_dir / "packages/@rns/runtime/composition.ts").read_text()
        assert "symbol: NavigationRoot" in source and "symbol: ExpoRouterRoot" in source


# ---------------------------------------------------------------------------
# Phase failures
# ---------------------------------------------------------------------------

class TestFailures:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dependency_install_failure(self, workspace):
        runner = FakeRunner([(1, "", "npm ERR! 404")])
        modulator = Modulator(workspace, runner=runner, report=False)
        _plan, result = await modulator.run("state.zustand")
        assert not result.success
        assert result.state is ModulatorState.PARTIALLY_FAILED
        assert result.exit_code == ExitCode.DEPENDENCY_INSTALL
        assert [p.phase for p in result.phases] == [
            "dependency-plan", "conflict-check", "attachment", "dependency-install",
        ]
        assert result.phases[-1].action is PhaseAction.ERROR
        assert not workspace.manifest.read().is_installed("state.zustand")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_batches_warned(self, workspace):
        await _install(Modulator(workspace, runner=FakeRunner(), report=False), "state.zustand")
        runner = FakeRunner([(0, "", ""), (1, "", "boom")])
        _plan, result = await Modulator(workspace, runner=runner, report=False).run("auth.firebase")
        assert result.exit_code == ExitCode.DEPENDENCY_INSTALL
        assert any("not rolled back" in w for w in result.warnings)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_patch_failure_leaves_manifest_alone(self, modulator, workspace, project_dir):
        await _install(modulator, "state.zustand")
        (project_dir / ".gitignore").write_text("node_modules/\n")
        plan, result = await modulator.run("auth.firebase")
        assert any("gitignore-services" in w for w in plan.warnings)
        assert result.exit_code == ExitCode.PATCH_FAILURE
        failed = result.phase("patch-ops")
        assert failed.action is PhaseAction.ERROR
        assert "Patch 'gitignore-services': anchor not found" in failed.message
        assert result.phase("verify") is None
        assert not workspace.manifest.read().is_installed("auth.firebase")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_install_is_journaled(self, modulator, workspace, project_dir):
        await _install(modulator, "state.zustand")
        (project_dir / ".gitignore").write_text("node_modules/\n")
        _plan, result = await modulator.run("auth.firebase")
        assert result.exit_code == ExitCode.PATCH_FAILURE

        pending = workspace.journal.read("auth.firebase")
        assert len(pending.run_ids) == 1
        assert "packages/@rns/auth-firebase/index.ts" in pending.owned_paths
        assert "packages/@rns/auth-firebase" in pending.owned_paths
        assert pending.modified_files == [
            "android/app/src/main/AndroidManifest.xml", "app.json", "ios/DemoApp/Info.plist",
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_records_work_of_failed_attempt(self, modulator, workspace, project_dir):
        await _install(modulator, "state.zustand")
        (project_dir / ".gitignore").write_text("node_modules/\n")
        await modulator.run("auth.firebase")
        (project_dir / ".gitignore").write_text("node_modules/\n# rns\n")

        plan, result = await modulator.run("auth.firebase")
        assert result.success, result.errors
        assert any(w.startswith("Resuming an interrupted install of 'auth.firebase'") for w in plan.warnings)
        record = workspace.manifest.read().plugins["auth.firebase"]
        assert "packages/@rns/auth-firebase/auth.ts" in record.owned_paths
        assert record.modified_files == [
            ".gitignore", "android/app/src/main/AndroidManifest.xml", "app.json", "ios/DemoApp/Info.plist",
        ]
        assert len(record.backup_runs) == 2
        assert workspace.journal.read("auth.firebase") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_broken_composition(self, modulator, workspace, project_dir):
        (project_dir / "packages/@rns/runtime/composition.ts").write_text("broken(\n")
        plan, result = await modulator.run("nav.react-navigation")
        assert any(w.startswith("runtime-wiring:") for w in plan.warnings)
        assert result.exit_code == ExitCode.PHASE_FAILURE
        assert result.phases[-1].phase == "runtime-wiring"
        assert not workspace.manifest.read().is_installed("nav.react-navigation")


# ---------------------------------------------------------------------------
# Remove
# ---------------------------------------------------------------------------

class TestRemove:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_remove_restores_project(self, modulator, workspace, project_dir):
        await _install(modulator, "state.zustand")
        before = snapshot(project_dir)
        await _install(modulator, "auth.firebase")

        plan = modulator.plan("auth.firebase", Operation.REMOVE)
        assert plan.restore_files == MODIFIED
        assert plan.remove_paths[0] == DEST
        assert [e.export_name for e in plan.wiring] == ["initAuth", "AuthProvider"]

        result = await _install(modulator, "auth.firebase", operation=Operation.REMOVE)
        assert [p.phase for p in result.phases] == list(REMOVE_PHASES)
        assert snapshot(project_dir) == before
        assert (project_dir / "packages/@rns/runtime/composition.ts").read_text() == COMPOSITION_SOURCE
        assert workspace.manifest.read().installed_ids() == ["state.zustand"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_remove_not_installed_is_noop(self, modulator, project_dir):
        before = snapshot(project_dir)
        plan, result = await modulator.run("auth.firebase", Operation.REMOVE)
        assert plan.noop and plan.phases == ()
        assert result.success and result.phases == []
        assert snapshot(project_dir) == before

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dependents_block_removal(self, modulator, workspace):
        await _install(modulator, "state.zustand")
        await _install(modulator, "auth.firebase")
        plan, result = await modulator.run("state.zustand", Operation.REMOVE)
        assert plan.dependents == ["auth.firebase"]
        assert plan.reasons == ["required by installed capability 'auth.firebase'"]
        assert result.exit_code == ExitCode.CONFLICT
        assert workspace.manifest.read().is_installed("state.zustand")

        result = await _install(modulator, "state.zustand", operation=Operation.REMOVE, force=True)
        assert result.forced
        assert workspace.manifest.read().installed_ids() == ["auth.firebase"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_user_edit_survives_removal(self, modulator, project_dir):
        await _install(modulator, "state.zustand")
        await _install(modulator, "auth.firebase")
        (project_dir / ".gitignore").write_text("edited by hand\n")
        result = await _install(modulator, "auth.firebase", operation=Operation.REMOVE)
        assert (project_dir / ".gitignore").read_text() == "edited by hand\n"
        assert any(w.startswith(".gitignore:") for w in result.warnings)


# ---------------------------------------------------------------------------
# Locking and dry runs
# ---------------------------------------------------------------------------

class TestLockingAndDryRun:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lock_contention(self, modulator, workspace):
        with workspace.manifest.lock():
            with pytest.raises(ManifestLockedError):
                await modulator.run("state.zustand")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lock_released_after_run(self, modulator, workspace):
        await _install(modulator, "state.zustand")
        assert not workspace.config.lock_path.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_not_initialised(self, modulator, workspace):
        workspace.config.manifest_path.unlink()
        with pytest.raises(ProjectNotInitializedError):
            await modulator.run("state.zustand")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, modulator, fake_runner, project_dir):
        before = snapshot(project_dir, exclude=())
        plan, result = await modulator.run("state.zustand", dry_run=True)
        assert result.dry_run and result.success
        assert result.phases == []
        assert plan.install_commands == [["npm", "install", "zustand@^4.5.0"]]
        assert fake_runner.calls == []
        assert snapshot(project_dir, exclude=()) == before

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dry_run_of_rejected_plan(self, modulator):
        await _install(modulator, "nav.react-navigation")
        _plan, result = await modulator.run("nav.expo-router", dry_run=True)
        assert not result.success
        [error] = result.errors
        assert error.startswith("[conflict-check] ") and error.endswith("(use --force to override)")
        assert result.exit_code == ExitCode.CONFLICT
