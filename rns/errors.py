"""Error taxonomy and exit codes for the rns CLI.

Every failure the install engine can report maps onto one ``RnsError``
subclass, and every subclass carries an ``ExitCode`` from a distinct numeric
range so shell callers can tell the failure classes apart:

    1-9    generic failure (phase failure, dependency install, patch errors)
    10-19  invalid input (unknown capability, malformed descriptor)
    20-29  incompatibility (unsupported target/platform, missing requirement)
    30-39  conflict (slot collision, attachment over user-owned files)
    40-49  I/O (manifest read/write, manifest lock)
"""

from __future__ import annotations

from enum import IntEnum
from pathlib import Path


class ExitCode(IntEnum):
    """Process exit codes, grouped by failure class."""

    OK = 0
    GENERIC_FAILURE = 1
    PHASE_FAILURE = 2
    DEPENDENCY_INSTALL = 3
    PATCH_FAILURE = 4
    INVALID_INPUT = 10
    UNKNOWN_CAPABILITY = 11
    INVALID_DESCRIPTOR = 12
    INCOMPATIBLE = 20
    MISSING_REQUIREMENT = 21
    CONFLICT = 30
    ATTACHMENT_CONFLICT = 31
    IO_FAILURE = 40
    MANIFEST_LOCKED = 41
    NOT_INITIALIZED = 42


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------


class RnsError(Exception):
    """Base class for every error raised by the install engine.

    Attributes:
        message: Human-readable description.
        exit_code: The ``ExitCode`` the CLI should terminate with.
        phase: Name of the phase that failed, when known.
        path: File, anchor or dependency implicated, when known.
    """

    default_exit_code: ExitCode = ExitCode.GENERIC_FAILURE

    def __init__(
        self,
        message: str,
        *,
        exit_code: ExitCode | None = None,
        phase: str | None = None,
        path: str | Path | None = None,
    ) -> None:
        self.message = message
        self.exit_code = exit_code or self.default_exit_code
        self.phase = phase
        self.path = str(path) if path is not None else None
        super().__init__(message)

    def __str__(self) -> str:
        parts: list[str] = []
        if self.phase:
            parts.append(f"[{self.phase}]")
        parts.append(self.message)
        if self.path and self.path not in self.message:
            parts.append(f"({self.path})")
        return " ".join(parts)


# ---------------------------------------------------------------------------
# Invalid input
# ---------------------------------------------------------------------------


class InvalidInputError(RnsError):
    default_exit_code = ExitCode.INVALID_INPUT


class UnknownCapabilityError(InvalidInputError):
    """Raised when a capability id is not present in the registry."""

    default_exit_code = ExitCode.UNKNOWN_CAPABILITY

    def __init__(self, capability_id: str, available: list[str] | None = None) -> None:
        self.capability_id = capability_id
        hint = ""
        if available:
            hint = f" Available: {', '.join(available)}"
        super().__init__(f"Unknown capability '{capability_id}'.{hint}")


class DescriptorValidationError(InvalidInputError):
    """Raised when a ``plugin.json`` descriptor fails schema validation."""

    default_exit_code = ExitCode.INVALID_DESCRIPTOR


# ---------------------------------------------------------------------------
# Incompatibility
# ---------------------------------------------------------------------------


class IncompatibleCapabilityError(RnsError):
    default_exit_code = ExitCode.INCOMPATIBLE


class MissingRequirementError(IncompatibleCapabilityError):
    """Raised when a capability requires others that are not installed."""

    default_exit_code = ExitCode.MISSING_REQUIREMENT

    def __init__(self, capability_id: str, missing: list[str]) -> None:
        self.capability_id = capability_id
        self.missing = list(missing)
        super().__init__(
            f"'{capability_id}' requires capabilities that are not installed: "
            f"{', '.join(self.missing)}"
        )


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class SlotConflictError(RnsError):
    """Raised at the gate when a plan collides with installed capabilities."""

    default_exit_code = ExitCode.CONFLICT


class AttachmentConflictError(RnsError):
    """Raised when attaching a pack would overwrite user-owned files."""

    default_exit_code = ExitCode.ATTACHMENT_CONFLICT

    def __init__(self, conflicts: list[str], *, phase: str | None = "attachment") -> None:
        self.conflicts = list(conflicts)
        super().__init__(
            f"Refusing to overwrite {len(self.conflicts)} user-owned file(s): "
            f"{', '.join(self.conflicts)}",
            phase=phase,
            path=self.conflicts[0] if self.conflicts else None,
        )


# ---------------------------------------------------------------------------
# I/O
# ---------------------------------------------------------------------------


class ManifestIOError(RnsError):
    """Fatal: the project manifest could not be read or written."""

    default_exit_code = ExitCode.IO_FAILURE


class ManifestLockedError(ManifestIOError):
    default_exit_code = ExitCode.MANIFEST_LOCKED

    def __init__(self, lock_path: Path, holder: str = "") -> None:
        self.lock_path = lock_path
        owner = f" (held by pid {holder})" if holder else ""
        super().__init__(
            f"Another rns invocation is running against this project{owner}. "
            f"Remove {lock_path} if that process is gone.",
            path=lock_path,
        )


class ProjectNotInitializedError(ManifestIOError):
    default_exit_code = ExitCode.NOT_INITIALIZED


# ---------------------------------------------------------------------------
# Phase failures
# ---------------------------------------------------------------------------


class PatchError(RnsError):
    """Raised when a patch operation cannot be applied to its target file."""

    default_exit_code = ExitCode.PATCH_FAILURE

    def __init__(self, op_id: str, message: str, *, path: str | Path | None = None) -> None:
        self.op_id = op_id
        self.detail = message
        super().__init__(f"Patch '{op_id}': {message}", phase="patch-ops", path=path)


class CompositionParseError(RnsError):
    """Raised when the runtime composition file cannot be parsed."""

    default_exit_code = ExitCode.PHASE_FAILURE


class PackResolutionError(RnsError):
    default_exit_code = ExitCode.PHASE_FAILURE


class DependencyInstallError(RnsError):
    """Raised when a package-manager batch exits non-zero or times out.

    Attributes:
        command: The command line that failed.
        stderr: Captured stderr of the failed batch.
        installed_batches: How many batches completed before the failure.
    """

    default_exit_code = ExitCode.DEPENDENCY_INSTALL

    def __init__(
        self,
        message: str,
        *,
        command: str = "",
        stderr: str = "",
        installed_batches: int = 0,
    ) -> None:
        self.command = command
        self.stderr = stderr
        self.installed_batches = installed_batches
        super().__init__(message, phase="dependency-install")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def exit_code_for(exc: BaseException) -> int:
    """Return the process exit code that *exc* should terminate with."""
    if isinstance(exc, RnsError):
        return int(exc.exit_code)
    if isinstance(exc, KeyboardInterrupt):
        return 130
    return int(ExitCode.GENERIC_FAILURE)


def format_error(exc: BaseException, verbose: bool = False) -> str:
    """Render *exc* for the console, always naming phase and path when known."""
    if isinstance(exc, RnsError):
        text = str(exc)
        if verbose:
            text += f"\n  exit code: {int(exc.exit_code)} ({exc.exit_code.name})"
            if isinstance(exc, DependencyInstallError) and exc.stderr:
                text += f"\n  stderr: {exc.stderr}"
        return text
    return f"{type(exc).__name__}: {exc}"
