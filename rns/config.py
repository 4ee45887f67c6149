"""rns configuration.

Typed configuration for the install engine.  Settings are Pydantic v2 models
so they are validated at construction time and round-trip through JSON.

Values come from a fixed chain of sources resolved once per invocation::

    CLI overrides -> RNS_* environment -> <state_dir>/config.json -> defaults

``select_source`` is the selection policy for that chain and ``load_config``
applies it to every known setting, returning a single ``Config`` that is then
passed explicitly to every component.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

from rns.utils import ensure_dir, load_json, matches_any


class Zone(str, Enum):
    """Ownership zone of a project-relative path."""

    CLI = "cli"
    USER = "user"
    HOST = "host"


class InstallConfig(BaseModel):
    """Tuning knobs for the package-manager phase."""

    max_batch_size: int = Field(
        default=20, ge=1, description="Maximum package specs passed to one install command"
    )
    timeout: int = Field(default=300, ge=10, description="Per-batch timeout in seconds")


class OwnershipZones(BaseModel):
    """Glob patterns that split the project tree into ownership zones.

    Paths under ``cli_managed`` are written freely by the engine.  Paths under
    ``user_owned`` are never created, modified or deleted.  Everything else is
    host configuration (``app.json``, ``ios/``, ``android/``) which only patch
    operations may touch, always with a backup.
    """

    cli_managed: list[str] = Field(default=["packages/@rns/**", ".rns/**"])
    user_owned: list[str] = Field(
        default=["src/**", "assets/**", "App.tsx", "App.js", "App.ts", "index.js", "index.ts"]
    )

    def zone_of(self, rel_path: str) -> Zone:
        if matches_any(rel_path, self.cli_managed):
            return Zone.CLI
        if matches_any(rel_path, self.user_owned):
            return Zone.USER
        return Zone.HOST

    def is_cli_managed(self, rel_path: str) -> bool:
        return self.zone_of(rel_path) is Zone.CLI


class CompositionConfig(BaseModel):
    """Where the runtime composition file lives and how it names its blocks."""

    file: str = Field(default="packages/@rns/runtime/composition.ts")
    variable: str = Field(default="composition", description="Object the entries push into")
    imports_block: str = Field(default="imports")
    blocks: dict[str, str] = Field(
        default={
            "provider": "providers",
            "wrapper": "wrappers",
            "init": "init",
            "binding": "bindings",
        },
        description="RuntimeContribution kind -> marker block name",
    )


class Config(BaseModel):
    """Global rns configuration.

    Created once by the CLI entry point (or by tests) and handed to the
    ``Workspace`` composition root.
    """

    project_root: Path = Field(default=Path("."))
    templates_dir: Path = Field(default=Path("templates"))
    state_dir: str = Field(default=".rns")
    manifest_file: str = Field(default="rn-init.json")
    package_manager: Optional[str] = Field(
        default=None, description="Force npm, pnpm or yarn instead of detecting it"
    )
    install: InstallConfig = Field(default_factory=InstallConfig)
    zones: OwnershipZones = Field(default_factory=OwnershipZones)
    composition: CompositionConfig = Field(default_factory=CompositionConfig)

    # ------------------------------------------------------------------
    # Derived paths (read-only properties)
    # ------------------------------------------------------------------

    @property
    def state_path(self) -> Path:
        """Root of the ``.rns/`` metadata directory inside the project."""
        return self.project_root / self.state_dir

    @property
    def manifest_path(self) -> Path:
        return self.state_path / self.manifest_file

    @property
    def backups_path(self) -> Path:
        """Directory holding pre-write copies, one subdirectory per run."""
        return self.state_path / "backups"

    @property
    def lock_path(self) -> Path:
        return self.state_path / "rn-init.lock"

    @property
    def pending_path(self) -> Path:
        """Journals of installs that have not reached manifest-update yet."""
        return self.state_path / "pending"

    @property
    def plugins_path(self) -> Path:
        """Directory scanned for ``<id>/plugin.json`` capability descriptors."""
        return self.templates_dir / "plugins"

    @property
    def composition_path(self) -> Path:
        return self.project_root / self.composition.file

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path | None = None) -> Path:
        """Persist the configuration to ``<state_path>/config.json`` (or *path*)."""
        target = path or (self.state_path / "config.json")
        ensure_dir(target.parent)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path) -> "Config":
        return cls.model_validate(load_json(path))

    @classmethod
    def from_env(cls, project_root: Path | str = ".") -> "Config":
        """Build a ``Config`` from defaults and ``RNS_*`` environment variables only."""
        return load_config(project_root, use_project_file=False)

    def ensure_directories(self) -> None:
        for directory in (self.state_path, self.backups_path):
            ensure_dir(directory)


# ---------------------------------------------------------------------------
# Configuration-source chain
# ---------------------------------------------------------------------------

# Flat setting name -> environment variable.
ENV_VARS: dict[str, str] = {
    "templates_dir": "RNS_TEMPLATES_DIR",
    "state_dir": "RNS_STATE_DIR",
    "package_manager": "RNS_PACKAGE_MANAGER",
    "install.max_batch_size": "RNS_MAX_BATCH_SIZE",
    "install.timeout": "RNS_INSTALL_TIMEOUT",
}

SETTINGS: tuple[str, ...] = tuple(ENV_VARS)

ConfigSource = tuple[str, Mapping[str, Any]]


def select_source(key: str, sources: list[ConfigSource]) -> tuple[str, Any] | None:
    """Return ``(source_name, value)`` from the first source defining *key*.

    Sources are consulted in order; a value of ``None`` or ``""`` counts as
    undefined so an empty environment variable never masks a config file.
    """
    for name, values in sources:
        value = values.get(key)
        if value is not None and value != "":
            return name, value
    return None


def env_source(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    environ = os.environ if environ is None else environ
    return {key: environ[var] for key, var in ENV_VARS.items() if environ.get(var)}


def file_source(path: Path) -> dict[str, Any]:
    """Flatten a project ``config.json`` into setting names.

    A missing file is an empty source.  A malformed one raises
    ``ValueError`` naming the file.
    """
    if not path.is_file():
        return {}
    try:
        data = load_json(path)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{path}: invalid JSON ({exc})") from exc
    flat: dict[str, Any] = {}
    for key in SETTINGS:
        section, _, leaf = key.partition(".")
        if leaf:
            nested = data.get(section)
            if isinstance(nested, dict) and leaf in nested:
                flat[key] = nested[leaf]
        elif key in data:
            flat[key] = data[key]
    return flat


def _resolve(sources: list[ConfigSource]) -> tuple[dict[str, Any], dict[str, Any]]:
    top: dict[str, Any] = {}
    install: dict[str, Any] = {}
    for key in SETTINGS:
        selected = select_source(key, sources)
        if selected is None:
            continue
        section, _, leaf = key.partition(".")
        if leaf:
            install[leaf] = selected[1]
        else:
            top[section] = selected[1]
    return top, install


def load_config(
    project_root: Path | str = ".",
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
    use_project_file: bool = True,
) -> Config:
    """Resolve every setting through the source chain and build a ``Config``.

    Relative ``templates_dir`` values are taken relative to *project_root*.
    """
    root = Path(project_root)
    defaults = Config(project_root=root)
    sources: list[ConfigSource] = [
        ("cli", dict(overrides or {})),
        ("env", env_source(environ)),
    ]
    if use_project_file:
        sources.append(("project", file_source(defaults.state_path / "config.json")))
    top, install = _resolve(sources)

    # A state dir chosen by cli/env moves the project config file with it.
    state_dir = top.get("state_dir", defaults.state_dir)
    if use_project_file and state_dir != defaults.state_dir:
        moved = Config(project_root=root, state_dir=state_dir)
        sources[-1] = ("project", file_source(moved.state_path / "config.json"))
        top, install = _resolve(sources)

    templates_dir = Path(top.pop("templates_dir", defaults.templates_dir))
    if not templates_dir.is_absolute():
        templates_dir = root / templates_dir
    return Config(
        project_root=root,
        templates_dir=templates_dir,
        install=InstallConfig(**install),
        **top,
    )
