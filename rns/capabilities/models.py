"""Pydantic v2 models for capability descriptors (``plugin.json``).

Descriptors are immutable: every model here is frozen and is only ever
constructed by ``CapabilityRegistry`` from the files on disk.  JSON keys are
camelCase (``runtimeContributions``, ``symbolRef``); Python attributes are
snake_case.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class _DescriptorModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Target(str, Enum):
    """Project flavour a capability can be installed into."""
    EXPO = "expo"
    BARE = "bare"


class Platform(str, Enum):
    IOS = "ios"
    ANDROID = "android"
    WEB = "web"


class Language(str, Enum):
    TS = "ts"
    JS = "js"


class Category(str, Enum):
    AUTH = "auth"
    STORAGE = "storage"
    NETWORK = "network"
    UI = "ui"
    NAVIGATION = "navigation"
    ANALYTICS = "analytics"
    NOTIFICATIONS = "notifications"
    CAMERA = "camera"
    LOCATION = "location"
    MEDIA = "media"
    HARDWARE = "hardware"
    DATA = "data"
    STATE = "state"
    OTHER = "other"


class SlotMode(str, Enum):
    SINGLE = "single"
    MULTI = "multi"


class ContributionKind(str, Enum):
    PROVIDER = "provider"
    WRAPPER = "wrapper"
    INIT = "init"
    BINDING = "binding"


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------

CAPABILITY_ID_RE = re.compile(r"^[a-z][a-z0-9-]*(\.[a-z0-9][a-z0-9-]*)+$")


class Support(_DescriptorModel):
    """Where a capability can be installed."""
    targets: list[Target] = Field(..., min_length=1)
    platforms: list[Platform] = Field(..., min_length=1)
    languages: list[Language] = Field(default=[Language.TS, Language.JS], min_length=1)


class ConflictRule(_DescriptorModel):
    """Occupancy of a named conflict domain such as ``navigation.root``."""
    slot: str = Field(..., min_length=1)
    mode: SlotMode = Field(default=SlotMode.SINGLE)


class SymbolRef(_DescriptorModel):
    module: str = Field(..., min_length=1, description="Import specifier, e.g. '@rns/plugin-auth'")
    export_name: str = Field(..., description="Named export to import from the module")

    @field_validator("export_name")
    @classmethod
    def _identifier(cls, value: str) -> str:
        if not re.match(r"^[A-Za-z_$][A-Za-z0-9_$]*$", value):
            raise ValueError(f"'{value}' is not a valid JavaScript identifier")
        return value


class RuntimeContribution(_DescriptorModel):
    """One symbol wired into the runtime composition file."""
    kind: ContributionKind
    order: float = Field(default=0, description="Lower renders outer/earlier")
    symbol_ref: SymbolRef
    config: Optional[Any] = Field(default=None, description="JSON-serialisable props/options")


class DependencySpec(_DescriptorModel):
    """A package the capability needs, e.g. ``{"name": "zustand", "version": "^4.5.0"}``.

    The short form ``"zustand@^4.5.0"`` is accepted wherever a spec is.
    """
    name: str = Field(..., min_length=1)
    version: str = Field(default="")

    @model_validator(mode="before")
    @classmethod
    def _parse_short_form(cls, data: Any) -> Any:
        if isinstance(data, str):
            return cls.split_spec(data)
        return data

    @staticmethod
    def split_spec(spec: str) -> dict[str, str]:
        spec = spec.strip()
        # Scoped packages start with '@'; the version separator is the next '@'.
        at = spec.find("@", 1)
        if at == -1:
            return {"name": spec, "version": ""}
        return {"name": spec[:at], "version": spec[at + 1:]}

    @property
    def is_workspace_local(self) -> bool:
        """Local packages must be installed after registry packages."""
        return self.version.startswith(("workspace:", "file:", "link:"))

    def to_spec(self) -> str:
        return f"{self.name}@{self.version}" if self.version else self.name


class Dependencies(_DescriptorModel):
    runtime: list[DependencySpec] = Field(default_factory=list)
    dev: list[DependencySpec] = Field(default_factory=list)


class PermissionRequirement(_DescriptorModel):
    """A platform permission the capability needs, e.g. ``camera``."""
    id: str = Field(..., min_length=1)
    mandatory: bool = Field(default=True)

    @model_validator(mode="before")
    @classmethod
    def _parse_short_form(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"id": data}
        return data


# ---------------------------------------------------------------------------
# Patch operations
# ---------------------------------------------------------------------------


class _PatchOpBase(_DescriptorModel):
    id: str = Field(..., min_length=1, description="Stable id used in audit output")
    file: str = Field(..., min_length=1, description="Project-relative target path")
    targets: Optional[list[Target]] = Field(default=None, description="None means every target")
    platforms: Optional[list[Platform]] = Field(default=None, description="None means every platform")


class TextInsertOnce(_PatchOpBase):
    type: Literal["text.insertOnce"]
    anchor: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    position: Literal["before", "after"] = "after"


class TextReplaceOnce(_PatchOpBase):
    type: Literal["text.replaceOnce"]
    anchor: str = Field(..., min_length=1)
    replacement: str


class DataMerge(_PatchOpBase):
    type: Literal["data.merge"]
    value: dict[str, Any]
    format: Optional[Literal["json", "yaml"]] = None
    arrays: Literal["union", "replace"] = "union"


class KeysEnsure(_PatchOpBase):
    """Ensure keys exist in a plist, AndroidManifest or JSON file.

    A ``None`` value asks for the policy default of that key.  Existing values
    are never overwritten.
    """
    type: Literal["keys.ensure"]
    keys: dict[str, Any] = Field(..., min_length=1)
    format: Optional[Literal["plist", "android-manifest", "json"]] = None


PatchOp = Annotated[
    Union[TextInsertOnce, TextReplaceOnce, DataMerge, KeysEnsure],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Descriptor
# ---------------------------------------------------------------------------


class CapabilityDescriptor(_DescriptorModel):
    """Static definition of an installable capability."""

    id: str = Field(..., description="Namespaced id, e.g. 'auth.firebase'")
    name: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    category: Category
    description: str = Field(default="")
    support: Support
    slots: list[ConflictRule] = Field(default_factory=list)
    requires: list[str] = Field(default_factory=list)
    conflicts_with: list[str] = Field(default_factory=list)
    dependencies: Dependencies = Field(default_factory=Dependencies)
    runtime_contributions: list[RuntimeContribution] = Field(default_factory=list)
    patches: list[PatchOp] = Field(default_factory=list)
    permissions: list[PermissionRequirement] = Field(default_factory=list)
    options_schema: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _namespaced_id(cls, value: str) -> str:
        if not CAPABILITY_ID_RE.match(value):
            raise ValueError(
                f"'{value}' is not a namespaced capability id (expected e.g. 'auth.firebase')"
            )
        return value

    @model_validator(mode="after")
    def _unique_patch_ids(self) -> "CapabilityDescriptor":
        seen: set[str] = set()
        for op in self.patches:
            if op.id in seen:
                raise ValueError(f"duplicate patch id '{op.id}'")
            seen.add(op.id)
        if self.id in self.requires:
            raise ValueError("a capability cannot require itself")
        return self

    @property
    def directory_name(self) -> str:
        """Directory under ``plugins/`` that must hold this descriptor."""
        return self.id.replace(".", "-")

    def single_slots(self) -> list[str]:
        return [rule.slot for rule in self.slots if rule.mode is SlotMode.SINGLE]

    def supports(self, target: str, language: str, platforms: list[str]) -> list[str]:
        """Return the reasons this capability cannot be installed (empty if it can)."""
        reasons: list[str] = []
        if target not in {t.value for t in self.support.targets}:
            reasons.append(
                f"target '{target}' not supported (supports: "
                f"{', '.join(t.value for t in self.support.targets)})"
            )
        if language not in {lang.value for lang in self.support.languages}:
            reasons.append(f"language '{language}' not supported")
        supported_platforms = {p.value for p in self.support.platforms}
        if platforms and not supported_platforms.intersection(platforms):
            reasons.append(
                f"none of the project platforms ({', '.join(platforms)}) are supported"
            )
        return reasons
