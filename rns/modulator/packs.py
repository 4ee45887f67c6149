"""Pack resolution.

A capability's template pack lives next to its descriptor::

    plugins/<id-with-dashes>/
        plugin.json
        pack/
            pack.json            optional {"delivery": ..., "destination": ...}
            common/              attached first, for every variant
            variants/<target>/<language>/<options key>/
            variants/<target>/<language>/
            variants/<target>/
            variants/default/

Resolution is a pure function of ``(capability id, target, language, options
key)`` and the files on disk: candidates are tried most specific first and the
first existing directory wins, with the pack root itself as the last resort.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from rns.capabilities.models import Language
from rns.capabilities.registry import CapabilityRegistry
from rns.errors import PackResolutionError
from rns.utils import load_json

PACK_DIR = "pack"
PACK_MANIFEST = "pack.json"
COMMON_DIR = "common"
VARIANTS_DIR = "variants"


def normalize_options_key(options: dict[str, Any] | None) -> str | None:
    """Canonical, order-independent key for a set of install options.

    ``{"provider": "firebase", "biometrics": True}`` becomes
    ``"biometrics:true|provider:firebase"``.  No options means no key.
    """
    if not options:
        return None
    parts = []
    for key in sorted(options):
        value = options[key]
        if isinstance(value, bool):
            value = "true" if value else "false"
        elif isinstance(value, (list, tuple)):
            value = ",".join(str(v) for v in sorted(value, key=str))
        parts.append(f"{key}:{value}")
    return "|".join(parts)


class PackManifest(BaseModel):
    delivery: Literal["workspace", "user-code"] = "workspace"
    destination: Optional[str] = Field(
        default=None, description="Project-relative directory the pack is attached under"
    )


class ResolvedPack(BaseModel):
    """The concrete directories to attach for one install."""

    capability_id: str
    root: Path
    variant_dir: Path
    matched: str = Field(..., description="Which candidate matched, e.g. 'variants/expo/ts'")
    common_dir: Optional[Path] = None
    delivery: str = "workspace"
    destination: str

    @property
    def is_root_fallback(self) -> bool:
        return self.variant_dir == self.root

    @property
    def nested_variants(self) -> set[str]:
        """Sub-directories of ``variant_dir`` that hold more specific variants."""
        if self.is_root_fallback:
            return {COMMON_DIR, VARIANTS_DIR}
        subdirs = {p.name for p in self.variant_dir.iterdir() if p.is_dir()}
        parts = self.matched.split("/")
        if len(parts) == 3:
            return {name for name in subdirs if ":" in name}
        if len(parts) == 2 and parts[1] != "default":
            return subdirs & {language.value for language in Language}
        return set()


def candidate_dirs(
    target: str, language: str, options_key: str | None = None
) -> list[str]:
    """Variant directories to try, most specific first."""
    candidates = []
    if options_key:
        candidates.append(f"{VARIANTS_DIR}/{target}/{language}/{options_key}")
    candidates.extend([
        f"{VARIANTS_DIR}/{target}/{language}",
        f"{VARIANTS_DIR}/{target}",
        f"{VARIANTS_DIR}/default",
    ])
    return candidates


class PackResolver:
    """Maps an install request to the pack directories to attach."""

    def __init__(self, registry: CapabilityRegistry) -> None:
        self.registry = registry

    def pack_root(self, capability_id: str) -> Path | None:
        plugin_dir = self.registry.plugin_dir(capability_id)
        if plugin_dir is None:
            return None
        root = plugin_dir / PACK_DIR
        return root if root.is_dir() else None

    def load_manifest(self, root: Path) -> PackManifest:
        path = root / PACK_MANIFEST
        if not path.is_file():
            return PackManifest()
        try:
            return PackManifest.model_validate(load_json(path))
        except (ValueError, ValidationError) as exc:
            raise PackResolutionError(f"Invalid pack manifest: {exc}", path=path) from exc

    def resolve(
        self,
        capability_id: str,
        target: str,
        language: str,
        options_key: str | None = None,
    ) -> ResolvedPack | None:
        """Resolve the pack to attach, or ``None`` if the capability has no pack."""
        self.registry.get(capability_id)
        root = self.pack_root(capability_id)
        if root is None:
            return None
        manifest = self.load_manifest(root)
        common = root / COMMON_DIR

        for candidate in candidate_dirs(target, language, options_key):
            directory = root / candidate
            if directory.is_dir():
                variant_dir, matched = directory, candidate
                break
        else:
            variant_dir, matched = root, "."

        destination = manifest.destination
        if destination is None:
            # user-code packs mirror the project layout from its root.
            if manifest.delivery == "user-code":
                destination = ""
            else:
                destination = f"packages/@rns/{capability_id.replace('.', '-')}"
        return ResolvedPack(
            capability_id=capability_id,
            root=root,
            variant_dir=variant_dir,
            matched=matched,
            common_dir=common if common.is_dir() else None,
            delivery=manifest.delivery,
            destination=destination.strip("/"),
        )
