"""Capability registry.

Built once at startup by scanning ``<templates>/plugins/*/plugin.json``.  Every
descriptor is validated up front; a malformed, misplaced or duplicated
descriptor stops the load with a ``DescriptorValidationError`` that names the
file, so a broken capability never surfaces halfway through an install.
"""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import ValidationError

from rns.capabilities.models import CapabilityDescriptor
from rns.errors import DescriptorValidationError, UnknownCapabilityError

DESCRIPTOR_FILE = "plugin.json"


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


def load_descriptor(path: Path) -> CapabilityDescriptor:
    """Parse and validate a single ``plugin.json``.

    Raises:
        DescriptorValidationError: On unreadable JSON or schema violations.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise DescriptorValidationError(f"Cannot read descriptor: {exc}", path=path) from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise DescriptorValidationError(
            f"Descriptor {path} is not valid JSON: {exc.msg} (line {exc.lineno})", path=path
        ) from exc
    try:
        return CapabilityDescriptor.model_validate(data)
    except ValidationError as exc:
        raise DescriptorValidationError(
            f"Descriptor {path} is invalid: {_format_validation_error(exc)}", path=path
        ) from exc


class CapabilityRegistry:
    """Read-only map of capability id to descriptor and plugin directory."""

    def __init__(
        self,
        descriptors: dict[str, CapabilityDescriptor] | None = None,
        plugin_dirs: dict[str, Path] | None = None,
    ) -> None:
        self._descriptors = dict(sorted((descriptors or {}).items()))
        self._plugin_dirs = dict(plugin_dirs or {})

    @classmethod
    def load(cls, plugins_dir: Path) -> "CapabilityRegistry":
        """Scan *plugins_dir* and validate every descriptor found.

        A missing directory yields an empty registry.  Directories without a
        ``plugin.json`` are ignored (they may hold shared pack assets).
        """
        descriptors: dict[str, CapabilityDescriptor] = {}
        plugin_dirs: dict[str, Path] = {}
        if not plugins_dir.is_dir():
            return cls()

        for entry in sorted(plugins_dir.iterdir()):
            descriptor_path = entry / DESCRIPTOR_FILE
            if not entry.is_dir() or not descriptor_path.is_file():
                continue
            descriptor = load_descriptor(descriptor_path)
            if entry.name != descriptor.directory_name:
                raise DescriptorValidationError(
                    f"Descriptor {descriptor_path} declares id '{descriptor.id}' but lives in "
                    f"'{entry.name}/' (expected '{descriptor.directory_name}/')",
                    path=descriptor_path,
                )
            if descriptor.id in descriptors:
                raise DescriptorValidationError(
                    f"Duplicate capability id '{descriptor.id}' in {descriptor_path} "
                    f"and {plugin_dirs[descriptor.id] / DESCRIPTOR_FILE}",
                    path=descriptor_path,
                )
            descriptors[descriptor.id] = descriptor
            plugin_dirs[descriptor.id] = entry

        registry = cls(descriptors, plugin_dirs)
        registry._check_references()
        return registry

    def _check_references(self) -> None:
        for descriptor in self._descriptors.values():
            for required in descriptor.requires:
                if required not in self._descriptors:
                    raise DescriptorValidationError(
                        f"'{descriptor.id}' requires unknown capability '{required}'",
                        path=self._plugin_dirs.get(descriptor.id),
                    )
            self.requirement_closure(descriptor.id)

    # -- Lookup ---------------------------------------------------------------

    def get(self, capability_id: str) -> CapabilityDescriptor:
        try:
            return self._descriptors[capability_id]
        except KeyError:
            raise UnknownCapabilityError(capability_id, self.ids()) from None

    def find(self, capability_id: str) -> CapabilityDescriptor | None:
        return self._descriptors.get(capability_id)

    def plugin_dir(self, capability_id: str) -> Path | None:
        return self._plugin_dirs.get(capability_id)

    def ids(self) -> list[str]:
        return list(self._descriptors)

    def all(self) -> list[CapabilityDescriptor]:
        return list(self._descriptors.values())

    def __contains__(self, capability_id: object) -> bool:
        return capability_id in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)

    # -- Requirements ---------------------------------------------------------

    def requirement_closure(self, capability_id: str) -> list[str]:
        """Return every capability *capability_id* transitively requires.

        Order is depth-first in declaration order with duplicates removed, so
        the result is deterministic.

        Raises:
            DescriptorValidationError: If the requirements form a cycle.
        """
        ordered: list[str] = []
        visiting: list[str] = []

        def visit(current: str) -> None:
            if current in visiting:
                cycle = " -> ".join(visiting[visiting.index(current):] + [current])
                raise DescriptorValidationError(f"Requirement cycle: {cycle}")
            if current in ordered:
                return
            visiting.append(current)
            for required in self.get(current).requires:
                visit(required)
            visiting.pop()
            if current != capability_id:
                ordered.append(current)

        visit(capability_id)
        return ordered

    def dependents_of(self, capability_id: str, among: list[str]) -> list[str]:
        """Return the ids in *among* that directly require *capability_id*."""
        return sorted(
            other for other in among
            if other != capability_id
            and other in self._descriptors
            and capability_id in self._descriptors[other].requires
        )
