"""Runtime-wiring injector.

Adds and removes ``RuntimeContribution`` symbols in the CLI-owned composition
file.  Each capability-owned entry is an owner comment followed by one
statement; the owner comment carries everything needed to re-sort and
re-import the entry, so the file itself is the record of what is wired.

Within a kind block, statements that are not owned entries are preserved
verbatim ahead of the owned entries, which are kept in ascending
``(order, capability id)`` order.  The ``imports`` block is recomputed from
the owned entries on every write.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

from rns.capabilities.models import CapabilityDescriptor, ContributionKind
from rns.config import CompositionConfig
from rns.errors import CompositionParseError, RnsError
from rns.modulator.backup import BackupStore
from rns.modulator.composition import CompositionDocument, MarkerBlock, parse_composition
from rns.utils import atomic_write_text

PHASE = "runtime-wiring"


class WiringEntry(BaseModel):
    """One contribution as it appears in the composition file."""

    capability_id: str
    kind: ContributionKind
    order: float = 0
    module: str
    export_name: str
    config: Optional[Any] = None

    def sort_key(self) -> tuple[float, str, str, str]:
        return (self.order, self.capability_id, self.kind.value, self.export_name)


class WiringOutcome(BaseModel):
    """What a wiring pass did (or, for previews, would do)."""

    added: list[WiringEntry] = Field(default_factory=list)
    already_present: list[WiringEntry] = Field(default_factory=list)
    removed: list[WiringEntry] = Field(default_factory=list)
    changed: bool = False
    warnings: list[str] = Field(default_factory=list)


def entries_for(descriptor: CapabilityDescriptor) -> list[WiringEntry]:
    """Wiring entries for *descriptor*, in deterministic sorted order."""
    entries = [
        WiringEntry(
            capability_id=descriptor.id,
            kind=contribution.kind,
            order=contribution.order,
            module=contribution.symbol_ref.module,
            export_name=contribution.symbol_ref.export_name,
            config=contribution.config,
        )
        for contribution in descriptor.runtime_contributions
    ]
    return sorted(entries, key=WiringEntry.sort_key)


def _fmt_order(order: float) -> str:
    return str(int(order)) if float(order).is_integer() else repr(float(order))


def _entry_from_tags(tags: dict[str, str]) -> WiringEntry | None:
    try:
        return WiringEntry(
            capability_id=tags["id"],
            kind=ContributionKind(tags["kind"]),
            order=float(tags.get("order", "0")),
            module=tags["module"],
            export_name=tags["export"],
        )
    except (KeyError, ValueError):
        return None


class RuntimeWiringInjector:
    """Edits the composition file between its marker comments."""

    def __init__(
        self,
        project_root: Path,
        composition: CompositionConfig,
        backups: BackupStore,
    ) -> None:
        self.project_root = Path(project_root)
        self.composition = composition
        self.backups = backups

    @property
    def rel_path(self) -> str:
        return self.composition.file

    @property
    def path(self) -> Path:
        return self.project_root / self.composition.file

    # -- Rendering ------------------------------------------------------------

    def render_entry(self, entry: WiringEntry, indent: str) -> list[str]:
        block = self.composition.blocks[entry.kind.value]
        owner = (
            f"{indent}// @rns-owner id={entry.capability_id} kind={entry.kind.value} "
            f"order={_fmt_order(entry.order)} module={entry.module} export={entry.export_name}\n"
        )
        fields = [
            f'id: "{entry.capability_id}"',
            f"symbol: {entry.export_name}",
            f"order: {_fmt_order(entry.order)}",
        ]
        if entry.config is not None:
            fields.append(f"config: {json.dumps(entry.config, sort_keys=True)}")
        statement = (
            f"{indent}{self.composition.variable}.{block}.push({{ {', '.join(fields)} }});\n"
        )
        return [owner, statement]

    def _render_imports(
        self, doc: CompositionDocument, owned: dict[str, list[tuple[WiringEntry, list[str]]]]
    ) -> list[str]:
        imports_name = self.composition.imports_block
        block = doc.block(imports_name)
        modules: dict[str, set[str]] = {}
        exporters: dict[str, str] = {}
        for entries in owned.values():
            for entry, _ in entries:
                previous = exporters.setdefault(entry.export_name, entry.module)
                if previous != entry.module:
                    raise RnsError(
                        f"Symbol '{entry.export_name}' is exported by both '{previous}' and "
                        f"'{entry.module}'; contributions must use distinct names",
                        phase=PHASE,
                        path=self.rel_path,
                    )
                if doc.has_import(entry.module, entry.export_name, ignore_owned_in=imports_name):
                    continue
                modules.setdefault(entry.module, set()).add(entry.export_name)

        body = [line for item in block.unowned() for line in item.lines]
        for module in sorted(modules):
            names = ", ".join(sorted(modules[module]))
            body.append(f"{block.indent}// @rns-owner kind=import\n")
            body.append(f'{block.indent}import {{ {names} }} from "{module}";\n')
        return body

    def _owned_entries(
        self, doc: CompositionDocument
    ) -> dict[str, list[tuple[WiringEntry, list[str]]]]:
        owned: dict[str, list[tuple[WiringEntry, list[str]]]] = {}
        for block_name in self.composition.blocks.values():
            block = doc.blocks.get(block_name)
            if block is None:
                continue
            owned[block_name] = []
            for item in block.owned():
                entry = _entry_from_tags(item.owner or {})
                if entry is not None:
                    owned[block_name].append((entry, item.lines))
        return owned

    def _compose(
        self, doc: CompositionDocument, owned: dict[str, list[tuple[WiringEntry, list[str]]]]
    ) -> str:
        bodies: dict[str, list[str]] = {}
        for block_name, entries in owned.items():
            block = doc.blocks[block_name]
            body = [line for item in block.unowned() for line in item.lines]
            for _, lines in sorted(entries, key=lambda pair: pair[0].sort_key()):
                body.extend(lines)
            bodies[block_name] = body
        bodies[self.composition.imports_block] = self._render_imports(doc, owned)
        return doc.render(bodies)

    # -- Reading --------------------------------------------------------------

    def read(self) -> tuple[str, CompositionDocument]:
        if not self.path.is_file():
            raise CompositionParseError(
                f"Composition file not found: {self.rel_path}", phase=PHASE, path=self.rel_path
            )
        source = self.path.read_text(encoding="utf-8")
        try:
            return source, parse_composition(source)
        except CompositionParseError as exc:
            raise CompositionParseError(
                f"Cannot parse {self.rel_path}: {exc.message}", phase=PHASE, path=self.rel_path
            ) from exc

    def wired_entries(self, capability_id: str | None = None) -> list[WiringEntry]:
        """Owned entries currently in the file, optionally for one capability."""
        _, doc = self.read()
        found = [
            entry
            for entries in self._owned_entries(doc).values()
            for entry, _ in entries
            if capability_id is None or entry.capability_id == capability_id
        ]
        return sorted(found, key=WiringEntry.sort_key)

    # -- Install --------------------------------------------------------------

    def _compute_install(self, entries: list[WiringEntry]) -> tuple[str, str, WiringOutcome]:
        source, doc = self.read()
        outcome = WiringOutcome()
        owned = self._owned_entries(doc)
        for entry in sorted(entries, key=WiringEntry.sort_key):
            block_name = self.composition.blocks[entry.kind.value]
            block = doc.block(block_name)
            if self._is_wired(block, owned[block_name], entry):
                outcome.already_present.append(entry)
                continue
            owned[block_name].append((entry, self.render_entry(entry, block.indent)))
            outcome.added.append(entry)
        new_source = self._compose(doc, owned)
        outcome.changed = new_source != source
        return source, new_source, outcome

    def _is_wired(
        self,
        block: MarkerBlock,
        owned: list[tuple[WiringEntry, list[str]]],
        entry: WiringEntry,
    ) -> bool:
        for existing, _ in owned:
            if existing.export_name != entry.export_name:
                continue
            if existing.module != entry.module:
                raise RnsError(
                    f"Symbol '{entry.export_name}' from '{entry.module}' clashes with the one "
                    f"wired by '{existing.capability_id}' from '{existing.module}'",
                    phase=PHASE,
                    path=self.rel_path,
                )
            return True
        # Wired by hand: the symbol appears in a statement nobody owns.
        return any(entry.export_name in item.words for item in block.unowned())

    def preview_install(self, entries: list[WiringEntry]) -> WiringOutcome:
        return self._compute_install(entries)[2]

    def install(self, entries: list[WiringEntry], run_id: str) -> WiringOutcome:
        """Wire *entries* into the composition file.

        Re-running for an already wired capability changes nothing and
        reports every entry under ``already_present``.
        """
        _, new_source, outcome = self._compute_install(entries)
        if outcome.changed:
            self.backups.backup(run_id, self.rel_path)
            atomic_write_text(self.path, new_source)
        return outcome

    # -- Remove ---------------------------------------------------------------

    def _compute_remove(self, capability_id: str) -> tuple[str, WiringOutcome]:
        source, doc = self.read()
        outcome = WiringOutcome()
        owned = self._owned_entries(doc)
        for block_name, entries in owned.items():
            kept = []
            for entry, lines in entries:
                if entry.capability_id == capability_id:
                    outcome.removed.append(entry)
                else:
                    kept.append((entry, lines))
            owned[block_name] = kept
        new_source = self._compose(doc, owned)
        outcome.changed = new_source != source
        outcome.removed.sort(key=WiringEntry.sort_key)
        return new_source, outcome

    def preview_remove(self, capability_id: str) -> WiringOutcome:
        if not self.path.is_file():
            return WiringOutcome()
        return self._compute_remove(capability_id)[1]

    def remove(self, capability_id: str, run_id: str) -> WiringOutcome:
        """Drop every entry owned by *capability_id* and re-render imports."""
        if not self.path.is_file():
            return WiringOutcome(warnings=[f"{self.rel_path} not found; nothing to unwire"])
        new_source, outcome = self._compute_remove(capability_id)
        if outcome.changed:
            self.backups.backup(run_id, self.rel_path)
            atomic_write_text(self.path, new_source)
        return outcome

    # -- Verify ---------------------------------------------------------------

    def missing(self, entries: list[WiringEntry]) -> list[WiringEntry]:
        """Entries whose symbol is absent from its block, or owned but not imported."""
        _, doc = self.read()
        owned = self._owned_entries(doc)
        absent = []
        for entry in entries:
            block_name = self.composition.blocks[entry.kind.value]
            block = doc.block(block_name)
            if entry.export_name not in block.words():
                absent.append(entry)
                continue
            is_owned = any(e.export_name == entry.export_name for e, _ in owned.get(block_name, []))
            if is_owned and not doc.has_import(entry.module, entry.export_name):
                absent.append(entry)
        return absent
