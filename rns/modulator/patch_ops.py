"""Declarative, idempotent patch operations.

Each op is turned into a pure ``current text -> new text`` transform.  A
transform that finds its content already in place returns ``None`` and the op
is reported as ``skipped-already-present``; otherwise the original file is
copied to the run's backup directory and the new text is written atomically.
A failing op raises ``PatchError`` before anything is written, so a file is
never left half-edited.  User-owned files and the runtime composition file
are never patch targets.

Supported ops::

    text.insertOnce   insert content before/after an anchor string
    text.replaceOnce  replace an anchor string
    data.merge        deep-merge into a JSON or YAML document
    keys.ensure       add missing keys to a plist, AndroidManifest or JSON file
"""

from __future__ import annotations

import copy
import json
import plistlib
import re
import xml.etree.ElementTree as ET
from enum import Enum
from pathlib import Path
from typing import Any, Optional
from xml.parsers.expat import ExpatError

import yaml
from pydantic import BaseModel

from rns.capabilities.models import DataMerge, KeysEnsure, PatchOp, TextInsertOnce, TextReplaceOnce
from rns.config import OwnershipZones, Zone
from rns.errors import PatchError
from rns.modulator.backup import BackupStore
from rns.utils import atomic_write_bytes, normalize_rel_path, sha256_file

ANDROID_NS = "http://schemas.android.com/apk/res/android"


class PatchStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    SKIPPED_PRESENT = "skipped-already-present"
    SKIPPED_FILTERED = "skipped-filtered"
    ERROR = "error"


class PatchOutcome(BaseModel):
    """Audit record for one op."""

    op_id: str
    type: str
    file: str
    status: PatchStatus = PatchStatus.PENDING
    message: str = ""
    backup: Optional[str] = None


class RestoreOutcome(BaseModel):
    file: str
    restored: bool = False
    message: str = ""


# ---------------------------------------------------------------------------
# Pure transforms
# ---------------------------------------------------------------------------


def _squash(text: str) -> str:
    return re.sub(r"\s+", "", text)


def insert_once(text: str, op: TextInsertOnce) -> str | None:
    index = text.find(op.anchor)
    if index == -1:
        raise PatchError(op.id, f"anchor not found: {op.anchor!r}", path=op.file)
    wanted = _squash(op.content)
    if op.position == "after":
        end = index + len(op.anchor)
        if _squash(text[end:]).startswith(wanted):
            return None
        return text[:end] + op.content + text[end:]
    if _squash(text[:index]).endswith(wanted):
        return None
    return text[:index] + op.content + text[index:]


def _embeds_anchor(text: str, op: TextReplaceOnce) -> bool:
    """True if some anchor occurrence sits inside an applied replacement."""
    offset = op.replacement.index(op.anchor)
    index = text.find(op.anchor)
    while index != -1:
        start = index - offset
        if start >= 0 and text[start:start + len(op.replacement)] == op.replacement:
            return True
        index = text.find(op.anchor, index + 1)
    return False


def replace_once(text: str, op: TextReplaceOnce) -> str | None:
    """Replace the single occurrence of the anchor.

    The op is in place when the anchor is gone and the replacement is there,
    or when the replacement embeds the anchor and surrounds an occurrence.
    An anchor found more than once is refused so a re-run cannot replace the
    next occurrence.
    """
    if op.replacement and op.anchor in op.replacement and _embeds_anchor(text, op):
        return None
    count = text.count(op.anchor)
    if count == 0:
        if not op.replacement or op.replacement in text:
            return None
        raise PatchError(op.id, f"anchor not found: {op.anchor!r}", path=op.file)
    if count > 1:
        raise PatchError(op.id, f"anchor {op.anchor!r} is ambiguous ({count} occurrences)", path=op.file)
    return text.replace(op.anchor, op.replacement, 1)


def deep_merge(base: Any, overlay: Any, arrays: str = "union") -> Any:
    """Recursively merge *overlay* into a copy of *base*.

    Mappings merge key by key.  Lists either gain the overlay items they do
    not already contain (``union``) or are replaced outright (``replace``).
    Any other overlay value replaces the base value.
    """
    if isinstance(base, dict) and isinstance(overlay, dict):
        merged = copy.deepcopy(base)
        for key, value in overlay.items():
            merged[key] = deep_merge(merged[key], value, arrays) if key in merged else copy.deepcopy(value)
        return merged
    if isinstance(base, list) and isinstance(overlay, list) and arrays == "union":
        merged_list = copy.deepcopy(base)
        for item in overlay:
            if item not in merged_list:
                merged_list.append(copy.deepcopy(item))
        return merged_list
    return copy.deepcopy(overlay)


def _detect_indent(text: str) -> int:
    match = re.search(r"^( +)\S", text, re.MULTILINE)
    return len(match.group(1)) if match else 2


def _data_format(op: DataMerge | KeysEnsure) -> str:
    if op.format:
        return op.format
    name = op.file.lower()
    if name.endswith((".yaml", ".yml")):
        return "yaml"
    if name.endswith(".plist"):
        return "plist"
    if name.endswith("androidmanifest.xml"):
        return "android-manifest"
    return "json"


def data_merge(text: str, op: DataMerge) -> str | None:
    fmt = _data_format(op)
    try:
        if fmt == "yaml":
            current = yaml.safe_load(text) or {}
        else:
            current = json.loads(text) if text.strip() else {}
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise PatchError(op.id, f"cannot parse {fmt}: {exc}", path=op.file) from exc
    if not isinstance(current, dict):
        raise PatchError(op.id, f"top level of {op.file} is not a mapping", path=op.file)

    merged = deep_merge(current, op.value, op.arrays)
    if merged == current:
        return None
    if fmt == "yaml":
        return yaml.safe_dump(merged, sort_keys=False, default_flow_style=False, allow_unicode=True)
    trailing = "\n" if text.endswith("\n") or not text else ""
    return json.dumps(merged, indent=_detect_indent(text), ensure_ascii=False) + trailing


def policy_default(key: str, fmt: str) -> Any:
    """Value written for a ``keys.ensure`` key declared with ``null``."""
    if fmt == "plist" and key.endswith("UsageDescription"):
        return "This app needs this permission to provide the requested feature."
    if fmt == "plist" and key.startswith("UI") and key.endswith("Modes"):
        return []
    return ""


def _ensure_plist(text: str, op: KeysEnsure) -> str | None:
    try:
        data = plistlib.loads(text.encode("utf-8"))
    except (plistlib.InvalidFileException, ExpatError, ValueError) as exc:
        raise PatchError(op.id, f"cannot parse property list: {exc}", path=op.file) from exc
    if not isinstance(data, dict):
        raise PatchError(op.id, "property list root is not a dictionary", path=op.file)
    missing = {key: value for key, value in op.keys.items() if key not in data}
    if not missing:
        return None
    for key, value in missing.items():
        data[key] = policy_default(key, "plist") if value is None else value
    return plistlib.dumps(data, fmt=plistlib.FMT_XML, sort_keys=False).decode("utf-8")


def _ensure_android_permissions(text: str, op: KeysEnsure) -> str | None:
    """Add ``<uses-permission>`` elements for missing permission names.

    The tree is parsed to decide what is present, but the file is edited
    textually so comments and formatting elsewhere survive.
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise PatchError(op.id, f"cannot parse AndroidManifest: {exc}", path=op.file) from exc
    present = {
        element.get(f"{{{ANDROID_NS}}}name")
        for element in root.iter("uses-permission")
    }
    missing = [name for name in op.keys if name not in present]
    if not missing:
        return None

    anchor = re.search(r"^([ \t]*)<application\b", text, re.MULTILINE)
    if anchor is None:
        anchor = re.search(r"^([ \t]*)</manifest>", text, re.MULTILINE)
        if anchor is None:
            raise PatchError(op.id, "no <application> or </manifest> anchor", path=op.file)
        indent = anchor.group(1) + "    "
    else:
        indent = anchor.group(1)
    lines = "".join(f'{indent}<uses-permission android:name="{name}" />\n' for name in missing)
    return text[: anchor.start()] + lines + text[anchor.start():]


def _ensure_json_keys(text: str, op: KeysEnsure) -> str | None:
    """Dotted key paths (``expo.ios.bundleIdentifier``) must exist."""
    try:
        data = json.loads(text) if text.strip() else {}
    except json.JSONDecodeError as exc:
        raise PatchError(op.id, f"cannot parse json: {exc}", path=op.file) from exc
    if not isinstance(data, dict):
        raise PatchError(op.id, f"top level of {op.file} is not an object", path=op.file)
    changed = False
    for dotted, value in op.keys.items():
        node = data
        parts = dotted.split(".")
        for part in parts[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                raise PatchError(op.id, f"'{part}' in '{dotted}' is not an object", path=op.file)
            node = child
        if parts[-1] not in node:
            node[parts[-1]] = policy_default(parts[-1], "json") if value is None else value
            changed = True
    if not changed:
        return None
    trailing = "\n" if text.endswith("\n") or not text else ""
    return json.dumps(data, indent=_detect_indent(text), ensure_ascii=False) + trailing


def keys_ensure(text: str, op: KeysEnsure) -> str | None:
    fmt = _data_format(op)
    if fmt == "plist":
        return _ensure_plist(text, op)
    if fmt == "android-manifest":
        return _ensure_android_permissions(text, op)
    return _ensure_json_keys(text, op)


def transform(text: str, op: PatchOp) -> str | None:
    """Apply *op* to *text*; ``None`` means the content is already there."""
    if isinstance(op, TextInsertOnce):
        return insert_once(text, op)
    if isinstance(op, TextReplaceOnce):
        return replace_once(text, op)
    if isinstance(op, DataMerge):
        return data_merge(text, op)
    return keys_ensure(text, op)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class PatchEngine:
    """Runs patch ops against the project tree with backup-before-write."""

    def __init__(
        self,
        project_root: Path,
        zones: OwnershipZones,
        backups: BackupStore,
        composition_file: str | None = None,
    ) -> None:
        self.project_root = Path(project_root)
        self.zones = zones
        self.backups = backups
        self.composition_file = normalize_rel_path(composition_file) if composition_file else None

    @staticmethod
    def is_applicable(op: PatchOp, target: str, platforms: list[str]) -> bool:
        if op.targets is not None and target not in {t.value for t in op.targets}:
            return False
        if op.platforms is not None and not {p.value for p in op.platforms}.intersection(platforms):
            return False
        return True

    def _run_op(
        self, op: PatchOp, target: str, platforms: list[str], run_id: str | None
    ) -> PatchOutcome:
        outcome = PatchOutcome(op_id=op.id, type=op.type, file=op.file)
        if not self.is_applicable(op, target, platforms):
            outcome.status = PatchStatus.SKIPPED_FILTERED
            outcome.message = f"not applicable to {target}/{','.join(platforms)}"
            return outcome
        try:
            rel = normalize_rel_path(op.file)
            if self.zones.zone_of(rel) is Zone.USER:
                raise PatchError(op.id, f"refusing to edit user-owned file {rel}", path=rel)
            if rel == self.composition_file:
                raise PatchError(
                    op.id, f"{rel} is wired from runtime contributions, not patched", path=rel
                )
            path = self.project_root / rel
            if not path.is_file():
                raise PatchError(op.id, f"target file does not exist: {rel}", path=rel)
            try:
                text = path.read_text(encoding="utf-8")
            except UnicodeDecodeError as exc:
                raise PatchError(op.id, f"{rel} is not UTF-8 text", path=rel) from exc
            new_text = transform(text, op)
        except ValueError as exc:
            outcome.status = PatchStatus.ERROR
            outcome.message = str(exc)
            return outcome
        except PatchError as exc:
            outcome.status = PatchStatus.ERROR
            outcome.message = exc.detail
            return outcome

        if new_text is None:
            outcome.status = PatchStatus.SKIPPED_PRESENT
            return outcome
        outcome.status = PatchStatus.APPLIED
        if run_id is not None:
            backup = self.backups.backup(run_id, rel)
            outcome.backup = str(backup) if backup else None
            atomic_write_bytes(path, new_text.encode("utf-8"))
        return outcome

    def preview(self, ops: list[PatchOp], target: str, platforms: list[str]) -> list[PatchOutcome]:
        """Dry run: the status each op would end in, without writing."""
        return [self._run_op(op, target, platforms, None) for op in ops]

    def apply(
        self, ops: list[PatchOp], target: str, platforms: list[str], run_id: str
    ) -> list[PatchOutcome]:
        """Apply *ops* in order, stopping at the first error.

        Ops after a failing one are not attempted and are not reported.
        """
        outcomes: list[PatchOutcome] = []
        for op in ops:
            outcome = self._run_op(op, target, platforms, run_id)
            outcomes.append(outcome)
            if outcome.status is PatchStatus.ERROR:
                break
        return outcomes

    def revert(
        self,
        modified_files: list[str],
        backup_runs: list[str],
        file_hashes: dict[str, str],
    ) -> list[RestoreOutcome]:
        """Restore *modified_files* to their pre-install bytes.

        The backup taken by the capability's own runs is preferred, falling
        back to the most recent backup on disk.  A file whose content changed
        since install (its hash differs from *file_hashes*) is left alone.
        """
        outcomes: list[RestoreOutcome] = []
        for rel in sorted(modified_files):
            outcome = RestoreOutcome(file=rel)
            path = self.project_root / rel
            backup = None
            for run_id in backup_runs:
                backup = self.backups.find(rel, run_id)
                if backup is not None:
                    break
            if backup is None:
                backup = self.backups.find(rel)
            if backup is None:
                outcome.message = "no backup found; left as-is"
            elif not path.is_file():
                outcome.message = "file was deleted after install; left as-is"
            elif rel in file_hashes and sha256_file(path) != file_hashes[rel]:
                outcome.message = "file changed after install; left as-is to keep user edits"
            else:
                self.backups.restore(backup, rel)
                outcome.restored = True
            outcomes.append(outcome)
        return outcomes


def failed(outcomes: list[PatchOutcome]) -> list[PatchOutcome]:
    return [o for o in outcomes if o.status is PatchStatus.ERROR]
