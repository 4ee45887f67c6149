"""Capability descriptors and the registry that loads them.

Key classes:
    CapabilityDescriptor - Validated, immutable ``plugin.json`` contents
    CapabilityRegistry   - Startup scan of ``<templates>/plugins/*/plugin.json``

Usage::

    from rns.capabilities import CapabilityRegistry

    registry = CapabilityRegistry.load(config.plugins_path)
    descriptor = registry.get("auth.firebase")
"""

from .models import (
    CapabilityDescriptor,
    Category,
    ConflictRule,
    ContributionKind,
    DataMerge,
    DependencySpec,
    Dependencies,
    KeysEnsure,
    Language,
    PatchOp,
    PermissionRequirement,
    Platform,
    RuntimeContribution,
    SlotMode,
    Support,
    SymbolRef,
    Target,
    TextInsertOnce,
    TextReplaceOnce,
)
from .registry import CapabilityRegistry, load_descriptor

__all__ = [
    # Registry
    "CapabilityRegistry",
    "load_descriptor",
    # Descriptor
    "CapabilityDescriptor",
    "Support",
    "ConflictRule",
    "RuntimeContribution",
    "SymbolRef",
    "DependencySpec",
    "Dependencies",
    "PermissionRequirement",
    # Patch operations
    "PatchOp",
    "TextInsertOnce",
    "TextReplaceOnce",
    "DataMerge",
    "KeysEnsure",
    # Enumerations
    "Category",
    "ContributionKind",
    "Language",
    "Platform",
    "SlotMode",
    "Target",
]
