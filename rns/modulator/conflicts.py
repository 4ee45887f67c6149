"""Slot-based conflict detection.

A capability declaring ``{"slot": "navigation.root", "mode": "single"}``
occupies that slot exclusively.  Installing a second capability that also
declares the slot as ``single`` produces one ``ConflictHit`` per installed
occupant.  ``multi`` slots never conflict.  Explicit ``conflictsWith``
declarations, in either direction, are reported the same way.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from rns.capabilities.models import CapabilityDescriptor, SlotMode

DECLARED_SLOT = "conflictsWith"


class ConflictHit(BaseModel):
    slot: str
    installed_id: str
    incoming_id: str
    reason: Literal["slot", "declared"] = "slot"

    def describe(self) -> str:
        if self.reason == "declared":
            return f"'{self.incoming_id}' cannot be installed alongside '{self.installed_id}'"
        return (
            f"slot '{self.slot}' is already occupied by '{self.installed_id}' "
            f"(requested by '{self.incoming_id}')"
        )


class ConflictCheckResult(BaseModel):
    ok: bool = True
    hits: list[ConflictHit] = Field(default_factory=list)


def check_conflicts(
    incoming: CapabilityDescriptor,
    installed: dict[str, CapabilityDescriptor],
) -> ConflictCheckResult:
    """Compare *incoming* against the descriptors of installed capabilities.

    The incoming capability itself is ignored if it is already installed, so
    re-applying an install never conflicts with itself.  Hits are ordered by
    slot, then installed id.
    """
    hits: list[ConflictHit] = []
    for rule in incoming.slots:
        if rule.mode is not SlotMode.SINGLE:
            continue
        for installed_id, descriptor in installed.items():
            if installed_id == incoming.id:
                continue
            if any(r.slot == rule.slot for r in descriptor.slots):
                hits.append(
                    ConflictHit(slot=rule.slot, installed_id=installed_id, incoming_id=incoming.id)
                )

    for installed_id, descriptor in installed.items():
        if installed_id == incoming.id:
            continue
        if installed_id in incoming.conflicts_with or incoming.id in descriptor.conflicts_with:
            hits.append(
                ConflictHit(
                    slot=DECLARED_SLOT,
                    installed_id=installed_id,
                    incoming_id=incoming.id,
                    reason="declared",
                )
            )

    hits.sort(key=lambda hit: (hit.reason, hit.slot, hit.installed_id))
    return ConflictCheckResult(ok=not hits, hits=hits)
