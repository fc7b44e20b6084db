"""
taloscluster/models/update.py

Change classification and the result accumulator threaded through an update.

An UpdateResult is built once by the diff engine and then filled in as each
change is attempted: every attempted change ends up in `applied_changes` or
`failed_changes`, never dropped.
"""

from __future__ import annotations

from enum import Enum
from typing import List

from pydantic import BaseModel, Field


class ChangeCategory(str, Enum):
    """Impact of a configuration change, from least to most disruptive."""

    IN_PLACE = "in-place"
    REBOOT_REQUIRED = "reboot-required"
    RECREATE_REQUIRED = "recreate-required"


class Change(BaseModel):
    """A single detected configuration change.

    Attributes:
        field: Configuration path that changed ("talos.workers", ".machine.kubelet").
        old_value: Previous value, empty for additions.
        new_value: New value, empty for removals.
        category: Impact classification.
        reason: Why the change has its category, or what was done for it.
    """

    field: str
    old_value: str = ""
    new_value: str = ""
    category: ChangeCategory
    reason: str = ""

    class Config:
        frozen = True


class UpdateOptions(BaseModel):
    """Caller choices for Update.

    Attributes:
        force: Proceed even when recreate-required changes are present.
        dry_run: Only compute the diff.
        rolling_reboot: Attempt reboot-required changes one node at a time.
    """

    force: bool = False
    dry_run: bool = False
    rolling_reboot: bool = False


class UpdateResult(BaseModel):
    in_place_changes: List[Change] = Field(default_factory=list)
    reboot_required: List[Change] = Field(default_factory=list)
    recreate_required: List[Change] = Field(default_factory=list)
    applied_changes: List[Change] = Field(default_factory=list)
    failed_changes: List[Change] = Field(default_factory=list)
    reboots_performed: int = 0
    cluster_recreated: bool = False

    def add(self, change: Change) -> None:
        """File a detected change under the list for its category."""
        if change.category is ChangeCategory.IN_PLACE:
            self.in_place_changes.append(change)
        elif change.category is ChangeCategory.REBOOT_REQUIRED:
            self.reboot_required.append(change)
        else:
            self.recreate_required.append(change)

    def has_in_place_changes(self) -> bool:
        return bool(self.in_place_changes)

    def has_reboot_required(self) -> bool:
        return bool(self.reboot_required)

    def has_recreate_required(self) -> bool:
        return bool(self.recreate_required)

    def needs_user_confirmation(self) -> bool:
        """In-place changes apply silently; reboot or recreate changes need consent."""
        return self.has_reboot_required() or self.has_recreate_required()

    def total_changes(self) -> int:
        return (
            len(self.in_place_changes)
            + len(self.reboot_required)
            + len(self.recreate_required)
        )

    def all_changes(self) -> List[Change]:
        return [*self.in_place_changes, *self.reboot_required, *self.recreate_required]

    def seeded_copy(self) -> UpdateResult:
        """Return a new result with this diff's classification and empty outcome lists."""
        return UpdateResult(
            in_place_changes=list(self.in_place_changes),
            reboot_required=list(self.reboot_required),
            recreate_required=list(self.recreate_required),
        )
