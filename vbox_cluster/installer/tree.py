"""Extracted installer tree and the record of steps applied to it."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from vbox_cluster.domain import InstallerLayout
from vbox_cluster.storage.exceptions import PipelineOrderError


class Stage(Enum):
    EXTRACTED = "extract"
    ANSWER_INJECTED = "inject-answer"
    BOOT_MENUS_WRITTEN = "write-boot-menus"
    GRUB_MENU_WRITTEN = "write-grub-menu"
    MANIFEST_WRITTEN = "regenerate-manifest"
    REPACKAGED = "repackage"


# Steps that change file contents covered by the manifest.
MUTATING_STAGES = frozenset(
    {Stage.ANSWER_INJECTED, Stage.BOOT_MENUS_WRITTEN, Stage.GRUB_MENU_WRITTEN}
)


@dataclass
class WorkingTree:
    """Exploded filesystem contents of the base image.

    Owned by a single build; never shared between concurrent runs.
    """

    root: Path
    layout: InstallerLayout = field(default_factory=InstallerLayout)
    completed: list[Stage] = field(default_factory=list)

    def path(self, relative: str) -> Path:
        return self.root / relative

    def has_completed(self, stage: Stage) -> bool:
        return stage in self.completed

    def require(self, stage: Stage, step: str) -> None:
        """Raise PipelineOrderError unless stage has completed."""
        if stage not in self.completed:
            raise PipelineOrderError(step, stage.value)

    def mark(self, stage: Stage) -> None:
        # A later mutation makes an earlier manifest stale.
        if stage in MUTATING_STAGES and Stage.MANIFEST_WRITTEN in self.completed:
            self.completed.remove(Stage.MANIFEST_WRITTEN)
        if stage not in self.completed:
            self.completed.append(stage)
