"""Unattended installer image pipeline.

The answer file generator, the initrd (newc cpio) codec, the boot menu
writers, manifest regeneration, repackaging and the checksum cross-checks.
"""

from .answer_file import (
    AnswerFileParameters,
    answer_checksum,
    render_answer_file,
    write_answer_file,
)
from .builder import ImageBuilder
from .repackage import GENISOIMAGE, PACKAGERS, XORRISO
from .tree import Stage, WorkingTree


__all__ = [
    "AnswerFileParameters",
    "GENISOIMAGE",
    "ImageBuilder",
    "PACKAGERS",
    "Stage",
    "WorkingTree",
    "XORRISO",
    "answer_checksum",
    "render_answer_file",
    "write_answer_file",
]
