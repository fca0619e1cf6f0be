"""Boot loader menu generation for unattended installs.

Both boot paths of the installer image are rewritten completely rather than
patched:

- isolinux (legacy BIOS): ``isolinux/isolinux.cfg`` and ``isolinux/txt.cfg``
- GRUB (UEFI): ``boot/grub/grub.cfg``

Every menu carries the same kernel command line, including the md5 of the
answer file, so the installer rejects a stale or corrupted preseed instead of
silently falling back to interactive mode.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

CHECKSUM_ARGUMENT = "preseed/file/checksum"
MENU_LABEL = "unattended"
MENU_TITLE = "Unattended install"

_CHECKSUM_PATTERN = re.compile(rf"{re.escape(CHECKSUM_ARGUMENT)}=([0-9a-fA-F]+)")


@dataclass(frozen=True)
class KernelCommandLine:
    """Kernel, initrd and arguments shared by every boot menu."""

    kernel: str  # Absolute path inside the image, e.g. /install.amd/vmlinuz
    initrd: str
    answer_file: str  # Location the installer reads, e.g. /preseed.cfg
    answer_checksum: str
    extra_args: tuple[str, ...] = ("vga=788",)
    console_args: tuple[str, ...] = ("quiet",)

    def arguments(self) -> str:
        """Arguments without the initrd (GRUB passes it separately)."""
        args = [
            *self.extra_args,
            "auto=true",
            "priority=critical",
            f"preseed/file={self.answer_file}",
            f"{CHECKSUM_ARGUMENT}={self.answer_checksum}",
            "---",
            *self.console_args,
        ]
        return " ".join(args)


def render_isolinux_config(cmdline: KernelCommandLine) -> str:
    """Top-level isolinux.cfg: one default entry, no prompt, no timeout."""
    return (
        "# Generated for unattended installation\n"
        "path\n"
        f"default {MENU_LABEL}\n"
        "prompt 0\n"
        "timeout 0\n"
        "\n"
        f"{_isolinux_entry(cmdline)}"
    )


def render_isolinux_menu(cmdline: KernelCommandLine) -> str:
    """txt.cfg, included by the stock menu files: the same single entry."""
    return f"default {MENU_LABEL}\n{_isolinux_entry(cmdline)}"


def _isolinux_entry(cmdline: KernelCommandLine) -> str:
    return (
        f"label {MENU_LABEL}\n"
        f"\tmenu label ^{MENU_TITLE}\n"
        "\tmenu default\n"
        f"\tkernel {cmdline.kernel}\n"
        f"\tappend initrd={cmdline.initrd} {cmdline.arguments()}\n"
    )


def render_grub_config(cmdline: KernelCommandLine) -> str:
    """grub.cfg for the EFI boot path."""
    return (
        "# Generated for unattended installation\n"
        "set default=0\n"
        "set timeout=0\n"
        "set timeout_style=hidden\n"
        "\n"
        f"menuentry '{MENU_TITLE}' {{\n"
        "    set background_color=black\n"
        f"    linux    {cmdline.kernel} {cmdline.arguments()}\n"
        f"    initrd   {cmdline.initrd}\n"
        "}\n"
    )


def parse_checksums(menu_text: str) -> list[str]:
    """All answer file checksums found on kernel command lines."""
    return [match.lower() for match in _CHECKSUM_PATTERN.findall(menu_text)]


def embedded_checksum(menu_text: str) -> Optional[str]:
    """The single checksum in a menu, or None when absent or ambiguous."""
    checksums = set(parse_checksums(menu_text))
    if len(checksums) != 1:
        return None
    return checksums.pop()
