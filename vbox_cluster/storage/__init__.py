"""Filesystem, permission and external command helpers.

Main Functions:
    - run_checked_command(): Run command and check result
    - run_to_file(): Run command with binary stdout redirected to a file
    - require_tools(): Fail fast when external tools are missing
    - writable(): Scoped write access on a read-only path
    - remove_tree(): Remove a tree that contains read-only entries
"""

from .commands import find_tool, require_tools, run_checked_command, run_to_file
from .permissions import remove_tree, writable, writable_paths

__all__ = [
    "find_tool",
    "remove_tree",
    "require_tools",
    "run_checked_command",
    "run_to_file",
    "writable",
    "writable_paths",
]
