"""External command execution helpers."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Iterable, Optional, Sequence

from vbox_cluster.logging import LoggerFactory

from .exceptions import DependencyMissingError

log = LoggerFactory.for_command()


def run_checked_command(
    command: Sequence[str],
    input_text: Optional[str] = None,
    cwd: Optional[Path] = None,
) -> str:
    """Run a command and raise RuntimeError if it fails."""
    log.debug(f"Running command: {' '.join(command)}")
    result = subprocess.run(
        list(command),
        input=input_text,
        text=True,
        capture_output=True,
        cwd=cwd,
    )
    if result.stdout:
        log.bind(tags=["stdout"]).trace(result.stdout.strip())
    if result.returncode != 0:
        stderr = result.stderr.strip()
        stdout = result.stdout.strip()
        message = stderr or stdout or "Command failed"
        raise RuntimeError(f"Command failed ({' '.join(command)}): {message}")
    return result.stdout


def run_to_file(command: Sequence[str], output_path: Path) -> None:
    """Run a command with its binary stdout written to output_path.

    The output file is removed again when the command fails so a truncated
    result is never mistaken for a complete one.
    """
    log.debug(f"Running command: {' '.join(command)} > {output_path}")
    with output_path.open("wb") as handle:
        result = subprocess.run(
            list(command),
            stdout=handle,
            stderr=subprocess.PIPE,
        )
    if result.returncode != 0:
        output_path.unlink(missing_ok=True)
        message = result.stderr.decode(errors="replace").strip() or "Command failed"
        raise RuntimeError(f"Command failed ({' '.join(command)}): {message}")


def find_tool(*names: str) -> Optional[str]:
    """Return the path of the first tool found on PATH."""
    for name in names:
        path = shutil.which(name)
        if path:
            return path
    return None


def require_tools(tools: Iterable[str]) -> None:
    """Check that every tool is on PATH.

    Entries may name alternatives separated by ``|`` (e.g. ``"pigz|gzip"``).

    Raises:
        DependencyMissingError: listing every missing tool
    """
    missing = []
    for entry in tools:
        alternatives = entry.split("|")
        if find_tool(*alternatives) is None:
            missing.append(" or ".join(alternatives))
    if missing:
        raise DependencyMissingError(missing)
    log.info("All required dependencies are installed")
