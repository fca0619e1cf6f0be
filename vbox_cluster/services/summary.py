"""Run summary appended to the human-readable setup log."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Iterable

from vbox_cluster.domain import NodeSpec
from vbox_cluster.logging import LoggerFactory

log = LoggerFactory.for_system()

SUMMARY_HEADER = "Summary of Created VMs:"


def format_summary(roster: Iterable[NodeSpec]) -> list[str]:
    return [SUMMARY_HEADER, *(node.format_summary() for node in roster)]


def append_summary(
    log_file: Path, roster: Iterable[NodeSpec], now: datetime | None = None
) -> list[str]:
    """Append the summary to log_file, one line per node.

    The file is never truncated; earlier runs stay in it.
    """
    lines = format_summary(roster)
    stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    log_file.parent.mkdir(parents=True, exist_ok=True)
    with log_file.open("a", encoding="utf-8") as handle:
        handle.write(f"{stamp} - VM creation completed successfully.\n")
        for line in lines:
            handle.write(f"{line}\n")
    for line in lines:
        log.info(line)
    log.info(f"Check the log file for details: {log_file}")
    return lines
