"""
Decides whether a process snapshot shows a candidate executable running.

Tier 1: the candidate's full path appears in some process command line.
Tier 2: a process with the same file name whose command line equals the full
path or contains the candidate's directory.

Matching is heuristic. Distinct games often ship the same engine executable
name, so a file name alone is never enough. With basic enumeration there are
no command lines, Tier 2 cannot corroborate, and a running game can be missed.
That false negative is accepted.
"""

from __future__ import annotations

import ntpath
import posixpath
from dataclasses import dataclass
from typing import Iterable, Literal, Optional

from .types import ProcessInfo

MatchTier = Literal["path", "exact", "directory"]


@dataclass(frozen=True)
class Match:
    tier: MatchTier
    process: ProcessInfo


def normalize_path(value: str) -> str:
    return value.strip().replace("\\", "/").lower()


def executable_name(executable_path: str) -> str:
    """Case-normalized basename; handles both separator styles."""
    return ntpath.basename(executable_path.strip()).lower()


def _corroborating_directory(normalized_path: str) -> Optional[str]:
    directory = posixpath.dirname(normalized_path)
    # "", "/" and "c:" / "c:/" would corroborate every process with the same name.
    if not directory.strip("/") or (len(directory.rstrip("/")) == 2 and directory[1] == ":"):
        return None
    return directory.rstrip("/") + "/"


def find_match(executable_path: str, processes: Iterable[ProcessInfo]) -> Optional[Match]:
    """Return the strongest evidence that executable_path is running, if any."""
    target = normalize_path(executable_path)
    if not target:
        return None
    procs = list(processes)

    for p in procs:
        if p.command_line and target in normalize_path(p.command_line):
            return Match("path", p)

    name = executable_name(executable_path)
    directory = _corroborating_directory(target)
    for p in procs:
        if p.name.lower() != name or not p.command_line:
            continue
        cmd = normalize_path(p.command_line)
        if cmd == target:
            return Match("exact", p)
        if directory is not None and directory in cmd:
            return Match("directory", p)

    return None


def is_running(executable_path: str, processes: Iterable[ProcessInfo]) -> bool:
    return find_match(executable_path, processes) is not None
