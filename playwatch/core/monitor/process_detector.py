"""
Process table enumeration.

Enumerators are tried in order: rich ones expose a command line or executable
path, the basic one only process names. The composite source never raises and
reports total failure as an unavailable snapshot instead of an empty list.
"""

from __future__ import annotations

import csv
import io
import logging
import os
import re
import subprocess
import sys
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import psutil

from .types import ProcessInfo, ProcessSnapshot, SnapshotSourceKind

log = logging.getLogger(__name__)

_PS_LINE = re.compile(r"(\d+)\s+(\S+)\s+(.*)")


class ProcessEnumerator(ABC):
    """One way of listing processes. May raise; the composite source catches."""

    kind: SnapshotSourceKind = "rich"

    @abstractmethod
    def enumerate(self) -> list[ProcessInfo]:
        ...

    @property
    def label(self) -> str:
        return type(self).__name__


class PsutilRichEnumerator(ProcessEnumerator):
    """psutil with command line and executable path."""

    kind: SnapshotSourceKind = "rich"

    def enumerate(self) -> list[ProcessInfo]:
        procs: list[ProcessInfo] = []
        for p in psutil.process_iter(attrs=["pid", "name", "exe", "cmdline"]):
            try:
                name = p.info.get("name")
                if not name:
                    continue
                cmdline = p.info.get("cmdline") or []
                exe = p.info.get("exe") or ""
                command_line = " ".join(cmdline) if cmdline else exe
                procs.append(ProcessInfo(pid=int(p.info["pid"]), name=str(name).lower(), command_line=command_line or None))
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

        if not any(p.command_line for p in procs):
            # Sandboxed or unprivileged: nothing better than names came back.
            raise RuntimeError("psutil returned no command lines")
        return procs


class NativeCommandEnumerator(ProcessEnumerator):
    """Shells out to the platform's process listing command."""

    kind: SnapshotSourceKind = "rich"

    def __init__(self, platform: Optional[str] = None, timeout_s: float = 3.0) -> None:
        self._platform = platform or sys.platform
        self._timeout_s = timeout_s

    @property
    def label(self) -> str:
        return f"NativeCommandEnumerator[{self._platform}]"

    def command(self) -> list[str]:
        if self._platform == "win32":
            return [
                "powershell",
                "-NoProfile",
                "-Command",
                "Get-Process | Select-Object ProcessName, Id, Path | ConvertTo-Csv -NoTypeInformation",
            ]
        if self._platform == "darwin":
            return ["ps", "-eo", "pid,comm,args"]
        return ["ps", "-eo", "pid,comm,cmd", "--no-headers"]

    def enumerate(self) -> list[ProcessInfo]:
        result = subprocess.run(
            self.command(),
            capture_output=True,
            text=True,
            timeout=self._timeout_s,
            creationflags=subprocess.CREATE_NO_WINDOW if hasattr(subprocess, "CREATE_NO_WINDOW") else 0,
        )
        if result.returncode != 0:
            raise RuntimeError(f"{self.command()[0]} exited with {result.returncode}: {result.stderr.strip()}")

        if self._platform == "win32":
            procs = parse_powershell_csv(result.stdout)
        else:
            procs = parse_ps_output(result.stdout, skip_header=self._platform == "darwin")
        if not procs:
            raise RuntimeError(f"{self.command()[0]} returned no processes")
        return procs


class PsutilBasicEnumerator(ProcessEnumerator):
    """Process names only."""

    kind: SnapshotSourceKind = "basic"

    def enumerate(self) -> list[ProcessInfo]:
        procs: list[ProcessInfo] = []
        for p in psutil.process_iter(attrs=["pid", "name"]):
            try:
                n = p.info.get("name")
                if n:
                    procs.append(ProcessInfo(pid=int(p.info["pid"]), name=str(n).lower()))
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return procs


def parse_powershell_csv(text: str) -> list[ProcessInfo]:
    """Parse `Get-Process | Select-Object ProcessName, Id, Path | ConvertTo-Csv` output.

    Processes without a path (system and protected processes) are dropped.
    """
    procs: list[ProcessInfo] = []
    for row in csv.DictReader(io.StringIO(text.strip())):
        name = (row.get("ProcessName") or "").strip().lower()
        path = (row.get("Path") or "").strip()
        try:
            pid = int(row.get("Id") or "")
        except ValueError:
            continue
        if not name or not path:
            continue
        procs.append(ProcessInfo(pid=pid, name=name + ".exe", command_line=path))
    return procs


def parse_ps_output(text: str, skip_header: bool = False) -> list[ProcessInfo]:
    """Parse `ps -eo pid,comm,args` style output."""
    lines = text.strip().splitlines()
    if skip_header and lines:
        lines = lines[1:]

    procs: list[ProcessInfo] = []
    for line in lines:
        m = _PS_LINE.match(line.strip())
        if not m:
            continue
        pid = int(m.group(1))
        if pid <= 0:
            continue
        name = os.path.basename(m.group(2)).lower()
        procs.append(ProcessInfo(pid=pid, name=name, command_line=m.group(3).strip() or None))
    return procs


class FallbackSnapshotSource:
    """Tries each enumerator in order and returns the first that succeeds."""

    def __init__(self, enumerators: Sequence[ProcessEnumerator]) -> None:
        if not enumerators:
            raise ValueError("at least one enumerator is required")
        self._enumerators = list(enumerators)
        self._last_label: Optional[str] = None

    @property
    def enumerators(self) -> list[ProcessEnumerator]:
        return list(self._enumerators)

    def snapshot(self) -> ProcessSnapshot:
        errors: list[str] = []
        for enumerator in self._enumerators:
            try:
                procs = enumerator.enumerate()
            except Exception as e:
                log.warning("Process enumeration via %s failed: %s", enumerator.label, e)
                errors.append(f"{enumerator.label}: {e}")
                continue

            if enumerator.label != self._last_label:
                log.info("Process enumeration using %s (%s)", enumerator.label, enumerator.kind)
                self._last_label = enumerator.label
            with_cmd = sum(1 for p in procs if p.command_line)
            log.debug("%s: %d processes, %d with command line", enumerator.label, len(procs), with_cmd)
            return ProcessSnapshot(source=enumerator.kind, processes=tuple(procs))

        self._last_label = None
        return ProcessSnapshot.unavailable("; ".join(errors))


def default_snapshot_source(platform: Optional[str] = None) -> FallbackSnapshotSource:
    """Select platform variants once, at startup."""
    return FallbackSnapshotSource([
        PsutilRichEnumerator(),
        NativeCommandEnumerator(platform=platform),
        PsutilBasicEnumerator(),
    ])
