from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Protocol

from .command import CommandRunner

logger = logging.getLogger(__name__)

ENV_KEY = r"HKLM\SYSTEM\CurrentControlSet\Control\Session Manager\Environment"
HOST_VARIABLE = "IOTEDGE_HOST"
PATH_SEP = ";"


def _norm(entry: str) -> str:
    return entry.strip().rstrip("\\/").lower()


def with_dirs(path_value: str, dirs: Iterable[Path | str], sep: str = PATH_SEP) -> str:
    """Append every dir not already present (case-insensitive) to a search path."""

    entries: List[str] = [e for e in path_value.split(sep) if e.strip()]
    present = {_norm(e) for e in entries}
    for d in dirs:
        if _norm(str(d)) not in present:
            entries.append(str(d))
            present.add(_norm(str(d)))
    return sep.join(entries)


def without_dirs(path_value: str, dirs: Iterable[Path | str], sep: str = PATH_SEP) -> str:
    """Drop every entry matching one of ``dirs`` from a search path."""

    drop = {_norm(str(d)) for d in dirs}
    return sep.join(e for e in path_value.split(sep) if e.strip() and _norm(e) not in drop)


class MachineEnvironment(Protocol):
    """Persisted, machine-wide environment variables."""

    def get(self, name: str) -> Optional[str]:
        ...

    def set(self, name: str, value: str) -> None:
        ...

    def remove(self, name: str) -> None:
        ...


@dataclass
class RegistryEnvironment:
    runner: CommandRunner

    def get(self, name: str) -> Optional[str]:
        r = self.runner.invoke_native(["reg.exe", "query", ENV_KEY, "/v", name], allow_failure=True, query=True)
        if r.returncode != 0:
            return None
        # "    Path    REG_EXPAND_SZ    C:\Windows;..."
        for line in r.stdout.splitlines():
            parts = line.strip().split(None, 2)
            if len(parts) == 3 and parts[0].lower() == name.lower() and parts[1].startswith("REG_"):
                return parts[2]
        return None

    def set(self, name: str, value: str) -> None:
        self.runner.invoke_native(
            ["reg.exe", "add", ENV_KEY, "/v", name, "/t", "REG_EXPAND_SZ", "/d", value, "/f"],
            backoff=True,
        )

    def remove(self, name: str) -> None:
        if self.get(name) is None:
            return
        self.runner.invoke_native(["reg.exe", "delete", ENV_KEY, "/v", name, "/f"], backoff=True)


def add_to_search_path(environment: MachineEnvironment, dirs: Iterable[Path]) -> None:
    """Extend the persisted and the process-visible PATH."""

    dirs = list(dirs)
    persisted = environment.get("Path") or ""
    updated = with_dirs(persisted, dirs)
    if updated != persisted:
        environment.set("Path", updated)
    os.environ["PATH"] = with_dirs(os.environ.get("PATH", ""), dirs, os.pathsep)
    logger.info("Search path includes %s", ", ".join(str(d) for d in dirs))


def remove_from_search_path(environment: MachineEnvironment, dirs: Iterable[Path]) -> None:
    dirs = list(dirs)
    persisted = environment.get("Path") or ""
    updated = without_dirs(persisted, dirs)
    if updated != persisted:
        environment.set("Path", updated)
    os.environ["PATH"] = without_dirs(os.environ.get("PATH", ""), dirs, os.pathsep)
    logger.info("Removed installer dirs from the search path")
