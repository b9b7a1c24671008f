from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable

from .config_doc import container_os_from_text
from .layout import InstallationLayout, Layout
from .lib import hostinfo
from .lib.capabilities import Platform
from .request import ContainerOs
from .settings import InstallerSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HostState:
    runtime_installed: bool
    engine_installed: bool
    layout: Layout
    os_build: int
    is_constrained_os: bool


def _norm(path: object) -> str:
    return str(path).rstrip("\\/").lower()


@dataclass
class HostInspector:
    """Read-only projection of the host; nothing here is cached or persisted."""

    platform: Platform
    layout: InstallationLayout
    settings: InstallerSettings
    os_build: Callable[[], int] = hostinfo.os_build

    def is_runtime_installed(self) -> bool:
        if self.platform.services.is_registered(self.layout.runtime_service):
            return True
        return self._runtime_files_present()

    def is_engine_installed(self) -> bool:
        if self.platform.services.is_registered(self.layout.engine_service):
            return True
        return self.layout.current.engine_install_dir.exists() or self.layout.legacy.engine_binary.exists()

    def _runtime_files_present(self) -> bool:
        candidates: Iterable = (self.layout.current.runtime_binary, *self.layout.legacy_runtime_binaries)
        return any(p.exists() for p in candidates)

    def legacy_indicators(self) -> list[str]:
        found = []
        if self.layout.legacy.engine_data_root.exists():
            found.append(f"legacy engine data root {self.layout.legacy.engine_data_root}")
        for binary in self.layout.legacy_runtime_binaries:
            if binary.exists():
                found.append(f"legacy runtime binary {binary}")
        if self._runtime_files_present() and not self.platform.packages.is_registered():
            found.append("runtime files without a registered package")
        return found

    def detect_layout(self) -> Layout:
        """Legacy wins over Current; leftovers must be removed before Current is trusted."""

        legacy = self.legacy_indicators()
        if legacy:
            logger.info("Legacy layout detected: %s", "; ".join(legacy))
            return Layout.LEGACY
        if self.platform.packages.is_registered():
            return Layout.CURRENT
        return Layout.NONE

    def needs_relocation(self) -> bool:
        static = self.layout.legacy_static_install_dir
        return _norm(static) != _norm(self.layout.legacy.install_dir) and static.exists()

    def read_container_os_from_config(self) -> ContainerOs:
        """Best-effort guess from the persisted config; WINDOWS when in doubt."""

        try:
            text = self.layout.config_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return ContainerOs.WINDOWS
        return container_os_from_text(text)

    def check_os_compatibility(self, container_os: ContainerOs, current_build: int) -> bool:
        if container_os is ContainerOs.LINUX:
            return current_build >= self.settings.min_build_linux
        return current_build in self.settings.windows_builds

    def host_state(self) -> HostState:
        state = HostState(
            runtime_installed=self.is_runtime_installed(),
            engine_installed=self.is_engine_installed(),
            layout=self.detect_layout(),
            os_build=self.os_build(),
            is_constrained_os=self.platform.constrained,
        )
        logger.info(
            "Host state: runtime=%s engine=%s layout=%s build=%d constrained=%s",
            state.runtime_installed,
            state.engine_installed,
            state.layout.value,
            state.os_build,
            state.is_constrained_os,
        )
        return state
