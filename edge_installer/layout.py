from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

from .settings import InstallerSettings

RUNTIME_EXE = "iotedged.exe"
ENGINE_EXE = "dockerd.exe"
CONFIG_FILE = "config.yaml"
ENDPOINT_DIRS = ("mgmt", "workload")


class Layout(enum.Enum):
    NONE = "none"
    CURRENT = "current"
    LEGACY = "legacy"


@dataclass(frozen=True)
class Generation:
    """Paths owned by one installer generation."""

    install_dir: Path
    engine_install_dir: Path
    engine_data_root: Path

    @property
    def runtime_binary(self) -> Path:
        return self.install_dir / RUNTIME_EXE

    @property
    def engine_binary(self) -> Path:
        return self.engine_install_dir / ENGINE_EXE


@dataclass(frozen=True)
class InstallationLayout:
    """Fixed paths and service names of both layout generations.

    Current installs binaries under Program Files. Legacy installs kept the
    runtime binaries next to the config in the data dir, hardcoded to
    ``C:\\ProgramData`` (static) in the oldest releases.
    """

    data_dir: Path
    current: Generation
    legacy: Generation
    legacy_static_install_dir: Path
    runtime_service: str
    engine_service: str
    package_name: str

    @property
    def config_path(self) -> Path:
        return self.data_dir / CONFIG_FILE

    @property
    def legacy_static_config_path(self) -> Path:
        return self.legacy_static_install_dir / CONFIG_FILE

    @property
    def legacy_runtime_binaries(self) -> Tuple[Path, Path]:
        return (self.legacy.runtime_binary, self.legacy_static_install_dir / RUNTIME_EXE)

    @property
    def endpoint_dirs(self) -> List[Path]:
        return [self.data_dir / name for name in ENDPOINT_DIRS]

    def generation(self, layout: Layout) -> Generation:
        return self.legacy if layout is Layout.LEGACY else self.current

    def search_path_dirs(self) -> List[Path]:
        """Install dirs of the current generation, in the order added to PATH."""
        return [self.current.install_dir, self.current.engine_install_dir]

    def all_search_path_dirs(self) -> List[Path]:
        """Install dirs of every generation, for PATH cleanup."""
        return [
            self.current.install_dir,
            self.current.engine_install_dir,
            self.legacy.install_dir,
            self.legacy.engine_install_dir,
            self.legacy_static_install_dir,
        ]


def build_layout(settings: InstallerSettings) -> InstallationLayout:
    program_files = Path(settings.program_files)
    program_data = Path(settings.program_data)
    static_data = Path(settings.static_program_data)

    data_dir = program_data / "iotedge"
    return InstallationLayout(
        data_dir=data_dir,
        current=Generation(
            install_dir=program_files / "iotedge",
            engine_install_dir=program_files / "iotedge-moby",
            engine_data_root=program_data / "iotedge-moby",
        ),
        legacy=Generation(
            install_dir=data_dir,
            engine_install_dir=program_data / "iotedge-moby",
            engine_data_root=static_data / "iotedge-moby-data",
        ),
        legacy_static_install_dir=static_data / "iotedge",
        runtime_service=settings.runtime_service,
        engine_service=settings.engine_service,
        package_name=settings.package_name,
    )
