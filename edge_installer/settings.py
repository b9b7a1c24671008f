from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

DEFAULT_PACKAGE_URL = "https://aka.ms/iotedged-windows-latest-msi"
DEFAULT_DPS_ENDPOINT = "https://global.azure-devices-provisioning.net"


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"json", "yaml", "yml"}:
        return ext
    # Default to YAML for unknown extensions.
    return "yaml"


@dataclass(frozen=True)
class InstallerSettings:
    """Installer tunables. Every key is optional; properties supply defaults."""

    raw: Dict[str, Any] = field(default_factory=dict)

    def _section(self, name: str) -> Dict[str, Any]:
        return self.raw.get(name) or {}

    # Paths

    @property
    def program_files(self) -> str:
        return str(self._section("paths").get("program_files") or os.environ.get("ProgramFiles") or r"C:\Program Files")

    @property
    def program_data(self) -> str:
        return str(self._section("paths").get("program_data") or os.environ.get("ProgramData") or r"C:\ProgramData")

    @property
    def static_program_data(self) -> str:
        return str(self._section("paths").get("static_program_data") or r"C:\ProgramData")

    # Services / package

    @property
    def runtime_service(self) -> str:
        return str(self._section("services").get("runtime") or "iotedge")

    @property
    def engine_service(self) -> str:
        return str(self._section("services").get("engine") or "iotedge-moby")

    @property
    def event_provider(self) -> str:
        return str(self._section("services").get("event_provider") or "iotedged")

    @property
    def package_name(self) -> str:
        return str(self._section("package").get("name") or "Azure IoT Edge")

    @property
    def package_url(self) -> str:
        return str(self._section("package").get("url") or DEFAULT_PACKAGE_URL)

    @property
    def package_file_name(self) -> str:
        return str(self._section("package").get("file_name") or "Microsoft-Azure-IoTEdge.msi")

    @property
    def package_cache_glob(self) -> str:
        return str(self._section("package").get("cache_glob") or "Microsoft-Azure-IoTEdge*.msi")

    @property
    def constrained_package_glob(self) -> str:
        return str(self._section("package").get("constrained_glob") or "Microsoft-Azure-IoTEdge*.cab")

    # Retry / timing

    @property
    def retry_max_attempts(self) -> int:
        return int(self._section("retry").get("max_attempts") or 5)

    @property
    def retry_base_delay(self) -> float:
        value = self._section("retry").get("base_delay")
        return float(1.0 if value is None else value)

    @property
    def service_stop_wait(self) -> float:
        value = self.raw.get("service_stop_wait")
        return float(7 if value is None else value)

    # OS compatibility

    @property
    def min_build_linux(self) -> int:
        return int(self._section("compat").get("min_build_linux") or 14393)

    @property
    def windows_builds(self) -> List[int]:
        builds = self._section("compat").get("windows_builds") or [17763]
        return [int(b) for b in builds]

    @property
    def dps_global_endpoint(self) -> str:
        return str(self.raw.get("dps_global_endpoint") or DEFAULT_DPS_ENDPOINT)

    @property
    def log_path(self) -> str:
        return str(self.raw.get("log_path") or str(Path(self.program_data) / "iotedge-installer.log"))


def load_settings(path: Optional[str]) -> InstallerSettings:
    """Load settings from a YAML or JSON file; no path means all defaults."""

    if not path:
        return InstallerSettings()

    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(path)

    if _detect_format(p) == "json":
        raw = json.loads(p.read_text(encoding="utf-8"))
    else:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Settings file must contain a mapping/object, got {type(raw)}")

    return InstallerSettings(raw=raw)
