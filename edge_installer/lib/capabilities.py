"""Host capabilities consumed by the lifecycle operations.

Every OS interaction goes through one of the small interfaces below. A full
Windows install and a constrained IoT Core device differ only in which
implementations ``select_platform()`` wires together, so callers never branch
on the OS edition themselves.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Protocol, Sequence

from ..errors import InstallerError
from .command import CommandRunner
from .env import MachineEnvironment, RegistryEnvironment

logger = logging.getLogger(__name__)

# msiexec / dism exit codes
REBOOT_REQUIRED = 3010
REBOOT_INITIATED = 1641
# sc.exe exit codes
SERVICE_DOES_NOT_EXIST = 1060
SERVICE_ALREADY_RUNNING = 1056
SERVICE_NOT_ACTIVE = 1062

AUTHENTICATED_USERS_SID = "*S-1-5-11"
INSTALLED_PACKAGES_KEY = r"HKLM\SOFTWARE\Microsoft\Windows NT\CurrentVersion\Update\TargetingInfo\Installed"


def _powershell(script: str) -> List[str]:
    return ["powershell.exe", "-NoProfile", "-NonInteractive", "-Command", script]


def _ps_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


# Interfaces


class PackageManager(Protocol):
    def is_registered(self) -> bool:
        ...

    def install(self, artifact: Path) -> bool:
        """Install the package; return True when a reboot is pending."""
        ...

    def uninstall(self) -> bool:
        ...


class ServiceManager(Protocol):
    def is_registered(self, name: str) -> bool:
        ...

    def is_running(self, name: str) -> bool:
        ...

    def start(self, name: str) -> None:
        ...

    def stop(self, name: str) -> None:
        ...

    def disable(self, name: str) -> None:
        ...

    def delete(self, name: str) -> None:
        ...

    def set_environment(self, name: str, env: Mapping[str, str]) -> None:
        ...


class FirewallStore(Protocol):
    def add_rule(self, name: str, program: Path, ports: str) -> None:
        ...

    def remove_rule(self, name: str) -> None:
        ...


class FeatureManager(Protocol):
    def ensure_containers_feature(self) -> bool:
        """Enable the Containers OS feature; return True when a restart is needed."""
        ...


class HostControl(Protocol):
    def reboot(self) -> None:
        ...

    def grant_write(self, path: Path) -> None:
        ...

    def nat_address(self) -> str:
        ...


@dataclass(frozen=True)
class LogEntry:
    timestamp: datetime
    message: str


class EventLog(Protocol):
    def entries(self, provider: str, since: datetime) -> List[LogEntry]:
        ...


@dataclass
class Platform:
    name: str
    packages: PackageManager
    services: ServiceManager
    firewall: FirewallStore
    features: FeatureManager
    host: HostControl
    environment: MachineEnvironment
    events: EventLog
    constrained: bool = False


# Full Windows


@dataclass
class MsiPackageManager:
    runner: CommandRunner
    package_name: str

    def is_registered(self) -> bool:
        script = f"if (Get-Package -Name {_ps_quote(self.package_name)} -ErrorAction SilentlyContinue) {{ exit 0 }} else {{ exit 1 }}"
        return self.runner.invoke_native(_powershell(script), allow_failure=True, query=True).returncode == 0

    def install(self, artifact: Path) -> bool:
        r = self.runner.invoke_native(
            ["msiexec.exe", "/i", str(artifact), "/quiet", "/norestart"],
            backoff=True,
            success_codes=(0, REBOOT_REQUIRED, REBOOT_INITIATED),
        )
        return r.returncode != 0

    def uninstall(self) -> bool:
        script = f"Get-Package -Name {_ps_quote(self.package_name)} | Uninstall-Package -Force"
        self.runner.invoke_native(_powershell(script), backoff=True)
        return False


@dataclass
class ScServiceManager:
    runner: CommandRunner

    def _query(self, name: str):
        return self.runner.invoke_native(["sc.exe", "query", name], allow_failure=True, query=True)

    def is_registered(self, name: str) -> bool:
        return self._query(name).returncode == 0

    def is_running(self, name: str) -> bool:
        r = self._query(name)
        return r.returncode == 0 and "RUNNING" in r.stdout

    def start(self, name: str) -> None:
        self.runner.invoke_native(["sc.exe", "start", name], backoff=True, success_codes=(0, SERVICE_ALREADY_RUNNING))

    def stop(self, name: str) -> None:
        self.runner.invoke_native(
            ["sc.exe", "stop", name],
            success_codes=(0, SERVICE_NOT_ACTIVE, SERVICE_DOES_NOT_EXIST),
        )

    def disable(self, name: str) -> None:
        self.runner.invoke_native(["sc.exe", "config", name, "start=", "disabled"], backoff=True)

    def delete(self, name: str) -> None:
        self.runner.invoke_native(["sc.exe", "delete", name], success_codes=(0, SERVICE_DOES_NOT_EXIST))

    def set_environment(self, name: str, env: Mapping[str, str]) -> None:
        value = r"\0".join(f"{k}={v}" for k, v in env.items())
        key = rf"HKLM\SYSTEM\CurrentControlSet\Services\{name}"
        self.runner.invoke_native(
            ["reg.exe", "add", key, "/v", "Environment", "/t", "REG_MULTI_SZ", "/d", value, "/f"],
            backoff=True,
        )


@dataclass
class NetshFirewall:
    runner: CommandRunner

    def add_rule(self, name: str, program: Path, ports: str) -> None:
        self.remove_rule(name)
        self.runner.invoke_native(
            [
                "netsh.exe",
                "advfirewall",
                "firewall",
                "add",
                "rule",
                f"name={name}",
                "dir=in",
                "action=allow",
                "protocol=TCP",
                f"localport={ports}",
                f"program={program}",
                "profile=any",
            ],
            backoff=True,
        )

    def remove_rule(self, name: str) -> None:
        # netsh exits 1 when no rule matches; absence is the desired state.
        self.runner.invoke_native(
            ["netsh.exe", "advfirewall", "firewall", "delete", "rule", f"name={name}"],
            allow_failure=True,
        )


@dataclass
class DismFeatureManager:
    runner: CommandRunner
    feature: str = "Containers"

    def ensure_containers_feature(self) -> bool:
        info = self.runner.invoke_native(
            ["dism.exe", "/online", "/get-featureinfo", f"/featurename:{self.feature}"],
            query=True,
        )
        if "State : Enabled" in info.stdout:
            logger.info("OS feature %s already enabled", self.feature)
            return False
        r = self.runner.invoke_native(
            ["dism.exe", "/online", "/enable-feature", f"/featurename:{self.feature}", "/all", "/norestart"],
            backoff=True,
            success_codes=(0, REBOOT_REQUIRED),
        )
        return r.returncode == REBOOT_REQUIRED


@dataclass
class WindowsHostControl:
    runner: CommandRunner
    nat_interface: str = "vEthernet (DockerNAT)"

    def reboot(self) -> None:
        self.runner.invoke_native(["shutdown.exe", "/r", "/t", "0"])

    def grant_write(self, path: Path) -> None:
        self.runner.invoke_native(["icacls.exe", str(path), "/grant", f"{AUTHENTICATED_USERS_SID}:(OI)(CI)W"], backoff=True)

    def nat_address(self) -> str:
        script = (
            f"(Get-NetIPAddress -AddressFamily IPv4 -InterfaceAlias {_ps_quote(self.nat_interface)}"
            " -ErrorAction Stop).IPAddress"
        )
        return self.runner.invoke_native(_powershell(script), backoff=True, query=True).stdout.strip()


@dataclass
class WinEventLog:
    runner: CommandRunner

    def entries(self, provider: str, since: datetime) -> List[LogEntry]:
        start = since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        script = (
            "Get-WinEvent -ErrorAction SilentlyContinue -FilterHashtable "
            f"@{{ProviderName={_ps_quote(provider)};LogName='application';StartTime=[datetime]{_ps_quote(start)}}}"
            " | Select-Object @{n='TimeCreated';e={$_.TimeCreated.ToUniversalTime().ToString('yyyy-MM-ddTHH:mm:ss.fffZ')}},"
            " Message | ConvertTo-Json -Compress"
        )
        r = self.runner.invoke_native(_powershell(script), query=True)
        return parse_event_json(r.stdout)


def parse_event_json(text: str) -> List[LogEntry]:
    """Parse ConvertTo-Json output (one object or a list) into ascending entries."""

    text = text.strip()
    if not text:
        return []
    try:
        data = json.loads(text)
        records: Sequence[Dict[str, str]] = [data] if isinstance(data, dict) else list(data)
        out = [
            LogEntry(
                timestamp=datetime.strptime(rec["TimeCreated"], "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc),
                message=str(rec.get("Message") or "").strip(),
            )
            for rec in records
        ]
    except (ValueError, KeyError, TypeError) as e:
        raise InstallerError(f"Unreadable event log output: {e}") from e
    return sorted(out, key=lambda e: e.timestamp)


# IoT Core


@dataclass
class StagedPackageManager:
    """IoT Core packages are staged as .cab updates and committed by a reboot."""

    runner: CommandRunner
    package_key: str

    def is_registered(self) -> bool:
        key = rf"{INSTALLED_PACKAGES_KEY}\{self.package_key}"
        r = self.runner.invoke_native(["reg.exe", "query", key], allow_failure=True, query=True)
        return r.returncode == 0

    def install(self, artifact: Path) -> bool:
        self.runner.invoke_native(["ApplyUpdate.exe", "-clear"], allow_failure=True)
        self.runner.invoke_native(["ApplyUpdate.exe", "-stage", str(artifact)], backoff=True)
        self.runner.invoke_native(["ApplyUpdate.exe", "-commit"], backoff=True)
        return True

    def uninstall(self) -> bool:
        # Staged packages cannot be removed; services and files are cleaned up directly.
        logger.info("Package %s is part of the OS image; removing its files instead", self.package_key)
        return False


@dataclass
class BuiltinFeatureManager:
    def ensure_containers_feature(self) -> bool:
        return False


def select_platform(
    runner: CommandRunner,
    *,
    constrained: bool,
    package_name: str,
    package_key: str = "Microsoft-Azure-IoTEdge",
) -> Platform:
    """Wire the capability set for this host once, at startup."""

    packages: PackageManager
    features: FeatureManager
    if constrained:
        packages = StagedPackageManager(runner, package_key=package_key)
        features = BuiltinFeatureManager()
    else:
        packages = MsiPackageManager(runner, package_name=package_name)
        features = DismFeatureManager(runner)

    return Platform(
        name="iotcore" if constrained else "windows",
        packages=packages,
        services=ScServiceManager(runner),
        firewall=NetshFirewall(runner),
        features=features,
        host=WindowsHostControl(runner),
        environment=RegistryEnvironment(runner),
        events=WinEventLog(runner),
        constrained=constrained,
    )
