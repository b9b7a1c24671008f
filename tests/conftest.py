"""
Shared test fixtures: an in-memory host that acts on tmp_path.
"""

import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import pytest

from edge_installer.errors import ExternalCommandFailed
from edge_installer.layout import ENGINE_EXE, RUNTIME_EXE, InstallationLayout, build_layout
from edge_installer.lib.capabilities import LogEntry, Platform
from edge_installer.lib.command import CmdResult, CommandRunner
from edge_installer.lib.engine import AGENT_CONTAINER, OWNER_VALUE
from edge_installer.lib.env import HOST_VARIABLE
from edge_installer.lib.retry import RetryPolicy
from edge_installer.settings import InstallerSettings


class ScriptedExecute:
    """Replays exit codes in order and records every argv it was given."""

    def __init__(self, *results: int, stdout: str = "") -> None:
        self.results = list(results)
        self.stdout = stdout
        self.calls: List[List[str]] = []

    def __call__(self, argv: Sequence[str]) -> CmdResult:
        self.calls.append(list(argv))
        code = self.results.pop(0) if self.results else 0
        return CmdResult(argv=list(argv), returncode=code, stdout=self.stdout, stderr="boom" if code else "")


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def make_runner(sleeps: List[float]) -> Callable[..., CommandRunner]:
    def _make(execute: Optional[Callable[[Sequence[str]], CmdResult]] = None, **kwargs) -> CommandRunner:
        return CommandRunner(
            retry=RetryPolicy(max_attempts=5, base_delay=1.0, sleep=sleeps.append),
            execute=execute or ScriptedExecute(),
            **kwargs,
        )

    return _make


# Fake host


@dataclass
class FakeHost:
    layout: InstallationLayout
    services: Dict[str, Dict] = field(default_factory=dict)
    package_registered: bool = False
    firewall: Dict[str, str] = field(default_factory=dict)
    machine_env: Dict[str, str] = field(default_factory=dict)
    granted: List[Path] = field(default_factory=list)
    installed_artifacts: List[Path] = field(default_factory=list)
    reboots: int = 0
    feature_restart: bool = False
    feature_error: bool = False
    install_reboot: bool = False
    nat: str = "10.0.75.1"
    events: List[LogEntry] = field(default_factory=list)
    failing: set = field(default_factory=set)
    stopped: List[str] = field(default_factory=list)

    def register(self, name: str, running: bool = False) -> None:
        self.services[name] = {"running": running, "disabled": False, "env": {}}

    def check(self, action: str, name: str) -> None:
        if (action, name) in self.failing:
            raise ExternalCommandFailed(["sc.exe", action, name], 1061, "service cannot accept control messages")


class FakePackages:
    def __init__(self, host: FakeHost) -> None:
        self.host = host

    def is_registered(self) -> bool:
        return self.host.package_registered

    def install(self, artifact: Path) -> bool:
        assert artifact.exists(), artifact
        layout = self.host.layout
        layout.current.install_dir.mkdir(parents=True, exist_ok=True)
        (layout.current.install_dir / RUNTIME_EXE).write_text("runtime")
        layout.current.engine_install_dir.mkdir(parents=True, exist_ok=True)
        (layout.current.engine_install_dir / ENGINE_EXE).write_text("engine")
        self.host.register(layout.runtime_service)
        self.host.register(layout.engine_service, running=True)
        self.host.package_registered = True
        self.host.installed_artifacts.append(artifact)
        return self.host.install_reboot

    def uninstall(self) -> bool:
        layout = self.host.layout
        shutil.rmtree(layout.current.install_dir, ignore_errors=True)
        shutil.rmtree(layout.current.engine_install_dir, ignore_errors=True)
        self.host.services.pop(layout.runtime_service, None)
        self.host.services.pop(layout.engine_service, None)
        self.host.package_registered = False
        return False


class FakeServices:
    def __init__(self, host: FakeHost) -> None:
        self.host = host

    def _get(self, name: str) -> Dict:
        if name not in self.host.services:
            raise ExternalCommandFailed(["sc.exe", "query", name], 1060, "service does not exist")
        return self.host.services[name]

    def is_registered(self, name: str) -> bool:
        return name in self.host.services

    def is_running(self, name: str) -> bool:
        return self.is_registered(name) and self.host.services[name]["running"]

    def start(self, name: str) -> None:
        self._get(name)["running"] = True

    def stop(self, name: str) -> None:
        self.host.check("stop", name)
        self.host.stopped.append(name)
        if name in self.host.services:
            self.host.services[name]["running"] = False

    def disable(self, name: str) -> None:
        self.host.check("disable", name)
        self._get(name)["disabled"] = True

    def delete(self, name: str) -> None:
        self.host.services.pop(name, None)

    def set_environment(self, name: str, env) -> None:
        self._get(name)["env"] = dict(env)


class FakeFirewall:
    def __init__(self, host: FakeHost) -> None:
        self.host = host

    def add_rule(self, name: str, program: Path, ports: str) -> None:
        self.host.firewall[name] = ports

    def remove_rule(self, name: str) -> None:
        self.host.firewall.pop(name, None)


class FakeFeatures:
    def __init__(self, host: FakeHost) -> None:
        self.host = host

    def ensure_containers_feature(self) -> bool:
        if self.host.feature_error:
            raise ExternalCommandFailed(["dism.exe"], 87, "feature unavailable")
        return self.host.feature_restart


class FakeHostControl:
    def __init__(self, host: FakeHost) -> None:
        self.host = host

    def reboot(self) -> None:
        self.host.reboots += 1

    def grant_write(self, path: Path) -> None:
        self.host.granted.append(path)

    def nat_address(self) -> str:
        return self.host.nat


class FakeEnvironment:
    def __init__(self, host: FakeHost) -> None:
        self.host = host

    def get(self, name: str) -> Optional[str]:
        return self.host.machine_env.get(name)

    def set(self, name: str, value: str) -> None:
        self.host.machine_env[name] = value

    def remove(self, name: str) -> None:
        self.host.machine_env.pop(name, None)


class FakeEvents:
    def __init__(self, host: FakeHost) -> None:
        self.host = host

    def entries(self, provider: str, since: datetime) -> List[LogEntry]:
        return [e for e in self.host.events if e.timestamp >= since]


class FakeEngine:
    """Containers keyed by id: (name, owner label)."""

    def __init__(self) -> None:
        self.containers: Dict[str, tuple] = {}
        self.images: List[str] = []
        self.removed: List[str] = []
        self.removed_images: List[str] = []
        self.fail_on: set = set()
        self.inspect_fail_on: set = set()

    def list_containers(self) -> List[str]:
        return list(self.containers)

    def container_name(self, container_id: str) -> str:
        if container_id in self.inspect_fail_on:
            raise ExternalCommandFailed(["docker", "inspect", container_id], 1, "No such object")
        return self.containers[container_id][0]

    def owner(self, container_id: str) -> str:
        return self.containers[container_id][1]

    def remove_container(self, container_id: str) -> None:
        if container_id in self.fail_on:
            raise ExternalCommandFailed(["docker", "rm", container_id], 1, "device busy")
        self.containers.pop(container_id)
        self.removed.append(container_id)

    def list_images(self) -> List[str]:
        return list(self.images)

    def remove_image(self, image_id: str) -> None:
        self.images.remove(image_id)
        self.removed_images.append(image_id)

    def seed(self) -> None:
        self.containers = {
            "a" * 64: ("tempSensor", OWNER_VALUE),
            "b" * 64: (AGENT_CONTAINER, OWNER_VALUE),
            "c" * 64: ("unrelated", ""),
        }
        self.images = ["sha256:1", "sha256:2"]


@pytest.fixture
def settings(tmp_path: Path) -> InstallerSettings:
    return InstallerSettings(
        raw={
            "paths": {
                "program_files": str(tmp_path / "pf"),
                "program_data": str(tmp_path / "pd"),
                "static_program_data": str(tmp_path / "static"),
            },
            "service_stop_wait": 0,
        }
    )


@pytest.fixture
def layout(settings: InstallerSettings) -> InstallationLayout:
    return build_layout(settings)


@pytest.fixture
def host(layout: InstallationLayout) -> FakeHost:
    return FakeHost(layout=layout)


@pytest.fixture
def platform(host: FakeHost) -> Platform:
    return Platform(
        name="fake",
        packages=FakePackages(host),
        services=FakeServices(host),
        firewall=FakeFirewall(host),
        features=FakeFeatures(host),
        host=FakeHostControl(host),
        environment=FakeEnvironment(host),
        events=FakeEvents(host),
    )


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture(autouse=True)
def isolated_environ(monkeypatch):
    """Lifecycle steps touch the process PATH and IOTEDGE_HOST."""
    monkeypatch.setenv("PATH", "/usr/bin")
    monkeypatch.setenv(HOST_VARIABLE, "unset")
    monkeypatch.delenv(HOST_VARIABLE)


@pytest.fixture
def scripted():
    return ScriptedExecute
