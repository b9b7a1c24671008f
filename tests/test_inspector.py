"""
Tests for host state inspection: install detection, layout generations, OS compatibility.
"""

import pytest

from edge_installer.inspector import HostInspector
from edge_installer.layout import ENGINE_EXE, RUNTIME_EXE, Layout, build_layout
from edge_installer.lib import hostinfo
from edge_installer.request import ContainerOs
from edge_installer.settings import InstallerSettings


@pytest.fixture
def inspector(platform, layout, settings) -> HostInspector:
    return HostInspector(platform=platform, layout=layout, settings=settings, os_build=lambda: 17763)


def _touch(path):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("x")


class TestInstalled:
    def test_fresh_host(self, inspector):
        state = inspector.host_state()
        assert not state.runtime_installed
        assert not state.engine_installed
        assert state.layout is Layout.NONE
        assert state.os_build == 17763

    def test_runtime_service_registered(self, inspector, host, layout):
        host.register(layout.runtime_service)
        assert inspector.is_runtime_installed()

    def test_runtime_binary_current(self, inspector, layout):
        _touch(layout.current.runtime_binary)
        assert inspector.is_runtime_installed()

    def test_runtime_binary_static_legacy(self, inspector, layout):
        _touch(layout.legacy_static_install_dir / RUNTIME_EXE)
        assert inspector.is_runtime_installed()

    def test_engine_dir(self, inspector, layout):
        layout.current.engine_install_dir.mkdir(parents=True)
        assert inspector.is_engine_installed()

    def test_legacy_engine_binary(self, inspector, layout):
        _touch(layout.legacy.engine_install_dir / ENGINE_EXE)
        assert inspector.is_engine_installed()


class TestLayout:
    def test_current(self, inspector, host, layout):
        host.package_registered = True
        _touch(layout.current.runtime_binary)
        assert inspector.detect_layout() is Layout.CURRENT

    def test_legacy_data_root(self, inspector, layout):
        layout.legacy.engine_data_root.mkdir(parents=True)
        assert inspector.detect_layout() is Layout.LEGACY

    def test_legacy_runtime_binary(self, inspector, layout):
        _touch(layout.legacy.runtime_binary)
        assert inspector.detect_layout() is Layout.LEGACY

    def test_files_without_package_record(self, inspector, layout):
        _touch(layout.current.runtime_binary)
        assert inspector.detect_layout() is Layout.LEGACY

    def test_legacy_wins_over_current(self, inspector, host, layout):
        host.package_registered = True
        _touch(layout.current.runtime_binary)
        layout.legacy.engine_data_root.mkdir(parents=True)
        assert inspector.detect_layout() is Layout.LEGACY


class TestRelocation:
    def test_static_dir_exists(self, inspector, layout):
        layout.legacy_static_install_dir.mkdir(parents=True)
        assert inspector.needs_relocation()

    def test_static_dir_absent(self, inspector):
        assert not inspector.needs_relocation()

    def test_same_dir_case_insensitive(self, tmp_path, platform):
        settings = InstallerSettings(
            raw={
                "paths": {
                    "program_files": str(tmp_path / "pf"),
                    "program_data": str(tmp_path / "Data"),
                    "static_program_data": str(tmp_path / "data") + "/",
                }
            }
        )
        layout = build_layout(settings)
        layout.legacy_static_install_dir.mkdir(parents=True)
        inspector = HostInspector(platform=platform, layout=layout, settings=settings)
        assert not inspector.needs_relocation()


class TestContainerOs:
    def test_missing_config(self, inspector):
        assert inspector.read_container_os_from_config() is ContainerOs.WINDOWS

    def test_linux_config(self, inspector, layout):
        _touch(layout.config_path)
        layout.config_path.write_text("moby_runtime:\n  uri: 'npipe://./pipe/docker_engine'\n")
        assert inspector.read_container_os_from_config() is ContainerOs.LINUX

    def test_unparseable_config(self, inspector, layout):
        _touch(layout.config_path)
        layout.config_path.write_bytes(b"\xff\xfe[[[")
        assert inspector.read_container_os_from_config() is ContainerOs.WINDOWS


class TestOsCompatibility:
    @pytest.mark.parametrize(
        "container_os, build, ok",
        [
            (ContainerOs.LINUX, 14393, True),
            (ContainerOs.LINUX, 14392, False),
            (ContainerOs.LINUX, 17763, True),
            (ContainerOs.WINDOWS, 17763, True),
            (ContainerOs.WINDOWS, 17134, False),
            (ContainerOs.WINDOWS, 18362, False),
        ],
    )
    def test_matrix(self, inspector, container_os, build, ok):
        assert inspector.check_os_compatibility(container_os, build) is ok


class TestHostInfo:
    def test_parse_build(self):
        assert hostinfo.parse_build("10.0.17763") == 17763
        assert hostinfo.parse_build("10.0") == 0
        assert hostinfo.parse_build("#1 SMP PREEMPT") == 0

    def test_constrained_edition(self):
        assert hostinfo.is_constrained_edition("IoTUAP")
        assert not hostinfo.is_constrained_edition("ServerStandard")
        assert not hostinfo.is_constrained_edition(None)
