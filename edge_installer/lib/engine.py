from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from ..request import ContainerOs
from .command import CommandRunner

logger = logging.getLogger(__name__)

# Engine endpoint as written to the daemon config.
ENGINE_URIS = {
    ContainerOs.WINDOWS: "npipe://./pipe/iotedge_moby_engine",
    ContainerOs.LINUX: "npipe://./pipe/docker_engine",
}
ENGINE_NETWORKS = {
    ContainerOs.WINDOWS: "nat",
    ContainerOs.LINUX: "azure-iot-edge",
}
# Same endpoints in the form the docker CLI expects for -H.
ENGINE_HOSTS = {
    ContainerOs.WINDOWS: "npipe:////./pipe/iotedge_moby_engine",
    ContainerOs.LINUX: "npipe:////./pipe/docker_engine",
}

AGENT_CONTAINER = "edgeAgent"
OWNER_LABEL = "net.azure-devices.edge.owner"
OWNER_VALUE = "Microsoft.Azure.Devices.Edge.Agent"


@dataclass
class ContainerEngine:
    """Thin wrapper over the docker CLI addressed at one engine endpoint."""

    runner: CommandRunner
    docker_exe: str
    container_os: ContainerOs = ContainerOs.WINDOWS

    def _docker(self, *args: str, allow_failure: bool = False, query: bool = False) -> str:
        argv = [self.docker_exe, "-H", ENGINE_HOSTS[self.container_os], *args]
        return self.runner.invoke_native(argv, allow_failure=allow_failure, query=query).stdout

    def list_containers(self) -> List[str]:
        out = self._docker("ps", "--all", "--quiet", "--no-trunc", query=True)
        return [line.strip() for line in out.splitlines() if line.strip()]

    def container_name(self, container_id: str) -> str:
        return self._docker("inspect", "--format", "{{.Name}}", container_id, query=True).strip().lstrip("/")

    def owner(self, container_id: str) -> str:
        fmt = "{{index .Config.Labels \"%s\"}}" % OWNER_LABEL
        return self._docker("inspect", "--format", fmt, container_id, query=True).strip()

    def remove_container(self, container_id: str) -> None:
        self._docker("stop", container_id, allow_failure=True)
        self._docker("rm", "--force", container_id)

    def list_images(self) -> List[str]:
        out = self._docker("images", "--all", "--quiet", query=True)
        return sorted({line.strip() for line in out.splitlines() if line.strip()})

    def remove_image(self, image_id: str) -> None:
        self._docker("rmi", "--force", image_id)
