from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional, Union

from .errors import ValidationError
from .settings import DEFAULT_DPS_ENDPOINT

DEFAULT_REGISTRY = "index.docker.io"


class ContainerOs(enum.Enum):
    WINDOWS = "windows"
    LINUX = "linux"


@dataclass(frozen=True)
class Manual:
    connection_string: str


@dataclass(frozen=True)
class Dps:
    scope_id: str
    registration_id: str
    global_endpoint: str = DEFAULT_DPS_ENDPOINT


@dataclass(frozen=True)
class ExistingConfig:
    pass


ProvisioningSpec = Union[Manual, Dps, ExistingConfig]


def registry_host_from_image(image: str) -> str:
    """Registry part of an image reference (``host[:port]/repo:tag``)."""

    first, sep, _ = image.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first
    return DEFAULT_REGISTRY


@dataclass(frozen=True)
class RegistryCredential:
    image: str
    registry_host: str
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def has_login(self) -> bool:
        return bool(self.username and self.password)


def build_credential(
    image: Optional[str],
    username: Optional[str],
    password: Optional[str],
    registry_host: Optional[str] = None,
) -> Optional[RegistryCredential]:
    """Validate the agent image / registry login combination.

    Username and password go together, and a login requires an image.
    """

    if bool(username) != bool(password):
        raise ValidationError("Username and password must be provided together")
    if username and not image:
        raise ValidationError("An agent image is required when registry credentials are provided")
    if not image:
        return None
    return RegistryCredential(
        image=image,
        registry_host=registry_host or registry_host_from_image(image),
        username=username or None,
        password=password or None,
    )


def build_provisioning(
    *,
    manual: bool = False,
    dps: bool = False,
    existing_config: bool = False,
    connection_string: Optional[str] = None,
    scope_id: Optional[str] = None,
    registration_id: Optional[str] = None,
    global_endpoint: Optional[str] = None,
) -> ProvisioningSpec:
    """Pick exactly one provisioning variant and check its required fields.

    Mode flags may be omitted when the mode-specific fields make the choice
    unambiguous.
    """

    manual = manual or (bool(connection_string) and not dps and not existing_config)
    dps = dps or (bool(scope_id or registration_id) and not manual and not existing_config)

    selected = [name for name, on in (("manual", manual), ("dps", dps), ("existing-config", existing_config)) if on]
    if len(selected) != 1:
        raise ValidationError(
            "Exactly one provisioning mode (manual, dps, existing-config) is required, got: "
            + (", ".join(selected) or "none")
        )

    if manual:
        if not connection_string:
            raise ValidationError("Manual provisioning requires a device connection string")
        if scope_id or registration_id:
            raise ValidationError("Scope id / registration id are only valid with DPS provisioning")
        return Manual(connection_string=connection_string)

    if dps:
        if not scope_id or not registration_id:
            raise ValidationError("DPS provisioning requires both a scope id and a registration id")
        if connection_string:
            raise ValidationError("A connection string is only valid with manual provisioning")
        return Dps(
            scope_id=scope_id,
            registration_id=registration_id,
            global_endpoint=global_endpoint or DEFAULT_DPS_ENDPOINT,
        )

    if connection_string or scope_id or registration_id:
        raise ValidationError("Provisioning fields cannot be combined with an existing config")
    return ExistingConfig()


@dataclass(frozen=True)
class LifecycleRequest:
    """Everything one lifecycle operation needs from the operator."""

    container_os: ContainerOs = ContainerOs.WINDOWS
    provisioning: Optional[ProvisioningSpec] = None
    credential: Optional[RegistryCredential] = None
    proxy: Optional[str] = None
    offline_dir: Optional[str] = None
    force: bool = False
    restart_if_needed: bool = False
    delete_config: bool = False
    delete_engine_data: bool = False
    hostname: Optional[str] = None

    def secrets(self) -> list[str]:
        values = []
        if isinstance(self.provisioning, Manual):
            values.append(self.provisioning.connection_string)
        if self.credential and self.credential.password:
            values.append(self.credential.password)
        return values
