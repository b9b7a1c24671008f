"""Install / Update / Initialize / Uninstall of the edge runtime.

Preconditions are checked against a fresh HostState before anything on the
host changes. Install, Update and Initialize stop at the first error;
Uninstall keeps going and reports every failed cleanup step at the end.
"""

from __future__ import annotations

import logging
import os
import shutil
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config_doc import EdgeConfig, http_endpoints, load_document, load_template, save_document, socket_endpoints
from .errors import InstallerError, PreconditionViolation, ValidationError
from .inspector import HostInspector, HostState
from .layout import CONFIG_FILE, InstallationLayout, Layout, build_layout
from .lib.assets import Artifact, Fetcher, acquire, download_file
from .lib.capabilities import LogEntry, Platform
from .lib.command import CommandRunner
from .lib.engine import AGENT_CONTAINER, OWNER_VALUE, ContainerEngine
from .lib.env import HOST_VARIABLE, add_to_search_path, remove_from_search_path
from .pipeline import CleanupReport, OperationResult, RestartRequirement, Step, run_pipeline
from .request import ContainerOs, ExistingConfig, LifecycleRequest
from .settings import InstallerSettings

logger = logging.getLogger(__name__)

FIREWALL_RULE = "iotedged allow inbound 15580,15581"
FIREWALL_PORTS = "15580-15581"

EngineFactory = Callable[[ContainerOs, str], ContainerEngine]


@dataclass
class OperationContext:
    """Explicit state of one lifecycle operation; nothing is process-global."""

    request: LifecycleRequest
    settings: InstallerSettings
    platform: Platform
    runner: CommandRunner
    layout: InstallationLayout
    inspector: HostInspector
    sleep: Callable[[float], None] = time.sleep
    fetch: Fetcher = download_file
    engine_factory: Optional[EngineFactory] = None
    restart: RestartRequirement = field(default_factory=RestartRequirement)
    report: CleanupReport = field(default_factory=CleanupReport)
    state: Optional[HostState] = None
    container_os: ContainerOs = ContainerOs.WINDOWS
    management_uri: Optional[str] = None

    @classmethod
    def create(
        cls,
        request: LifecycleRequest,
        settings: InstallerSettings,
        platform: Platform,
        runner: CommandRunner,
        *,
        os_build: Optional[Callable[[], int]] = None,
        **kwargs,
    ) -> "OperationContext":
        layout = build_layout(settings)
        inspector = HostInspector(platform=platform, layout=layout, settings=settings)
        if os_build is not None:
            inspector.os_build = os_build
        runner.mask(*request.secrets())
        return cls(
            request=request,
            settings=settings,
            platform=platform,
            runner=runner,
            layout=layout,
            inspector=inspector,
            container_os=request.container_os,
            **kwargs,
        )

    @property
    def host(self) -> HostState:
        if self.state is None:
            self.state = self.inspector.host_state()
        return self.state

    def engine(self, container_os: ContainerOs) -> ContainerEngine:
        if container_os is ContainerOs.LINUX:
            docker_exe = "docker"
        else:
            docker_exe = str(self.layout.generation(self.host.layout).engine_install_dir / "docker.exe")
        if self.engine_factory is not None:
            return self.engine_factory(container_os, docker_exe)
        return ContainerEngine(self.runner, docker_exe, container_os)


# Preconditions


def _require_compatible(ctx: OperationContext, container_os: ContainerOs) -> None:
    build = ctx.host.os_build
    if not ctx.inspector.check_os_compatibility(container_os, build):
        if container_os is ContainerOs.LINUX:
            need = f"build {ctx.settings.min_build_linux} or later"
        else:
            need = "one of builds " + ", ".join(str(b) for b in ctx.settings.windows_builds)
        raise PreconditionViolation(
            f"{container_os.value.capitalize()} containers are not supported on OS build {build} (requires {need})"
        )


def _require_installed(ctx: OperationContext, hint: str) -> None:
    if not (ctx.host.runtime_installed and ctx.host.engine_installed):
        raise PreconditionViolation(f"IoT Edge is not installed. Run 'install' first, then {hint}.")


def _require_current_layout(ctx: OperationContext) -> None:
    if ctx.host.layout is Layout.LEGACY or ctx.inspector.needs_relocation():
        raise PreconditionViolation(
            "An installation from an older installer was found. Run 'uninstall' first, then 'install' again."
        )
    if ctx.host.layout is not Layout.CURRENT:
        raise PreconditionViolation("No package-managed IoT Edge installation was found. Run 'install' first.")


# Shared steps


def step_install_package(ctx: OperationContext) -> None:
    s = ctx.settings
    glob = s.constrained_package_glob if ctx.platform.constrained else s.package_cache_glob
    artifact: Artifact = acquire(
        "IoT Edge package",
        s.package_url,
        s.package_file_name,
        glob,
        offline_dir=ctx.request.offline_dir,
        proxy=ctx.request.proxy,
        retry=ctx.runner.retry,
        fetch=ctx.fetch,
        dry_run=ctx.runner.dry_run,
    )
    try:
        _stop_services_defensively(ctx)
        if ctx.platform.packages.install(artifact.path):
            ctx.restart.require("package installation")
    finally:
        artifact.cleanup()


def _stop_services_defensively(ctx: OperationContext) -> None:
    services = ctx.platform.services
    stopped = False
    for name in (ctx.layout.runtime_service, ctx.layout.engine_service):
        if not services.is_registered(name):
            continue
        try:
            services.stop(name)
            stopped = True
        except InstallerError as e:
            logger.info("Non-fatal: could not stop %s before install: %s", name, e)
    if stopped:
        ctx.sleep(ctx.settings.service_stop_wait)


def step_configure_proxy(ctx: OperationContext) -> None:
    proxy = ctx.request.proxy
    if not proxy:
        return
    env = {"https_proxy": proxy}
    for name in (ctx.layout.runtime_service, ctx.layout.engine_service):
        ctx.platform.services.set_environment(name, env)
    logger.info("Configured services to use proxy %s", proxy)


def step_start_service(ctx: OperationContext) -> None:
    ctx.platform.services.start(ctx.layout.runtime_service)
    logger.info("Started %s", ctx.layout.runtime_service)


def step_verify_installed(ctx: OperationContext) -> None:
    if ctx.runner.dry_run:
        return
    if not ctx.inspector.is_runtime_installed():
        raise InstallerError("Package installation reported success but the runtime was not found")
    logger.info("Verified runtime installation (layout=%s)", ctx.inspector.detect_layout().value)


# Install


def step_enable_containers_feature(ctx: OperationContext) -> None:
    if ctx.container_os is not ContainerOs.WINDOWS:
        return
    try:
        if ctx.platform.features.ensure_containers_feature():
            ctx.restart.require("Containers feature enabled")
    except InstallerError as e:
        logger.warning("Could not enable the Containers feature: %s", e)


def step_create_endpoints(ctx: OperationContext) -> None:
    for d in ctx.layout.endpoint_dirs:
        if not ctx.runner.dry_run:
            d.mkdir(parents=True, exist_ok=True)
        ctx.platform.host.grant_write(d)
    logger.info("Created management and workload endpoints under %s", str(ctx.layout.data_dir))


INSTALL_STEPS = [
    Step("10_enable_containers_feature", step_enable_containers_feature),
    Step("20_install_package", step_install_package, requires_active=True),
    Step("30_create_endpoints", step_create_endpoints),
    Step("40_configure_proxy", step_configure_proxy),
    Step("90_verify_installed", step_verify_installed),
]


def install(ctx: OperationContext) -> OperationResult:
    ctx.state = ctx.inspector.host_state()
    if ctx.host.runtime_installed or ctx.host.engine_installed:
        raise PreconditionViolation(
            "IoT Edge is already installed. Run 'update' to upgrade it or 'initialize' to configure it."
        )
    _require_compatible(ctx, ctx.container_os)

    result = run_pipeline(operation="install", ctx=ctx, steps=INSTALL_STEPS, restart=ctx.restart)
    _finish_restart(ctx, result)
    if not result.restart_required:
        logger.info("Installation complete. Run 'initialize' to configure the device.")
    return result


# Update


UPDATE_STEPS = [
    Step("20_install_package", step_install_package),
    Step("40_configure_proxy", step_configure_proxy),
    Step("50_start_service", step_start_service, requires_active=True),
    Step("90_verify_installed", step_verify_installed),
]


def update(ctx: OperationContext) -> OperationResult:
    ctx.state = ctx.inspector.host_state()
    _require_installed(ctx, "'update'")
    _require_current_layout(ctx)
    ctx.container_os = ctx.inspector.read_container_os_from_config()
    _require_compatible(ctx, ctx.container_os)

    result = run_pipeline(operation="update", ctx=ctx, steps=UPDATE_STEPS, restart=ctx.restart)
    _finish_restart(ctx, result)
    return result


# Initialize


def _hostname(ctx: OperationContext) -> str:
    return (ctx.request.hostname or socket.gethostname()).lower()


def step_write_config(ctx: OperationContext) -> None:
    path = ctx.layout.config_path
    if isinstance(ctx.request.provisioning, ExistingConfig):
        data = load_document(path).parse()
        logger.info("Using existing configuration %s", str(path))
    else:
        if ctx.container_os is ContainerOs.LINUX:
            address = ctx.platform.host.nat_address()
            connect = listen = http_endpoints(address)
        else:
            connect = listen = socket_endpoints(ctx.layout.data_dir)
        model = EdgeConfig(
            provisioning=ctx.request.provisioning,
            credential=ctx.request.credential,
            hostname=_hostname(ctx),
            connect=connect,
            listen=listen,
            container_os=ctx.container_os,
            homedir=str(ctx.layout.data_dir),
        )
        doc = model.apply(load_template())
        if ctx.runner.dry_run:
            logger.info("Would write %s", str(path))
        else:
            save_document(path, doc)
        data = doc.parse()

    connect_section = data.get("connect")
    if isinstance(connect_section, dict):
        ctx.management_uri = connect_section.get("management_uri")


def step_update_environment(ctx: OperationContext) -> None:
    env = ctx.platform.environment
    add_to_search_path(env, ctx.layout.search_path_dirs())
    if ctx.management_uri:
        env.set(HOST_VARIABLE, ctx.management_uri)
        os.environ[HOST_VARIABLE] = ctx.management_uri


def step_open_firewall(ctx: OperationContext) -> None:
    # Only the Linux container VM reaches the daemon over TCP.
    if ctx.container_os is not ContainerOs.LINUX:
        return
    ctx.platform.firewall.add_rule(FIREWALL_RULE, ctx.layout.current.runtime_binary, FIREWALL_PORTS)


INITIALIZE_STEPS = [
    Step("10_write_config", step_write_config),
    Step("20_update_environment", step_update_environment),
    Step("30_configure_proxy", step_configure_proxy),
    Step("40_start_service", step_start_service, requires_active=True),
    Step("50_open_firewall", step_open_firewall),
]


def initialize(ctx: OperationContext) -> OperationResult:
    request = ctx.request
    if request.provisioning is None:
        raise ValidationError("A provisioning mode (manual, dps or existing-config) is required")

    ctx.state = ctx.inspector.host_state()
    _require_installed(ctx, "'initialize'")

    config_exists = ctx.layout.config_path.exists()
    if isinstance(request.provisioning, ExistingConfig):
        if not config_exists:
            raise PreconditionViolation(f"No existing configuration found at {ctx.layout.config_path}")
        ctx.container_os = ctx.inspector.read_container_os_from_config()
    elif config_exists:
        raise PreconditionViolation(
            f"A configuration already exists at {ctx.layout.config_path}. "
            "Use --existing-config to keep it, or 'uninstall --delete-config' to start over."
        )
    _require_compatible(ctx, ctx.container_os)

    result = run_pipeline(operation="initialize", ctx=ctx, steps=INITIALIZE_STEPS, restart=ctx.restart)
    _finish_restart(ctx, result)
    if result.success and not result.restart_required:
        logger.info("IoT Edge is configured and running")
    return result


# Uninstall


def _attempt(ctx: OperationContext, step_id: str, action: Callable[..., Any], *args: Any) -> bool:
    """Run one cleanup action; record its failure and carry on."""

    try:
        action(*args)
    except InstallerError as e:
        ctx.report.record(step_id, e)
        return False
    return True


def step_stop_runtime(ctx: OperationContext) -> None:
    step_id = "10_stop_runtime"
    services = ctx.platform.services
    name = ctx.layout.runtime_service
    if not services.is_registered(name):
        return
    _attempt(ctx, f"{step_id}[disable {name}]", services.disable, name)
    if _attempt(ctx, f"{step_id}[stop {name}]", services.stop, name):
        ctx.sleep(ctx.settings.service_stop_wait)


def step_remove_containers(ctx: OperationContext) -> None:
    if not ctx.host.engine_installed:
        return
    if not ctx.platform.services.is_running(ctx.layout.engine_service):
        logger.info("%s is not running; skipping container removal", ctx.layout.engine_service)
        return
    engine = ctx.engine(ctx.inspector.read_container_os_from_config())
    delete_all = ctx.request.delete_engine_data

    names: Dict[str, str] = {}
    for cid in engine.list_containers():
        try:
            names[cid] = engine.container_name(cid)
        except InstallerError as e:
            ctx.report.record(f"20_remove_containers[{cid[:12]}]", e)
    # The agent restarts whatever it supervises, so it goes first.
    ordered = sorted(names, key=lambda cid: names[cid] != AGENT_CONTAINER)
    for cid in ordered:
        try:
            if delete_all or names[cid] == AGENT_CONTAINER or engine.owner(cid) == OWNER_VALUE:
                engine.remove_container(cid)
                logger.info("Removed container %s (%s)", names[cid] or cid, cid[:12])
        except InstallerError as e:
            ctx.report.record(f"20_remove_containers[{cid[:12]}]", e)

    if delete_all:
        for image in engine.list_images():
            try:
                engine.remove_image(image)
            except InstallerError as e:
                ctx.report.record(f"20_remove_containers[image {image[:12]}]", e)


def step_remove_engine(ctx: OperationContext) -> None:
    step_id = "30_remove_engine"
    services = ctx.platform.services
    engine = ctx.layout.engine_service
    if services.is_registered(engine):
        if _attempt(ctx, f"{step_id}[stop {engine}]", services.stop, engine):
            ctx.sleep(ctx.settings.service_stop_wait)

    if ctx.host.layout is Layout.CURRENT:
        _attempt(ctx, f"{step_id}[package]", ctx.platform.packages.uninstall)

    # Legacy installs registered their services directly; so does a failed package removal.
    for name in (ctx.layout.runtime_service, engine):
        if services.is_registered(name):
            _attempt(ctx, f"{step_id}[delete {name}]", services.delete, name)


def _remove_tree(ctx: OperationContext, step_id: str, path: Path) -> None:
    if not path.exists():
        return
    if ctx.runner.dry_run:
        logger.info("Would remove %s", str(path))
        return
    try:
        shutil.rmtree(path)
        logger.info("Removed %s", str(path))
    except OSError as e:
        ctx.report.record(f"{step_id}[{path}]", e)


def _purge_keeping_config(ctx: OperationContext, step_id: str, directory: Path) -> None:
    """Remove everything in ``directory`` except the config file."""

    if not directory.is_dir():
        return
    for child in directory.iterdir():
        if child.name.lower() == CONFIG_FILE:
            continue
        if child.is_dir() and not child.is_symlink():
            _remove_tree(ctx, step_id, child)
        elif not ctx.runner.dry_run:
            try:
                child.unlink()
            except OSError as e:
                ctx.report.record(f"{step_id}[{child}]", e)


def step_remove_directories(ctx: OperationContext) -> None:
    step_id = "40_remove_directories"
    layout = ctx.layout
    gen = layout.generation(ctx.host.layout)

    for d in (gen.install_dir, gen.engine_install_dir):
        if d != layout.data_dir:
            _remove_tree(ctx, step_id, d)
    if ctx.request.delete_engine_data:
        _remove_tree(ctx, step_id, layout.current.engine_data_root)
    # A leftover legacy data root keeps the host in Legacy layout.
    _remove_tree(ctx, step_id, layout.legacy.engine_data_root)

    if ctx.request.delete_config:
        _remove_tree(ctx, step_id, layout.data_dir)
    else:
        _purge_keeping_config(ctx, step_id, layout.data_dir)


def step_relocate_legacy_config(ctx: OperationContext) -> None:
    if not ctx.inspector.needs_relocation():
        return
    static_config = ctx.layout.legacy_static_config_path
    keep = not ctx.request.delete_config and static_config.exists() and not ctx.layout.config_path.exists()
    if keep and not ctx.runner.dry_run:
        ctx.layout.data_dir.mkdir(parents=True, exist_ok=True)
        shutil.move(str(static_config), str(ctx.layout.config_path))
        logger.info("Moved legacy configuration %s to %s", str(static_config), str(ctx.layout.config_path))
    _remove_tree(ctx, "50_relocate_legacy_config", ctx.layout.legacy_static_install_dir)


def step_restore_search_path(ctx: OperationContext) -> None:
    remove_from_search_path(ctx.platform.environment, ctx.layout.all_search_path_dirs())


def step_remove_host_variable(ctx: OperationContext) -> None:
    ctx.platform.environment.remove(HOST_VARIABLE)
    os.environ.pop(HOST_VARIABLE, None)


def step_remove_firewall_rule(ctx: OperationContext) -> None:
    ctx.platform.firewall.remove_rule(FIREWALL_RULE)


UNINSTALL_STEPS = [
    Step("10_stop_runtime", step_stop_runtime),
    Step("20_remove_containers", step_remove_containers),
    Step("30_remove_engine", step_remove_engine),
    Step("40_remove_directories", step_remove_directories),
    Step("50_relocate_legacy_config", step_relocate_legacy_config),
    Step("60_restore_search_path", step_restore_search_path),
    Step("70_remove_host_variable", step_remove_host_variable),
    Step("80_remove_firewall_rule", step_remove_firewall_rule),
]


def uninstall(ctx: OperationContext) -> OperationResult:
    ctx.state = ctx.inspector.host_state()
    if not (ctx.host.runtime_installed or ctx.host.engine_installed) and not ctx.request.force:
        raise PreconditionViolation("IoT Edge is not installed. Use --force to clean up leftovers anyway.")

    result = run_pipeline(
        operation="uninstall",
        ctx=ctx,
        steps=UNINSTALL_STEPS,
        restart=ctx.restart,
        report=ctx.report,
    )
    if result.success:
        logger.info("IoT Edge has been removed")
    else:
        logger.warning(
            "Uninstall finished with %d failed cleanup step(s). Reboot, then run 'uninstall --force' again.",
            len(result.failures),
        )
    return result


# Restart / logs


def _finish_restart(ctx: OperationContext, result: OperationResult) -> None:
    if not result.restart_required:
        return
    if ctx.request.restart_if_needed:
        logger.warning("Restarting the host (%s)", ", ".join(ctx.restart.reasons))
        ctx.platform.host.reboot()
    else:
        logger.warning(
            "A restart is required (%s). Restart the host and run '%s' again to finish.",
            ", ".join(ctx.restart.reasons),
            result.operation,
        )


def get_logs(platform: Platform, settings: InstallerSettings, since: datetime) -> List[LogEntry]:
    entries = platform.events.entries(settings.event_provider, since)
    return sorted(entries, key=lambda e: e.timestamp)
