from __future__ import annotations

import argparse
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from . import lifecycle
from .errors import InstallerError, ValidationError
from .lib import hostinfo
from .lib.capabilities import Platform, select_platform
from .lib.command import CommandRunner
from .lib.retry import RetryPolicy
from .logging_utils import configure_logging
from .pipeline import OperationResult
from .request import ContainerOs, LifecycleRequest, build_credential, build_provisioning
from .settings import InstallerSettings, load_settings

logger = logging.getLogger(__name__)

DEFAULT_LOG_WINDOW = timedelta(minutes=10)

_RELATIVE = re.compile(r"^(\d+)([smhd])$")
_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}

OPERATIONS: Dict[str, Callable[[lifecycle.OperationContext], OperationResult]] = {
    "install": lifecycle.install,
    "update": lifecycle.update,
    "initialize": lifecycle.initialize,
    "uninstall": lifecycle.uninstall,
}


def parse_since(value: Optional[str], now: Optional[datetime] = None) -> datetime:
    """``30m`` / ``6h`` / ``2d`` relative to now, or an ISO 8601 timestamp."""

    now = now or datetime.now(timezone.utc)
    if not value:
        return now - DEFAULT_LOG_WINDOW
    m = _RELATIVE.match(value.strip())
    if m:
        return now - timedelta(**{_UNITS[m.group(2)]: int(m.group(1))})
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        raise ValidationError(f"Invalid --since value {value!r}; use e.g. 30m, 6h, 2d or an ISO timestamp") from None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="edge-installer", description="Install and manage the IoT Edge runtime")
    p.add_argument("--settings", default=None, help="Installer settings file (yaml|json)")
    p.add_argument("--log", default=None, help="Path to installer log")
    p.add_argument("--dry-run", action="store_true", help="Log mutating commands without running them")
    p.add_argument("--verbose", action="store_true", help="Log command output")

    sub = p.add_subparsers(dest="command", required=True)

    def container_os(sp: argparse.ArgumentParser) -> None:
        sp.add_argument(
            "--container-os",
            choices=[c.value for c in ContainerOs],
            default=ContainerOs.WINDOWS.value,
            help="Container mode of the engine",
        )

    def acquisition(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("--proxy", default=None, help="HTTPS proxy for downloads and the services")
        sp.add_argument("--offline-dir", default=None, help="Directory holding pre-downloaded packages")
        sp.add_argument("--restart-if-needed", action="store_true", help="Restart the host if required")

    sp = sub.add_parser("install", help="Install the runtime and the container engine")
    container_os(sp)
    acquisition(sp)

    sp = sub.add_parser("update", help="Update an installed runtime")
    acquisition(sp)

    sp = sub.add_parser("initialize", help="Configure provisioning and start the runtime")
    container_os(sp)
    mode = sp.add_mutually_exclusive_group()
    mode.add_argument("--manual", action="store_true", help="Provision with a device connection string")
    mode.add_argument("--dps", action="store_true", help="Provision through the Device Provisioning Service")
    mode.add_argument("--existing-config", action="store_true", help="Keep the config already on the device")
    sp.add_argument("--connection-string", default=None)
    sp.add_argument("--scope-id", default=None)
    sp.add_argument("--registration-id", default=None)
    sp.add_argument("--global-endpoint", default=None, help="DPS global endpoint")
    sp.add_argument("--hostname", default=None, help="Device hostname (default: this machine's name)")
    sp.add_argument("--agent-image", default=None, help="Agent container image")
    sp.add_argument("--username", default=None, help="Registry username for the agent image")
    sp.add_argument("--password", default=None, help="Registry password for the agent image")
    sp.add_argument("--proxy", default=None, help="HTTPS proxy for the services")

    sp = sub.add_parser("uninstall", help="Remove the runtime and the container engine")
    sp.add_argument("--force", action="store_true", help="Clean up even if nothing looks installed")
    sp.add_argument("--delete-config", action="store_true", help="Also delete config.yaml")
    sp.add_argument("--delete-engine-data", action="store_true", help="Also delete all containers and images")

    sp = sub.add_parser("logs", help="Show runtime event log entries")
    sp.add_argument("--since", default=None, help="e.g. 30m, 6h, 2d or an ISO timestamp (default: 10m)")

    return p


def build_request(args: argparse.Namespace, settings: InstallerSettings) -> LifecycleRequest:
    """Validate CLI arguments into a request before anything touches the host."""

    provisioning = None
    credential = None
    if args.command == "initialize":
        provisioning = build_provisioning(
            manual=args.manual,
            dps=args.dps,
            existing_config=args.existing_config,
            connection_string=args.connection_string,
            scope_id=args.scope_id,
            registration_id=args.registration_id,
            global_endpoint=args.global_endpoint or settings.dps_global_endpoint,
        )
        credential = build_credential(args.agent_image, args.username, args.password)

    return LifecycleRequest(
        container_os=ContainerOs(getattr(args, "container_os", ContainerOs.WINDOWS.value)),
        provisioning=provisioning,
        credential=credential,
        proxy=getattr(args, "proxy", None),
        offline_dir=getattr(args, "offline_dir", None),
        force=getattr(args, "force", False),
        restart_if_needed=getattr(args, "restart_if_needed", False),
        delete_config=getattr(args, "delete_config", False),
        delete_engine_data=getattr(args, "delete_engine_data", False),
        hostname=getattr(args, "hostname", None),
    )


def run(
    args: argparse.Namespace,
    *,
    settings: InstallerSettings,
    runner: CommandRunner,
    platform: Platform,
) -> int:
    if args.command == "logs":
        for entry in lifecycle.get_logs(platform, settings, parse_since(args.since)):
            print(f"{entry.timestamp.isoformat()} {entry.message}")
        return 0

    request = build_request(args, settings)
    ctx = lifecycle.OperationContext.create(request, settings, platform, runner)
    result = OPERATIONS[args.command](ctx)
    logger.info(
        "%s finished: success=%s restart_required=%s ran=%s skipped=%s",
        result.operation,
        result.success,
        result.restart_required,
        result.ran_steps,
        result.skipped_steps,
    )
    return 0 if result.success else 1


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.settings)
    except (OSError, ValueError) as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Cannot load settings: %s", e)
        return 1

    configure_logging(
        log_path=args.log or settings.log_path,
        level=logging.DEBUG if args.verbose else logging.INFO,
    )

    runner = CommandRunner(
        retry=RetryPolicy(max_attempts=settings.retry_max_attempts, base_delay=settings.retry_base_delay),
        dry_run=args.dry_run,
    )
    platform = select_platform(
        runner,
        constrained=hostinfo.is_constrained_os(),
        package_name=settings.package_name,
    )

    try:
        return run(args, settings=settings, runner=runner, platform=platform)
    except InstallerError as e:
        logger.error("%s", e)
        return 1
    except Exception:
        logger.exception("Installer failed")
        raise


if __name__ == "__main__":
    raise SystemExit(main())
