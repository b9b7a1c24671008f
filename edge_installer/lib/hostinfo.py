from __future__ import annotations

import logging
import platform
from typing import Optional

logger = logging.getLogger(__name__)

# Editions reported by platform.win32_edition() for IoT Core devices.
_CONSTRAINED_EDITIONS = {"iotuap", "iotcore"}


def parse_build(version: str) -> int:
    """Build number from a ``major.minor.build`` version string; 0 if unknown."""

    parts = version.strip().split(".")
    if len(parts) >= 3 and parts[2].isdigit():
        return int(parts[2])
    return 0


def os_build() -> int:
    build = parse_build(platform.version())
    logger.debug("Detected OS build %d", build)
    return build


def is_constrained_edition(edition: Optional[str]) -> bool:
    return (edition or "").strip().lower() in _CONSTRAINED_EDITIONS


def is_constrained_os() -> bool:
    win32_edition = getattr(platform, "win32_edition", None)
    edition = win32_edition() if win32_edition else None
    return is_constrained_edition(edition)
