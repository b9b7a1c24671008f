"""Process-wide logging for the installer CLI.

Every operation appends to one log file (``log_path`` in the settings,
``iotedge-installer.log`` under ProgramData by default) so that a failed
Install or a partial Uninstall can be diagnosed after the console window is
gone. Secrets are masked by the command runner before they reach any handler.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

LOG_FILE_NAME = "iotedge-installer.log"


def configure_logging(
    log_path: str,
    level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Attach the installer's file and console handlers to the root logger.

    A second call only adjusts the level (``--verbose``) and returns the file
    chosen the first time. An unelevated shell cannot write under ProgramData,
    so in that case the log is written to ``iotedge-installer.log`` in the
    working directory.

    Returns the log file actually in use.
    """

    root = logging.getLogger()
    root.setLevel(level)

    if getattr(root, "_edge_installer_configured", False):
        return getattr(root, "_edge_installer_log_path", log_path)

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    handlers: list[logging.Handler] = []
    file_handler: Optional[logging.Handler] = None
    try:
        Path(os.path.dirname(log_path) or ".").mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        chosen_path = log_path
    except OSError:
        chosen_path = str(Path.cwd() / LOG_FILE_NAME)
        file_handler = logging.FileHandler(chosen_path, encoding="utf-8")
    file_handler.setFormatter(fmt)
    handlers.append(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setFormatter(fmt)
        handlers.append(console)

    for h in handlers:
        root.addHandler(h)

    setattr(root, "_edge_installer_configured", True)
    setattr(root, "_edge_installer_log_path", chosen_path)

    logging.getLogger(__name__).info("Logging initialized (requested=%s, actual=%s)", log_path, chosen_path)
    return chosen_path
