from __future__ import annotations

import logging
import shutil
import tempfile
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from ..errors import ResourceUnavailable
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

Fetcher = Callable[[str, Path, Optional[str]], None]


@dataclass(frozen=True)
class Artifact:
    path: Path
    is_temporary: bool

    def cleanup(self) -> None:
        """Delete a downloaded artifact; offline files are never touched."""
        if self.is_temporary:
            shutil.rmtree(self.path.parent, ignore_errors=True)


def download_file(url: str, dest: Path, proxy: Optional[str] = None) -> None:
    handlers = []
    if proxy:
        handlers.append(urllib.request.ProxyHandler({"http": proxy, "https": proxy}))
    opener = urllib.request.build_opener(*handlers)
    with opener.open(url, timeout=60) as resp, dest.open("wb") as f:
        shutil.copyfileobj(resp, f)


def find_offline(offline_dir: Optional[str], cache_glob: str) -> Optional[Path]:
    if not offline_dir:
        return None
    d = Path(offline_dir)
    if not d.is_dir():
        logger.warning("Offline directory %s does not exist", str(d))
        return None
    matches = sorted(p for p in d.glob(cache_glob) if p.is_file())
    # Versioned names sort oldest first; take the newest.
    return matches[-1] if matches else None


def acquire(
    description: str,
    remote_url: str,
    local_file_name: str,
    cache_glob: str,
    *,
    offline_dir: Optional[str] = None,
    proxy: Optional[str] = None,
    retry: RetryPolicy = RetryPolicy(),
    fetch: Fetcher = download_file,
    dry_run: bool = False,
) -> Artifact:
    """Locate an artifact in the offline dir, else download it to scratch space.

    Downloaded artifacts are temporary; the caller cleans them up after use.
    """

    local = find_offline(offline_dir, cache_glob)
    if local is not None:
        logger.info("Using %s from %s", description, str(local))
        return Artifact(path=local, is_temporary=False)
    if offline_dir:
        logger.info("%s not found under %s; downloading", description, offline_dir)

    scratch = Path(tempfile.mkdtemp(prefix="edge-installer-"))
    dest = scratch / local_file_name
    if dry_run:
        logger.info("Would download %s from %s", description, remote_url)
        return Artifact(path=dest, is_temporary=True)

    last_error: Optional[Exception] = None
    for attempt in retry.attempts():
        try:
            logger.info("Downloading %s from %s", description, remote_url)
            fetch(remote_url, dest, proxy)
            return Artifact(path=dest, is_temporary=True)
        except (urllib.error.URLError, OSError) as e:
            last_error = e
            logger.warning("Download of %s failed (attempt %d): %s", description, attempt, e)

    shutil.rmtree(scratch, ignore_errors=True)
    raise ResourceUnavailable(f"{description} unavailable: not found offline and download failed: {last_error}")
