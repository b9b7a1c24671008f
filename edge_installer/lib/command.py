from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Sequence

from ..errors import ExternalCommandFailed
from .retry import SINGLE_ATTEMPT, RetryPolicy

logger = logging.getLogger(__name__)

# Exit code reported when the executable itself could not be started.
LAUNCH_FAILED = -1


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        return "\n".join(s.strip() for s in (self.stdout, self.stderr) if s and s.strip())


def _redact(text: str, secrets: Iterable[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, "***")
    return text


def _fmt_argv(argv: Sequence[str], secrets: Iterable[str] = ()) -> str:
    return _redact(" ".join(shlex.quote(a) for a in argv), secrets)


def run_cmd(
    argv: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
) -> CmdResult:
    """Run a command once and capture its output.

    Never raises for a non-zero exit; an executable that cannot be launched is
    reported with returncode LAUNCH_FAILED.
    """

    argv_list = list(argv)
    try:
        p = subprocess.run(
            argv_list,
            input=input_text,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=dict(os.environ, **(env or {})),
        )
    except OSError as e:
        return CmdResult(argv=argv_list, returncode=LAUNCH_FAILED, stdout="", stderr=str(e))

    return CmdResult(argv=argv_list, returncode=p.returncode, stdout=p.stdout, stderr=p.stderr)


@dataclass
class CommandRunner:
    """Executes native commands with consistent logging and optional backoff.

    - Always logs the command (secrets masked).
    - dry_run logs but does not execute mutating commands.
    - backoff retries the single invocation under ``retry``; it never retries
      the caller's logical operation.
    """

    retry: RetryPolicy = field(default_factory=RetryPolicy)
    dry_run: bool = False
    secrets: set[str] = field(default_factory=set)
    execute: Callable[[Sequence[str]], CmdResult] = run_cmd

    def mask(self, *values: str | None) -> None:
        self.secrets.update(v for v in values if v)

    def invoke_native(
        self,
        argv: Sequence[str],
        *,
        backoff: bool = False,
        allow_failure: bool = False,
        success_codes: Sequence[int] = (0,),
        query: bool = False,
    ) -> CmdResult:
        """Run ``argv``, retrying under the policy when ``backoff`` is set.

        ``query`` marks a read-only command that still runs under dry_run.
        """

        argv_list = list(argv)
        shown = _fmt_argv(argv_list, self.secrets)
        logger.info("CMD %s", shown)

        if self.dry_run and not query:
            return CmdResult(argv=argv_list, returncode=0, stdout="", stderr="")

        policy = self.retry if backoff else SINGLE_ATTEMPT
        result = CmdResult(argv=argv_list, returncode=LAUNCH_FAILED, stdout="", stderr="")
        for attempt in policy.attempts():
            result = self.execute(argv_list)
            if result.stdout:
                logger.debug("STDOUT %s", _redact(result.stdout.strip(), self.secrets))
            if result.stderr:
                logger.debug("STDERR %s", _redact(result.stderr.strip(), self.secrets))
            if result.returncode in success_codes:
                break
            logger.debug("Attempt %d of %s exited %d", attempt, shown, result.returncode)

        if result.returncode not in success_codes and not allow_failure:
            masked = [_redact(a, self.secrets) for a in argv_list]
            raise ExternalCommandFailed(masked, result.returncode, _redact(result.output, self.secrets))

        return result
