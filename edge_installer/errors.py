from __future__ import annotations

from typing import Sequence


class InstallerError(RuntimeError):
    """Base class for every failure the installer reports to the operator."""


class PreconditionViolation(InstallerError):
    """The host is in the wrong state for the requested operation."""


class ValidationError(InstallerError, ValueError):
    """Operator input is malformed or inconsistent."""


class ExternalCommandFailed(InstallerError):
    def __init__(self, command: Sequence[str], exit_code: int, output: str) -> None:
        self.command = list(command)
        self.exit_code = exit_code
        self.output = output
        super().__init__(f"Command failed ({exit_code}): {' '.join(self.command)}\n{output}".rstrip())


class PatchNotApplied(InstallerError):
    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        super().__init__(f"Config field {field!r} not applied: {reason}")


class ResourceUnavailable(InstallerError):
    """A required artifact could not be found offline nor downloaded."""


class PartialCleanupFailure(InstallerError):
    def __init__(self, step_id: str, cause: BaseException) -> None:
        self.step_id = step_id
        self.cause = cause
        super().__init__(f"{step_id}: {cause}")
