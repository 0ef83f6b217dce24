from __future__ import annotations

from typing import Sequence


class BuildError(RuntimeError):
    """Base class for every error the build surfaces to the operator."""


class ConfigValidationError(BuildError):
    """Bad configuration or host, detected before any side effect."""


class ExecutionError(BuildError):
    def __init__(self, command: Sequence[str], exit_code: int, stderr: str = "") -> None:
        self.command = list(command)
        self.exit_code = exit_code
        self.stderr = stderr
        msg = f"Command failed ({exit_code}): {' '.join(self.command)}"
        if stderr.strip():
            msg += f"\n{stderr.strip()}"
        super().__init__(msg)


class StageFailure(BuildError):
    """The first fatal stage failure; remaining stages were not dispatched."""

    def __init__(self, stage_name: str, cause: BaseException) -> None:
        self.stage_name = stage_name
        self.cause = cause
        super().__init__(f"Stage {stage_name} failed: {cause}")


class AssemblyError(BuildError):
    """Compression, boot image or ISO mastering failed. Always fatal."""

    def __init__(self, step: str, message: str, *, cause: BaseException | None = None) -> None:
        self.step = step
        self.cause = cause
        super().__init__(f"[{step}] {message}")


class ResourceReleaseWarning(UserWarning):
    """An unmount/detach failed during release; logged and swallowed."""


class BuildInterrupted(BaseException):
    """Raised from a signal handler so the guaranteed teardown runs."""

    def __init__(self, signum: int) -> None:
        self.signum = signum
        super().__init__(f"Build interrupted by signal {signum}")
