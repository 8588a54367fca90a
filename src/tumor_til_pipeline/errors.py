from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for every fatal pipeline failure.

    Each subclass maps to a documented process exit code. `hint` is an
    optional remediation message printed after the error itself.
    """

    exit_code: int = 7

    def __init__(self, message: str, *, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint


class ArgumentCountError(PipelineError):
    exit_code = 1


class RuntimeResolutionError(PipelineError):
    """Raised when no usable container runtime can be selected."""


class NoRuntimeFoundError(RuntimeResolutionError):
    exit_code = 4


class RuntimeUnusableError(RuntimeResolutionError):
    exit_code = 3

    def __init__(self, message: str, *, executable: str, hint: Optional[str] = None) -> None:
        super().__init__(message, hint=hint)
        self.executable = executable


class PrimaryUnusableError(RuntimeUnusableError):
    """Apptainer/Singularity was found but failed its probe, and Docker is absent."""


class SecondaryUnusableError(RuntimeUnusableError):
    """Docker was found but `docker images` failed."""


class InputPathMissingError(PipelineError):
    def __init__(self, message: str, *, role: str, path: str, exit_code: int) -> None:
        super().__init__(message)
        self.role = role
        self.path = path
        self.exit_code = exit_code


class SurvivalCsvError(PipelineError):
    exit_code = 7


class UnsupportedPathError(PipelineError):
    """A path cannot be expressed in the selected runtime's bind syntax."""

    exit_code = 7


class StageExecutionError(PipelineError):
    def __init__(
        self,
        *,
        stage_name: str,
        stage_index: int,
        returncode: int,
        log_path: Optional[str] = None,
    ) -> None:
        hint = f"See the stage log: {log_path}" if log_path else None
        super().__init__(
            f"stage '{stage_name}' failed with exit code {returncode}",
            hint=hint,
        )
        self.stage_name = stage_name
        self.stage_index = stage_index
        self.returncode = returncode
        self.exit_code = _exit_code_for_returncode(returncode)


class StageOutputMissingError(PipelineError):
    exit_code = 7

    def __init__(self, *, stage_name: str, stage_index: int, missing: list[str]) -> None:
        super().__init__(
            f"stage '{stage_name}' finished but did not produce: {', '.join(missing)}",
            hint="The stage's output paths may not match the next stage's inputs.",
        )
        self.stage_name = stage_name
        self.stage_index = stage_index
        self.missing = missing


def _exit_code_for_returncode(returncode: int) -> int:
    # Negative return codes are signals; report them the way a shell does.
    if returncode < 0:
        return 128 + (-returncode)
    if 0 < returncode < 256:
        return returncode
    return 1
