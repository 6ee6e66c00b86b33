# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


class ReplayCIError(Exception):
    """Base class for every error raised by replayci."""


# ----------------------------------------------------------------------
# Definition errors (fatal, raised before any job is dispatched)
# ----------------------------------------------------------------------

class DefinitionError(ReplayCIError):
    """The workflow definition is invalid and cannot be scheduled."""


class DuplicateJobError(DefinitionError):
    pass


class UnknownDependencyError(DefinitionError):
    def __init__(self, job: str, missing: str, known: List[str]):
        self.job = job
        self.missing = missing
        self.known = sorted(known)
        super().__init__(
            f"Job '{job}' needs missing job '{missing}'. Known jobs: {self.known}"
        )


class CycleError(DefinitionError):
    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class ConditionError(DefinitionError):
    """A condition expression could not be parsed or evaluated."""

    def __init__(self, expression: str, message: str):
        self.expression = expression
        super().__init__(f"{message} in expression {expression!r}")


class WorkflowLoadError(DefinitionError):
    """The workflow document could not be read or does not match the schema."""


# ----------------------------------------------------------------------
# Execution errors (contained to a job)
# ----------------------------------------------------------------------

@dataclass(eq=False)
class StepFailure(ReplayCIError):
    job: str
    step: str
    exit_code: int
    output: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code})"


@dataclass(eq=False)
class StepTimeoutError(StepFailure):
    timeout: float = 0.0
    exit_code: int = field(default=124)

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' timed out after {self.timeout:g}s"


class RunCancelledError(ReplayCIError):
    """The run was cancelled from outside while jobs were pending or running."""


# ----------------------------------------------------------------------
# Store errors
# ----------------------------------------------------------------------

class NotFoundError(ReplayCIError, LookupError):
    pass


class ArtifactConflictError(ReplayCIError):
    pass


class SecretsFrozenError(ReplayCIError):
    pass
