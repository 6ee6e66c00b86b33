# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------
# Definition (static input)
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """
    A single step inside a job.

    Exactly one of `run` (shell command) or `uses` (reusable action) is set.
    `with_` holds the action inputs (`with:` in the definition document).
    """
    name: str
    run: str | None = None
    uses: str | None = None
    with_: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    if_: str | None = None
    cwd: str | None = None
    timeout: float | None = None  # seconds

    @property
    def kind(self) -> str:
        return "action" if self.uses else "command"


@dataclass
class Job:
    """
    A CI job: ordered steps + dependencies + condition + environment.

    `needs` lists the names of jobs that must reach a terminal state
    before this job may start.
    """
    name: str
    steps: List[Step]
    needs: List[str] = field(default_factory=list)
    if_: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    timeout: float | None = None  # per-step budget for every step of this job


@dataclass
class Workflow:
    name: str
    jobs: Dict[str, Job] = field(default_factory=dict)
    on: List[str] = field(default_factory=lambda: ["push"])
    env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_jobs(cls, name: str, jobs: List[Job], **kwargs) -> "Workflow":
        from .errors import DuplicateJobError

        by_name: Dict[str, Job] = {}
        for j in jobs:
            if j.name in by_name:
                raise DuplicateJobError(f"Duplicate job name: {j.name}")
            by_name[j.name] = j
        return cls(name=name, jobs=by_name, **kwargs)

    def triggered_by(self, event: str) -> bool:
        return event in self.on


# ----------------------------------------------------------------------
# Run state (mutated by the scheduler)
# ----------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED)


# Step records reuse the job vocabulary
StepStatus = JobStatus


@dataclass
class StepRun:
    name: str
    status: StepStatus = StepStatus.PENDING
    exit_code: int | None = None
    output: str = ""  # redacted tail
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "output": self.output,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class JobRun:
    name: str
    status: JobStatus = JobStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    reason: str | None = None  # why it failed / was skipped
    steps: List[StepRun] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "reason": self.reason,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class Run:
    """One execution instance of a Workflow, created per trigger event."""
    run_id: str
    workflow: str
    event: str
    jobs: Dict[str, JobRun] = field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    cancelled: bool = False
    artifacts: List[str] = field(default_factory=list)  # names produced during the run

    @property
    def terminal(self) -> bool:
        return all(j.status.terminal for j in self.jobs.values())

    @property
    def succeeded(self) -> bool:
        return self.terminal and not any(
            j.status is JobStatus.FAILED for j in self.jobs.values()
        )

    @property
    def status(self) -> str:
        if not self.terminal:
            return "running" if self.started_at else "pending"
        if self.cancelled:
            return "cancelled"
        return "succeeded" if self.succeeded else "failed"

    def statuses(self) -> Dict[str, str]:
        return {name: j.status.value for name, j in self.jobs.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "event": self.event,
            "status": self.status,
            "cancelled": self.cancelled,
            "artifacts": list(self.artifacts),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "jobs": {name: j.to_dict() for name, j in self.jobs.items()},
        }
