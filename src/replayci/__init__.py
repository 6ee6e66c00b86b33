from .dsl import job, sh, uses, matrix, wf, JobBuilder, build
from .model import Job, Step, Workflow, Run, JobStatus
from .scheduler import Scheduler, run_workflow
from .loader import load_workflow

__all__ = [
    "job", "sh", "uses", "matrix", "wf", "JobBuilder", "build",
    "Job", "Step", "Workflow", "Run", "JobStatus",
    "Scheduler", "run_workflow", "load_workflow",
]
