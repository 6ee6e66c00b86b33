# loader.py
from __future__ import annotations

import json
import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import WorkflowLoadError
from .model import Job, Step, Workflow

# ----------------------------------------------------------------------
# Definition document schema
# ----------------------------------------------------------------------


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, dict):
        return [str(k) for k in value]
    return [str(v) for v in value]


def _as_condition(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_env(value: Any) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k, v in (value or {}).items():
        if isinstance(v, bool):
            v = "true" if v else "false"
        out[str(k)] = "" if v is None else str(v)
    return out


class StepSpec(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    env: Dict[str, str] = Field(default_factory=dict)
    if_: Optional[str] = Field(default=None, alias="if")
    cwd: Optional[str] = Field(default=None, alias="working-directory")
    timeout: Optional[float] = Field(default=None, gt=0)
    timeout_minutes: Optional[float] = Field(default=None, gt=0, alias="timeout-minutes")
    id: Optional[str] = None

    @field_validator("env", mode="before")
    @classmethod
    def normalize_env(cls, value: Any) -> Dict[str, str]:
        return _as_env(value)

    @field_validator("if_", mode="before")
    @classmethod
    def normalize_if(cls, value: Any) -> Optional[str]:
        return _as_condition(value)

    @model_validator(mode="after")
    def check_exactly_one_target(self) -> "StepSpec":
        if bool(self.run) == bool(self.uses):
            raise ValueError("a step must define exactly one of 'run' or 'uses'")
        return self

    def to_step(self, index: int) -> Step:
        timeout = self.timeout
        if timeout is None and self.timeout_minutes is not None:
            timeout = self.timeout_minutes * 60
        first_line = next((line.strip() for line in (self.run or "").splitlines() if line.strip()), "")
        name = self.name or self.id or self.uses or first_line or f"step-{index + 1}"
        return Step(
            name=name,
            run=self.run,
            uses=self.uses,
            with_=dict(self.with_),
            env=dict(self.env),
            if_=self.if_,
            cwd=self.cwd,
            timeout=timeout,
        )


class JobSpec(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: Optional[str] = None
    needs: List[str] = Field(default_factory=list)
    if_: Optional[str] = Field(default=None, alias="if")
    env: Dict[str, str] = Field(default_factory=dict)
    steps: List[StepSpec] = Field(min_length=1)
    timeout: Optional[float] = Field(default=None, gt=0)
    timeout_minutes: Optional[float] = Field(default=None, gt=0, alias="timeout-minutes")

    @field_validator("needs", mode="before")
    @classmethod
    def normalize_needs(cls, value: Any) -> List[str]:
        return _as_list(value)

    @field_validator("env", mode="before")
    @classmethod
    def normalize_env(cls, value: Any) -> Dict[str, str]:
        return _as_env(value)

    @field_validator("if_", mode="before")
    @classmethod
    def normalize_if(cls, value: Any) -> Optional[str]:
        return _as_condition(value)

    def to_job(self, job_id: str) -> Job:
        timeout = self.timeout
        if timeout is None and self.timeout_minutes is not None:
            timeout = self.timeout_minutes * 60
        return Job(
            name=job_id,
            steps=[s.to_step(i) for i, s in enumerate(self.steps)],
            needs=list(self.needs),
            if_=self.if_,
            env=dict(self.env),
            timeout=timeout,
        )


class WorkflowSpec(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: Optional[str] = None
    on: List[str] = Field(default_factory=lambda: ["push"])
    env: Dict[str, str] = Field(default_factory=dict)
    jobs: Dict[str, JobSpec] = Field(min_length=1)

    @field_validator("on", mode="before")
    @classmethod
    def normalize_on(cls, value: Any) -> List[str]:
        # `on` may be a single event, a list, or a mapping of event -> filters
        return _as_list(value) or ["push"]

    @field_validator("env", mode="before")
    @classmethod
    def normalize_env(cls, value: Any) -> Dict[str, str]:
        return _as_env(value)

    def to_workflow(self, default_name: str = "workflow") -> Workflow:
        return Workflow(
            name=self.name or default_name,
            jobs={job_id: spec.to_job(job_id) for job_id, spec in self.jobs.items()},
            on=list(self.on),
            env=dict(self.env),
        )


# ----------------------------------------------------------------------
# Loading
# ----------------------------------------------------------------------

def _format_validation_error(e: ValidationError) -> str:
    lines = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        lines.append(f"{loc or '<root>'}: {err.get('msg')}")
    return "; ".join(lines)


def parse_workflow(data: Dict[str, Any], default_name: str = "workflow") -> Workflow:
    """Validate a definition mapping and convert it to a Workflow."""
    if not isinstance(data, dict):
        raise WorkflowLoadError("Workflow document must be a mapping")

    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data and "on" not in data:
        data["on"] = data.pop(True)

    try:
        spec = WorkflowSpec.model_validate(data)
    except ValidationError as e:
        raise WorkflowLoadError(f"Invalid workflow definition: {_format_validation_error(e)}") from e

    return spec.to_workflow(default_name)


def loads_workflow(text: str, default_name: str = "workflow") -> Workflow:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise WorkflowLoadError(f"Workflow is not valid YAML: {e}") from e
    return parse_workflow(data, default_name)


def _load_python_workflow(wf_path: Path) -> Workflow:
    """
    The file must define one of:
      - workflow() -> Workflow | List[Job]
      - WORKFLOW = Workflow(...)
      - JOBS = [Job, ...]
    """
    module_name = f"replayci_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
    except Exception as e:
        raise WorkflowLoadError(f"Failed to execute workflow file {wf_path.name}: {e}") from e

    result: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        result = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        result = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        result = globals_dict["JOBS"]

    if isinstance(result, Workflow):
        return result
    if isinstance(result, list) and all(isinstance(j, Job) for j in result):
        return Workflow.from_jobs(wf_path.stem, result)

    raise WorkflowLoadError(
        "Workflow file must return/define a Workflow or List[Job]. "
        "Define workflow(), WORKFLOW = wf(...) or JOBS = [Job, ...]."
    )


def load_workflow(path: Union[str, Path]) -> Workflow:
    """
    Load a workflow definition from a file.

    Supports YAML (.yml/.yaml), JSON (.json) and Python (.py) workflow files.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise WorkflowLoadError(f"Workflow file not found: {wf_path}")

    suffix = wf_path.suffix.lower()
    if suffix == ".py":
        return _load_python_workflow(wf_path)

    text = wf_path.read_text(encoding="utf-8")
    if suffix == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise WorkflowLoadError(f"Workflow is not valid JSON: {e}") from e
        return parse_workflow(data, wf_path.stem)
    if suffix in (".yml", ".yaml"):
        return loads_workflow(text, wf_path.stem)

    raise WorkflowLoadError(f"Unsupported workflow file type: {wf_path.name}")
