# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from .model import Job, Step, Workflow


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    if_: str | None = None,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, env=env or {}, if_=if_, timeout=timeout)


def uses(
    name: str,
    action: str,
    /,
    *,
    if_: str | None = None,
    timeout: float | None = None,
    **inputs: Any,
) -> Step:
    """
    Create a step that calls a reusable action.

        uses("Upload build", "actions/upload-artifact@v4", name="dist", path="dist/")
    """
    return Step(name=name, uses=action, with_=dict(inputs), if_=if_, timeout=timeout)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,
    steps_list: Optional[List[Step]] = None,
    needs: Optional[List[str]] = None,
    if_: str | None = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
    cwd: str | None = None,
) -> Job:
    """
    Functional job constructor. Steps may be passed positionally, as
    `steps_list`, or both (list first). `cwd` fills in shell steps that
    do not set their own.
    """
    ordered: List[Step] = [*(steps_list or []), *steps]
    if not ordered:
        raise ValueError(f"job {name!r} has no steps")

    if cwd is not None:
        ordered = [s if s.cwd is not None or s.uses else replace(s, cwd=cwd) for s in ordered]

    return Job(
        name=name,
        steps=ordered,
        needs=list(needs or []),
        if_=if_,
        env=dict(env or {}),
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._if: str | None = None
        self._timeout: float | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def when(self, condition: str):
        self._if = condition
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs: Any):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def use_action(self, name: str, action: str, /, **inputs: Any):
        self._steps.append(uses(name, action, **inputs))
        return self

    def with_env(self, **env):
        # values are passed to subprocesses, which only take strings
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            if_=self._if,
            env=dict(self._env),
            timeout=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.11","3.12"]).jobs(
            lambda v: job(f"test-py{v}", sh(...))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: Job | List[Job],
    name: str = "workflow",
    on: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
) -> Workflow:
    """
    Workflow definition helper. Matrix expansions (lists of jobs) are flattened.

        from replayci import wf, job, sh

        def workflow():
            return wf(
                job("compile", sh("Build", "make")),
                job("test", sh("Test", "make test"), needs=["compile"]),
                name="ci",
                on=["push", "pull_request"],
            )
    """
    flat: List[Job] = []
    for item in jobs:
        if isinstance(item, list):
            flat.extend(item)
        else:
            flat.append(item)
    return Workflow.from_jobs(name, flat, on=list(on or ["push"]), env=dict(env or {}))
