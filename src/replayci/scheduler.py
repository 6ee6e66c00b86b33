# scheduler.py
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Set, Union

from .conditions import (
    ConditionContext,
    ConditionEvaluator,
    ExpressionEvaluator,
    build_context,
    interpolate,
    validate_template,
)
from .dag import DependencyGraph, build_dag
from .errors import ConditionError, DefinitionError, RunCancelledError, StepFailure, StepTimeoutError
from .executor import DEFAULT_OUTPUT_TAIL, LocalExecutor, StepContext, StepExecutor, StepOutcome
from .model import Job, JobRun, JobStatus, Run, Step, StepRun, StepStatus, Workflow, utcnow
from .store import ArtifactStore, BoundArtifacts, SecretStore, VariableStore

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"

# `needs.<job>.result` uses the workflow-file vocabulary
RESULT_NAMES = {
    JobStatus.PENDING: "pending",
    JobStatus.RUNNING: "running",
    JobStatus.SUCCEEDED: "success",
    JobStatus.FAILED: "failure",
    JobStatus.SKIPPED: "skipped",
}


@dataclass(frozen=True)
class RunEvent:
    """One state transition of a run, published to listeners as it happens."""
    kind: str  # run_started | job_started | job_finished | job_skipped | step_started | step_finished | run_finished
    run_id: str
    at: datetime
    job: str | None = None
    step: str | None = None
    status: str | None = None
    detail: str | None = None


RunListener = Callable[[RunEvent], None]


# ----------------------------------------------------------------------
# Validation (before anything is dispatched)
# ----------------------------------------------------------------------

def _check_step(job: Job, step: Step) -> None:
    if bool(step.run) == bool(step.uses):
        raise DefinitionError(
            f"Job '{job.name}' step '{step.name}' must define exactly one of 'run' or 'uses'"
        )


def validate_workflow(workflow: Workflow, evaluator: Optional[ConditionEvaluator] = None) -> DependencyGraph:
    """
    Check everything that can be checked statically.

    Returns the dependency graph; raises a DefinitionError subclass otherwise.
    """
    evaluator = evaluator or ExpressionEvaluator()
    graph = build_dag(workflow)

    for job in workflow.jobs.values():
        if not job.steps:
            raise DefinitionError(f"Job '{job.name}' has no steps")
        if job.if_:
            evaluator.validate(job.if_)
        for value in job.env.values():
            validate_template(str(value))
        for step in job.steps:
            _check_step(job, step)
            if step.if_:
                evaluator.validate(step.if_)
            for text in [step.run or "", *map(str, step.with_.values()), *map(str, step.env.values())]:
                validate_template(text)

    return graph


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

class Scheduler:
    """
    Runs one workflow once (a Run).

    - Jobs whose needs are all terminal become eligible; their `if` is
      evaluated right then against a snapshot of the run.
    - Eligible jobs are dispatched as asyncio tasks, at most `concurrency`
      at a time. The dispatch loop waits for the first completion and
      reacts to it; it never waits on a step directly.
    - A failed step fails its job; dependents are skipped unless their
      condition says otherwise.
    """

    def __init__(
        self,
        workflow: Workflow,
        *,
        executor: Optional[StepExecutor] = None,
        concurrency: Optional[int] = None,
        event: str = "push",
        step_timeout: Optional[float] = None,
        secrets: Union[SecretStore, Mapping[str, str], None] = None,
        variables: Union[VariableStore, Mapping[str, str], None] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        workdir: Union[str, Path] = ".",
        output_tail: int = DEFAULT_OUTPUT_TAIL,
        run_id: Optional[str] = None,
        listeners: Optional[List[RunListener]] = None,
    ):
        if concurrency is None:
            from .settings import get_settings
            concurrency = get_settings().concurrency
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        self.workflow = workflow
        self.evaluator = evaluator or ExpressionEvaluator()
        # definition errors surface here, before any job runs
        self.graph = validate_workflow(workflow, self.evaluator)

        self.executor = executor or LocalExecutor()
        self.concurrency = concurrency
        self.event = event
        self.step_timeout = step_timeout
        self.workdir = Path(workdir).resolve()
        self.output_tail = output_tail

        if isinstance(secrets, SecretStore):
            self.secrets = secrets
        else:
            self.secrets = SecretStore(secrets)
        self.secrets.freeze()

        if isinstance(variables, VariableStore):
            self.variables = variables
        else:
            self.variables = VariableStore(variables)

        self.run = Run(
            run_id=run_id or uuid.uuid4().hex,
            workflow=workflow.name,
            event=event,
            jobs={name: JobRun(name=name) for name in self.graph.order()},
        )
        self.artifacts = ArtifactStore(self.graph, self._completed)

        self._listeners: List[RunListener] = list(listeners or [])
        self._in_flight: Dict[asyncio.Task, str] = {}
        self._wakeup: Optional[asyncio.Event] = None
        self._cancel_requested = False

    # ---- events ----

    def subscribe(self, listener: RunListener) -> None:
        self._listeners.append(listener)

    def _emit(self, kind: str, **fields: Any) -> None:
        if fields.get("detail"):
            fields["detail"] = self.secrets.redact(fields["detail"])
        event = RunEvent(kind=kind, run_id=self.run.run_id, at=utcnow(), **fields)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("run listener failed on %s", kind)

    # ---- state ----

    def status_of(self, job: str) -> JobStatus:
        return self.run.jobs[job].status

    def _completed(self, job: str) -> bool:
        return self.status_of(job) in (JobStatus.SUCCEEDED, JobStatus.FAILED)

    def _finish(self, name: str, status: JobStatus, reason: str | None = None) -> None:
        rec = self.run.jobs[name]
        rec.status = status
        rec.reason = self.secrets.redact(reason) if reason else reason
        rec.finished_at = utcnow()
        kind = "job_skipped" if status is JobStatus.SKIPPED else "job_finished"
        self._emit(kind, job=name, status=status.value, detail=rec.reason)
        logger.info("job %s -> %s%s", name, status.value, f" ({rec.reason})" if rec.reason else "")

    def _github(self, job: str | None = None) -> Dict[str, Any]:
        out = {"event_name": self.event, "run_id": self.run.run_id, "workflow": self.workflow.name}
        if job:
            out["job"] = job
        return out

    def job_context(self, name: str, env: Mapping[str, str] | None = None) -> ConditionContext:
        """Read-only snapshot a job's condition is evaluated against."""
        needs = {n: self.status_of(n) for n in self.graph.needs_of(name)}
        ancestors = self.graph.ancestors(name)
        return build_context(
            github=self._github(name),
            needs={n: RESULT_NAMES[s] for n, s in needs.items()},
            env=dict(env) if env is not None else {**self.workflow.env, **self.workflow.jobs[name].env},
            vars=self.variables.resolved(name),
            secrets=dict(self.secrets.values()),
            job_status=None if env is None else (CANCELLED if self._cancel_requested else "success"),
            succeeded=all(s is JobStatus.SUCCEEDED for s in needs.values()),
            failed=any(self.status_of(a) is JobStatus.FAILED for a in ancestors),
            cancelled=self._cancel_requested,
        )

    # ---- cancellation ----

    def cancel(self) -> None:
        """
        Cancel the run: pending jobs end skipped, running jobs end failed
        (cancelled) and in-flight executor calls are cancelled.
        """
        if self._cancel_requested or self.run.finished_at is not None:
            return
        self._cancel_requested = True
        self.run.cancelled = True
        logger.info("run %s cancellation requested", self.run.run_id)
        for task in self._in_flight:
            task.cancel()
        if self._wakeup is not None:
            self._wakeup.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    # ---- dispatch loop ----

    async def execute(self) -> Run:
        """Run every job to a terminal state and return the finished Run."""
        if self.run.started_at is not None:
            raise RuntimeError("a Scheduler executes its run only once")

        self._wakeup = asyncio.Event()
        self.run.started_at = utcnow()
        self._emit("run_started", status="running")
        logger.info(
            "run %s started: workflow=%s event=%s jobs=%d concurrency=%d",
            self.run.run_id, self.workflow.name, self.event, len(self.run.jobs), self.concurrency,
        )

        waiting: Dict[str, Set[str]] = {n: self.graph.needs_of(n) for n in self.run.jobs}
        ready: Deque[str] = deque()

        def release(done_job: str) -> None:
            # worklist: skipping a job may make its own dependents eligible
            if self._cancel_requested:
                return
            work = [done_job]
            while work:
                finished = work.pop()
                for dep in sorted(self.graph.dependents_of(finished)):
                    waiting[dep].discard(finished)
                    if waiting[dep] or self.status_of(dep) is not JobStatus.PENDING:
                        continue
                    if self._eligible(dep):
                        ready.append(dep)
                    else:
                        work.append(dep)

        try:
            for name in self.graph.order():
                if not self.graph.needs_of(name):
                    if self._eligible(name):
                        ready.append(name)
                    else:
                        release(name)

            while ready or self._in_flight:
                if self._cancel_requested:
                    break

                while ready and len(self._in_flight) < self.concurrency:
                    name = ready.popleft()
                    task = asyncio.create_task(self._run_job(name), name=f"job:{name}")
                    self._in_flight[task] = name

                if not self._in_flight:
                    continue

                wake = asyncio.create_task(self._wakeup.wait())
                try:
                    done, _ = await asyncio.wait(
                        [*self._in_flight, wake], return_when=asyncio.FIRST_COMPLETED
                    )
                finally:
                    wake.cancel()

                for task in done:
                    if task is wake:
                        continue
                    name = self._in_flight.pop(task)
                    if not task.cancelled() and task.exception() is not None:
                        # _run_job contains step errors; anything here is a bug
                        exc = task.exception()
                        logger.error("job %s crashed: %r", name, exc)
                        if not self.status_of(name).terminal:
                            self._finish(name, JobStatus.FAILED, f"internal error: {exc!r}")
                    release(name)

        except asyncio.CancelledError:
            self.cancel()
            await self._drain()
            raise
        finally:
            if self._cancel_requested:
                await self._drain()
            self.run.artifacts = self.artifacts.names()
            self.run.finished_at = utcnow()
            self._emit("run_finished", status=self.run.status)
            logger.info("run %s finished: %s", self.run.run_id, self.run.status)

        return self.run

    async def _drain(self) -> None:
        """Wait out cancelled tasks and close every non-terminal job."""
        tasks = list(self._in_flight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()

        for name, rec in self.run.jobs.items():
            if rec.status is JobStatus.RUNNING:
                self._finish(name, JobStatus.FAILED, CANCELLED)
            elif rec.status is JobStatus.PENDING:
                self._finish(name, JobStatus.SKIPPED, CANCELLED)

    def _eligible(self, name: str) -> bool:
        """Evaluate the job's condition now; a false condition skips the job."""
        job = self.workflow.jobs[name]
        try:
            should_run = self.evaluator.evaluate(job.if_, self.job_context(name))
        except ConditionError as e:
            self._finish(name, JobStatus.SKIPPED, f"condition error: {e}")
            return False

        if should_run:
            return True

        needs = self.graph.needs_of(name)
        unmet = sorted(n for n in needs if self.status_of(n) is not JobStatus.SUCCEEDED)
        if unmet and not job.if_:
            reason = f"needs not successful: {', '.join(unmet)}"
        else:
            reason = f"condition false: {job.if_ or 'success()'}"
        self._finish(name, JobStatus.SKIPPED, reason)
        return False

    # ---- job execution ----

    def _step_context(self, name: str, env: Dict[str, str]) -> StepContext:
        return StepContext(
            run_id=self.run.run_id,
            job=name,
            event=self.event,
            workdir=self.workdir,
            artifacts=BoundArtifacts(self.artifacts, name),
            secrets=self.secrets,
            env=env,
            output_tail=self.output_tail,
        )

    def _resolve_step(self, step: Step, ctx: ConditionContext) -> Step:
        def _value(v: Any) -> Any:
            return interpolate(v, ctx) if isinstance(v, str) else v

        return replace(
            step,
            run=interpolate(step.run, ctx) if step.run else step.run,
            with_={k: _value(v) for k, v in step.with_.items()},
            env={k: str(_value(v)) for k, v in step.env.items()},
        )

    async def _call_executor(self, name: str, step: Step, sctx: StepContext, timeout: Optional[float]) -> StepOutcome:
        if not timeout:
            return await self.executor.execute(step, sctx)
        try:
            return await asyncio.wait_for(self.executor.execute(step, sctx), timeout)
        except asyncio.TimeoutError:
            raise StepTimeoutError(job=name, step=step.name, timeout=timeout) from None

    async def _run_job(self, name: str) -> None:
        job = self.workflow.jobs[name]
        rec = self.run.jobs[name]
        rec.status = JobStatus.RUNNING
        rec.started_at = utcnow()
        self._emit("job_started", job=name, status=JobStatus.RUNNING.value)
        logger.info("job %s started", name)

        base_ctx = self.job_context(name)
        env = {k: interpolate(str(v), base_ctx) for k, v in {**self.workflow.env, **job.env}.items()}
        ctx = self.job_context(name, env)

        try:
            for step in job.steps:
                srec = StepRun(name=step.name)
                rec.steps.append(srec)

                if not self.evaluator.evaluate(step.if_, ctx):
                    srec.status = StepStatus.SKIPPED
                    self._emit("step_finished", job=name, step=step.name, status=srec.status.value,
                               detail=f"condition false: {step.if_}")
                    continue

                resolved = self._resolve_step(step, ctx)
                sctx = self._step_context(name, {**env, **resolved.env})
                timeout = step.timeout or job.timeout or self.step_timeout

                srec.status = StepStatus.RUNNING
                srec.started_at = utcnow()
                self._emit("step_started", job=name, step=step.name, status=srec.status.value)

                try:
                    outcome = await self._call_executor(name, resolved, sctx, timeout)
                except asyncio.CancelledError:
                    srec.status = StepStatus.FAILED
                    srec.finished_at = utcnow()
                    srec.output = CANCELLED
                    raise
                except StepTimeoutError:
                    srec.status = StepStatus.FAILED
                    srec.exit_code = 124
                    srec.finished_at = utcnow()
                    self._emit("step_finished", job=name, step=step.name, status=srec.status.value,
                               detail=f"timed out after {timeout:g}s")
                    raise
                except RunCancelledError:
                    # the executor saw the run cancelled from outside
                    srec.status = StepStatus.FAILED
                    srec.finished_at = utcnow()
                    srec.output = CANCELLED
                    self._finish(name, JobStatus.FAILED, CANCELLED)
                    self.cancel()
                    return
                except StepFailure:
                    raise
                except Exception as e:
                    logger.exception("executor raised on %s/%s", name, step.name)
                    outcome = StepOutcome(exit_code=1, output=f"{type(e).__name__}: {e}")

                srec.exit_code = outcome.exit_code
                srec.output = self.secrets.redact(outcome.output)
                srec.finished_at = utcnow()
                srec.status = StepStatus.SUCCEEDED if outcome.ok else StepStatus.FAILED
                self._emit("step_finished", job=name, step=step.name, status=srec.status.value,
                           detail=srec.output if not outcome.ok else None)

                if not outcome.ok:
                    raise StepFailure(job=name, step=step.name, exit_code=outcome.exit_code, output=srec.output)

        except StepFailure as e:
            self._finish(name, JobStatus.FAILED, str(e))
            return
        except asyncio.CancelledError:
            self._finish(name, JobStatus.FAILED, CANCELLED)
            raise

        self._finish(name, JobStatus.SUCCEEDED)


async def run_workflow(workflow: Workflow, **kwargs: Any) -> Run:
    """Create a Scheduler for `workflow` and execute it once."""
    return await Scheduler(workflow, **kwargs).execute()
