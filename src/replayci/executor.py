# executor.py
from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Protocol

from .model import Step
from .store import BoundArtifacts, SecretStore

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_TAIL = 4000


@dataclass(frozen=True)
class StepOutcome:
    exit_code: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class StepContext:
    """Everything a step executor may see while running one step."""
    run_id: str
    job: str
    event: str
    workdir: Path
    artifacts: BoundArtifacts
    secrets: SecretStore
    env: Dict[str, str] = field(default_factory=dict)
    output_tail: int = DEFAULT_OUTPUT_TAIL


class StepExecutor(Protocol):
    async def execute(self, step: Step, context: StepContext) -> StepOutcome:
        """
        Run one step. Non-zero exit codes are reported, not raised.
        Cancellation of the awaiting task must stop the work.
        """


def _tail(text: str, limit: int) -> str:
    return text[-limit:] if limit and len(text) > limit else text


def _kill(proc: asyncio.subprocess.Process) -> None:
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


class LocalExecutor:
    """
    Runs `run:` steps through the system shell and `uses:` steps through the
    action registry, both on this machine.
    """

    async def execute(self, step: Step, context: StepContext) -> StepOutcome:
        if step.uses:
            return await self._run_action(step, context)
        return await self._run_shell(step, context)

    async def _run_shell(self, step: Step, context: StepContext) -> StepOutcome:
        cwd = (context.workdir / (step.cwd or ".")).resolve()
        if not cwd.exists():
            return StepOutcome(exit_code=1, output=f"cwd not found: {cwd}")

        env = os.environ.copy()
        env.update(context.env)

        logger.debug("[%s] $ %s", context.job, context.secrets.redact(step.run or ""))
        proc = await asyncio.create_subprocess_shell(
            step.run or "",
            cwd=str(cwd),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=(os.name == "posix"),
        )
        try:
            stdout, _ = await proc.communicate()
        except asyncio.CancelledError:
            _kill(proc)
            await proc.wait()
            raise

        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        return StepOutcome(exit_code=proc.returncode or 0, output=_tail(output, context.output_tail))

    async def _run_action(self, step: Step, context: StepContext) -> StepOutcome:
        # Actions run in a worker thread that cancellation cannot stop. Once the
        # job is finished the store refuses its writes.
        from .actions import resolve_action

        action = resolve_action(step.uses or "")
        if action is None:
            return StepOutcome(exit_code=127, output=f"unknown action: {step.uses}")

        inputs: Dict[str, Any] = dict(step.with_)
        try:
            return await asyncio.to_thread(action, context, inputs)
        except Exception as e:
            logger.debug("[%s] action %s raised", context.job, step.uses, exc_info=True)
            return StepOutcome(exit_code=1, output=f"{type(e).__name__}: {e}")
