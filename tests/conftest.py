from __future__ import annotations

import asyncio
import logging
import os
from typing import List, Tuple

import pytest

from replayci.executor import StepContext, StepOutcome
from replayci.model import Step


class ScriptedExecutor:
    """
    Executor that interprets `run:` as a tiny `;`-separated script instead
    of spawning a shell:

        sleep 0.1 | echo text | exit 3 | put NAME VALUE | get NAME | raise
    """

    def __init__(self):
        self.started: List[Tuple[str, str]] = []
        self.finished: List[Tuple[str, str]] = []
        self.active = 0
        self.max_active = 0

    async def execute(self, step: Step, context: StepContext) -> StepOutcome:
        key = (context.job, step.name)
        self.started.append(key)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        out: List[str] = []
        try:
            for cmd in (step.run or "").split(";"):
                verb, _, arg = cmd.strip().partition(" ")
                if verb == "sleep":
                    await asyncio.sleep(float(arg))
                elif verb == "echo":
                    out.append(arg)
                elif verb == "exit":
                    return StepOutcome(exit_code=int(arg), output="\n".join(out))
                elif verb == "put":
                    name, _, value = arg.partition(" ")
                    context.artifacts.put(name, value)
                elif verb == "get":
                    out.append(context.artifacts.get(arg).decode())
                elif verb == "raise":
                    raise RuntimeError(arg or "boom")
            return StepOutcome(exit_code=0, output="\n".join(out))
        finally:
            self.active -= 1
            self.finished.append(key)


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Keep REPLAYCI_* settings and the archive database out of the real environment."""
    from replayci.settings import get_settings

    for key in list(os.environ):
        if key.startswith("REPLAYCI_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("REPLAYCI_ARCHIVE_URL", f"sqlite+aiosqlite:///{tmp_path / 'runs.db'}")
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    root = logging.getLogger("replayci")
    for handler in list(root.handlers):
        if getattr(handler, "_replayci", False):
            root.removeHandler(handler)
    root.propagate = True
