# server.py
from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, Deque, Dict, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.exc import SQLAlchemyError

from .archive import RunArchive
from .errors import DefinitionError
from .loader import load_workflow, parse_workflow
from .model import Workflow
from .scheduler import Scheduler
from .settings import Settings, get_settings, load_secrets, load_variables

logger = logging.getLogger(__name__)

KEEP_UNARCHIVED_RUNS = 100

# -------------------- Schemas --------------------

class CreateRunRequest(BaseModel):
    workflow_path: Optional[str] = None
    definition: Optional[Dict[str, Any]] = None
    event: str = "push"
    concurrency: Optional[int] = Field(default=None, ge=1)
    variables: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_one_source(self) -> "CreateRunRequest":
        if (self.workflow_path is None) == (self.definition is None):
            raise ValueError("provide exactly one of 'workflow_path' or 'definition'")
        return self


class CreateRunResponse(BaseModel):
    run_id: Optional[str]
    status: str


class RunResponse(BaseModel):
    run_id: str
    workflow: str
    event: str
    status: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    jobs: Dict[str, Any] = Field(default_factory=dict)
    artifacts: list[str] = Field(default_factory=list)


# -------------------- Run manager --------------------

class RunManager:
    """
    Owns the runs started by this process and archives them when they end.

    A run stays in memory only while it is live. Once archived it is dropped
    (the archive serves it from then on); without an archive the newest
    `keep_unarchived` finished runs are kept.
    """

    def __init__(self, settings: Settings, archive: Optional[RunArchive] = None,
                 keep_unarchived: int = KEEP_UNARCHIVED_RUNS):
        self.settings = settings
        self.archive = archive
        self.keep_unarchived = keep_unarchived
        self.schedulers: Dict[str, Scheduler] = {}
        self.tasks: Dict[str, asyncio.Task] = {}
        self._unarchived: Deque[str] = deque()

    def start(self, scheduler: Scheduler) -> str:
        run_id = scheduler.run.run_id
        self.schedulers[run_id] = scheduler
        self.tasks[run_id] = asyncio.create_task(self._execute(scheduler), name=f"run:{run_id}")
        return run_id

    async def _execute(self, scheduler: Scheduler) -> None:
        run = await scheduler.execute()
        if self.archive is not None:
            try:
                await self.archive.save(run)
            except SQLAlchemyError as e:
                logger.warning("could not archive run %s: %s", run.run_id, e)
            else:
                self._evict(run.run_id)
                return

        self._unarchived.append(run.run_id)
        while len(self._unarchived) > self.keep_unarchived:
            self._evict(self._unarchived.popleft())

    def _evict(self, run_id: str) -> None:
        self.schedulers.pop(run_id, None)
        self.tasks.pop(run_id, None)
        logger.debug("run %s released from memory", run_id)

    def get(self, run_id: str) -> Optional[Scheduler]:
        return self.schedulers.get(run_id)

    async def shutdown(self) -> None:
        for scheduler in self.schedulers.values():
            scheduler.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks.values(), return_exceptions=True)
        if self.archive is not None:
            await self.archive.close()


# -------------------- App --------------------

def create_app(settings: Optional[Settings] = None, archive_url: Optional[str] = None) -> FastAPI:
    settings = settings or get_settings()
    if archive_url is None and settings.archive_enabled:
        archive_url = settings.archive_url

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        archive = RunArchive(archive_url) if archive_url else None
        if archive is not None:
            await archive.init()
        app.state.runs = RunManager(settings, archive)
        logger.info("replayci API started (archive: %s)", archive_url or "off")
        yield
        await app.state.runs.shutdown()
        logger.info("replayci API stopped")

    app = FastAPI(title="replayci", lifespan=lifespan)

    def _load(req: CreateRunRequest) -> Workflow:
        if req.definition is not None:
            return parse_workflow(req.definition)
        return load_workflow(req.workflow_path)

    @app.post("/runs", response_model=CreateRunResponse, status_code=202)
    async def create_run(req: CreateRunRequest):
        manager: RunManager = app.state.runs
        try:
            workflow = _load(req)
            if not workflow.triggered_by(req.event):
                return CreateRunResponse(run_id=None, status="not_triggered")

            variables = load_variables(settings=settings)
            variables.update(req.variables)
            scheduler = Scheduler(
                workflow,
                concurrency=req.concurrency or settings.concurrency,
                event=req.event,
                step_timeout=settings.step_timeout,
                secrets=load_secrets(settings=settings),
                variables=variables,
                workdir=settings.workdir,
                output_tail=settings.output_tail,
            )
        except DefinitionError as e:
            raise HTTPException(status_code=422, detail=str(e))

        run_id = manager.start(scheduler)
        logger.info("run %s accepted (%s, event=%s)", run_id, workflow.name, req.event)
        return CreateRunResponse(run_id=run_id, status=scheduler.run.status)

    @app.get("/runs/{run_id}", response_model=RunResponse)
    async def get_run(run_id: str):
        manager: RunManager = app.state.runs
        scheduler = manager.get(run_id)
        if scheduler is not None:
            return RunResponse(**scheduler.run.to_dict())
        if manager.archive is not None:
            archived = await manager.archive.get(run_id)
            if archived is not None:
                return RunResponse(**archived)
        raise HTTPException(status_code=404, detail="Run not found")

    @app.post("/runs/{run_id}/cancel", response_model=CreateRunResponse, status_code=202)
    async def cancel_run(run_id: str):
        manager: RunManager = app.state.runs
        scheduler = manager.get(run_id)
        if scheduler is None:
            archived = await manager.archive.get(run_id) if manager.archive is not None else None
            if archived is None:
                raise HTTPException(status_code=404, detail="Run not found")
            raise HTTPException(status_code=409, detail=f"Run already {archived['status']}")
        if scheduler.run.finished_at is not None:
            raise HTTPException(status_code=409, detail=f"Run already {scheduler.run.status}")
        scheduler.cancel()
        return CreateRunResponse(run_id=run_id, status="cancelling")

    @app.get("/runs", response_model=list[RunResponse])
    async def list_runs(limit: int = Query(default=20, ge=1, le=500)):
        manager: RunManager = app.state.runs
        # runs started by this process first, newest first; then the archive
        runs = [s.run.to_dict() for s in reversed(list(manager.schedulers.values()))]
        if manager.archive is not None:
            seen = {r["run_id"] for r in runs}
            runs += [r for r in await manager.archive.list_runs(limit) if r["run_id"] not in seen]
        return [RunResponse(**r) for r in runs[:limit]]

    return app


app = create_app()
