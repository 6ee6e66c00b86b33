# archive.py
from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, selectinload

from .model import Run

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class RunRecord(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    workflow: Mapped[str] = mapped_column(sa.Text, nullable=False)
    event: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False
    )

    jobs: Mapped[List["JobRecord"]] = relationship(
        back_populates="run", cascade="all, delete-orphan", order_by="JobRecord.position"
    )


class JobRecord(Base):
    __tablename__ = "jobs"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    job_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    # step records, already redacted by the scheduler
    steps_json: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=True)

    run: Mapped[RunRecord] = relationship(back_populates="jobs")


def _ensure_sqlite_dir(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database and parsed.database != ":memory:":
        Path(parsed.database).expanduser().parent.mkdir(parents=True, exist_ok=True)


def record_to_dict(record: RunRecord) -> Dict[str, Any]:
    return {
        "run_id": record.id,
        "workflow": record.workflow,
        "event": record.event,
        "status": record.status,
        "started_at": record.started_at.isoformat() if record.started_at else None,
        "finished_at": record.finished_at.isoformat() if record.finished_at else None,
        "jobs": {
            j.job_name: {
                "status": j.status,
                "reason": j.reason,
                "steps": j.steps_json,
                "started_at": j.started_at.isoformat() if j.started_at else None,
                "finished_at": j.finished_at.isoformat() if j.finished_at else None,
            }
            for j in record.jobs
        },
    }


class RunArchive:
    """Stores terminal runs so they can be listed after the process exits."""

    def __init__(self, url: str):
        _ensure_sqlite_dir(url)
        self.url = url
        self.engine: AsyncEngine = create_async_engine(url)
        self.sessions = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        self._ready = False

    async def init(self) -> None:
        if self._ready:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._ready = True

    async def close(self) -> None:
        await self.engine.dispose()

    async def save(self, run: Run) -> None:
        await self.init()
        async with self.sessions() as s:
            async with s.begin():
                existing = await s.get(RunRecord, run.run_id)
                if existing is not None:
                    await s.delete(existing)
                    await s.flush()

                record = RunRecord(
                    id=run.run_id,
                    workflow=run.workflow,
                    event=run.event,
                    status=run.status,
                    started_at=run.started_at,
                    finished_at=run.finished_at,
                )
                for position, (name, job) in enumerate(run.jobs.items()):
                    record.jobs.append(
                        JobRecord(
                            position=position,
                            job_name=name,
                            status=job.status.value,
                            reason=job.reason,
                            steps_json=[st.to_dict() for st in job.steps],
                            started_at=job.started_at,
                            finished_at=job.finished_at,
                        )
                    )
                s.add(record)
        logger.info("archived run %s (%s)", run.run_id, run.status)

    async def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        await self.init()
        async with self.sessions() as s:
            q = sa.select(RunRecord).where(RunRecord.id == run_id).options(selectinload(RunRecord.jobs))
            record = (await s.execute(q)).scalar_one_or_none()
            return record_to_dict(record) if record else None

    async def list_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        await self.init()
        async with self.sessions() as s:
            q = (
                sa.select(RunRecord)
                .options(selectinload(RunRecord.jobs))
                .order_by(RunRecord.created_at.desc(), RunRecord.started_at.desc())
                .limit(limit)
            )
            records = (await s.execute(q)).scalars().all()
            return [record_to_dict(r) for r in records]
