"""Export job registries.

The orchestrator talks to a ``JobStore``; two backends exist:

- ``InMemoryJobStore``: a lock-protected dict for a single process
- ``SqlJobStore``: the ``export_jobs`` table through SQLAlchemy's async engine,
  so several API processes can share job state

Readers always receive detached copies. Writers go through ``update`` with a
mutator callback so each change is applied to the current stored state.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from timeline_export.models.base import Base
from timeline_export.models.export_job import ExportJob, JobStatus
from timeline_export.models.export_job_record import ExportJobRecord

logger = logging.getLogger(__name__)

# Returns False to leave the stored job untouched
JobMutator = Callable[[ExportJob], bool]


class JobStore(ABC):
    """Create/get/update/list/delete/sweep over export jobs."""

    async def init(self) -> None:
        """Prepare backing storage."""

    async def close(self) -> None:
        """Release backing resources."""

    @abstractmethod
    async def create(self, job: ExportJob) -> ExportJob: ...

    @abstractmethod
    async def get(self, job_id: str) -> ExportJob | None: ...

    @abstractmethod
    async def update(self, job_id: str, mutator: JobMutator) -> ExportJob | None:
        """Apply ``mutator`` to the stored job; returns the resulting snapshot."""

    @abstractmethod
    async def list_jobs(self, status: JobStatus | None = None) -> list[ExportJob]: ...

    @abstractmethod
    async def delete(self, job_id: str) -> bool: ...

    async def sweep(self, older_than: datetime) -> list[ExportJob]:
        """Remove every job created before ``older_than``; returns the removed jobs."""
        expired = [job for job in await self.list_jobs() if job.created_at < older_than]
        for job in expired:
            await self.delete(job.id)
        return expired


class InMemoryJobStore(JobStore):
    def __init__(self) -> None:
        self._jobs: dict[str, ExportJob] = {}
        self._lock = threading.Lock()

    async def create(self, job: ExportJob) -> ExportJob:
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already exists")
            self._jobs[job.id] = job.snapshot()
            return job.snapshot()

    async def get(self, job_id: str) -> ExportJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.snapshot() if job else None

    async def update(self, job_id: str, mutator: JobMutator) -> ExportJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            draft = job.snapshot()
            if mutator(draft):
                self._jobs[job_id] = draft
                return draft.snapshot()
            return job.snapshot()

    async def list_jobs(self, status: JobStatus | None = None) -> list[ExportJob]:
        with self._lock:
            return [j.snapshot() for j in self._jobs.values() if status is None or j.status is status]

    async def delete(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None


class SqlJobStore(JobStore):
    def __init__(self, database_url: str | None = None, *, engine: AsyncEngine | None = None, echo: bool = False):
        if engine is None:
            if not database_url:
                raise ValueError("SqlJobStore needs a database_url or an engine")
            engine = create_async_engine(database_url, echo=echo, future=True, pool_pre_ping=True)
        self.engine = engine
        self.session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        # Serializes read-modify-write within this process
        self._write_lock = asyncio.Lock()

    async def init(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    async def create(self, job: ExportJob) -> ExportJob:
        async with self.session_maker() as session:
            session.add(ExportJobRecord.from_job(job))
            await session.commit()
        return job.snapshot()

    async def get(self, job_id: str) -> ExportJob | None:
        async with self.session_maker() as session:
            record = await session.get(ExportJobRecord, job_id)
            return record.to_job() if record else None

    async def update(self, job_id: str, mutator: JobMutator) -> ExportJob | None:
        async with self._write_lock:
            async with self.session_maker() as session:
                record = await session.get(ExportJobRecord, job_id, with_for_update=True)
                if record is None:
                    return None
                job = record.to_job()
                if not mutator(job):
                    return record.to_job()
                record.apply(job)
                await session.commit()
                return job

    async def list_jobs(self, status: JobStatus | None = None) -> list[ExportJob]:
        async with self.session_maker() as session:
            query = select(ExportJobRecord).order_by(ExportJobRecord.created_at)
            if status is not None:
                query = query.where(ExportJobRecord.status == status.value)
            result = await session.execute(query)
            return [record.to_job() for record in result.scalars()]

    async def delete(self, job_id: str) -> bool:
        async with self.session_maker() as session:
            result = await session.execute(delete(ExportJobRecord).where(ExportJobRecord.id == job_id))
            await session.commit()
            return result.rowcount > 0


def create_job_store(database_url: str = "", echo: bool = False) -> JobStore:
    """SQL-backed store when a database URL is configured, in-memory otherwise."""
    if database_url:
        logger.info("[EXPORT] Using SQL job store")
        return SqlJobStore(database_url, echo=echo)
    logger.info("[EXPORT] Using in-memory job store")
    return InMemoryJobStore()
