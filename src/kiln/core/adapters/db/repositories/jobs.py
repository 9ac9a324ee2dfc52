from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Final

from sqlmodel import col, select

from kiln.core.adapters.db.schema import Job, Notification
from kiln.core.models.enums import JobStatus

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from kiln.core.adapters.db.repositories.base import ClosingAwareSessionFactory

_JOB_FIELDS: Final = frozenset(Job.model_fields) - {"id"}
_DEFAULT_LIST_LIMIT: Final = 50


class JobRepository:
    """Repository for job records and the notifications they produce."""

    def __init__(self, session_factory: ClosingAwareSessionFactory) -> None:
        self._session_factory = session_factory
        self._lock = asyncio.Lock()

    def _get_session(self) -> AsyncSession:
        return self._session_factory()

    async def insert_job(self, job: Job) -> Job:
        async with self._lock:
            async with self._get_session() as session:
                session.add(job)
                await session.commit()
                await session.refresh(job)
                return job

    async def get_job(self, job_id: str) -> Job | None:
        """Return a job by ID."""
        async with self._get_session() as session:
            return await session.get(Job, job_id)

    async def update_job(self, job_id: str, **fields: Any) -> Job | None:
        """Apply a partial update. Returns ``None`` when the job does not exist."""
        unknown = set(fields) - _JOB_FIELDS
        if unknown:
            msg = f"Unknown job field(s): {', '.join(sorted(unknown))}"
            raise ValueError(msg)

        async with self._lock:
            async with self._get_session() as session:
                job = await session.get(Job, job_id)
                if job is None:
                    return None
                for name, value in fields.items():
                    setattr(job, name, value)
                session.add(job)
                await session.commit()
                await session.refresh(job)
                return job

    async def list_jobs(
        self,
        *,
        statuses: Iterable[JobStatus] | None = None,
        limit: int = _DEFAULT_LIST_LIMIT,
    ) -> list[Job]:
        """Return the newest jobs first, optionally filtered by status."""
        statement = select(Job)
        if statuses is not None:
            statement = statement.where(col(Job.status).in_(list(statuses)))
        statement = statement.order_by(col(Job.created_at).desc()).limit(limit)
        async with self._get_session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def create_notification(self, text: str, meta: dict[str, Any] | None = None) -> Notification:
        async with self._lock:
            async with self._get_session() as session:
                notification = Notification(text=text, payload=dict(meta or {}))
                session.add(notification)
                await session.commit()
                await session.refresh(notification)
                return notification

    async def list_notifications(self, *, unread_only: bool = False) -> list[Notification]:
        statement = select(Notification)
        if unread_only:
            statement = statement.where(col(Notification.read).is_(False))
        statement = statement.order_by(col(Notification.created_at).asc())
        async with self._get_session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())
