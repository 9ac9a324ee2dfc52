"""SQLModel schema for job records and operator notifications."""

# NOTE: Avoid `from __future__ import annotations` because SQLModel evaluates
# field annotations at class creation time.

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from kiln.core.models.enums import JobStatus, RunnerType
from kiln.core.time import utc_now


def _new_job_id() -> str:
    return str(uuid4())


def _new_id() -> str:
    return uuid4().hex[:8]


class Job(SQLModel, table=True):
    """A delegated coding task and its execution outcome."""

    __tablename__ = "jobs"  # type: ignore[bad-override]

    id: str = Field(default_factory=_new_job_id, primary_key=True)
    prompt: str
    enriched_prompt: str | None = Field(default=None)
    status: JobStatus = Field(default=JobStatus.CREATED, index=True)
    source: str | None = Field(default=None)
    branch: str | None = Field(default=None)
    pr_url: str | None = Field(default=None)
    summary: str | None = Field(default=None)
    error: str | None = Field(default=None)
    runner_type: RunnerType = Field(default=RunnerType.GITHUB)
    chat_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utc_now, index=True)
    completed_at: datetime | None = Field(default=None)


class Notification(SQLModel, table=True):
    """Operator-facing message emitted when a job finishes."""

    __tablename__ = "notifications"  # type: ignore[bad-override]

    id: str = Field(default_factory=_new_id, primary_key=True)
    text: str
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    read: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=utc_now, index=True)
