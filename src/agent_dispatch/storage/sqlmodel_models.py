"""SQLModel ORM tables for the job store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, LargeBinary, Text
from sqlmodel import Field, SQLModel


class JobRow(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_queue", "status", "queue_position"),
        Index("idx_jobs_idempotency", "idempotency_key", "status"),
    )

    job_id: str = Field(primary_key=True)
    idempotency_key: str | None = Field(default=None)
    payload: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    status: str = Field(index=True)
    attempt: int = Field(default=0)
    max_attempts: int = Field(default=3)
    queue_position: int = Field(default=0)
    unit_id: str | None = Field(default=None)
    failure_class: str | None = Field(default=None, index=True)
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_transition_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
