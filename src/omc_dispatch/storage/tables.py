"""SQLModel ORM tables for the job store."""

from __future__ import annotations

from sqlalchemy import CheckConstraint, Column, Index, Integer, PrimaryKeyConstraint, Text, text
from sqlmodel import Field, SQLModel


class JobRow(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("provider", "job_id", name="pk_jobs"),
        CheckConstraint(
            "status IN ('spawned', 'running', 'completed', 'failed', 'timeout')",
            name="ck_jobs_status",
        ),
        Index("idx_jobs_status", "status"),
        Index("idx_jobs_provider", "provider"),
        Index("idx_jobs_spawned_at", "spawned_at"),
        Index("idx_jobs_provider_status", "provider", "status"),
    )

    provider: str = Field(sa_column=Column(Text, nullable=False))
    job_id: str = Field(sa_column=Column(Text, nullable=False))
    slug: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(
        default="spawned",
        sa_column=Column(Text, nullable=False, server_default=text("'spawned'")),
    )
    pid: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    prompt_file: str = Field(sa_column=Column(Text, nullable=False))
    response_file: str = Field(sa_column=Column(Text, nullable=False))
    model: str = Field(sa_column=Column(Text, nullable=False))
    agent_role: str = Field(sa_column=Column(Text, nullable=False))
    spawned_at: str = Field(sa_column=Column(Text, nullable=False))
    completed_at: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    used_fallback: int = Field(
        default=0,
        sa_column=Column(Integer, nullable=False, server_default=text("0")),
    )
    fallback_model: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    killed_by_user: int = Field(
        default=0,
        sa_column=Column(Integer, nullable=False, server_default=text("0")),
    )
