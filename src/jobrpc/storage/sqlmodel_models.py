"""SQLModel ORM tables for the RPC job store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class RpcJob(SQLModel, table=True):
    __tablename__ = "rpc_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("ix_rpc_jobs_expires_at", "expires_at"),
        Index("ix_rpc_jobs_status_created_at", "status", "created_at"),
        Index("ix_rpc_jobs_handler_args_created_at", "handler_path", "args_hash", "created_at"),
    )

    job_id: str = Field(primary_key=True)
    handler_path: str
    args_json: str = Field(sa_column=Column(Text, nullable=False))
    args_hash: str
    secret: str
    status: str
    result_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    attempt: int = 0
    worker_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
