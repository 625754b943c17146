from datetime import datetime
from typing import Optional, Any

from sqlalchemy import String, Integer, Float, DateTime, ForeignKey, Index, Text, text, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import JSONB

from render_orchestrator.db.session import Base
from render_orchestrator.domain.models import utcnow
from render_orchestrator.domain.states import (
    JobStatus, JobEvent, WorkflowState, ExecutionStatus, TokenStatus,
)

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")

_ACTIVE_JOB = text("status IN ('pending', 'queued', 'processing')")

class RenderJob(Base):
    __tablename__ = "render_jobs"

    job_id: Mapped[str] = mapped_column(String, primary_key=True)
    resource_key: Mapped[str] = mapped_column(String, nullable=False, index=True)
    status: Mapped[JobStatus] = mapped_column(String, default=JobStatus.PENDING, index=True)

    worker_parameters: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    # Correlation
    workflow_execution_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    continuation_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    render_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    bucket_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Outcome
    output_location: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    error_detail: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JsonType, nullable=True)
    progress: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    events: Mapped[list["JobEventLog"]] = relationship("JobEventLog", back_populates="job", cascade="all, delete-orphan")

    __table_args__ = (
        # At most one non-terminal job per resource key
        Index(
            "uq_render_jobs_active_resource", "resource_key", unique=True,
            postgresql_where=_ACTIVE_JOB, sqlite_where=_ACTIVE_JOB,
        ),
        Index("ix_render_jobs_resource_created", "resource_key", "created_at"),
    )

class WorkflowExecution(Base):
    __tablename__ = "workflow_executions"

    # Deterministic name derived from the job id
    id: Mapped[str] = mapped_column(String, primary_key=True)
    job_id: Mapped[str] = mapped_column(String, ForeignKey("render_jobs.job_id", ondelete="CASCADE"), unique=True, nullable=False)

    state: Mapped[WorkflowState] = mapped_column(String, default=WorkflowState.TRIGGER_RENDER, index=True)
    status: Mapped[ExecutionStatus] = mapped_column(String, default=ExecutionStatus.RUNNING, index=True)

    input: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    output: Mapped[Optional[dict[str, Any]]] = mapped_column(JsonType, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    cause: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # TriggerRender retry bookkeeping; next_attempt_at doubles as the claim lease
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    # WaitForCompletion ceilings
    timeout_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    heartbeat_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    definition_digest: Mapped[str] = mapped_column(String, nullable=False)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    stopped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    tokens: Mapped[list["TaskToken"]] = relationship("TaskToken", back_populates="execution", cascade="all, delete-orphan")

    __table_args__ = (
        # Dispatcher poll: running executions waiting in TriggerRender
        Index("ix_executions_runnable", "state", "next_attempt_at", postgresql_where=text("status = 'running'")),
    )

class TaskToken(Base):
    __tablename__ = "task_tokens"

    token: Mapped[str] = mapped_column(String, primary_key=True)
    execution_id: Mapped[str] = mapped_column(String, ForeignKey("workflow_executions.id", ondelete="CASCADE"), index=True)
    job_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    state_name: Mapped[WorkflowState] = mapped_column(String, nullable=False)

    status: Mapped[TokenStatus] = mapped_column(String, default=TokenStatus.PENDING, index=True)
    outcome: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    consumed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    execution: Mapped["WorkflowExecution"] = relationship("WorkflowExecution", back_populates="tokens")

class JobEventLog(Base):
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String, ForeignKey("render_jobs.job_id", ondelete="CASCADE"), index=True)

    event_type: Mapped[JobEvent] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # Context (e.g. attempt number, error message, execution id)
    meta: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    job: Mapped["RenderJob"] = relationship("RenderJob", back_populates="events")

class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
