from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union

from render_orchestrator.domain.states import JobStatus

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)

@dataclass(frozen=True)
class WorkerHandle:
    render_id: str
    bucket_name: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {"renderId": self.render_id, "bucketName": self.bucket_name}

@dataclass
class StatusUpdate:
    """A single write through the status projector."""
    job_id: str
    status: JobStatus
    output_location: Optional[str] = None
    error_detail: Optional[list[dict[str, Any]]] = None
    progress: Optional[float] = None
    continuation_token: Optional[str] = None
    worker_handle: Optional[WorkerHandle] = None
    workflow_execution_id: Optional[str] = None

@dataclass
class RenderProgress:
    done: bool
    failed: bool
    progress: Optional[float] = None
    output_location: Optional[str] = None
    errors: list[dict[str, Any]] = field(default_factory=list)

# Outcomes that resume a suspended execution. One terminal workflow state each.

@dataclass(frozen=True)
class RenderSucceeded:
    output_location: str
    worker_handle: Optional[str] = None

@dataclass(frozen=True)
class RenderFailed:
    error_detail: list[dict[str, Any]]
    error: str = "RenderFailed"
    worker_handle: Optional[str] = None

@dataclass(frozen=True)
class RenderTimedOut:
    error_detail: list[dict[str, Any]]
    error: str = "RenderTimedOut"
    worker_handle: Optional[str] = None

RenderOutcome = Union[RenderSucceeded, RenderFailed, RenderTimedOut]
