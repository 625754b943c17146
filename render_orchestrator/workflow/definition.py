"""
Declarative definition of the render workflow.

The state graph, retry policy and timeouts live here as data, in an
ASL-like shape. The engine reads every tunable it needs from the parsed
definition, and `to_canonical_json` gives a byte-stable serialization whose
digest is stored on each execution so a running deployment can tell which
definition an execution was started with.
"""
import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from render_orchestrator.domain.errors import WorkflowDefinitionError
from render_orchestrator.domain.states import JobStatus, WorkflowState

logger = logging.getLogger(__name__)

TERMINAL_STATES = (WorkflowState.SUCCEEDED, WorkflowState.FAILED, WorkflowState.TIMED_OUT)
RESUME_SIGNALS = frozenset({"success", "failure", "timeout"})

class RetryPolicy(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    error_equals: list[str] = Field(alias="ErrorEquals")
    interval_seconds: float = Field(alias="IntervalSeconds", ge=0)
    # Total attempts, the first one included
    max_attempts: int = Field(alias="MaxAttempts", ge=1)
    backoff_rate: float = Field(alias="BackoffRate", ge=1.0)

    def matches(self, error_code: str) -> bool:
        return "States.ALL" in self.error_equals or error_code in self.error_equals

class CatchPolicy(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    error_equals: list[str] = Field(alias="ErrorEquals")
    next: str = Field(alias="Next")

class StateDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["Task", "Succeed", "Fail"] = Field(alias="Type")
    resource: Optional[str] = Field(default=None, alias="Resource")
    next: Optional[str] = Field(default=None, alias="Next")
    # WaitForCompletion only: where each resume signal leads
    on_signal: Optional[dict[str, str]] = Field(default=None, alias="OnSignal")
    timeout_seconds: Optional[int] = Field(default=None, alias="TimeoutSeconds", gt=0)
    heartbeat_seconds: Optional[int] = Field(default=None, alias="HeartbeatSeconds", gt=0)
    retry: list[RetryPolicy] = Field(default_factory=list, alias="Retry")
    catch: list[CatchPolicy] = Field(default_factory=list, alias="Catch")
    # Terminal states only: job status projected on entry
    job_status: Optional[str] = Field(default=None, alias="JobStatus")

class WorkflowDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    comment: str = Field(default="", alias="Comment")
    start_at: str = Field(alias="StartAt")
    states: dict[str, StateDefinition] = Field(alias="States")

    @model_validator(mode="after")
    def _check_graph(self) -> "WorkflowDefinition":
        names = set(self.states)
        required = {state.value for state in WorkflowState}
        missing = required - names
        if missing:
            raise ValueError(f"missing states: {sorted(missing)}")
        if self.start_at != WorkflowState.TRIGGER_RENDER:
            raise ValueError(f"StartAt must be {WorkflowState.TRIGGER_RENDER}")

        for name, state in self.states.items():
            targets = [state.next] if state.next else []
            targets += [c.next for c in state.catch]
            targets += list((state.on_signal or {}).values())
            for target in targets:
                if target not in names:
                    raise ValueError(f"state {name} points at unknown state {target}")

        wait = self.states[WorkflowState.WAIT_FOR_COMPLETION]
        if wait.timeout_seconds is None:
            raise ValueError("WaitForCompletion needs TimeoutSeconds")
        signals = set(wait.on_signal or {})
        if signals != RESUME_SIGNALS:
            raise ValueError(f"WaitForCompletion OnSignal must map exactly {sorted(RESUME_SIGNALS)}, got {sorted(signals)}")
        for signal, target in wait.on_signal.items():
            if target not in TERMINAL_STATES:
                raise ValueError(f"OnSignal {signal} must lead to a terminal state, not {target}")
        for catcher in self.states[WorkflowState.TRIGGER_RENDER].catch:
            if catcher.next not in TERMINAL_STATES:
                raise ValueError(f"TriggerRender Catch must lead to a terminal state, not {catcher.next}")

        for name in TERMINAL_STATES:
            job_status = self.states[name].job_status
            if job_status not in {s.value for s in JobStatus}:
                raise ValueError(f"terminal state {name} needs a valid JobStatus, got {job_status!r}")
        return self

    # Accessors the engine uses

    @property
    def trigger(self) -> StateDefinition:
        return self.states[WorkflowState.TRIGGER_RENDER]

    @property
    def wait(self) -> StateDefinition:
        return self.states[WorkflowState.WAIT_FOR_COMPLETION]

    def retry_policy_for(self, error_code: str) -> Optional[RetryPolicy]:
        for policy in self.trigger.retry:
            if policy.matches(error_code):
                return policy
        return None

    def to_canonical_json(self) -> str:
        # Stable encoding keeps the digest deterministic across processes.
        data = self.model_dump(by_alias=True, exclude_none=True, exclude_defaults=False)
        return json.dumps(data, sort_keys=True, separators=(",", ":"))

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.to_canonical_json().encode("utf-8")).hexdigest()

def build_default_definition(
    timeout_seconds: int = 24 * 60 * 60,
    heartbeat_seconds: Optional[int] = None,
    max_attempts: int = 3,
    interval_seconds: float = 10,
    backoff_rate: float = 2.0,
) -> dict[str, Any]:
    wait: dict[str, Any] = {
        "Type": "Task",
        "Resource": "render-worker:callback.waitForTaskToken",
        "TimeoutSeconds": timeout_seconds,
        "OnSignal": {
            "success": WorkflowState.SUCCEEDED.value,
            "failure": WorkflowState.FAILED.value,
            "timeout": WorkflowState.TIMED_OUT.value,
        },
    }
    if heartbeat_seconds:
        wait["HeartbeatSeconds"] = heartbeat_seconds

    return {
        "Comment": "Render workflow: trigger the external renderer, then wait for its callback",
        "StartAt": WorkflowState.TRIGGER_RENDER.value,
        "States": {
            WorkflowState.TRIGGER_RENDER.value: {
                "Type": "Task",
                "Resource": "render-worker:start",
                "Next": WorkflowState.WAIT_FOR_COMPLETION.value,
                "Retry": [{
                    "ErrorEquals": ["Worker.Throttled", "Worker.Unavailable"],
                    "IntervalSeconds": interval_seconds,
                    "MaxAttempts": max_attempts,
                    "BackoffRate": backoff_rate,
                }],
                "Catch": [{
                    "ErrorEquals": ["States.ALL"],
                    "Next": WorkflowState.FAILED.value,
                }],
            },
            WorkflowState.WAIT_FOR_COMPLETION.value: wait,
            WorkflowState.SUCCEEDED.value: {"Type": "Succeed", "JobStatus": "completed"},
            WorkflowState.FAILED.value: {"Type": "Fail", "JobStatus": "failed"},
            WorkflowState.TIMED_OUT.value: {"Type": "Fail", "JobStatus": "failed"},
        },
    }

def parse_definition(data: dict[str, Any]) -> WorkflowDefinition:
    try:
        return WorkflowDefinition.model_validate(data)
    except ValidationError as e:
        raise WorkflowDefinitionError(f"Invalid workflow definition: {e}") from e

def load_definition(settings) -> WorkflowDefinition:
    """Definition from WORKFLOW_DEFINITION_PATH if set, else built from settings."""
    if settings.WORKFLOW_DEFINITION_PATH:
        path = Path(settings.WORKFLOW_DEFINITION_PATH)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise WorkflowDefinitionError(f"Cannot read workflow definition {path}: {e}") from e
        definition = parse_definition(data)
        logger.info("Loaded workflow definition from %s (digest=%s)", path, definition.digest[:12])
        return definition

    return parse_definition(build_default_definition(
        timeout_seconds=settings.RENDER_TIMEOUT_SECONDS,
        heartbeat_seconds=settings.RENDER_HEARTBEAT_SECONDS,
        max_attempts=settings.TRIGGER_MAX_ATTEMPTS,
        interval_seconds=settings.TRIGGER_RETRY_INTERVAL_SECONDS,
        backoff_rate=settings.TRIGGER_BACKOFF_RATE,
    ))
