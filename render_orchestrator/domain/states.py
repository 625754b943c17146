from enum import StrEnum, auto

class JobStatus(StrEnum):
    PENDING = auto()     # Created by the submission endpoint, message not consumed yet
    QUEUED = auto()      # Workflow execution started
    PROCESSING = auto()  # Render worker accepted the job
    COMPLETED = auto()
    FAILED = auto()      # Worker error, invocation error or timeout
    CANCELED = auto()

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.QUEUED, JobStatus.PROCESSING})

# Legal predecessors for each target status. PROCESSING -> PROCESSING is the
# in-place progress update; QUEUED -> COMPLETED/FAILED covers a callback that
# resolves the execution before the PROCESSING write lands.
ALLOWED_PREDECESSORS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset(),
    JobStatus.QUEUED: frozenset({JobStatus.PENDING}),
    JobStatus.PROCESSING: frozenset({JobStatus.QUEUED, JobStatus.PROCESSING}),
    JobStatus.COMPLETED: frozenset({JobStatus.QUEUED, JobStatus.PROCESSING}),
    JobStatus.FAILED: frozenset({JobStatus.PENDING, JobStatus.QUEUED, JobStatus.PROCESSING}),
    JobStatus.CANCELED: frozenset({JobStatus.PENDING, JobStatus.QUEUED, JobStatus.PROCESSING}),
}

# Statuses that reach the notification sink
NOTIFY_STATUSES = frozenset({JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED})

class WorkflowState(StrEnum):
    TRIGGER_RENDER = "TriggerRender"
    WAIT_FOR_COMPLETION = "WaitForCompletion"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"

class ExecutionStatus(StrEnum):
    RUNNING = auto()
    SUCCEEDED = auto()
    FAILED = auto()
    TIMED_OUT = auto()
    ABORTED = auto()

class TokenStatus(StrEnum):
    PENDING = auto()     # Execution suspended on this token
    CONSUMED = auto()    # Resumed (success, failure or timeout)
    SUPERSEDED = auto()  # Invocation attempt retried with a fresh token
    CANCELED = auto()    # Execution stopped

class JobEvent(StrEnum):
    CREATED = auto()
    QUEUED = auto()
    RENDER_INVOKED = auto()
    INVOCATION_RETRIED = auto()
    PROGRESS = auto()
    COMPLETED = auto()
    FAILED = auto()
    TIMED_OUT = auto()
    CANCELED = auto()
