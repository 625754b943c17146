class JobError(Exception):
    """Base exception for render orchestrator errors."""
    pass

class ConfigurationError(JobError):
    pass

class JobNotFoundError(JobError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")

class InvalidJobStateError(JobError):
    def __init__(self, current_status, target_status):
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(f"Cannot transition from {current_status} to {target_status}")

class DuplicateSubmissionError(JobError):
    def __init__(self, resource_key, active_job_id=None):
        self.resource_key = resource_key
        self.active_job_id = active_job_id
        super().__init__(f"Resource {resource_key} already has an active job ({active_job_id})")

class MessageParseError(JobError):
    """Submission message that can never be processed. Not retried."""
    pass

class WorkflowDefinitionError(ConfigurationError):
    pass

# --- Workflow engine ---

class ExecutionError(JobError):
    pass

class ExecutionAlreadyExistsError(ExecutionError):
    def __init__(self, execution_id):
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} already exists")

class ExecutionNotFoundError(ExecutionError):
    def __init__(self, execution_id):
        super().__init__(f"Execution {execution_id} not found")

class TaskTokenError(ExecutionError):
    pass

class TaskDoesNotExistError(TaskTokenError):
    pass

class TaskAlreadyResolvedError(TaskTokenError):
    """Token was consumed, superseded or canceled before this signal arrived."""
    pass

# --- Render worker ---

class WorkerInvocationError(JobError):
    transient = False
    error_code = "Worker.Error"

class WorkerThrottledError(WorkerInvocationError):
    transient = True
    error_code = "Worker.Throttled"

class WorkerUnavailableError(WorkerInvocationError):
    transient = True
    error_code = "Worker.Unavailable"

class WorkerRejectedError(WorkerInvocationError):
    error_code = "Worker.Rejected"
