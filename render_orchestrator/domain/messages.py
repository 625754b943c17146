"""Wire formats exchanged with the queue and the render worker."""
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

# Tokens we mint are 64 URL-safe characters; leave headroom for other engines.
TOKEN_PATTERN = r"^[A-Za-z0-9_\-.~+/=]+$"
ContinuationToken = Annotated[
    str,
    StringConstraints(min_length=32, max_length=2048, pattern=TOKEN_PATTERN),
]

class SubmissionMessage(BaseModel):
    """Body of a job submission message on the render queue."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    job_id: Annotated[str, StringConstraints(min_length=1, strip_whitespace=True)] = Field(alias="jobId")
    resource_key: Annotated[str, StringConstraints(min_length=1, strip_whitespace=True)] = Field(alias="resourceKey")
    worker_parameters: dict[str, Any] = Field(default_factory=dict, alias="workerParameters")

class ErrorItem(BaseModel):
    message: str
    name: Optional[str] = None
    stack: Optional[str] = None

class _CallbackBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    worker_handle: Optional[str] = Field(default=None, alias="workerHandle")
    continuation_token: ContinuationToken = Field(alias="continuationToken")

class SuccessCallback(_CallbackBase):
    type: Literal["success"]
    output_location: Annotated[str, StringConstraints(min_length=1)] = Field(alias="outputLocation")

class ErrorCallback(_CallbackBase):
    type: Literal["error"]
    error_detail: list[ErrorItem] = Field(default_factory=list, alias="errorDetail")

class TimeoutCallback(_CallbackBase):
    type: Literal["timeout"]
    error_detail: list[ErrorItem] = Field(default_factory=list, alias="errorDetail")

CompletionCallback = Annotated[
    Union[SuccessCallback, ErrorCallback, TimeoutCallback],
    Field(discriminator="type"),
]

class HeartbeatCallback(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    continuation_token: ContinuationToken = Field(alias="continuationToken")
    progress: Optional[float] = Field(default=None, ge=0, le=100)

class SqsRecord(BaseModel):
    """Single record of an SQS batch (Lambda event shape)."""
    model_config = ConfigDict(extra="ignore")

    messageId: str
    body: str
    receiptHandle: Optional[str] = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    messageAttributes: dict[str, Any] = Field(default_factory=dict)

class BatchItemFailure(BaseModel):
    itemIdentifier: str

class BatchResponse(BaseModel):
    batchItemFailures: list[BatchItemFailure] = Field(default_factory=list)
