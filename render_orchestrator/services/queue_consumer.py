import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import StrEnum, auto
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker

from render_orchestrator.commands.submit_job import ingest_submission, IngestOutcome
from render_orchestrator.domain.errors import MessageParseError
from render_orchestrator.domain.messages import SubmissionMessage, SqsRecord, BatchResponse, BatchItemFailure
from render_orchestrator.workflow.definition import WorkflowDefinition
from render_orchestrator.api.v1.metrics import SUBMISSIONS_TOTAL

logger = logging.getLogger(__name__)

class RecordResult(StrEnum):
    STARTED = auto()
    DUPLICATE = auto()
    INVALID = auto()  # permanent: acknowledged, never redelivered
    ERROR = auto()    # transient: reported back for redelivery

@dataclass
class BatchReport:
    results: dict[str, RecordResult] = field(default_factory=dict)

    @property
    def failed_ids(self) -> list[str]:
        return [mid for mid, res in self.results.items() if res == RecordResult.ERROR]

    @property
    def invalid_ids(self) -> list[str]:
        return [mid for mid, res in self.results.items() if res == RecordResult.INVALID]

    def to_response(self) -> BatchResponse:
        return BatchResponse(batchItemFailures=[BatchItemFailure(itemIdentifier=mid) for mid in self.failed_ids])

def parse_submission(body: Optional[str]) -> SubmissionMessage:
    if not body:
        raise MessageParseError("Empty message body")
    try:
        return SubmissionMessage.model_validate_json(body)
    except ValidationError as e:
        raise MessageParseError(f"Invalid submission message: {e.errors(include_url=False)}") from e

class QueueConsumer:
    """
    Converts batches of submission messages into workflow executions.

    Every record is handled concurrently (bounded by `concurrency`) in its own
    session, so one record's failure never affects its siblings. Only
    records that failed transiently are reported back; malformed messages are
    acknowledged and dropped because redelivering them can't help.
    """

    def __init__(self, session_factory: async_sessionmaker, definition: WorkflowDefinition, concurrency: int = 10):
        self.session_factory = session_factory
        self.definition = definition
        self.concurrency = max(1, concurrency)

    async def process_batch(self, records: Iterable[Union[SqsRecord, dict[str, Any]]]) -> BatchReport:
        report = BatchReport()
        parsed: list[SqsRecord] = []
        for index, raw in enumerate(records):
            try:
                parsed.append(raw if isinstance(raw, SqsRecord) else SqsRecord.model_validate(raw))
            except ValidationError as e:
                # Without a usable messageId the record can't be reported back; drop it
                message_id = raw.get("messageId") if isinstance(raw, dict) else None
                logger.error("Dropping malformed record %s: %s", message_id or index, e.errors(include_url=False))
                SUBMISSIONS_TOTAL.labels(outcome="invalid").inc()
                report.results[str(message_id or f"record-{index}")] = RecordResult.INVALID

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(record: SqsRecord) -> RecordResult:
            async with semaphore:
                return await self.process_record(record)

        outcomes = await asyncio.gather(*(bounded(r) for r in parsed), return_exceptions=True)

        for record, outcome in zip(parsed, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Unhandled error for message %s: %s", record.messageId, outcome)
                outcome = RecordResult.ERROR
            report.results[record.messageId] = outcome

        logger.info(
            "Processed batch of %s: %s failed, %s invalid",
            len(report.results), len(report.failed_ids), len(report.invalid_ids),
        )
        return report

    async def process_event(self, event: dict[str, Any]) -> dict[str, Any]:
        """Lambda-style SQS event in, partial batch response out."""
        report = await self.process_batch(event.get("Records") or [])
        return report.to_response().model_dump()

    async def process_record(self, record: SqsRecord) -> RecordResult:
        try:
            message = parse_submission(record.body)
        except MessageParseError as e:
            logger.error("Dropping message %s: %s", record.messageId, e)
            SUBMISSIONS_TOTAL.labels(outcome="invalid").inc()
            return RecordResult.INVALID

        try:
            async with self.session_factory() as session:
                outcome = await ingest_submission(session, self.definition, message, message_id=record.messageId)
                if outcome == IngestOutcome.STARTED:
                    await session.commit()
                else:
                    await session.rollback()
        except Exception as e:
            logger.error(
                "Failed to ingest message %s (job %s): %s", record.messageId, message.job_id, e, exc_info=True
            )
            SUBMISSIONS_TOTAL.labels(outcome="error").inc()
            return RecordResult.ERROR

        if outcome == IngestOutcome.STARTED:
            SUBMISSIONS_TOTAL.labels(outcome="started").inc()
            logger.info("Message %s started execution for job %s", record.messageId, message.job_id)
            return RecordResult.STARTED

        SUBMISSIONS_TOTAL.labels(outcome="duplicate").inc()
        return RecordResult.DUPLICATE

def encode_submission(job_id: str, resource_key: str, worker_parameters: dict[str, Any]) -> str:
    return json.dumps({"jobId": job_id, "resourceKey": resource_key, "workerParameters": worker_parameters})
