import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Protocol
from uuid import uuid4

import boto3

from render_orchestrator.domain.messages import SqsRecord
from render_orchestrator.services.queue_consumer import QueueConsumer

logger = logging.getLogger(__name__)

class QueuePublisher(Protocol):
    async def publish(self, body: str, job_id: str) -> str: ...

class SqsQueuePublisher:
    def __init__(self, queue_url: str, region: str, client=None):
        self.queue_url = queue_url
        self.client = client or boto3.client("sqs", region_name=region)

    async def publish(self, body: str, job_id: str) -> str:
        response = await asyncio.to_thread(
            self.client.send_message,
            QueueUrl=self.queue_url,
            MessageBody=body,
            MessageAttributes={
                "MessageType": {"StringValue": "RENDER_VIDEO", "DataType": "String"},
                "JobId": {"StringValue": job_id, "DataType": "String"},
                "Timestamp": {"StringValue": datetime.now(timezone.utc).isoformat(), "DataType": "String"},
            },
        )
        message_id = response["MessageId"]
        logger.info("Render request for job %s queued: %s", job_id, message_id)
        return message_id

class InProcessQueuePublisher:
    """
    Local development without a queue: hands the message straight to the
    consumer as a single-record batch.
    """

    def __init__(self, consumer: QueueConsumer):
        self.consumer = consumer

    async def publish(self, body: str, job_id: str) -> str:
        message_id = f"local-{uuid4()}"
        report = await self.consumer.process_batch([SqsRecord(messageId=message_id, body=body)])
        if report.failed_ids:
            raise RuntimeError(f"Submission for job {job_id} could not be processed")
        return message_id

class SqsQueuePoller:
    """
    Long-polls the render queue and feeds batches to the QueueConsumer.

    Acknowledged messages (started, duplicate, or permanently invalid) are
    deleted; transient failures are left alone so SQS redelivers them after
    the visibility timeout.
    """

    def __init__(
        self,
        consumer: QueueConsumer,
        queue_url: str,
        region: str,
        wait_time_seconds: int = 20,
        max_messages: int = 10,
        client=None
    ):
        self.consumer = consumer
        self.queue_url = queue_url
        self.wait_time_seconds = wait_time_seconds
        self.max_messages = max_messages
        self.client = client or boto3.client("sqs", region_name=region)
        self.running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        self.running = True
        self._task = asyncio.create_task(self.run_loop())
        logger.info("SqsQueuePoller started on %s", self.queue_url)

    async def stop(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("SqsQueuePoller stopped.")

    async def run_loop(self):
        while self.running:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Error in SqsQueuePoller: {e}", exc_info=True)
                await asyncio.sleep(5)

    async def poll_once(self) -> int:
        response = await asyncio.to_thread(
            self.client.receive_message,
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=self.max_messages,
            WaitTimeSeconds=self.wait_time_seconds,
            MessageAttributeNames=["All"],
        )
        messages: list[dict[str, Any]] = response.get("Messages", [])
        if not messages:
            return 0

        records = [
            SqsRecord(
                messageId=m["MessageId"],
                receiptHandle=m["ReceiptHandle"],
                body=m.get("Body", ""),
                attributes=m.get("Attributes", {}),
                messageAttributes=m.get("MessageAttributes", {}),
            )
            for m in messages
        ]
        report = await self.consumer.process_batch(records)
        failed = set(report.failed_ids)

        entries = [
            {"Id": str(i), "ReceiptHandle": r.receiptHandle}
            for i, r in enumerate(records)
            if r.messageId not in failed
        ]
        if entries:
            result = await asyncio.to_thread(
                self.client.delete_message_batch,
                QueueUrl=self.queue_url,
                Entries=entries,
            )
            for failure in result.get("Failed", []):
                logger.warning("Could not delete message entry %s: %s", failure.get("Id"), failure.get("Message"))

        return len(records)
