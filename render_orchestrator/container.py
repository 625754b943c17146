import logging
from dataclasses import dataclass
from typing import Optional

from render_orchestrator.db.session import Database
from render_orchestrator.services.notifications import (
    NotificationSink, LoggingNotificationSink, WebhookNotificationSink,
)
from render_orchestrator.services.queue import QueuePublisher, SqsQueuePublisher, InProcessQueuePublisher
from render_orchestrator.services.queue_consumer import QueueConsumer
from render_orchestrator.services.render_worker import RenderWorker, RenderWorkerClient
from render_orchestrator.settings import Settings
from render_orchestrator.workflow.definition import WorkflowDefinition, load_definition

logger = logging.getLogger(__name__)

@dataclass
class Clients:
    """Everything with a connection or a config, built once per process."""
    settings: Settings
    database: Database
    definition: WorkflowDefinition
    worker: RenderWorker
    notification_sink: NotificationSink
    consumer: QueueConsumer
    publisher: QueuePublisher

    async def close(self):
        for resource in (self.worker, self.notification_sink):
            close = getattr(resource, "close", None)
            if close:
                await close()
        await self.database.dispose()

def build_clients(
    settings: Settings,
    database: Optional[Database] = None,
    worker: Optional[RenderWorker] = None,
    notification_sink: Optional[NotificationSink] = None,
    publisher: Optional[QueuePublisher] = None
) -> Clients:
    database = database or Database(settings.SQLALCHEMY_DATABASE_URI)
    definition = load_definition(settings)

    if worker is None:
        worker = RenderWorkerClient(
            base_url=settings.RENDER_WORKER_URL,
            webhook_url=settings.WEBHOOK_URL,
            default_composition_id=settings.DEFAULT_COMPOSITION_ID,
            default_codec=settings.DEFAULT_CODEC,
            timeout=settings.RENDER_WORKER_TIMEOUT_SECONDS,
        )

    if notification_sink is None:
        if settings.NOTIFICATION_WEBHOOK_URL:
            notification_sink = WebhookNotificationSink(settings.NOTIFICATION_WEBHOOK_URL, secret=settings.WEBHOOK_SECRET)
        else:
            notification_sink = LoggingNotificationSink()

    consumer = QueueConsumer(database.session_factory, definition, concurrency=settings.CONSUMER_CONCURRENCY)

    if publisher is None:
        if settings.SQS_QUEUE_URL:
            publisher = SqsQueuePublisher(settings.SQS_QUEUE_URL, settings.AWS_REGION)
        else:
            logger.warning("SQS_QUEUE_URL not configured, submissions are processed in-process")
            publisher = InProcessQueuePublisher(consumer)

    return Clients(
        settings=settings,
        database=database,
        definition=definition,
        worker=worker,
        notification_sink=notification_sink,
        consumer=consumer,
        publisher=publisher,
    )
