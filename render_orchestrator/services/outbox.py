import asyncio
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from render_orchestrator.db.models import OutboxEvent
from render_orchestrator.domain.models import utcnow
from render_orchestrator.services.notifications import NotificationSink, build_notification
from render_orchestrator.api.v1.metrics import NOTIFICATIONS_TOTAL

logger = logging.getLogger(__name__)

class OutboxProcessor:
    """
    Delivers outbox events to the notification sink.

    A failed delivery stays PENDING and is retried on the next pass until
    `max_attempts` is reached, then it is marked FAILED. Delivery never
    touches the job row.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        sink: NotificationSink,
        interval: float = 1.0,
        max_attempts: int = 5
    ):
        self.session_factory = session_factory
        self.sink = sink
        self.interval = interval
        self.max_attempts = max_attempts
        self.running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        self.running = True
        self._task = asyncio.create_task(self.run_loop())
        logger.info("OutboxProcessor started.")

    async def stop(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("OutboxProcessor stopped.")

    async def run_loop(self):
        while self.running:
            try:
                await self.process_batch()
            except Exception as e:
                logger.error(f"Error in OutboxProcessor: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    async def process_batch(self, batch_size: int = 50) -> int:
        async with self.session_factory() as session:
            async with session.begin():
                stmt = (
                    select(OutboxEvent)
                    .where(OutboxEvent.status == "PENDING")
                    .order_by(OutboxEvent.created_at.asc(), OutboxEvent.id.asc())
                    .with_for_update(skip_locked=True)
                    .limit(batch_size)
                )
                events = (await session.execute(stmt)).scalars().all()
                if not events:
                    return 0

                for event in events:
                    event.attempts += 1
                    try:
                        await self._publish(event)
                    except Exception as e:
                        event.last_error = str(e)
                        if event.attempts >= self.max_attempts:
                            event.status = "FAILED"
                            NOTIFICATIONS_TOTAL.labels(result="failed").inc()
                            logger.error(
                                "Giving up on outbox event %s after %s attempts: %s", event.id, event.attempts, e
                            )
                        else:
                            NOTIFICATIONS_TOTAL.labels(result="retry").inc()
                            logger.warning("Failed to publish event %s (attempt %s): %s", event.id, event.attempts, e)
                        continue

                    event.status = "PUBLISHED"
                    event.published_at = utcnow()
                    NOTIFICATIONS_TOTAL.labels(result="published").inc()

                return len(events)

    async def _publish(self, event: OutboxEvent):
        await self.sink.send(build_notification(event.payload or {}))
