import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends

from render_orchestrator.settings import Settings, settings as default_settings
from render_orchestrator.container import Clients, build_clients
from render_orchestrator.logging_config import configure_logging
from render_orchestrator.auth.security import require_api_key
from render_orchestrator.api.v1.jobs import router as jobs_router
from render_orchestrator.api.v1.webhooks import router as webhooks_router
from render_orchestrator.api.v1.admin import router as admin_router
from render_orchestrator.api.v1.metrics import router as metrics_router

logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    from render_orchestrator.scheduler.service import SchedulerService
    from render_orchestrator.services.outbox import OutboxProcessor
    from render_orchestrator.services.queue import SqsQueuePoller

    clients: Clients = app.state.clients
    settings = clients.settings

    # 1. Ensure tables exist (retry while the database comes up)
    for i in range(10):
        try:
            await clients.database.create_all()
            break
        except Exception as e:
            logger.warning(f"Bootstrap: database not ready ({e}), retrying in 2s... ({i+1}/10)")
            await asyncio.sleep(2)
    else:
        logger.error("Bootstrap failed: database unreachable")

    background = []

    # 2. Scheduler (TriggerRender dispatch + timeout sweeper)
    if settings.SCHEDULER_ENABLED:
        background.append(SchedulerService(clients, interval=settings.SCHEDULER_INTERVAL_SECONDS))

    # 3. Outbox (notifications)
    background.append(OutboxProcessor(
        clients.database.session_factory,
        clients.notification_sink,
        interval=settings.OUTBOX_INTERVAL_SECONDS,
        max_attempts=settings.NOTIFICATION_MAX_ATTEMPTS,
    ))

    # 4. Queue poller, when running outside Lambda
    if settings.SQS_QUEUE_URL:
        background.append(SqsQueuePoller(
            clients.consumer,
            settings.SQS_QUEUE_URL,
            settings.AWS_REGION,
            wait_time_seconds=settings.SQS_WAIT_TIME_SECONDS,
            max_messages=settings.SQS_MAX_MESSAGES,
        ))

    for service in background:
        await service.start()

    yield

    # Shutdown
    for service in reversed(background):
        await service.stop()
    await clients.close()

def create_app(settings: Optional[Settings] = None, clients: Optional[Clients] = None) -> FastAPI:
    """Builds the API around prebuilt `clients` (e.g. with fakes) or ones built from settings."""
    settings = settings or (clients.settings if clients else default_settings)
    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        lifespan=lifespan
    )
    app.state.clients = clients or build_clients(settings)

    internal = [Depends(require_api_key)]
    app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"], dependencies=internal)
    app.include_router(webhooks_router, prefix="/api/v1/webhooks", tags=["webhooks"])
    app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"], dependencies=internal)
    app.include_router(metrics_router, tags=["metrics"])

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app

app = create_app()
