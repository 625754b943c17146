"""
Shared fixtures: a file-backed SQLite database per test, fakes for the
render worker, notification sink and queue publisher, and an httpx client
bound to the ASGI app.
"""
import httpx
import pytest

from render_orchestrator.container import build_clients
from render_orchestrator.db.session import Database
from render_orchestrator.settings import Settings

from helpers import WEBHOOK_SECRET, FakeRenderWorker, FakeNotificationSink, FakeQueuePublisher

@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        SQLALCHEMY_DATABASE_URI=f"sqlite+aiosqlite:///{tmp_path / 'orchestrator.db'}",
        WEBHOOK_SECRET=WEBHOOK_SECRET,
        SCHEDULER_ENABLED=False,
        TRIGGER_RETRY_INTERVAL_SECONDS=1,
        RENDER_TIMEOUT_SECONDS=3600,
        SQS_QUEUE_URL=None,
        NOTIFICATION_WEBHOOK_URL=None,
        API_SECRET_KEY=None,
    )

@pytest.fixture
async def database(settings):
    db = Database(settings.SQLALCHEMY_DATABASE_URI)
    await db.create_all()
    yield db
    await db.dispose()

@pytest.fixture
def worker():
    return FakeRenderWorker()

@pytest.fixture
def sink():
    return FakeNotificationSink()

@pytest.fixture
def publisher():
    return FakeQueuePublisher()

@pytest.fixture
def clients(settings, database, worker, sink, publisher):
    return build_clients(settings, database=database, worker=worker, notification_sink=sink, publisher=publisher)

@pytest.fixture
def definition(clients):
    return clients.definition

@pytest.fixture
async def api(clients):
    from render_orchestrator.main import create_app

    app = create_app(clients=clients)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
