"""
SQS-triggered Lambda entry point for the queue consumer.

Configure the event source mapping with ReportBatchItemFailures so only the
records listed in batchItemFailures are redelivered.
"""
import asyncio
import logging
from typing import Any, Optional

from render_orchestrator.container import Clients, build_clients
from render_orchestrator.logging_config import configure_logging
from render_orchestrator.settings import settings

logger = logging.getLogger(__name__)

# Reused across warm invocations
_clients: Optional[Clients] = None
_loop: Optional[asyncio.AbstractEventLoop] = None

def _get_clients() -> Clients:
    global _clients
    if _clients is None:
        configure_logging(settings.LOG_LEVEL)
        _clients = build_clients(settings)
    return _clients

def handler(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    global _loop
    # One loop for the container's lifetime; the engine's pool is bound to it
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()

    clients = _get_clients()
    records = event.get("Records") or []
    logger.info("Received %s record(s)", len(records))
    return _loop.run_until_complete(clients.consumer.process_event(event))
