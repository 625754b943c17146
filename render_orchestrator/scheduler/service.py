import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncConnection

from render_orchestrator.utils.locking import try_advisory_lock
from render_orchestrator.scheduler.ticker import run_leader_tasks, run_metrics_tasks
from render_orchestrator.api.v1.metrics import LEADER_STATUS

logger = logging.getLogger(__name__)

class SchedulerService:
    """
    Drives the engine's background work. Only the instance holding the
    leader lock dispatches TriggerRender attempts and sweeps timeouts; every
    instance refreshes its gauges.
    """

    def __init__(self, clients, interval: float = 2.0):
        self.clients = clients
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._is_leader = False
        self._lock_conn: Optional[AsyncConnection] = None

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Scheduler service started.")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self._release_lock_connection()
        LEADER_STATUS.set(0)
        logger.info("Scheduler service stopped.")

    async def tick(self):
        if not self._lock_conn:
            self._lock_conn = await self.clients.database.engine.connect()

        is_leader = await try_advisory_lock(self._lock_conn)

        if is_leader:
            if not self._is_leader:
                logger.info("Acquired leadership. Starting scheduler.")
                self._is_leader = True
                LEADER_STATUS.set(1)
            await run_leader_tasks(self.clients)
        elif self._is_leader:
            logger.info("Lost leadership. Stopping scheduler.")
            self._is_leader = False
            LEADER_STATUS.set(0)

        async with self.clients.database.session() as session:
            await run_metrics_tasks(session)

    async def _loop(self):
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in scheduler ticker: {e}", exc_info=True)
                self._is_leader = False
                LEADER_STATUS.set(0)
                # Reconnect on the next tick; a dropped connection also drops the lock
                await self._release_lock_connection()

            await asyncio.sleep(self.interval)

    async def _release_lock_connection(self):
        if self._lock_conn:
            try:
                await self._lock_conn.close()
            except Exception as e:
                logger.warning("Error closing leader lock connection: %s", e)
            self._lock_conn = None
