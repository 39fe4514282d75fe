import logging
import time

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from supportrag.config import settings
from supportrag.db import async_session_factory
from supportrag.services.cleanup import cleanup_orphaned_sources
from supportrag.services.sync import sync_all
from supportrag.workers.base import BaseWorker

logger = logging.getLogger(__name__)


class SyncWorker(BaseWorker):
    """Runs every sync cursor and the orphan cleanup on a fixed interval."""

    name = "sync"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        interval_seconds: float | None = None,
    ):
        super().__init__()
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.sync_interval_seconds
        self._last_run: float | None = None

    def is_due(self) -> bool:
        if self._last_run is None:
            return True
        return time.monotonic() - self._last_run >= self.interval_seconds

    async def run_once(self) -> bool:
        if not self.is_due():
            return False
        self._last_run = time.monotonic()

        async with self.session_factory() as session:
            result = await sync_all(session)
        async with self.session_factory() as session:
            deleted = await cleanup_orphaned_sources(session)

        logger.info(
            f"Sync pass: enqueued={sum(result.enqueued.values())}, "
            f"errors={len(result.errors)}, orphans_deleted={sum(deleted.values())}"
        )
        return False
