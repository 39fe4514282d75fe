import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from supportrag.config import settings
from supportrag.db import async_session_factory
from supportrag.services.embedding import EmbeddingService
from supportrag.services.ingestion import process_ingestion_batch
from supportrag.workers.base import BaseWorker

logger = logging.getLogger(__name__)


class IngestionWorker(BaseWorker):
    """Drains the rag_ingestion_jobs queue in batches."""

    def __init__(
        self,
        name: str = "ingestion",
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        batch_size: int | None = None,
        embedder: EmbeddingService | None = None,
        poll_interval: float | None = None,
    ):
        super().__init__(poll_interval)
        self.name = name
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.worker_batch_size
        self.embedder = embedder

    async def run_once(self) -> bool:
        batch = await process_ingestion_batch(
            self.session_factory, limit=self.batch_size, embedder=self.embedder
        )
        # A full batch means the queue likely has more; anything less, poll later
        return batch.selected >= self.batch_size
