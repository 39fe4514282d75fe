import asyncio
import logging
import signal

from supportrag.config import settings
from supportrag.workers.ingestion import IngestionWorker
from supportrag.workers.sync import SyncWorker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_workers(concurrency: int | None = None) -> list:
    """A bounded pool of ingestion workers plus one sync worker."""
    concurrency = concurrency or settings.worker_concurrency
    workers = [IngestionWorker(name=f"ingestion-{i + 1}") for i in range(concurrency)]
    workers.append(SyncWorker())
    return workers


async def run_workers():
    """Run all workers concurrently."""
    workers = build_workers()

    # Handle shutdown signals
    def handle_shutdown(sig, frame):  # noqa: ARG001
        logger.info(f"Received shutdown signal: {sig}")
        for worker in workers:
            worker.stop()

    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    await asyncio.gather(*(worker.run() for worker in workers))


def main():
    """Entry point for the worker process."""
    logger.info(f"Starting RAG workers (ingestion concurrency={settings.worker_concurrency})")
    asyncio.run(run_workers())


if __name__ == "__main__":
    main()
