import asyncio
import logging
from abc import ABC, abstractmethod

from supportrag.config import settings

logger = logging.getLogger(__name__)


class BaseWorker(ABC):
    """Base class for polling workers."""

    name: str = "worker"

    def __init__(self, poll_interval: float | None = None):
        self.running = False
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds

    @abstractmethod
    async def run_once(self) -> bool:
        """
        Do one unit of work. Implement in subclass.
        Returns True if there may be more work waiting, False to sleep.
        """

    async def run(self) -> None:
        """Run the worker loop until stopped."""
        self.running = True
        logger.info(f"Starting {self.__class__.__name__} ({self.name})")

        while self.running:
            try:
                busy = await self.run_once()

                if not busy:
                    await asyncio.sleep(self.poll_interval)
            except Exception as e:
                logger.exception(f"Worker {self.name} error: {e}")
                await asyncio.sleep(self.poll_interval)

    def stop(self) -> None:
        """Stop the worker loop after the current unit of work."""
        self.running = False
        logger.info(f"Stopping {self.__class__.__name__} ({self.name})")
